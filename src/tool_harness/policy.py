# policy.py
# Command allowlists and technology-stack detection.
#
# An Allowlist is built once per session: explicit per-agent rules win
# outright; otherwise the common rule set is unioned with the rule set of
# every technology detected in the project. The result is frozen and only
# ever replaced wholesale.

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from tool_harness.models import Allowlist, AllowlistRule

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------

RUN_CMD_COMMON: tuple[str, ...] = (
    "git status",
    "git diff",
    "git log",
    "ls",
    "pwd",
    "rg",
    "wc",
)

RUN_CMD_TECH: dict[str, tuple[str, ...]] = {
    "rust": (
        "cargo check",
        "cargo build",
        "cargo test",
        "cargo fmt",
        "cargo clippy",
        "cargo run",
        "cargo doc",
        "cargo tree",
        "cargo metadata",
        "rustfmt --check",
    ),
    "node": ("npm test", "npm run", "npm ci", "npx", "pnpm", "yarn", "node"),
    "python": ("pytest", "python -m pytest", "python -m py_compile", "ruff", "mypy", "pip list"),
    "go": ("go build", "go test", "go vet", "go fmt", "gofmt"),
    "jvm": ("mvn", "gradle"),
    "dotnet": ("dotnet build", "dotnet test", "dotnet format"),
    "ruby": ("bundle exec", "rake", "rspec"),
    "php": ("composer", "phpunit"),
    "elixir": ("mix",),
    "swift": ("swift build", "swift test"),
    "cpp": ("cmake", "make", "ctest"),
}

# Marker files (lowercased names) and extensions per technology.
_MARKERS: dict[str, tuple[frozenset[str], frozenset[str]]] = {
    "rust": (frozenset({"cargo.toml"}), frozenset({"rs"})),
    "node": (
        frozenset({"package.json", "pnpm-lock.yaml", "yarn.lock"}),
        frozenset({"ts", "tsx", "js", "jsx"}),
    ),
    "python": (
        frozenset({"pyproject.toml", "requirements.txt", "poetry.lock", "setup.py"}),
        frozenset({"py"}),
    ),
    "go": (frozenset({"go.mod"}), frozenset({"go"})),
    "jvm": (
        frozenset({"pom.xml", "build.gradle", "build.gradle.kts", "mvnw", "gradlew"}),
        frozenset({"java", "kt"}),
    ),
    "dotnet": (frozenset(), frozenset({"csproj", "sln", "cs"})),
    "ruby": (frozenset({"gemfile"}), frozenset({"rb"})),
    "php": (frozenset({"composer.json"}), frozenset({"php"})),
    "elixir": (frozenset({"mix.exs"}), frozenset({"ex", "exs"})),
    "swift": (frozenset({"package.swift"}), frozenset({"swift"})),
    "cpp": (
        frozenset({"cmakelists.txt", "makefile"}),
        frozenset({"c", "cc", "cpp", "h", "hpp"}),
    ),
}

SKIP_DIRS = frozenset({".git", "node_modules", "target", "__pycache__", ".venv", "venv", "dist", "build"})


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def detect_stack(paths: Iterable[str]) -> tuple[str, ...]:
    """Map file paths to the sorted set of technology tags they indicate."""
    found: set[str] = set()
    for path in paths:
        name = os.path.basename(path.strip()).lower()
        if not name:
            continue
        ext = name.rsplit(".", 1)[1] if "." in name else ""
        for tech, (markers, extensions) in _MARKERS.items():
            if name in markers or ext in extensions:
                found.add(tech)
    return tuple(sorted(found))


def iter_project_files(root: Path, limit: int = 5000) -> Iterable[str]:
    """Yield root-relative file paths, skipping hidden and build directories."""
    count = 0
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.startswith("."))
        for filename in sorted(filenames):
            yield os.path.relpath(os.path.join(dirpath, filename), root)
            count += 1
            if count >= limit:
                return


def detect_project_stack(root: str | os.PathLike, limit: int = 5000) -> tuple[str, ...]:
    detected = detect_stack(iter_project_files(Path(root), limit))
    logger.info("detected stack for %s: %s", root, ", ".join(detected) or "unknown")
    return detected


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def _rules(texts: Iterable[str]) -> list[AllowlistRule]:
    return [AllowlistRule.parse(text) for text in texts if text.strip()]


def build_allowlist(
    detected: Iterable[str],
    explicit: Iterable[str] | None = None,
) -> Allowlist:
    """
    Merge the common rule set with each detected technology's rule set.

    Explicit rules replace the merge entirely. An empty detection falls back
    to every known technology, since nothing narrows the project down.
    """
    explicit = [text for text in (explicit or ()) if text.strip()]
    detected = tuple(sorted(set(detected)))

    if explicit:
        return Allowlist(rules=tuple(_dedupe(_rules(explicit))), technologies=detected)

    texts = list(RUN_CMD_COMMON)
    techs = detected or tuple(sorted(RUN_CMD_TECH))
    for tech in techs:
        texts.extend(RUN_CMD_TECH.get(tech, ()))
    return Allowlist(rules=tuple(_dedupe(_rules(texts))), technologies=detected)


def _dedupe(rules: list[AllowlistRule]) -> list[AllowlistRule]:
    seen: set[AllowlistRule] = set()
    unique = []
    for rule in rules:
        if rule not in seen:
            seen.add(rule)
            unique.append(rule)
    return unique
