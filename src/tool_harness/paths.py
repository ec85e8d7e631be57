# paths.py
# Path Safety Guard.
#
# Every filesystem-capable tool argument passes through PathGuard.resolve()
# before the tool runs. Symlinks are resolved before the containment check,
# so a benign-looking relative path that lands outside the root is rejected.
# A rejected path is never rewritten into a "safe" one.

import logging
import os
from pathlib import Path

from tool_harness.errors import PathEscape

logger = logging.getLogger(__name__)


def clean_path(raw: str) -> str:
    """Strip whitespace and stray quotes models like to wrap paths in."""
    return raw.strip().strip("\"'").strip()


class PathGuard:
    """Canonicalizes paths and confines them to a project root."""

    def __init__(self, root: str | os.PathLike) -> None:
        self._root = Path(root).resolve(strict=True)
        if not self._root.is_dir():
            raise NotADirectoryError(f"Project root is not a directory: {self._root}")

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str | os.PathLike) -> Path:
        """
        Return the canonical absolute form of `path` iff it lies at or below
        the root. Relative paths are taken from the root.

        Non-existent targets are resolved through their deepest existing
        ancestor, so write destinations are checked too. Raises PathEscape.
        """
        raw = clean_path(os.fspath(path))
        if not raw:
            raise PathEscape("Empty path.")
        if "\x00" in raw:
            raise PathEscape("Path contains a NUL byte.")

        candidate = Path(os.path.expanduser(raw)) if raw.startswith("~") else Path(raw)
        if not candidate.is_absolute():
            candidate = self._root / candidate

        resolved = candidate.resolve(strict=False)
        if not resolved.is_relative_to(self._root):
            logger.warning("path escape blocked: %r -> %s", raw, resolved)
            raise PathEscape(f"Path '{raw}' resolves outside the project root.")
        return resolved

    def contains(self, path: str | os.PathLike) -> bool:
        try:
            self.resolve(path)
        except PathEscape:
            return False
        return True

    def relative(self, path: str | os.PathLike) -> str:
        """Display form of a guarded path, relative to the root."""
        rel = self.resolve(path).relative_to(self._root)
        return rel.as_posix() or "."
