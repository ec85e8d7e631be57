# backend.py
# Inference backend adapter.
#
# The loop only sees InferenceBackend.complete(): ordered messages in,
# either a direct answer or tool calls out. Transport errors that may clear
# on their own are raised as BackendUnavailable; anything the harness cannot
# interpret is a BackendProtocolError.

import json
import logging
import re
from typing import Any, Protocol

import openai
from openai import OpenAI

from tool_harness.errors import BackendProtocolError, BackendUnavailable
from tool_harness.models import Message, ModelResponse, Role, SamplingParams, ToolCall, ToolSpec, new_call_id

logger = logging.getLogger(__name__)

TEXT_PROTOCOL_PROMPT = """\
You are operating with tools.
Return ONLY JSON in one of two formats:
{"action":"tool","tool":"<tool_name>","args":{...}}
{"action":"final","content":"<answer for user>"}

Rules:
- Never wrap JSON in markdown.
- Only use tools from the tool reference.
- If a tool fails, adapt and retry or return a concise failure summary.\
"""


class InferenceBackend(Protocol):
    def complete(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        sampling: SamplingParams,
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return {"_raw_arguments": raw}
    return value if isinstance(value, dict) else {"_raw_arguments": raw}


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


def parse_action_json(content: str) -> ModelResponse:
    """
    Interpret a reply in the JSON action protocol. Replies that are not
    protocol JSON are treated as a direct answer.
    """
    try:
        data = json.loads(_strip_fences(content), strict=False)
    except json.JSONDecodeError:
        return ModelResponse(content=content)
    if not isinstance(data, dict):
        return ModelResponse(content=content)

    action = data.get("action")
    if action == "final":
        return ModelResponse(content=str(data.get("content") or ""))
    if action == "tool" and isinstance(data.get("tool"), str):
        args = data.get("args")
        if not isinstance(args, dict):
            args = {"_raw_arguments": json.dumps(args)} if args is not None else {}
        return ModelResponse(tool_calls=[ToolCall(name=data["tool"], arguments=args)])
    return ModelResponse(content=content)


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def to_chat_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Chat-completion payload with native tool calls."""
    payload: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.TOOL_RESULT:
            payload.append(
                {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content or ""}
            )
        elif message.role is Role.ASSISTANT and message.tool_calls:
            payload.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in message.tool_calls
                    ],
                }
            )
        else:
            payload.append({"role": message.role.value, "content": message.content or ""})
    return payload


def to_text_messages(messages: list[Message], protocol: bool = True) -> list[dict[str, Any]]:
    """Payload for backends without function calling; tool traffic becomes text."""
    payload: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.TOOL_RESULT:
            payload.append(
                {"role": "user", "content": f"Tool result ({message.tool_call_id}):\n{message.content or ''}"}
            )
        elif message.role is Role.ASSISTANT and message.tool_calls:
            call = message.tool_calls[0]
            payload.append(
                {
                    "role": "assistant",
                    "content": json.dumps({"action": "tool", "tool": call.name, "args": call.arguments}),
                }
            )
        else:
            payload.append({"role": message.role.value, "content": message.content or ""})
    if protocol:
        payload.insert(
            1 if payload and payload[0]["role"] == "system" else 0,
            {"role": "system", "content": TEXT_PROTOCOL_PROMPT},
        )
    return payload


# ---------------------------------------------------------------------------
# OpenAI-compatible backend
# ---------------------------------------------------------------------------


class OpenAIBackend:
    """
    Chat-completion backend over the OpenAI client. Works against OpenAI,
    OpenRouter, or a local llama.cpp / vLLM server via `base_url`.

    Example:
        backend = OpenAIBackend(
            model="qwen/qwen-2.5-coder-32b-instruct",
            base_url="https://openrouter.ai/api/v1",
            api_key=os.getenv("OPENROUTER_API_KEY"),
        )
    """

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        native_tools: bool = True,
        client: OpenAI | None = None,
    ) -> None:
        self._model = model
        self._native_tools = native_tools
        self._client = client or OpenAI(
            base_url=base_url,
            api_key=api_key or "not-needed",
            timeout=timeout,
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._model

    def _request(self, messages: list[Message], tools: list[ToolSpec], sampling: SamplingParams) -> dict[str, Any]:
        body: dict[str, Any] = {"model": self._model}
        if self._native_tools:
            body["messages"] = to_chat_messages(messages)
            if tools:
                body["tools"] = [spec.to_schema() for spec in tools]
        else:
            body["messages"] = to_text_messages(messages, protocol=bool(tools))

        if sampling.temperature is not None:
            body["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            body["top_p"] = sampling.top_p
        if sampling.max_tokens is not None:
            body["max_tokens"] = sampling.max_tokens
        if sampling.top_k is not None:
            # Not part of the OpenAI schema; llama.cpp and vLLM accept it.
            body["extra_body"] = {"top_k": sampling.top_k}
        return body

    def complete(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        sampling: SamplingParams,
    ) -> ModelResponse:
        body = self._request(messages, tools, sampling)
        try:
            response = self._client.chat.completions.create(**body)
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            raise BackendUnavailable(f"{type(exc).__name__}: {exc}") from exc
        except openai.APIStatusError as exc:
            raise BackendProtocolError(f"Backend rejected the request ({exc.status_code}): {exc}") from exc

        if not getattr(response, "choices", None):
            raise BackendProtocolError("Backend returned no choices.")
        message = response.choices[0].message
        content = message.content.strip() if message.content else None

        if not self._native_tools:
            return parse_action_json(content or "")

        calls = []
        for raw in message.tool_calls or []:
            function = getattr(raw, "function", None)
            if function is None or not function.name:
                raise BackendProtocolError("Tool call without a function name.")
            calls.append(
                ToolCall(
                    id=raw.id or new_call_id(),
                    name=function.name,
                    arguments=_parse_arguments(function.arguments),
                )
            )
        logger.debug("backend replied: %d tool call(s), %d chars", len(calls), len(content or ""))
        return ModelResponse(content=content, tool_calls=calls)
