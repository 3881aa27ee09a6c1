from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional, Sequence
from urllib.parse import quote

from ..capabilities.interfaces import ChatMessage, ProviderAdapter


class ProviderKind(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    AZURE = "azure"
    GEMINI = "gemini"


def detect_provider_kind(name: Optional[str]) -> ProviderKind:
    """Map a free-text provider name onto a ProviderKind.

    Only used to read legacy settings; new settings store the enum value.
    Order matters: "anthropic"/"claude" is checked before "azure", which is
    checked before "gemini"/"google". Anything else is OpenAI-compatible.
    """
    lowered = (name or "").strip().lower()
    if "anthropic" in lowered or "claude" in lowered:
        return ProviderKind.ANTHROPIC
    if "azure" in lowered:
        return ProviderKind.AZURE
    if "gemini" in lowered or "google" in lowered:
        return ProviderKind.GEMINI
    return ProviderKind.OPENAI


def _dig(obj: Any, *path: Any) -> Any:
    """Walk dict keys / list indexes; None as soon as the shape does not match."""
    cur = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(cur, list) or len(cur) <= step:
                return None
            cur = cur[step]
        else:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(step)
    return cur


def _text_or_none(value: Any) -> Optional[str]:
    # empty strings carry nothing worth forwarding
    if isinstance(value, str) and value:
        return value
    return None


class OpenAIAdapter:
    """OpenAI chat completions; also Groq, OpenRouter, Perplexity and friends."""

    name = "openai"
    default_model = "gpt-3.5-turbo"

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key.strip()}",
        }

    def build_url(self, endpoint: str, model: str, api_key: str) -> str:
        return endpoint

    def _messages(self, messages: Sequence[ChatMessage], system_prompt: Optional[str]) -> list[dict[str, str]]:
        out: list[dict[str, str]] = []
        if system_prompt:
            out.append({"role": "system", "content": system_prompt})
        out.extend(m.as_wire() for m in messages)
        return out

    def transform_request(
        self, messages: Sequence[ChatMessage], model: str, system_prompt: Optional[str]
    ) -> dict[str, Any]:
        return {
            "model": (model or "").strip() or self.default_model,
            "messages": self._messages(messages, system_prompt),
            "stream": True,
        }

    def parse_stream_chunk(self, data: Any) -> Optional[str]:
        delta = _text_or_none(_dig(data, "choices", 0, "delta", "content"))
        if delta is not None:
            return delta
        # non-streaming body from a proxy that ignores "stream": true
        choice = _dig(data, "choices", 0)
        if isinstance(choice, dict) and "delta" not in choice:
            return _text_or_none(_dig(choice, "message", "content"))
        return None

    def is_stream_end(self, data: Any) -> bool:
        if isinstance(data, str):
            return data.strip() == "[DONE]"
        return _dig(data, "choices", 0, "finish_reason") == "stop"


class AzureAdapter(OpenAIAdapter):
    """Azure OpenAI: OpenAI wire format, `api-key` header, model optional."""

    name = "azure"
    default_model = ""

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json", "api-key": api_key.strip()}

    def transform_request(
        self, messages: Sequence[ChatMessage], model: str, system_prompt: Optional[str]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": self._messages(messages, system_prompt),
            "stream": True,
        }
        # the deployment in the URL selects the model
        if (model or "").strip():
            body["model"] = model.strip()
        return body


class AnthropicAdapter:
    """Anthropic Messages API (SSE events)."""

    name = "anthropic"
    default_model = "claude-3-sonnet-20240229"
    api_version = "2023-06-01"
    max_tokens = 4096

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key.strip(),
            "anthropic-version": self.api_version,
        }

    def build_url(self, endpoint: str, model: str, api_key: str) -> str:
        return endpoint

    def transform_request(
        self, messages: Sequence[ChatMessage], model: str, system_prompt: Optional[str]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": (model or "").strip() or self.default_model,
            "messages": [m.as_wire() for m in messages if m.role != "system"],
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    def parse_stream_chunk(self, data: Any) -> Optional[str]:
        if _dig(data, "type") != "content_block_delta":
            return None
        return _text_or_none(_dig(data, "delta", "text"))

    def is_stream_end(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        return data.get("type") == "message_stop" or bool(data.get("stop_reason"))


class GeminiAdapter:
    """Google Gemini streamGenerateContent (alt=sse)."""

    name = "gemini"
    default_model = "gemini-pro"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": api_key.strip()}

    def build_url(self, endpoint: str, model: str, api_key: str) -> str:
        key = quote(api_key.strip(), safe="")
        if ":streamGenerateContent" in endpoint:
            sep = "&" if "?" in endpoint else "?"
            extra = "" if "alt=sse" in endpoint else "alt=sse&"
            return f"{endpoint}{sep}{extra}key={key}"
        name = quote((model or "").strip() or self.default_model, safe="")
        return f"{self.base_url}/models/{name}:streamGenerateContent?alt=sse&key={key}"

    def transform_request(
        self, messages: Sequence[ChatMessage], model: str, system_prompt: Optional[str]
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else m.role,
                    "parts": [{"text": m.content}],
                }
                for m in messages
            ]
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return body

    def parse_stream_chunk(self, data: Any) -> Optional[str]:
        return _text_or_none(_dig(data, "candidates", 0, "content", "parts", 0, "text"))

    def is_stream_end(self, data: Any) -> bool:
        return _dig(data, "candidates", 0, "finishReason") == "STOP"


_ADAPTERS: Mapping[ProviderKind, ProviderAdapter] = {
    ProviderKind.OPENAI: OpenAIAdapter(),
    ProviderKind.ANTHROPIC: AnthropicAdapter(),
    ProviderKind.AZURE: AzureAdapter(),
    ProviderKind.GEMINI: GeminiAdapter(),
}


def get_adapter(kind: ProviderKind | str) -> ProviderAdapter:
    """Adapter for a ProviderKind; strings go through detect_provider_kind."""
    if not isinstance(kind, ProviderKind):
        kind = detect_provider_kind(kind)
    return _ADAPTERS[kind]
