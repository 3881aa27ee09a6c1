from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence

Role = Literal["system", "user", "assistant"]
ROLES: tuple[str, ...] = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """Provider-agnostic message. Adapters map it to their own schemas."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"unknown role: {self.role!r}")

    def as_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Delta:
    """One increment of generated text, taken from a single decoded chunk."""

    text: str
    is_final: bool = False


class ProviderAdapter(Protocol):
    """Wire-format strategy for one backend family.

    Contract:
    - transform_request never drops a message.
    - parse_stream_chunk is pure and returns None instead of raising on
      unexpected (but well-formed) JSON.
    - is_stream_end accepts the raw `data:` payload string or a decoded object.
    """

    name: str
    default_model: str

    def build_headers(self, api_key: str) -> dict[str, str]:
        ...

    def build_url(self, endpoint: str, model: str, api_key: str) -> str:
        ...

    def transform_request(
        self, messages: Sequence[ChatMessage], model: str, system_prompt: Optional[str]
    ) -> dict[str, Any]:
        ...

    def parse_stream_chunk(self, data: Any) -> Optional[str]:
        ...

    def is_stream_end(self, data: str | Mapping[str, Any] | Any) -> bool:
        ...
