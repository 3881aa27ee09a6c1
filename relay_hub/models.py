from __future__ import annotations

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .capabilities.interfaces import ChatMessage, Role


# -------------------------
# HTTP envelopes
# -------------------------

class OkEnvelope(BaseModel):
    status: Literal["ok"] = "ok"
    data: Any


class ErrorEnvelope(BaseModel):
    status: Literal["error"] = "error"
    code: str
    message: str
    data: Any = Field(default_factory=dict)


class SessionItem(BaseModel):
    request_id: str
    created_at_utc: str
    accumulated_chars: int
    state: str


class SessionListResult(BaseModel):
    items: List[SessionItem]


class CancelResult(BaseModel):
    request_id: str
    cancelled: bool


# -------------------------
# WebSocket messages
# -------------------------

class WsMessage(BaseModel):
    role: Role
    content: str

    def to_chat(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class WsSubmit(BaseModel):
    """Start a request: text for an initial summary, messages for a follow-up."""

    type: Literal["submit"] = "submit"
    request_id: Optional[str] = None
    content: Union[str, List[WsMessage]]
    custom_prompt: Optional[str] = None
    command_name: Optional[str] = None

    def canonical_content(self) -> Union[str, list[ChatMessage]]:
        if isinstance(self.content, str):
            return self.content
        return [m.to_chat() for m in self.content]


class WsCancel(BaseModel):
    type: Literal["cancel"] = "cancel"
    request_id: str


class WsRejected(BaseModel):
    """Sent back for frames that could not be acted on."""

    type: Literal["rejected"] = "rejected"
    request_id: Optional[str] = None
    code: str
    message: str
