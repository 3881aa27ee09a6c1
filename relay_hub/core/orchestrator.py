from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union
from urllib.parse import urlsplit

import httpx

from ..capabilities.interfaces import ChatMessage, Delta, ProviderAdapter
from ..common.deadline import with_deadline
from ..common.errors import (
    ChunkParseError,
    ConfigError,
    HttpStatusError,
    InvalidInputError,
    NetworkError,
    RelayError,
    RequestAbortedError,
    RequestTimeoutError,
    StallError,
    StreamReadError,
)
from ..common.log import get_logger
from ..events.sink import EventSink
from ..modules.adapters import get_adapter
from ..modules.sse import LineBuffer, decode_payload, extract_payload
from .config import ProviderConfig, ProviderSettings
from .registry import RequestRegistry, RequestSession, StreamState

logger = get_logger(__name__)

Content = Union[str, Sequence[Union[ChatMessage, Mapping[str, Any]]]]

PLACEHOLDER_FOLLOW_UP = "follow_up"
ERROR_BODY_EXCERPT = 200
LABEL_PREVIEW_CHARS = 50

DRY_RUN_RESPONSE = "[Debug Mode: No API Call Made]"
STALL_NOTICE = (
    "\n\n---\n*Stream interrupted: the API stopped sending data mid-response. "
    "You can ask a follow-up to continue.*"
)
CANCELLED_NOTICE = "[Info] Request stopped by user."


@dataclass(frozen=True)
class StreamOutcome:
    """What `run` returns once a session is retired."""

    request_id: str
    state: StreamState
    full_response: str = ""
    error: Optional[str] = None
    stalled: bool = False


@dataclass(frozen=True)
class PreparedRequest:
    messages: list[ChatMessage]
    system_prompt: str
    # set for initial requests only; lets the caller seed its history
    original_context: Optional[str]
    label: Optional[str] = None


def truncate_text(text: str, max_length: int) -> str:
    """Cut `text` to `max_length` chars on a word boundary and mark it with '...'.

    A single word longer than the limit is the only case that gets cut
    mid-word.
    """
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    if not text[max_length].isspace():
        boundary = max(cut.rfind(c) for c in (" ", "\n", "\t", "\r"))
        if boundary > 0:
            cut = cut[:boundary]
    return cut.rstrip() + "..."


def validate_endpoint(cfg: ProviderConfig) -> None:
    if not cfg.endpoint or not cfg.api_key:
        raise ConfigError("API URL or API Key not set. Please configure them in the settings.")
    try:
        parts = urlsplit(cfg.endpoint)
        host = parts.hostname
    except ValueError as e:
        raise ConfigError("Invalid API URL format. Please check your configuration.", detail=str(e)) from e
    if not parts.scheme or not host:
        raise ConfigError("Invalid API URL format. Please check your configuration.", detail=cfg.endpoint)
    if parts.scheme.lower() != "https":
        raise ConfigError("API URL must use HTTPS. Please reconfigure in the settings.", detail=parts.scheme)


def _as_messages(items: Iterable[Any]) -> list[ChatMessage]:
    out: list[ChatMessage] = []
    for item in items:
        if isinstance(item, ChatMessage):
            out.append(item)
            continue
        if not isinstance(item, Mapping):
            raise InvalidInputError("Invalid input data", detail=f"unexpected message type {type(item).__name__}")
        try:
            out.append(ChatMessage(role=item.get("role"), content=str(item.get("content") or "")))
        except ValueError as e:
            raise InvalidInputError("Invalid input data", detail=str(e)) from e
    return out


def _follow_up_messages(content: Any) -> list[ChatMessage]:
    if not isinstance(content, (list, tuple)):
        raise InvalidInputError("Invalid input data", detail=f"unexpected content type {type(content).__name__}")
    messages = _as_messages(content)
    if not messages:
        raise InvalidInputError("Invalid input data", detail="empty message list")
    return messages


class StreamOrchestrator:
    """Canonical request -> provider adapter -> HTTPS stream -> deltas -> sink.

    Many sessions run concurrently, one asyncio task each. Every await point
    can be interrupted by `cancel`; the registry is re-checked before each
    line so nothing is forwarded for a session that is gone.
    """

    def __init__(
        self,
        *,
        settings: Union[ProviderSettings, Callable[[], ProviderSettings]],
        registry: Optional[RequestRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings if callable(settings) else (lambda: settings)
        self.registry = registry or RequestRegistry()
        self._transport = transport

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------

    def submit(
        self,
        content: Content,
        request_id: str,
        destination: EventSink,
        custom_prompt: Optional[str] = None,
        command_name: Optional[str] = None,
    ) -> "asyncio.Task[StreamOutcome]":
        """Register a session and start streaming it in the background.

        A string is an initial request; a message sequence is a follow-up
        turn. Raises SessionConflictError if `request_id` is still live.
        """
        session = self.registry.create(request_id, destination)
        session.task = asyncio.create_task(
            self.run(session, content, custom_prompt=custom_prompt, command_name=command_name),
            name=f"relay:{request_id}",
        )
        return session.task

    def cancel(self, request_id: str) -> bool:
        """Stop a request. Unknown, finished or already cancelled ids are a no-op."""
        session = self.registry.cancel(request_id)
        if session is None:
            logger.debug("cancel ignored, no live session", extra={"request_id": request_id})
            return False
        logger.info("cancelling request", extra={"request_id": request_id, "state": session.state.value})
        task = session.task
        # a task that has not started yet bails out on its own registry check
        if session.started and task is not None and not task.done():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is task.get_loop():
                task.cancel()
            else:
                task.get_loop().call_soon_threadsafe(task.cancel)
        return True

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------

    async def run(
        self,
        session: RequestSession,
        content: Content,
        *,
        custom_prompt: Optional[str] = None,
        command_name: Optional[str] = None,
    ) -> StreamOutcome:
        rid = session.id
        if not self.registry.is_live(session):
            return StreamOutcome(rid, StreamState.CANCELLED)
        session.started = True
        sink = session.destination
        try:
            await sink.loading_started(rid)
            settings = self._settings()
            if settings.debug_mode:
                return await self._dry_run(session, content, settings, custom_prompt, command_name)

            prepared = self._prepare(content, settings, custom_prompt, command_name)
            cfg = settings.to_provider_config(system_prompt=prepared.system_prompt)
            validate_endpoint(cfg)
            if prepared.label:
                await sink.notice(rid, prepared.label)
            return await self._stream(session, prepared, cfg, settings)
        except asyncio.CancelledError:
            if not session.cancelled:
                raise
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            return await self._finish_cancelled(session)
        except RequestAbortedError:
            return await self._finish_cancelled(session)
        except RelayError as e:
            return await self._fail(session, e)
        except Exception as e:
            logger.error("unexpected failure", extra={"request_id": rid}, exc_info=True)
            return await self._fail(session, RelayError("API request failed", detail=f"{type(e).__name__}: {e}"))
        finally:
            self.registry.remove(rid, session)

    def _transition(self, session: RequestSession, state: StreamState) -> None:
        logger.debug(
            "session state",
            extra={"request_id": session.id, "from": session.state.value, "to": state.value},
        )
        session.state = state

    def _ensure_live(self, session: RequestSession) -> None:
        if not self.registry.is_live(session):
            raise RequestAbortedError(session.id)

    def _prepare(
        self,
        content: Content,
        settings: ProviderSettings,
        custom_prompt: Optional[str],
        command_name: Optional[str],
    ) -> PreparedRequest:
        system_prompt = settings.effective_system_prompt()

        if isinstance(content, str):
            trimmed = content.strip()
            if not trimmed:
                raise InvalidInputError("Invalid text content")
            processed = truncate_text(trimmed, settings.max_text_length)
            if len(processed) < len(trimmed):
                logger.info(
                    "input truncated",
                    extra={"original_chars": len(trimmed), "sent_chars": len(processed)},
                )
            if not custom_prompt:
                return PreparedRequest(
                    messages=[ChatMessage(role="user", content=processed)],
                    system_prompt=system_prompt,
                    original_context=processed,
                )
            # a quick command replaces the system prompt; history shows both
            if command_name:
                head = f"/{command_name}"
            else:
                head = custom_prompt.split("\n")[0][:LABEL_PREVIEW_CHARS] + "..."
            return PreparedRequest(
                messages=[ChatMessage(role="user", content=processed)],
                system_prompt=custom_prompt,
                original_context=f"{custom_prompt}\n\n---\n\n{processed}",
                label=f"\n**YOU:** {head}\n\n---\n",
            )

        return PreparedRequest(
            messages=_follow_up_messages(content),
            system_prompt=system_prompt,
            original_context=None,
        )

    async def _dry_run(
        self,
        session: RequestSession,
        content: Content,
        settings: ProviderSettings,
        custom_prompt: Optional[str],
        command_name: Optional[str],
    ) -> StreamOutcome:
        rid = session.id
        sink = session.destination
        is_initial = isinstance(content, str)

        if is_initial:
            payload = content
            if custom_prompt:
                payload = f"[Custom Prompt]: {custom_prompt}\n\n[Extracted Content]:\n{content}"
        else:
            payload = json.dumps(
                [m.as_wire() for m in _follow_up_messages(content)],
                indent=2,
                ensure_ascii=False,
            )

        system_prompt = settings.effective_system_prompt()
        if custom_prompt and is_initial:
            system_prompt = custom_prompt
        if command_name:
            action = f"/{command_name}"
        elif custom_prompt:
            action = "Custom Prompt"
        else:
            action = "Default Summary"

        await sink.loading_ended(rid)
        await sink.notice(
            rid,
            f"**[DEBUG MODE]**\n\n**Action:** {action}\n**Model:** {settings.model}\n"
            f"**Target URL:** {settings.resolved_endpoint()}\n**System Prompt:**\n{system_prompt}\n\n"
            f"**Content Payload ({len(payload)} chars):**\n\n{payload}\n",
        )
        self._ensure_live(session)
        self._transition(session, StreamState.COMPLETED)
        if is_initial:
            await sink.stream_end(rid, DRY_RUN_RESPONSE, content)
            return StreamOutcome(rid, StreamState.COMPLETED, DRY_RUN_RESPONSE)
        await sink.input_unlocked(rid, PLACEHOLDER_FOLLOW_UP)
        return StreamOutcome(rid, StreamState.COMPLETED)

    async def _finish_cancelled(self, session: RequestSession) -> StreamOutcome:
        rid = session.id
        self._transition(session, StreamState.CANCELLED)
        logger.info("request cancelled", extra={"request_id": rid, "chars": len(session.accumulated_text)})
        await session.destination.loading_ended(rid)
        await session.destination.notice(rid, CANCELLED_NOTICE)
        return StreamOutcome(rid, StreamState.CANCELLED, session.accumulated_text)

    async def _fail(self, session: RequestSession, err: RelayError) -> StreamOutcome:
        rid = session.id
        self._transition(session, StreamState.ERRORED)
        logger.warning(
            "request failed",
            extra={"request_id": rid, "error": type(err).__name__, "detail": err.detail or err.user_message},
        )
        if self.registry.is_live(session):
            sink = session.destination
            await sink.loading_ended(rid)
            await sink.error(rid, err.user_message)
            await sink.input_unlocked(rid, PLACEHOLDER_FOLLOW_UP)
        return StreamOutcome(rid, StreamState.ERRORED, session.accumulated_text, error=err.user_message)

    # ------------------------------------------------------------------
    # network
    # ------------------------------------------------------------------

    def _client(self, settings: ProviderSettings) -> httpx.AsyncClient:
        # reads are bounded per chunk by with_deadline, not by httpx
        connect = settings.request_timeout_s if settings.request_timeout_s > 0 else None
        return httpx.AsyncClient(timeout=httpx.Timeout(connect, read=None), transport=self._transport)

    async def _stream(
        self,
        session: RequestSession,
        prepared: PreparedRequest,
        cfg: ProviderConfig,
        settings: ProviderSettings,
    ) -> StreamOutcome:
        rid = session.id
        sink = session.destination
        adapter = get_adapter(cfg.kind)
        body = adapter.transform_request(prepared.messages, cfg.model, cfg.system_prompt)
        url = adapter.build_url(cfg.endpoint, cfg.model, cfg.api_key)

        self._transition(session, StreamState.SENDING)
        logger.info(
            "sending request",
            extra={
                "request_id": rid,
                "provider": cfg.kind.value,
                "model": cfg.model or adapter.default_model,
                "host": urlsplit(cfg.endpoint).hostname,
                "messages": len(prepared.messages),
            },
        )

        async with self._client(settings) as client:
            try:
                request = client.build_request("POST", url, headers=adapter.build_headers(cfg.api_key), json=body)
            except httpx.InvalidURL as e:
                raise ConfigError("Invalid API URL format. Please check your configuration.", detail=str(e)) from e
            try:
                response = await with_deadline(
                    client.send(request, stream=True),
                    settings.request_timeout_s,
                    lambda: RequestTimeoutError(settings.request_timeout_s),
                )
            except httpx.TimeoutException as e:
                raise RequestTimeoutError(settings.request_timeout_s) from e
            except httpx.TransportError as e:
                raise NetworkError(str(e) or type(e).__name__) from e

            try:
                if not response.is_success:
                    await self._raise_for_status(response, settings)
                self._ensure_live(session)
                self._transition(session, StreamState.STREAMING)
                try:
                    await self._read_body(session, adapter, response, settings)
                except StallError as e:
                    return await self._on_stall(session, prepared, e)
            finally:
                await response.aclose()

        self._ensure_live(session)
        full = session.accumulated_text
        self._transition(session, StreamState.COMPLETED)
        logger.info("stream completed", extra={"request_id": rid, "chars": len(full)})
        await sink.stream_end(rid, full, prepared.original_context)
        await sink.loading_ended(rid)
        return StreamOutcome(rid, StreamState.COMPLETED, full)

    async def _raise_for_status(self, response: httpx.Response, settings: ProviderSettings) -> None:
        try:
            await with_deadline(
                response.aread(),
                settings.chunk_timeout_s,
                lambda: StallError(settings.chunk_timeout_s),
            )
            excerpt = response.text[:ERROR_BODY_EXCERPT]
        except (httpx.HTTPError, StallError) as e:
            excerpt = f"<body unavailable: {type(e).__name__}>"
        raise HttpStatusError(response.status_code, response.reason_phrase, excerpt)

    async def _read_body(
        self,
        session: RequestSession,
        adapter: ProviderAdapter,
        response: httpx.Response,
        settings: ProviderSettings,
    ) -> None:
        buffer = LineBuffer()
        # decoded bytes: providers may gzip the event stream
        chunks = response.aiter_bytes()
        try:
            while True:
                self._ensure_live(session)
                try:
                    chunk = await with_deadline(
                        anext(chunks),
                        settings.chunk_timeout_s,
                        lambda: StallError(settings.chunk_timeout_s),
                    )
                except StopAsyncIteration:
                    break
                if await self._process_lines(session, adapter, buffer.feed(chunk)):
                    return
            # body ended without a trailing newline
            await self._process_lines(session, adapter, buffer.flush())
        except httpx.HTTPError as e:
            raise StreamReadError(str(e) or type(e).__name__) from e
        finally:
            await chunks.aclose()

    async def _process_lines(self, session: RequestSession, adapter: ProviderAdapter, lines: list[str]) -> bool:
        """Forward the deltas found in `lines`. True once the provider signalled the end."""
        for line in lines:
            self._ensure_live(session)
            payload = extract_payload(line)
            if not payload:
                continue
            if adapter.is_stream_end(payload):
                return True
            try:
                data = decode_payload(payload)
            except ChunkParseError as e:
                logger.warning("skipping malformed stream line", extra={"request_id": session.id, "detail": e.detail})
                continue
            text = adapter.parse_stream_chunk(data)
            final = adapter.is_stream_end(data)
            if text:
                await self._forward(session, Delta(text=text, is_final=final))
            if final:
                return True
        return False

    async def _forward(self, session: RequestSession, delta: Delta) -> None:
        self._ensure_live(session)
        await session.destination.delta(session.id, delta.text)
        session.append(delta.text)

    async def _on_stall(self, session: RequestSession, prepared: PreparedRequest, err: StallError) -> StreamOutcome:
        rid = session.id
        self._transition(session, StreamState.STALLED)
        partial = session.accumulated_text
        logger.warning("stream stalled", extra={"request_id": rid, "chars": len(partial), "detail": err.detail})
        if not partial:
            raise err
        self._ensure_live(session)
        sink = session.destination
        await sink.notice(rid, STALL_NOTICE)
        await sink.stream_end(rid, partial, prepared.original_context)
        await sink.loading_ended(rid)
        self._transition(session, StreamState.COMPLETED)
        return StreamOutcome(rid, StreamState.COMPLETED, partial, stalled=True)
