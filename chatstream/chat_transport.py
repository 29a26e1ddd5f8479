"""
chat_transport.py - httpx client for the chat backend

Wraps every REST collaborator of the chat client and the two streaming
entry points (send stream, retry stream). Streams are read by a background
task that decodes SSE lines, folds events through a ChunkAccumulator, and
pushes deltas into a ChunkStream the caller iterates.

Error mapping:
  non-2xx with provider info  -> ProviderError (recoverable into chat content)
  other non-2xx               -> ChatApiError
  connection/timeout          -> httpx.TransportError (left as is)

If the SSE stream cannot be opened (anything but a ProviderError), the
client falls back to the blocking /send endpoint and replays the reply
sentence by sentence through the same ChunkStream interface.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from chat_config import ClientSettings, redact_headers
from chat_models import (
    Attachment,
    Chat,
    LocalFile,
    Message,
    MessageId,
    attachment_from_json,
    chat_from_json,
    message_from_json,
)
from chunk_accumulator import ChunkAccumulator, ContentDelta
from chunk_stream import ChunkStream
from sse_decoder import LineBuffer, decode_line
from stream_events import StreamEndEvent

logger = logging.getLogger("chatstream.transport")

API_PREFIX = "/api/v1"

NON_TEXT_RESULT_TYPES = {"image_generation", "image_generation_error"}

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

TokenProvider = Callable[[], Awaitable[Optional[str]]]


# === Error Classes ===


class ChatApiError(Exception):
    """Structured API failure with status code and retryable flag."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: str = "api_error",
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class ProviderError(ChatApiError):
    """The backend reached the model provider and the provider failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message, status_code=status_code, code="provider_error", retryable=retryable)
        self.provider = provider

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["provider"] = self.provider
        return data


def error_from_response(response: httpx.Response) -> ChatApiError:
    """Map a non-2xx response (body already read) to an exception."""
    data: Any = None
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        pass

    reason = response.reason_phrase or str(response.status_code)
    message = f"API request failed: {reason}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(error, str) and error:
            message = error[:500]
        elif isinstance(data.get("message"), str):
            message = data["message"][:500]

        if data.get("provider") or data.get("isProviderError"):
            status = data.get("statusCode")
            return ProviderError(
                message,
                status_code=int(status) if isinstance(status, int) else response.status_code,
                provider=data.get("provider"),
                retryable=bool(data.get("retryable", False)),
            )

    return ChatApiError(
        message,
        status_code=response.status_code,
        retryable=response.status_code in (429, 500, 502, 503, 504),
    )


# === Abort ===


class AbortHandle:
    """Cooperative abort for one stream.

    abort() sets a flag the read loop checks between chunks and cancels the
    attached reader tasks so a blocked read returns promptly.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._tasks: List[asyncio.Task] = []
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def attach(self, task: asyncio.Task) -> None:
        self._tasks.append(task)
        if self._aborted:
            task.cancel()

    def on_abort(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        for callback in self._listeners:
            callback()
        for task in self._tasks:
            if not task.done():
                task.cancel()


def split_sentences(text: str) -> List[str]:
    return [part for part in _SENTENCE_SPLIT_RE.split(text) if part]


# === Client ===


class ChatApiClient:
    """Async client for the chat backend.

    The underlying httpx.AsyncClient is created lazily and shared by every
    request; pass `transport` to route requests elsewhere (tests, ASGI apps).
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or ClientSettings()
        self._token_provider = token_provider
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ── Connection management ─────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        s = self.settings
        timeout = httpx.Timeout(
            connect=s.connect_timeout_ms / 1000.0,
            read=s.read_timeout_ms / 1000.0,
            write=30.0,
            pool=s.total_timeout_ms / 1000.0,
        )
        limits = httpx.Limits(
            max_connections=s.max_connections,
            max_keepalive_connections=max(1, s.max_connections // 2),
        )
        kwargs: Dict[str, Any] = {
            "base_url": s.base_url.rstrip("/"),
            "timeout": timeout,
            "limits": limits,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _auth_token(self) -> Optional[str]:
        if self._token_provider is not None:
            try:
                return await self._token_provider()
            except Exception as e:
                logger.warning("Failed to get auth token: %s", e)
                return None
        return self.settings.api_token or None

    async def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        token = await self._auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    # ── Plain requests ────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        client = self._get_client()
        headers = await self._headers()
        logger.debug("%s %s headers=%s", method, path, redact_headers(headers))

        response = await client.request(
            method, API_PREFIX + path, json=body, files=files, headers=headers,
        )
        if response.status_code >= 400:
            raise error_from_response(response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except json.JSONDecodeError:
            raise ChatApiError(
                f"Non-JSON response body: {response.text[:200]}",
                status_code=response.status_code,
            )
        return data if isinstance(data, dict) else {"data": data}

    async def create_chat(self, title: str, model_id: str) -> Chat:
        data = await self._request("POST", "/chats", {"title": title, "modelId": model_id})
        return chat_from_json(data.get("chat") or {})

    async def get_chat(self, chat_id: str) -> Tuple[Chat, List[Message]]:
        data = await self._request("GET", f"/chats/{chat_id}")
        chat = chat_from_json(data.get("chat") or {"id": chat_id})
        messages = [message_from_json(m, chat_id) for m in data.get("messages") or []]
        return chat, messages

    async def update_chat(self, chat_id: str, title: str) -> Chat:
        data = await self._request("PUT", f"/chats/{chat_id}", {"title": title})
        return chat_from_json(data.get("chat") or {"id": chat_id, "title": title})

    async def delete_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/chats/{chat_id}")

    async def list_chats(self) -> List[Chat]:
        data = await self._request("GET", "/chats")
        return [chat_from_json(c) for c in data.get("chats") or [] if isinstance(c, dict)]

    async def branch_chat(self, chat_id: str, message_id: MessageId) -> Chat:
        """Copy the chat up to and including message_id into a new chat."""
        data = await self._request(
            "POST", f"/chats/{chat_id}/branch", {"messageId": str(message_id)},
        )
        chat = data.get("chat")
        if not isinstance(chat, dict):
            raise ChatApiError("Branch response is missing chat")
        return chat_from_json(chat)

    async def pin_chat(self, chat_id: str) -> List[str]:
        """Pin a chat; returns the server's pinned chat ids."""
        data = await self._request("POST", f"/user/pin-chat/{chat_id}")
        return [str(c) for c in data.get("pinnedChats") or []]

    async def unpin_chat(self, chat_id: str) -> List[str]:
        data = await self._request("DELETE", f"/user/pin-chat/{chat_id}")
        return [str(c) for c in data.get("pinnedChats") or []]

    async def send_message(
        self,
        chat_id: str,
        content: str,
        model_id: str,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> Tuple[Message, Message]:
        """Blocking send: returns (user message, assistant message)."""
        data = await self._request(
            "POST",
            f"/chats/{chat_id}/send",
            self._message_body(content, model_id, attachments),
        )
        user = data.get("userMessage")
        assistant = data.get("assistantMessage")
        if not isinstance(user, dict) or not isinstance(assistant, dict):
            raise ChatApiError("Send response is missing userMessage/assistantMessage")
        return message_from_json(user, chat_id), message_from_json(assistant, chat_id)

    async def cancel_stream(
        self, chat_id: str, partial_content: str, model_id: Optional[str],
    ) -> Optional[Message]:
        """Ask the server to persist partial content. Returns the saved message."""
        data = await self._request(
            "POST",
            f"/chats/{chat_id}/cancel-stream",
            {"partialContent": partial_content, "modelId": model_id},
        )
        logger.info("Cancel-stream for chat %s: cancelled=%s", chat_id, data.get("cancelled"))
        message = data.get("message")
        return message_from_json(message, chat_id) if isinstance(message, dict) else None

    async def generate_title(self, chat_id: str, content: str, model_id: str) -> str:
        data = await self._request(
            "POST",
            f"/chats/{chat_id}/generate-title",
            {"content": content, "modelId": model_id},
        )
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ChatApiError("Title generation returned no title")
        return title.strip()

    async def upload_file(self, local: LocalFile) -> Attachment:
        logger.debug("Uploading %s (%s, %d bytes)", local.filename, local.content_type, local.size)
        data = await self._request(
            "POST",
            "/files/upload",
            files={"file": (local.filename, local.data, local.content_type)},
        )
        record = data.get("file")
        if not isinstance(record, dict):
            raise ChatApiError("Upload response is missing file")
        return attachment_from_json(record)

    async def commit_files(self, file_ids: Sequence[MessageId]) -> None:
        await self._request("POST", "/files/commit", {"fileIds": [str(f) for f in file_ids]})

    @staticmethod
    def _message_body(
        content: str,
        model_id: str,
        attachments: Optional[Sequence[Attachment]],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"content": content, "modelId": model_id}
        if attachments:
            body["attachments"] = [a.to_json() for a in attachments]
        return body

    # ── Streaming ─────────────────────────────────────────────────────

    def _new_stream(self) -> ChunkStream:
        return ChunkStream(
            maxsize=self.settings.queue_size,
            poll_interval=self.settings.poll_interval,
        )

    async def _open(self, path: str, body: Optional[Dict[str, Any]]) -> httpx.Response:
        client = self._get_client()
        headers = await self._headers({"Accept": "text/event-stream"})
        request = client.build_request("POST", API_PREFIX + path, json=body, headers=headers)
        return await client.send(request, stream=True)

    async def open_stream(
        self,
        chat_id: str,
        content: str,
        model_id: str,
        attachments: Optional[Sequence[Attachment]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> ChunkStream:
        """Start the SSE exchange for a new user message."""
        abort = abort or AbortHandle()
        body = self._message_body(content, model_id, attachments)
        try:
            response = await self._open(f"/chats/{chat_id}/stream-http", body)
            if response.status_code >= 400:
                try:
                    await response.aread()
                finally:
                    await response.aclose()
                raise error_from_response(response)
        except ProviderError:
            raise
        except (ChatApiError, httpx.TransportError) as e:
            if abort.aborted:
                return ChunkStream.from_text("")
            logger.warning("HTTP streaming failed, falling back to blocking send: %s", e)
            return self.fallback_stream(chat_id, content, model_id, attachments, abort)

        logger.debug("Stream opened for chat %s", chat_id)
        return await self._start_pump(response, abort)

    async def retry_stream(
        self,
        chat_id: str,
        message_id: MessageId,
        abort: Optional[AbortHandle] = None,
    ) -> ChunkStream:
        """Regenerate an assistant message. Non-text results arrive as JSON."""
        abort = abort or AbortHandle()
        response = await self._open(f"/chats/{chat_id}/messages/{message_id}/retry", None)

        if "application/json" in response.headers.get("content-type", ""):
            try:
                await response.aread()
            finally:
                await response.aclose()
            try:
                data = response.json()
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict) and data.get("type") in NON_TEXT_RESULT_TYPES:
                message = data.get("message") or {}
                stream = ChunkStream.from_text(message.get("content") or "")
                stream.final_event = StreamEndEvent(message=message)
                return stream
            if response.status_code >= 400:
                raise error_from_response(response)
            raise ChatApiError(
                "Unexpected JSON response to retry", status_code=response.status_code,
            )

        if response.status_code >= 400:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise error_from_response(response)

        return await self._start_pump(response, abort)

    async def _start_pump(self, response: httpx.Response, abort: AbortHandle) -> ChunkStream:
        stream = self._new_stream()
        if abort.aborted:
            await response.aclose()
            stream.finish()
            return stream
        # A reader cancelled before its first step never reaches its finally
        abort.on_abort(stream.finish)
        task = asyncio.create_task(self._pump(response, stream, abort))
        abort.attach(task)
        return stream

    async def _pump(
        self, response: httpx.Response, stream: ChunkStream, abort: AbortHandle,
    ) -> None:
        """Read loop: bytes -> lines -> events -> deltas."""
        buffer = LineBuffer()
        accumulator = ChunkAccumulator()
        try:
            async for data in response.aiter_bytes():
                if abort.aborted:
                    logger.info("Stream aborted by client")
                    return
                for line in buffer.feed(data):
                    if await self._deliver(line, accumulator, stream):
                        return
            for line in buffer.flush():
                if await self._deliver(line, accumulator, stream):
                    return
            logger.debug("Stream reading complete without terminal event")
        except asyncio.CancelledError:
            logger.info("Stream reader cancelled")
            raise
        except Exception as e:
            logger.error("Stream processing error: %s", e)
            stream.fail(e)
        finally:
            stream.final_event = accumulator.final_event
            stream.user_message = accumulator.user_message
            stream.finish()
            await response.aclose()
            logger.debug(
                "Stream closed: chunks=%d length=%d", accumulator.chunk_count, len(accumulator.content),
            )

    @staticmethod
    async def _deliver(line: str, accumulator: ChunkAccumulator, stream: ChunkStream) -> bool:
        """Handle one line; True once the stream reached a terminal event."""
        event = decode_line(line)
        if event is None:
            return False
        delta = accumulator.apply(event)
        if delta is not None:
            await stream.put(delta)
        if accumulator.user_message is not None and stream.user_message is None:
            stream.user_message = accumulator.user_message
        return accumulator.done

    # ── Non-streaming fallback ────────────────────────────────────────

    def fallback_stream(
        self,
        chat_id: str,
        content: str,
        model_id: str,
        attachments: Optional[Sequence[Attachment]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> ChunkStream:
        abort = abort or AbortHandle()
        stream = self._new_stream()
        abort.on_abort(stream.finish)
        task = asyncio.create_task(
            self._resynthesize(stream, abort, chat_id, content, model_id, attachments)
        )
        abort.attach(task)
        return stream

    async def _resynthesize(
        self,
        stream: ChunkStream,
        abort: AbortHandle,
        chat_id: str,
        content: str,
        model_id: str,
        attachments: Optional[Sequence[Attachment]],
    ) -> None:
        scale = self.settings.fallback_delay_scale
        try:
            _, assistant = await self.send_message(chat_id, content, model_id, attachments)
            for sentence in split_sentences(assistant.content):
                if abort.aborted:
                    return
                await stream.put(ContentDelta(sentence + " "))
                delay = min(0.2, len(sentence) * 0.01) * scale
                if delay > 0:
                    await asyncio.sleep(delay)
            stream.final_event = StreamEndEvent(message={"id": str(assistant.id)})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Fallback send failed: %s", e)
            stream.fail(e)
        finally:
            stream.finish()
