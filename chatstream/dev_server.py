#!/usr/bin/env python3
"""
dev_server.py — In-memory chat backend for local development and tests

FastAPI application speaking the same wire format as the production chat
backend. Binds to 127.0.0.1:{CHATSTREAM_DEV_PORT} (default: 3001).

Endpoints (under /api/v1):
  POST   /chats                              — Create chat
  GET    /chats                              — List chats
  GET    /chats/{id}                         — Chat with messages
  PUT    /chats/{id}                         — Rename
  DELETE /chats/{id}                         — Delete
  POST   /chats/{id}/branch                  — Copy history up to a message
  POST   /chats/{id}/send                    — Blocking reply
  POST   /chats/{id}/stream-http             — SSE reply
  POST   /chats/{id}/cancel-stream           — Save partial reply
  POST   /chats/{id}/messages/{mid}/retry    — Regenerate last reply
  POST   /chats/{id}/generate-title          — Title from first prompt
  POST   /files/upload                       — Multipart upload
  POST   /files/commit                       — Mark uploads permanent
  POST   /user/pin-chat/{id}                 — Pin chat
  DELETE /user/pin-chat/{id}                 — Unpin chat
  GET    /healthz                            — Liveness probe

Responder prompts:
  /image <text>   — streams REPLACE: progress chunks (JSON result on retry)
  /fail <code>    — emits stream_error with provider metadata
  anything else   — echoes the prompt back sentence by sentence

Auth: when CHATSTREAM_DEV_TOKEN is set, every route except /healthz requires
"Authorization: Bearer <token>".
"""

import asyncio
import json
import logging
import os
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("chatstream.dev_server")

API_PREFIX = "/api/v1"
DEV_PORT = int(os.environ.get("CHATSTREAM_DEV_PORT", "3001"))
DEFAULT_MODEL = "google/gemini-2.5-flash-lite-preview-06-17"

START_TIME = time.monotonic()

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class ProviderFailure(Exception):
    """Raised by a responder to simulate an upstream provider error."""

    def __init__(self, status_code: int, provider: str = "dev-provider", message: str = ""):
        super().__init__(message or f"Provider returned {status_code}")
        self.status_code = status_code
        self.provider = provider
        self.retryable = status_code in (429, 503)


Responder = Callable[[str], AsyncIterator[str]]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _sse(event: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode("utf-8")


def echo_responder(delay: float = 0.0) -> Responder:
    """Default responder: see module docstring for the prompt commands."""

    async def respond(prompt: str) -> AsyncIterator[str]:
        text = prompt.strip()
        if text.startswith("/fail"):
            parts = text.split()
            code = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 500
            raise ProviderFailure(code)

        if text.startswith("/image"):
            subject = text[len("/image"):].strip() or "something"
            for chunk in ("Generating image", ".", ".", "."):
                yield chunk
                await asyncio.sleep(delay)
            yield f"REPLACE:![{subject}](https://images.invalid/{uuid.uuid4().hex}.png)"
            return

        for sentence in _SENTENCE_RE.split(f"You said: {text}"):
            if not sentence:
                continue
            for word in sentence.split(" "):
                yield word + " "
                await asyncio.sleep(delay)

    return respond


# --- Auth Middleware ---


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Rejects requests without the configured bearer token."""

    def __init__(self, app, token: str = ""):
        super().__init__(app)
        self.token = token

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if not self.token or request.url.path == "/healthz":
            return await call_next(request)
        if request.headers.get("authorization", "") != f"Bearer {self.token}":
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        return await call_next(request)


# --- In-memory state ---


class DevBackend:
    def __init__(self) -> None:
        self.chats: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.files: Dict[str, Dict[str, Any]] = {}
        self.committed: set = set()
        self.cancelled: set = set()
        self.pinned: List[str] = []

    def create_chat(self, title: str, model_id: str) -> Dict[str, Any]:
        now = _now()
        chat = {
            "id": uuid.uuid4().hex,
            "title": title,
            "modelId": model_id,
            "createdAt": now,
            "updatedAt": now,
            "messageCount": 0,
            "isBranched": False,
            "isShared": False,
        }
        self.chats[chat["id"]] = chat
        self.messages[chat["id"]] = []
        return chat

    def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        model_id: Optional[str],
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        message = {
            "id": uuid.uuid4().hex,
            "chatId": chat_id,
            "role": role,
            "content": content,
            "modelId": model_id,
            "attachments": attachments or [],
            "createdAt": _now(),
        }
        self.messages[chat_id].append(message)
        chat = self.chats[chat_id]
        chat["messageCount"] = len(self.messages[chat_id])
        chat["updatedAt"] = message["createdAt"]
        return message


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"{what} not found"})


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


def _invalid_json() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Request body is not valid JSON"})


def create_app(
    responder: Optional[Responder] = None,
    token: Optional[str] = None,
) -> FastAPI:
    """Build an app with fresh in-memory state."""
    respond = responder or echo_responder()
    backend = DevBackend()

    app = FastAPI(title="chatstream dev backend", docs_url=None, redoc_url=None)
    auth_token = os.environ.get("CHATSTREAM_DEV_TOKEN", "") if token is None else token
    app.add_middleware(BearerTokenMiddleware, token=auth_token)
    app.state.backend = backend

    # ── Health ────────────────────────────────────────────────────────

    @app.get("/healthz")
    async def healthz() -> Dict[str, Any]:
        return {
            "status": "alive",
            "uptime_s": round(time.monotonic() - START_TIME, 2),
            "chats": len(backend.chats),
        }

    # ── Chats ─────────────────────────────────────────────────────────

    @app.post(API_PREFIX + "/chats")
    async def create_chat(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        chat = backend.create_chat(
            body.get("title") or "New Chat", body.get("modelId") or DEFAULT_MODEL,
        )
        return JSONResponse(status_code=201, content={"chat": chat})

    @app.get(API_PREFIX + "/chats")
    async def list_chats() -> Dict[str, Any]:
        return {"chats": list(backend.chats.values())}

    @app.get(API_PREFIX + "/chats/{chat_id}")
    async def get_chat(chat_id: str) -> JSONResponse:
        chat = backend.chats.get(chat_id)
        if chat is None:
            return _not_found("Chat")
        return JSONResponse(content={"chat": chat, "messages": backend.messages[chat_id]})

    @app.put(API_PREFIX + "/chats/{chat_id}")
    async def update_chat(chat_id: str, request: Request) -> JSONResponse:
        chat = backend.chats.get(chat_id)
        if chat is None:
            return _not_found("Chat")
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        title = (body.get("title") or "").strip()
        if not title:
            return JSONResponse(status_code=400, content={"error": "Title is required"})
        chat["title"] = title
        chat["updatedAt"] = _now()
        return JSONResponse(content={"chat": chat})

    @app.delete(API_PREFIX + "/chats/{chat_id}")
    async def delete_chat(chat_id: str) -> JSONResponse:
        if backend.chats.pop(chat_id, None) is None:
            return _not_found("Chat")
        backend.messages.pop(chat_id, None)
        if chat_id in backend.pinned:
            backend.pinned.remove(chat_id)
        return JSONResponse(content={"success": True})

    @app.post(API_PREFIX + "/chats/{chat_id}/branch")
    async def branch_chat(chat_id: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        message_id = body.get("messageId") or ""
        if not message_id:
            return JSONResponse(status_code=400, content={"error": "messageId is required"})
        if message_id.startswith("temp-"):
            return JSONResponse(
                status_code=400, content={"error": "Cannot branch from temporary message"},
            )
        source = backend.chats.get(chat_id)
        if source is None:
            return _not_found("Chat")
        ids = [m["id"] for m in backend.messages[chat_id]]
        if message_id not in ids:
            return _not_found("Message")

        for chat in backend.chats.values():
            if chat.get("originalChatId") == chat_id and chat.get("branchPointMessageId") == message_id:
                return JSONResponse(content={"chat": chat, "message": "Branch already exists"})

        title = re.sub(r"\s*\((Shared|Branch)\)$", "", source["title"]).strip() + " (Branch)"
        branch = backend.create_chat(title, source["modelId"])
        branch.update(
            {"originalChatId": chat_id, "isBranched": True, "branchPointMessageId": message_id}
        )
        for message in backend.messages[chat_id][: ids.index(message_id) + 1]:
            backend.add_message(
                branch["id"], message["role"], message["content"],
                message.get("modelId"), message.get("attachments"),
            )
        return JSONResponse(content={"chat": branch, "message": "Chat branched successfully"})

    # ── Pins ──────────────────────────────────────────────────────────

    @app.post(API_PREFIX + "/user/pin-chat/{chat_id}")
    async def pin_chat(chat_id: str) -> JSONResponse:
        if chat_id not in backend.chats:
            return _not_found("Chat")
        if chat_id not in backend.pinned:
            backend.pinned.append(chat_id)
        return JSONResponse(content={"pinnedChats": backend.pinned})

    @app.delete(API_PREFIX + "/user/pin-chat/{chat_id}")
    async def unpin_chat(chat_id: str) -> JSONResponse:
        if chat_id in backend.pinned:
            backend.pinned.remove(chat_id)
        return JSONResponse(content={"pinnedChats": backend.pinned})

    # ── Messages ──────────────────────────────────────────────────────

    def _provider_error_body(e: ProviderFailure) -> Dict[str, Any]:
        return {
            "error": str(e),
            "statusCode": e.status_code,
            "provider": e.provider,
            "retryable": e.retryable,
        }

    @app.post(API_PREFIX + "/chats/{chat_id}/send")
    async def send(chat_id: str, request: Request) -> JSONResponse:
        if chat_id not in backend.chats:
            return _not_found("Chat")
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        content = body.get("content") or ""
        model_id = body.get("modelId") or DEFAULT_MODEL
        user = backend.add_message(chat_id, "user", content, model_id, body.get("attachments"))

        reply = ""
        try:
            async for chunk in respond(content):
                reply = chunk[len("REPLACE:"):] if chunk.startswith("REPLACE:") else reply + chunk
        except ProviderFailure as e:
            return JSONResponse(status_code=502, content=_provider_error_body(e))

        assistant = backend.add_message(chat_id, "assistant", reply.strip(), model_id)
        return JSONResponse(content={"userMessage": user, "assistantMessage": assistant})

    async def _stream_reply(
        chat_id: str,
        prompt: str,
        model_id: str,
        user: Optional[Dict[str, Any]],
    ) -> AsyncIterator[bytes]:
        backend.cancelled.discard(chat_id)
        if user is not None:
            yield _sse({"type": "user_message", "message": user})
        yield _sse({"type": "stream_start", "timestamp": _now()})

        content = ""
        try:
            async for chunk in respond(prompt):
                if chat_id in backend.cancelled:
                    logger.info("Stream for chat %s cancelled by client", chat_id)
                    yield _sse({"type": "stream_cancelled", "cancelled": True})
                    return
                content = chunk[len("REPLACE:"):] if chunk.startswith("REPLACE:") else content + chunk
                yield _sse({"type": "stream_chunk", "chunk": chunk})
        except ProviderFailure as e:
            logger.warning("Provider failure for chat %s: %s", chat_id, e)
            event = {"type": "stream_error"}
            event.update(_provider_error_body(e))
            yield _sse(event)
            return

        if chat_id not in backend.chats:
            return
        assistant = backend.add_message(chat_id, "assistant", content, model_id)
        yield _sse({"type": "stream_end", "message": assistant})

    @app.post(API_PREFIX + "/chats/{chat_id}/stream-http")
    async def stream_http(chat_id: str, request: Request) -> Response:
        if chat_id not in backend.chats:
            return _not_found("Chat")
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        content = body.get("content") or ""
        model_id = body.get("modelId") or DEFAULT_MODEL
        if not content.strip() and not body.get("attachments"):
            return JSONResponse(status_code=400, content={"error": "Message content is required"})

        user = backend.add_message(chat_id, "user", content, model_id, body.get("attachments"))
        return StreamingResponse(
            _stream_reply(chat_id, content, model_id, user),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post(API_PREFIX + "/chats/{chat_id}/cancel-stream")
    async def cancel_stream(chat_id: str, request: Request) -> JSONResponse:
        if chat_id not in backend.chats:
            return _not_found("Chat")
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        backend.cancelled.add(chat_id)
        partial = body.get("partialContent") or ""
        if not partial:
            return JSONResponse(content={"message": None, "cancelled": True})
        message = backend.add_message(chat_id, "assistant", partial, body.get("modelId"))
        return JSONResponse(content={"message": message, "cancelled": True})

    @app.post(API_PREFIX + "/chats/{chat_id}/messages/{message_id}/retry")
    async def retry(chat_id: str, message_id: str) -> Response:
        messages = backend.messages.get(chat_id)
        if messages is None:
            return _not_found("Chat")
        if not messages or messages[-1]["id"] != message_id or messages[-1]["role"] != "assistant":
            return JSONResponse(
                status_code=400,
                content={"error": "Only the latest assistant message can be retried"},
            )

        target = messages.pop()
        prompt = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        model_id = target.get("modelId") or DEFAULT_MODEL

        if prompt.strip().startswith("/image"):
            reply = ""
            result_type = "image_generation"
            try:
                async for chunk in respond(prompt):
                    reply = chunk[len("REPLACE:"):] if chunk.startswith("REPLACE:") else reply + chunk
            except ProviderFailure as e:
                reply = f"Image generation failed: {e}"
                result_type = "image_generation_error"
            message = backend.add_message(chat_id, "assistant", reply, model_id)
            return JSONResponse(content={"type": result_type, "message": message})

        return StreamingResponse(
            _stream_reply(chat_id, prompt, model_id, None),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.post(API_PREFIX + "/chats/{chat_id}/generate-title")
    async def generate_title(chat_id: str, request: Request) -> JSONResponse:
        if chat_id not in backend.chats:
            return _not_found("Chat")
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        words = re.sub(r"[^\w\s]", "", body.get("content") or "").split()
        title = " ".join(words[:5]).title()[:40] or "Untitled Chat"
        return JSONResponse(content={"title": title})

    # ── Files ─────────────────────────────────────────────────────────

    @app.post(API_PREFIX + "/files/upload")
    async def upload_file(file: UploadFile = File(...)) -> JSONResponse:
        data = await file.read()
        file_id = uuid.uuid4().hex
        record = {
            "id": file_id,
            "filename": file.filename or "upload",
            "fileType": file.content_type or "application/octet-stream",
            "fileSize": len(data),
            "url": f"/files/{file_id}/{file.filename or 'upload'}",
            "status": "uploaded",
        }
        backend.files[file_id] = record
        return JSONResponse(content={"file": record})

    @app.post(API_PREFIX + "/files/commit")
    async def commit_files(request: Request) -> JSONResponse:
        body = await _json_body(request)
        if body is None:
            return _invalid_json()
        file_ids = [f for f in body.get("fileIds") or [] if f in backend.files]
        backend.committed.update(file_ids)
        return JSONResponse(content={"success": True, "committed": len(file_ids)})

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("CHATSTREAM_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting dev backend on 127.0.0.1:%d", DEV_PORT)
    uvicorn.run(create_app(echo_responder(delay=0.05)), host="127.0.0.1", port=DEV_PORT)


if __name__ == "__main__":
    main()
