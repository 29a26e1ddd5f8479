"""
chat_session.py - Session controller for streamed chat turns

Drives one send-or-retry operation per chat through its lifecycle:

  IDLE -> OPTIMISTIC_SHOWN -> ATTACHMENTS_UPLOADING (optional) -> STREAMING
       -> COMPLETED | CANCELLED | ERRORED -> RECONCILED

Optimistic records carry ClientIds and are written to the store before any
network call. Streamed content is coalesced on the event loop clock so the
store sees at most one write per throttle interval, then one final write.
When the turn ends the temporary records are swapped for the server's
records, or demoted in place when the server cannot confirm them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from attachments import (
    PreviewRegistry,
    mark_uploading,
    prepare_attachments,
    upload_attachments,
)
from chat_config import ClientSettings
from chat_models import (
    ASSISTANT,
    USER,
    Attachment,
    Chat,
    LocalFile,
    Message,
    MessageId,
    ServerId,
    new_client_id,
    parse_id,
)
from chat_transport import AbortHandle, ChatApiClient, ProviderError
from chunk_stream import ChunkStream
from message_store import SessionStore, StoreError
from stream_events import StreamCancelledEvent, StreamErrorEvent

logger = logging.getLogger("chatstream.session")

SEND = "send"
RETRY = "retry"


class SessionState:
    IDLE = "idle"
    OPTIMISTIC_SHOWN = "optimistic_shown"
    ATTACHMENTS_UPLOADING = "attachments_uploading"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"
    RECONCILED = "reconciled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.CANCELLED, SessionState.ERRORED}
)


class RetryRejected(ValueError):
    """Retry target is not the chat's latest server-confirmed assistant message."""


def provider_error_message(status_code: Optional[int]) -> str:
    """Text shown in place of a reply the provider refused."""
    if status_code == 429:
        return (
            "Sorry, I ran into a rate limit error! Please try again in a moment. "
            "(Error: 429)"
        )
    return f"Sorry, I ran into an error! (Error: {status_code})"


@dataclass
class StreamSession:
    """Transient state of one send or retry."""

    chat_id: str
    kind: str
    assistant_id: MessageId
    model_id: str
    prompt: str = ""
    user_id: Optional[MessageId] = None
    attachments: List[Attachment] = field(default_factory=list)
    original: Optional[Message] = None
    abort: AbortHandle = field(default_factory=AbortHandle)
    state: str = SessionState.IDLE
    history: List[str] = field(default_factory=list)
    content: str = ""
    chunks: int = 0
    writes: int = 0
    cancelled: bool = False
    error: Optional[BaseException] = None
    final_event: object = None
    cancelling: Optional[asyncio.Event] = None

    def __post_init__(self) -> None:
        self.history.append(self.state)

    def transition(self, state: str) -> None:
        if state == self.state:
            return
        logger.debug("Session %s/%s: %s -> %s", self.chat_id, self.kind, self.state, state)
        self.state = state
        self.history.append(state)

    @property
    def temp_ids(self) -> List[MessageId]:
        ids = [self.user_id] if self.user_id is not None else []
        ids.append(self.assistant_id)
        return ids


StreamOpener = Callable[[StreamSession], Awaitable[ChunkStream]]


class SessionController:
    """Runs sessions against an injected store and API client.

    At most one active session per chat. The store is only touched from the
    event loop thread.
    """

    def __init__(
        self,
        store: SessionStore,
        api: ChatApiClient,
        settings: Optional[ClientSettings] = None,
        previews: Optional[PreviewRegistry] = None,
    ):
        self.store = store
        self.api = api
        self.settings = settings or getattr(api, "settings", None) or ClientSettings()
        self.previews = previews or PreviewRegistry()
        self._sessions: Dict[str, StreamSession] = {}
        self._background: Set[asyncio.Task] = set()

    def active_session(self, chat_id: str) -> Optional[StreamSession]:
        return self._sessions.get(chat_id)

    def is_streaming(self, chat_id: str) -> bool:
        return chat_id in self._sessions or self.store.is_streaming(chat_id)

    # ── Send ──────────────────────────────────────────────────────────

    async def send(
        self,
        chat_id: str,
        content: str,
        attachments: Optional[Sequence[LocalFile]] = None,
        model_id: Optional[str] = None,
    ) -> Optional[StreamSession]:
        """Send a user message and stream the reply.

        Returns None without touching the store when there is nothing to send
        or the chat is already streaming. Provider failures end up as visible
        assistant content; any other failure removes the optimistic records
        and propagates.
        """
        files = list(attachments or [])
        if not content.strip() and not files:
            logger.debug("Ignoring empty send for chat %s", chat_id)
            return None
        if self.is_streaming(chat_id):
            logger.info("Chat %s is already streaming; send ignored", chat_id)
            return None

        model = model_id or self._chat_model(chat_id)
        optimistic = prepare_attachments(files, self.previews)
        user = Message(
            id=new_client_id(USER),
            chat_id=chat_id,
            role=USER,
            content=content,
            model_id=model,
            attachments=optimistic,
            is_optimistic=True,
        )
        placeholder = Message(
            id=new_client_id(ASSISTANT),
            chat_id=chat_id,
            role=ASSISTANT,
            model_id=model,
            is_streaming=True,
            is_optimistic=True,
        )
        session = StreamSession(
            chat_id=chat_id,
            kind=SEND,
            assistant_id=placeholder.id,
            model_id=model,
            prompt=content,
            user_id=user.id,
            attachments=optimistic,
        )

        self._sessions[chat_id] = session
        self.store.append(chat_id, user, placeholder)
        session.transition(SessionState.OPTIMISTIC_SHOWN)

        async def open_send_stream(s: StreamSession) -> ChunkStream:
            uploaded = await self._upload(s)
            if s.cancelled:
                return ChunkStream.from_text("")
            return await self.api.open_stream(
                chat_id, content, model, uploaded or None, s.abort,
            )

        await self._drive(session, open_send_stream)
        if session.state == SessionState.RECONCILED and not session.cancelled:
            self._maybe_generate_title(session)
        return session

    async def _upload(self, session: StreamSession) -> List[Attachment]:
        if not session.attachments:
            return []
        session.transition(SessionState.ATTACHMENTS_UPLOADING)
        mark_uploading(session.attachments)
        self.store.update(session.chat_id, session.user_id, attachments=session.attachments)

        uploaded = await upload_attachments(session.attachments, self.api.upload_file, self.previews)
        self.store.update(session.chat_id, session.user_id, attachments=session.attachments)

        if uploaded:
            try:
                await self.api.commit_files([a.id for a in uploaded])
            except Exception as e:
                logger.warning("Committing %d uploaded files failed: %s", len(uploaded), e)
        return uploaded

    # ── Retry ─────────────────────────────────────────────────────────

    async def retry(self, chat_id: str, message_id) -> StreamSession:
        """Regenerate the chat's latest assistant message."""
        if self.is_streaming(chat_id):
            raise RetryRejected(f"Chat '{chat_id}' is streaming")
        target_id = parse_id(message_id)
        last = self.store.last_message(chat_id)
        if last is None or last.id != target_id:
            raise RetryRejected("Only the most recent message can be retried")
        if last.role != ASSISTANT:
            raise RetryRejected("Only assistant messages can be retried")
        if not isinstance(last.id, ServerId):
            raise RetryRejected("Message has not been confirmed by the server yet")

        placeholder = Message(
            id=new_client_id(ASSISTANT),
            chat_id=chat_id,
            role=ASSISTANT,
            model_id=last.model_id,
            is_streaming=True,
            is_optimistic=True,
        )
        session = StreamSession(
            chat_id=chat_id,
            kind=RETRY,
            assistant_id=placeholder.id,
            model_id=last.model_id or self._chat_model(chat_id),
            original=last,
        )

        self._sessions[chat_id] = session
        self.store.remove(chat_id, [last.id])
        self.store.append(chat_id, placeholder)
        session.transition(SessionState.OPTIMISTIC_SHOWN)

        async def open_retry_stream(s: StreamSession) -> ChunkStream:
            return await self.api.retry_stream(chat_id, last.id, s.abort)

        await self._drive(session, open_retry_stream)
        return session

    # ── Session driver ────────────────────────────────────────────────

    async def _drive(self, session: StreamSession, opener: StreamOpener) -> None:
        reached_stream = False
        try:
            stream = await opener(session)
            if not session.cancelled:
                session.transition(SessionState.STREAMING)
                reached_stream = True
            await self._consume(session, stream)
        except ProviderError as e:
            logger.warning(
                "Provider %s failed for chat %s (status %s): %s",
                e.provider, session.chat_id, e.status_code, e,
            )
            self._write_provider_error(session, e)
            return
        except asyncio.CancelledError:
            session.abort.abort()
            self._demote(session)
            session.transition(SessionState.CANCELLED)
            raise
        except Exception as e:
            if session.cancelled:
                logger.info("Ignoring error after cancel for chat %s: %s", session.chat_id, e)
            else:
                logger.error("Session for chat %s failed: %s", session.chat_id, e)
                session.error = e
                self._discard(session)
                raise
        finally:
            self._sessions.pop(session.chat_id, None)

        if session.cancelling is not None:
            # Reconcile only after cancel has written its content
            await session.cancelling.wait()
        if reached_stream:
            await self._reconcile(session)
        else:
            self._demote(session)
            session.transition(SessionState.RECONCILED)

    async def _consume(self, session: StreamSession, stream: ChunkStream) -> None:
        """Apply deltas to the placeholder with time-based write coalescing."""
        loop = asyncio.get_running_loop()
        interval = self.settings.throttle_interval
        last_write: Optional[float] = None
        trailing: Optional[asyncio.TimerHandle] = None

        def flush() -> None:
            nonlocal last_write, trailing
            trailing = None
            if session.cancelled:
                return
            self._write_content(session)
            last_write = loop.time()

        try:
            async for delta in stream:
                if session.cancelled:
                    continue
                session.content = delta.apply(session.content)
                session.chunks += 1
                if trailing is not None:
                    continue
                now = loop.time()
                if last_write is None or now - last_write >= interval:
                    self._write_content(session)
                    last_write = now
                else:
                    # Coalesced deltas land when the window closes, even if the stream stalls
                    trailing = loop.call_later(interval - (now - last_write), flush)
        finally:
            if trailing is not None:
                trailing.cancel()

        session.final_event = stream.final_event
        if session.cancelled:
            session.transition(SessionState.CANCELLED)
            return

        self.store.update(
            session.chat_id, session.assistant_id, content=session.content, is_streaming=False,
        )
        session.writes += 1

        if isinstance(stream.final_event, StreamCancelledEvent):
            session.transition(SessionState.CANCELLED)
        else:
            if isinstance(stream.final_event, StreamErrorEvent):
                logger.warning(
                    "Stream for chat %s ended with error: %s",
                    session.chat_id, stream.final_event.error,
                )
            session.transition(SessionState.COMPLETED)

    def _write_content(self, session: StreamSession) -> None:
        self.store.update(session.chat_id, session.assistant_id, content=session.content)
        session.writes += 1

    # ── Cancel ────────────────────────────────────────────────────────

    async def cancel(self, chat_id: str) -> bool:
        """Stop the chat's active session, saving partial content first."""
        session = self._sessions.get(chat_id)
        if session is None or session.cancelled or session.state in TERMINAL_STATES:
            return False

        session.cancelled = True
        session.cancelling = asyncio.Event()
        partial = session.content
        try:
            changes = {"is_streaming": False}
            if partial:
                changes["content"] = partial
                try:
                    saved = await self.api.cancel_stream(chat_id, partial, session.model_id)
                    if saved is not None and saved.content:
                        changes["content"] = saved.content
                except Exception as e:
                    logger.warning("Saving partial content for chat %s failed: %s", chat_id, e)
            if self.store.find(chat_id, session.assistant_id) is not None:
                self.store.update(chat_id, session.assistant_id, **changes)
            else:
                logger.debug("Placeholder for chat %s already replaced; cancel write skipped", chat_id)
        finally:
            session.cancelling.set()

        session.abort.abort()
        logger.info("Cancelled session for chat %s (%d chars kept)", chat_id, len(partial))
        return True

    # ── Completion ────────────────────────────────────────────────────

    async def _reconcile(self, session: StreamSession) -> None:
        """Swap temporary records for the server's newest records."""
        chat_id = session.chat_id
        temp_ids = session.temp_ids
        try:
            _, server_messages = await self.api.get_chat(chat_id)
        except Exception as e:
            logger.warning("Reconciliation fetch for chat %s failed: %s", chat_id, e)
            server_messages = []

        window = server_messages[-self.settings.reconcile_window:]
        tail = window[-len(temp_ids):] if len(window) >= len(temp_ids) else []
        expected_roles = [USER, ASSISTANT] if session.user_id is not None else [ASSISTANT]

        if not tail or [m.role for m in tail] != expected_roles or not self._fresh(chat_id, tail):
            logger.info("Could not confirm session records for chat %s; demoting", chat_id)
            self._demote(session)
            session.transition(SessionState.RECONCILED)
            return

        replacements: Dict[MessageId, Message] = {}
        for temp_id, record in zip(temp_ids, tail):
            local = self.store.find(chat_id, temp_id)
            if local is not None and local.role == USER and local.attachments:
                record.attachments = local.attachments
            replacements[temp_id] = record
        self.store.replace(chat_id, replacements)
        session.transition(SessionState.RECONCILED)
        logger.debug("Reconciled %d records for chat %s", len(replacements), chat_id)

    def _fresh(self, chat_id: str, records: Sequence[Message]) -> bool:
        for record in records:
            if not isinstance(record.id, ServerId):
                return False
            if self.store.find(chat_id, record.id) is not None:
                return False
        return True

    def _demote(self, session: StreamSession) -> None:
        self.store.update_many(
            session.chat_id, session.temp_ids, is_optimistic=False, is_streaming=False,
        )

    def _write_provider_error(self, session: StreamSession, error: ProviderError) -> None:
        session.error = error
        session.content = provider_error_message(error.status_code)
        self.store.update(
            session.chat_id,
            session.assistant_id,
            content=session.content,
            is_streaming=False,
            is_optimistic=False,
        )
        if session.user_id is not None:
            self.store.update(session.chat_id, session.user_id, is_optimistic=False)
        session.transition(SessionState.COMPLETED)

    def _discard(self, session: StreamSession) -> None:
        removed = self.store.remove(session.chat_id, session.temp_ids)
        for message in removed:
            self.previews.release_many(message.attachments)
        if session.original is not None:
            self.store.append(session.chat_id, session.original)
        session.transition(SessionState.ERRORED)

    # ── Title side channel ────────────────────────────────────────────

    def _maybe_generate_title(self, session: StreamSession) -> None:
        if isinstance(session.final_event, StreamErrorEvent):
            return
        chat = self.store.get_chat(session.chat_id)
        if chat is None or chat.title != self.settings.default_title:
            return
        if len(self.store.messages(session.chat_id)) != 2:
            return
        task = asyncio.create_task(
            self._generate_title(session.chat_id, session.prompt, session.model_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, chat_id: str, content: str, model_id: str) -> None:
        try:
            title = await self.api.generate_title(chat_id, content, model_id)
            chat = await self.api.update_chat(chat_id, title)
            if self.store.get_chat(chat_id) is not None:
                self.store.set_chat_title(chat_id, chat.title or title)
            logger.info("Titled chat %s: %s", chat_id, title)
        except Exception as e:
            logger.warning("Title generation for chat %s failed: %s", chat_id, e)

    async def wait_background(self) -> None:
        """Wait for title generation and other side-channel tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Chat operations ───────────────────────────────────────────────

    def _chat_model(self, chat_id: str) -> str:
        chat = self.store.get_chat(chat_id)
        if chat is not None and chat.model_id:
            return chat.model_id
        return self.settings.default_model

    async def create_chat(
        self, title: Optional[str] = None, model_id: Optional[str] = None,
    ) -> Chat:
        chat = await self.api.create_chat(
            title or self.settings.default_title,
            model_id or self.settings.default_model,
        )
        self.store.upsert_chat(chat)
        self.store.set_messages(chat.id, [])
        logger.info("Created chat %s", chat.id)
        return chat

    async def open_chat(self, chat_id: str, force: bool = False) -> List[Message]:
        """Load a chat and its messages unless already loaded."""
        if self.store.has_messages(chat_id) and not force:
            return self.store.messages(chat_id)
        if self.is_streaming(chat_id):
            raise StoreError(f"Cannot reload chat '{chat_id}' while it is streaming")
        chat, messages = await self.api.get_chat(chat_id)
        self.store.upsert_chat(chat)
        self.store.set_messages(chat_id, messages)
        return self.store.messages(chat_id)

    async def rename_chat(self, chat_id: str, title: str) -> Chat:
        title = title.strip()
        if not title:
            raise ValueError("Chat title must not be empty")
        chat = await self.api.update_chat(chat_id, title)
        if self.store.get_chat(chat_id) is not None:
            self.store.set_chat_title(chat_id, chat.title or title)
        else:
            self.store.upsert_chat(chat)
        return chat

    async def delete_chat(self, chat_id: str) -> None:
        if self.is_streaming(chat_id):
            raise StoreError(f"Cannot delete chat '{chat_id}' while it is streaming")
        await self.api.delete_chat(chat_id)
        for message in self.store.messages(chat_id):
            self.previews.release_many(message.attachments)
        self.store.remove_chat(chat_id)
        logger.info("Deleted chat %s", chat_id)

    async def load_chats(self, force: bool = False) -> List[Chat]:
        """Fill the store's chat list from the server once, or again with force."""
        if self.store.chats_loaded and not force:
            return self.store.chats()
        chats = await self.api.list_chats()
        self.store.set_chats(chats)
        logger.info("Loaded %d chats", len(chats))
        return self.store.chats()

    async def branch_chat(self, chat_id: str, message_id) -> Chat:
        """Start a new chat holding this chat's history up to message_id."""
        if self.is_streaming(chat_id):
            raise StoreError(f"Cannot branch chat '{chat_id}' while it is streaming")
        target_id = parse_id(message_id)
        if not isinstance(target_id, ServerId):
            raise ValueError("Cannot branch from a message the server has not confirmed")
        chat = await self.api.branch_chat(chat_id, target_id)
        self.store.upsert_chat(chat)
        logger.info("Branched chat %s from %s at %s", chat.id, chat_id, target_id)
        return chat

    async def pin_chat(self, chat_id: str) -> List[str]:
        previous = self.store.pinned_chats()
        self.store.set_pinned(previous + [chat_id])
        try:
            pinned = await self.api.pin_chat(chat_id)
        except Exception:
            self.store.set_pinned(previous)
            raise
        self.store.set_pinned(pinned)
        return pinned

    async def unpin_chat(self, chat_id: str) -> List[str]:
        previous = self.store.pinned_chats()
        self.store.set_pinned(c for c in previous if c != chat_id)
        try:
            pinned = await self.api.unpin_chat(chat_id)
        except Exception:
            self.store.set_pinned(previous)
            raise
        self.store.set_pinned(pinned)
        return pinned

    # ── Teardown ──────────────────────────────────────────────────────

    async def aclose(self) -> None:
        for session in list(self._sessions.values()):
            session.abort.abort()
        await self.wait_background()
        released = self.previews.release_all()
        if released:
            logger.debug("Released %d preview handles on close", released)
