"""In-memory table of chats and their messages.

SessionStore owns every Message record. It is an ordinary object: whoever
composes the application creates one and injects it, and tests create as
many as they like. The presentation layer subscribes to change
notifications; each write method notifies exactly once.

Invariant: at most one message per chat has is_streaming=True.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from chat_models import Chat, Message, MessageId

logger = logging.getLogger("chatstream.message_store")

Listener = Callable[[str], None]

# Notification key for changes to the chat list itself
CHAT_LIST = ""

_MESSAGE_FIELDS = frozenset(
    {"content", "model_id", "attachments", "created_at", "is_streaming", "is_optimistic"}
)


class StoreError(ValueError):
    """A write would break a store invariant or targets a missing record."""


class SessionStore:
    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._chat_order: List[str] = []
        self._messages: Dict[str, List[Message]] = {}
        self._listeners: List[Listener] = []
        self._pinned: List[str] = []
        self.chats_loaded = False
        self.write_count = 0

    # ── Subscriptions ─────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, chat_id: str) -> None:
        self.write_count += 1
        for listener in list(self._listeners):
            try:
                listener(chat_id)
            except Exception:
                logger.exception("Store listener failed for chat %s", chat_id)

    # ── Chats ─────────────────────────────────────────────────────────

    def upsert_chat(self, chat: Chat) -> None:
        if chat.id not in self._chats:
            self._chat_order.insert(0, chat.id)
        self._chats[chat.id] = chat
        self._notify(chat.id)

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        return self._chats.get(chat_id)

    def chats(self) -> List[Chat]:
        """Chats, most recently added first."""
        return [self._chats[cid] for cid in self._chat_order]

    def set_chats(self, chats: Iterable[Chat]) -> None:
        """Replace the chat list (authoritative load). Loaded messages are kept."""
        records = list(chats)
        self._chats = {c.id: c for c in records}
        self._chat_order = [c.id for c in records]
        self.chats_loaded = True
        self._notify(CHAT_LIST)

    def remove_chat(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)
        if chat_id in self._pinned:
            self._pinned.remove(chat_id)
        self._messages.pop(chat_id, None)
        if chat_id in self._chat_order:
            self._chat_order.remove(chat_id)
        self._notify(chat_id)

    def set_chat_title(self, chat_id: str, title: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise StoreError(f"Unknown chat '{chat_id}'")
        chat.title = title
        self._notify(chat_id)

    def pinned_chats(self) -> List[str]:
        return list(self._pinned)

    def set_pinned(self, chat_ids: Iterable[str]) -> None:
        self._pinned = list(dict.fromkeys(chat_ids))
        self._notify(CHAT_LIST)

    # ── Messages: reads ───────────────────────────────────────────────

    def has_messages(self, chat_id: str) -> bool:
        return chat_id in self._messages

    def messages(self, chat_id: str) -> List[Message]:
        """Snapshot of the chat's message list (records are shared)."""
        return list(self._messages.get(chat_id, []))

    def find(self, chat_id: str, message_id: MessageId) -> Optional[Message]:
        for message in self._messages.get(chat_id, []):
            if message.id == message_id:
                return message
        return None

    def last_message(self, chat_id: str) -> Optional[Message]:
        messages = self._messages.get(chat_id)
        return messages[-1] if messages else None

    def streaming_message(self, chat_id: str) -> Optional[Message]:
        for message in self._messages.get(chat_id, []):
            if message.is_streaming:
                return message
        return None

    def is_streaming(self, chat_id: str) -> bool:
        return self.streaming_message(chat_id) is not None

    # ── Messages: writes ──────────────────────────────────────────────

    def set_messages(self, chat_id: str, messages: Iterable[Message]) -> None:
        """Replace the whole message list (authoritative load)."""
        records = list(messages)
        if sum(1 for m in records if m.is_streaming) > 1:
            raise StoreError(f"More than one streaming message for chat '{chat_id}'")
        self._messages[chat_id] = records
        self._notify(chat_id)

    def append(self, chat_id: str, *messages: Message) -> None:
        current = self._messages.setdefault(chat_id, [])
        incoming_streaming = sum(1 for m in messages if m.is_streaming)
        if incoming_streaming and (incoming_streaming > 1 or self.is_streaming(chat_id)):
            raise StoreError(f"Chat '{chat_id}' already has a streaming message")
        for message in messages:
            if message.chat_id != chat_id:
                raise StoreError(
                    f"Message {message.id} belongs to '{message.chat_id}', not '{chat_id}'"
                )
        current.extend(messages)
        self._notify(chat_id)

    def update(self, chat_id: str, message_id: MessageId, **changes) -> Message:
        """Update fields of one message in place."""
        unknown = set(changes) - _MESSAGE_FIELDS
        if unknown:
            raise StoreError(f"Cannot update message fields: {sorted(unknown)}")
        message = self.find(chat_id, message_id)
        if message is None:
            raise StoreError(f"Unknown message {message_id} in chat '{chat_id}'")
        if changes.get("is_streaming") and not message.is_streaming and self.is_streaming(chat_id):
            raise StoreError(f"Chat '{chat_id}' already has a streaming message")
        for name, value in changes.items():
            setattr(message, name, value)
        self._notify(chat_id)
        return message

    def update_many(self, chat_id: str, message_ids: Iterable[MessageId], **changes) -> int:
        """Apply the same field changes to several messages; one notification."""
        unknown = set(changes) - _MESSAGE_FIELDS
        if unknown:
            raise StoreError(f"Cannot update message fields: {sorted(unknown)}")
        wanted = set(message_ids)
        updated = 0
        for message in self._messages.get(chat_id, []):
            if message.id in wanted:
                for name, value in changes.items():
                    setattr(message, name, value)
                updated += 1
        if updated:
            self._notify(chat_id)
        return updated

    def replace(self, chat_id: str, replacements: Dict[MessageId, Message]) -> int:
        """Swap records by id, keeping list positions. Returns swaps made."""
        messages = self._messages.get(chat_id, [])
        swapped = 0
        for index, message in enumerate(messages):
            replacement = replacements.get(message.id)
            if replacement is not None:
                messages[index] = replacement
                swapped += 1
        if sum(1 for m in messages if m.is_streaming) > 1:
            raise StoreError(f"More than one streaming message for chat '{chat_id}'")
        if swapped:
            self._notify(chat_id)
        return swapped

    def remove(self, chat_id: str, message_ids: Iterable[MessageId]) -> List[Message]:
        """Remove messages by id; returns the removed records."""
        doomed = set(message_ids)
        messages = self._messages.get(chat_id, [])
        removed = [m for m in messages if m.id in doomed]
        if removed:
            self._messages[chat_id] = [m for m in messages if m.id not in doomed]
            self._notify(chat_id)
        return removed
