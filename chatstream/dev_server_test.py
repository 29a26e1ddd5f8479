"""End-to-end tests: ChatApiClient + SessionController against the dev backend."""

import asyncio
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from chat_config import ClientSettings
from chat_models import LocalFile, ServerId
from chat_session import SessionController, SessionState
from chat_transport import ChatApiClient, ChatApiError, ProviderError
from dev_server import create_app
from message_store import SessionStore


def run(coro):
    """Run async test in event loop."""
    return asyncio.new_event_loop().run_until_complete(coro)


def make_client(app, token=""):
    settings = ClientSettings(
        base_url="http://testserver", api_token=token, fallback_delay_scale=0,
    )
    return ChatApiClient(settings, transport=httpx.ASGITransport(app=app))


def make_controller(app, token=""):
    api = make_client(app, token)
    return SessionController(SessionStore(), api, api.settings), api


async def _close(controller, api):
    await controller.aclose()
    await api.aclose()


# ── Health / auth ─────────────────────────────────────────────────────


class TestHealthAndAuth:
    def test_healthz_open_without_token(self):
        app = create_app(token="s3cret")

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                resp = await client.get("/healthz")
            return resp

        resp = run(scenario())
        assert resp.status_code == 200
        assert resp.json()["status"] == "alive"

    def test_missing_token_rejected(self):
        api = make_client(create_app(token="s3cret"))

        async def scenario():
            try:
                await api.create_chat("New Chat", "m")
            finally:
                await api.aclose()

        with pytest.raises(ChatApiError) as exc:
            run(scenario())
        assert exc.value.status_code == 401
        assert not exc.value.retryable

    def test_valid_token_accepted(self):
        api = make_client(create_app(token="s3cret"), token="s3cret")

        async def scenario():
            try:
                return await api.create_chat("New Chat", "m")
            finally:
                await api.aclose()

        chat = run(scenario())
        assert chat.title == "New Chat"
        assert chat.model_id == "m"


# ── REST ──────────────────────────────────────────────────────────────


class TestRest:
    def test_chat_lifecycle(self):
        app = create_app(token="")
        api = make_client(app)

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                renamed = await api.update_chat(chat.id, "Renamed")
                fetched, messages = await api.get_chat(chat.id)
                await api.delete_chat(chat.id)
                with pytest.raises(ChatApiError) as exc:
                    await api.get_chat(chat.id)
                return renamed, fetched, messages, exc.value
            finally:
                await api.aclose()

        renamed, fetched, messages, missing = run(scenario())
        assert renamed.title == "Renamed"
        assert fetched.title == "Renamed"
        assert messages == []
        assert missing.status_code == 404
        assert app.state.backend.chats == {}

    def test_blocking_send(self):
        api = make_client(create_app(token=""))

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                return await api.send_message(chat.id, "hi", "m")
            finally:
                await api.aclose()

        user, assistant = run(scenario())
        assert isinstance(user.id, ServerId)
        assert user.content == "hi"
        assert assistant.content == "You said: hi"

    def test_blocking_send_provider_failure(self):
        api = make_client(create_app(token=""))

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                return await api.send_message(chat.id, "/fail 429", "m")
            finally:
                await api.aclose()

        with pytest.raises(ProviderError) as exc:
            run(scenario())
        assert exc.value.status_code == 429
        assert exc.value.provider == "dev-provider"
        assert exc.value.retryable

    def test_cancel_stream_saves_partial(self):
        app = create_app(token="")
        api = make_client(app)

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                saved = await api.cancel_stream(chat.id, "partial", "m")
                empty = await api.cancel_stream(chat.id, "", "m")
                return chat, saved, empty
            finally:
                await api.aclose()

        chat, saved, empty = run(scenario())
        assert saved.content == "partial"
        assert isinstance(saved.id, ServerId)
        assert empty is None
        assert chat.id in app.state.backend.cancelled

    def test_generate_title(self):
        api = make_client(create_app(token=""))

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                return await api.generate_title(chat.id, "what's the weather like in Paris today?", "m")
            finally:
                await api.aclose()

        assert run(scenario()) == "Whats The Weather Like In"

    def test_upload_and_commit(self):
        app = create_app(token="")
        api = make_client(app)

        async def scenario():
            try:
                record = await api.upload_file(LocalFile("notes.txt", "text/plain", b"hello"))
                await api.commit_files([record.id])
                return record
            finally:
                await api.aclose()

        record = run(scenario())
        assert isinstance(record.id, ServerId)
        assert record.filename == "notes.txt"
        assert record.file_size == 5
        assert app.state.backend.committed == {str(record.id)}


# ── Streamed sessions ─────────────────────────────────────────────────


class TestStreamedSend:
    def test_send_reconciles_and_titles(self):
        app = create_app(token="")
        controller, api = make_controller(app)

        async def scenario():
            try:
                chat = await controller.create_chat()
                session = await controller.send(chat.id, "Hello there. How are you?")
                await controller.wait_background()
                return chat, session
            finally:
                await _close(controller, api)

        chat, session = run(scenario())
        store = controller.store
        messages = store.messages(chat.id)

        assert session.state == SessionState.RECONCILED
        assert session.chunks > 0
        assert [m.role for m in messages] == ["user", "assistant"]
        assert all(isinstance(m.id, ServerId) for m in messages)
        assert not any(m.is_optimistic or m.is_streaming for m in messages)
        assert messages[1].content.startswith("You said: Hello there.")
        assert [m["id"] for m in app.state.backend.messages[chat.id]] == [str(m.id) for m in messages]
        assert store.get_chat(chat.id).title == "Hello There How Are You"

    def test_image_generation_replaces_progress(self):
        controller, api = make_controller(create_app(token=""))

        async def scenario():
            try:
                chat = await controller.create_chat()
                await controller.send(chat.id, "/image cat")
                return chat
            finally:
                await _close(controller, api)

        chat = run(scenario())
        reply = controller.store.messages(chat.id)[-1]
        assert reply.content.startswith("![cat](https://images.invalid/")
        assert "Generating image" not in reply.content

    def test_provider_failure_is_visible_and_demoted(self):
        app = create_app(token="")
        controller, api = make_controller(app)

        async def scenario():
            try:
                chat = await controller.create_chat()
                session = await controller.send(chat.id, "/fail 429")
                await controller.wait_background()
                return chat, session
            finally:
                await _close(controller, api)

        chat, session = run(scenario())
        messages = controller.store.messages(chat.id)

        assert session.state == SessionState.RECONCILED
        assert len(messages) == 2
        assert "429" in messages[1].content
        assert not any(m.is_optimistic or m.is_streaming for m in messages)
        assert not any(isinstance(m.id, ServerId) for m in messages)
        assert [m["role"] for m in app.state.backend.messages[chat.id]] == ["user"]
        assert controller.store.get_chat(chat.id).title == "New Chat"

    def test_attachments_uploaded_and_committed(self):
        app = create_app(token="")
        controller, api = make_controller(app)
        files = [LocalFile("notes.txt", "text/plain", b"hello")]

        async def scenario():
            try:
                chat = await controller.create_chat()
                await controller.send(chat.id, "summarise this", attachments=files)
                return chat
            finally:
                await _close(controller, api)

        chat = run(scenario())
        backend = app.state.backend
        user = controller.store.messages(chat.id)[0]

        assert len(backend.files) == 1
        assert backend.committed == set(backend.files)
        assert len(backend.messages[chat.id][0]["attachments"]) == 1
        assert user.attachments[0].status == "uploaded"
        assert controller.previews.open_handles == 0


class TestStreamedRetry:
    def test_retry_streams_new_reply(self):
        app = create_app(token="")
        controller, api = make_controller(app)

        async def scenario():
            try:
                chat = await controller.create_chat()
                await controller.send(chat.id, "hi")
                first = controller.store.messages(chat.id)[-1]
                session = await controller.retry(chat.id, first.id)
                return chat, first, session
            finally:
                await _close(controller, api)

        chat, first, session = run(scenario())
        messages = controller.store.messages(chat.id)

        assert session.state == SessionState.RECONCILED
        assert len(messages) == 2
        assert messages[-1].id != first.id
        assert isinstance(messages[-1].id, ServerId)
        assert messages[-1].content.startswith("You said: hi")
        assert [m["id"] for m in app.state.backend.messages[chat.id]] == [str(m.id) for m in messages]

    def test_retry_image_uses_json_result(self):
        controller, api = make_controller(create_app(token=""))

        async def scenario():
            try:
                chat = await controller.create_chat()
                await controller.send(chat.id, "/image dog")
                first = controller.store.messages(chat.id)[-1]
                session = await controller.retry(chat.id, first.id)
                return chat, first, session
            finally:
                await _close(controller, api)

        chat, first, session = run(scenario())
        reply = controller.store.messages(chat.id)[-1]

        assert session.state == SessionState.RECONCILED
        assert reply.id != first.id
        assert reply.content.startswith("![dog](https://images.invalid/")
        assert not reply.is_streaming


# ── Chat list, branches, pins ─────────────────────────────────────────


class TestChatList:
    def test_load_chats(self):
        app = create_app(token="")
        first = app.state.backend.create_chat("First", "m")
        second = app.state.backend.create_chat("Second", "m")
        controller, api = make_controller(app)

        async def scenario():
            try:
                return await controller.load_chats()
            finally:
                await _close(controller, api)

        chats = run(scenario())
        assert [c.id for c in chats] == [first["id"], second["id"]]
        assert controller.store.chats_loaded

    def test_branch_copies_history(self):
        app = create_app(token="")
        controller, api = make_controller(app)

        async def scenario():
            try:
                chat = await controller.create_chat(title="Trip")
                await controller.send(chat.id, "one")
                await controller.send(chat.id, "two")
                point = controller.store.messages(chat.id)[1]
                branch = await controller.branch_chat(chat.id, point.id)
                again = await controller.branch_chat(chat.id, point.id)
                return chat, branch, again
            finally:
                await _close(controller, api)

        chat, branch, again = run(scenario())
        backend = app.state.backend
        copied = backend.messages[branch.id]

        assert branch.title == "Trip (Branch)"
        assert branch.original_chat_id == chat.id
        assert branch.is_branched
        assert again.id == branch.id
        assert [m["content"] for m in copied] == ["one", "You said: one "]
        assert controller.store.chats()[0].id == branch.id

    def test_branch_from_temporary_rejected_by_server(self):
        app = create_app(token="")
        api = make_client(app)

        async def scenario():
            try:
                chat = await api.create_chat("New Chat", "m")
                await api.branch_chat(chat.id, "temp-user-1")
            finally:
                await api.aclose()

        with pytest.raises(ChatApiError) as exc:
            run(scenario())
        assert exc.value.status_code == 400

    def test_pin_and_unpin(self):
        app = create_app(token="")
        controller, api = make_controller(app)

        async def scenario():
            try:
                chat = await controller.create_chat()
                pinned = await controller.pin_chat(chat.id)
                unpinned = await controller.unpin_chat(chat.id)
                return chat, pinned, unpinned
            finally:
                await _close(controller, api)

        chat, pinned, unpinned = run(scenario())
        assert pinned == [chat.id]
        assert unpinned == []
        assert app.state.backend.pinned == []
