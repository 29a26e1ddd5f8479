#!/usr/bin/env python3
"""
chat_cli.py — Send one prompt to a chat backend and print the streamed reply

Usage: python3 chat_cli.py <prompt-file|-> [--chat id] [--model id] [--config path]

Without --chat a new chat is created. Ctrl-C cancels the reply; whatever
arrived so far is saved on the server.

Exit codes:
  0 = success
  1 = API or provider error
  2 = network/timeout error
  4 = invalid usage or config
"""

import asyncio
import json
import logging
import os
import signal
import sys
import time
from typing import Callable, List, Optional

import httpx

from chat_config import load_settings
from chat_models import ASSISTANT
from chat_session import SessionController
from chat_transport import ChatApiClient, ChatApiError
from message_store import SessionStore

logger = logging.getLogger("chatstream.cli")

USAGE = "Usage: python3 chat_cli.py <prompt-file|-> [--chat id] [--model id] [--config path]"


class StreamPrinter:
    """Echoes the streaming assistant message to a text stream as it grows."""

    def __init__(self, store: SessionStore, chat_id: str, out=None):
        self.store = store
        self.chat_id = chat_id
        self.out = out or sys.stdout
        self.printed = ""
        self.message_id = None

    def __call__(self, chat_id: str) -> None:
        if chat_id != self.chat_id:
            return
        if self.message_id is None:
            streaming = self.store.streaming_message(chat_id)
            if streaming is None or streaming.role != ASSISTANT:
                return
            self.message_id = streaming.id

        message = self.store.find(chat_id, self.message_id)
        if message is None:
            return
        content = message.content
        if content.startswith(self.printed):
            self.out.write(content[len(self.printed):])
        else:
            # Content was replaced; start over on a new line
            self.out.write("\n" + content)
        self.out.flush()
        self.printed = content


def _option(args: List[str], name: str) -> Optional[str]:
    if name not in args:
        return None
    idx = args.index(name)
    if idx + 1 >= len(args):
        print(f"ERROR: {name} requires a value", file=sys.stderr)
        sys.exit(4)
    return args[idx + 1]


def _read_prompt(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    try:
        with open(source, encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        print(f"ERROR: Cannot read prompt file: {e}", file=sys.stderr)
        sys.exit(4)


def _install_interrupt(controller: SessionController, chat_id: str) -> Callable[[], None]:
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        print("\n[cancelling]", file=sys.stderr)
        loop.create_task(controller.cancel(chat_id))

    try:
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("Signal handlers unavailable; Ctrl-C will abort without saving")
        return lambda: None
    return lambda: loop.remove_signal_handler(signal.SIGINT)


async def run_prompt(
    prompt: str,
    chat_id: Optional[str] = None,
    model_id: Optional[str] = None,
    config_path: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    out=None,
) -> int:
    """Run one send and return the process exit code."""
    out = out or sys.stdout
    try:
        settings = load_settings(config_path)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 4

    if not prompt.strip():
        print("ERROR: Prompt is empty", file=sys.stderr)
        return 4

    store = SessionStore()
    api = ChatApiClient(settings, transport=transport)
    controller = SessionController(store, api, settings)
    start_time = time.monotonic()
    try:
        if chat_id is None:
            chat = await controller.create_chat(model_id=model_id)
            chat_id = chat.id
        else:
            await controller.open_chat(chat_id)

        printer = StreamPrinter(store, chat_id, out)
        unsubscribe = store.subscribe(printer)
        restore_interrupt = _install_interrupt(controller, chat_id)
        try:
            session = await controller.send(chat_id, prompt, model_id=model_id)
        finally:
            restore_interrupt()
            unsubscribe()
        if session is None:
            print("ERROR: Chat is busy", file=sys.stderr)
            return 4

        await controller.wait_background()
        latency_ms = (time.monotonic() - start_time) * 1000
        chat = store.get_chat(chat_id)
        title = chat.title if chat is not None else ""
        out.write(
            f"\n--- chat {chat_id} ({title}) | {session.state} | "
            f"{session.chunks} chunks | {latency_ms:.0f}ms ---\n"
        )
        return 0
    except ChatApiError as e:
        print(f"ERROR: {json.dumps(e.to_dict())}", file=sys.stderr)
        return 1
    except httpx.TimeoutException:
        print("ERROR: Request timed out", file=sys.stderr)
        return 2
    except httpx.TransportError as e:
        print(f"ERROR: Network error: {e}", file=sys.stderr)
        return 2
    finally:
        await controller.aclose()
        await api.aclose()


def main():
    args = sys.argv[1:]

    if not args or args[0] in ("-h", "--help"):
        print(USAGE, file=sys.stderr)
        sys.exit(4)

    logging.basicConfig(
        level=os.environ.get("CHATSTREAM_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    prompt = _read_prompt(args[0])
    code = asyncio.run(
        run_prompt(
            prompt,
            chat_id=_option(args, "--chat"),
            model_id=_option(args, "--model"),
            config_path=_option(args, "--config"),
        )
    )
    sys.exit(code)


if __name__ == "__main__":
    main()
