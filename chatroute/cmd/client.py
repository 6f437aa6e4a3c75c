from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import websockets
from pydantic import ValidationError

from chatroute.core import proto
from chatroute.core.views import conversation_view, format_message

log = logging.getLogger("chatroute.cmd.client")

HELP = (
    "Commands: /all <msg>, /tell <user> <msg>, /open <user>, /public, /history, /quit "
    "(plain text goes to the current conversation)"
)


class ClientApp:
    def __init__(self, server_url: str, user_id: str) -> None:
        self.server_url = server_url
        self.user_id = user_id

        self.ws: Optional[websockets.ClientConnection] = None
        self.messages: List[proto.Message] = []
        self.peer: Optional[str] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(proto.USER_JOIN, {"user_id": self.user_id})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"Logged in as {self.user_id}. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                await self._handle_command(line)
            elif self.peer:
                await self._send_frame(proto.MSG_PRIVATE, {"text": line, "to": self.peer})
            else:
                await self._send_frame(proto.MSG_PUBLIC, {"text": line})

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/all" and len(parts) >= 2:
            await self._send_frame(proto.MSG_PUBLIC, {"text": line.split(" ", 1)[1]})
        elif cmd == "/tell" and len(parts) >= 3:
            _, target, text = line.split(maxsplit=2)
            await self._send_frame(proto.MSG_PRIVATE, {"text": text, "to": target})
        elif cmd == "/open" and len(parts) == 2:
            self.open_private(parts[1])
        elif cmd == "/public":
            self.peer = None
            self.show_view()
        elif cmd == "/history":
            self.show_view()
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    def open_private(self, peer: str) -> bool:
        peer = peer.strip()
        if not peer or peer == self.user_id:
            print("Please enter a valid recipient username that is not yourself.")
            return False
        self.peer = peer
        self.show_view()
        return True

    def show_view(self) -> None:
        title = f"private chat with {self.peer}" if self.peer else "public chat"
        print(f"--- {title} ---")
        view = conversation_view(self.messages, self.user_id, self.peer)
        if not view:
            print("(no messages yet)")
        for message in view:
            print(format_message(message))

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    env = proto.Envelope(**json.loads(raw))
                except (ValueError, TypeError):
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self.handle_incoming(env)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def handle_incoming(self, env: proto.Envelope) -> None:
        typ = env.type
        payload = env.payload
        if typ == proto.CHAT_HISTORY:
            self._handle_history(payload)
        elif typ in {proto.PUBLIC_DELIVER, proto.PRIVATE_DELIVER}:
            self._handle_deliver(payload)
        elif typ == proto.ERROR:
            print(f"ERROR ({payload.get('code')}): {payload.get('detail')}")
        else:
            log.debug("Unhandled frame %s", typ)

    def _handle_history(self, payload: Dict[str, Any]) -> None:
        self.messages = []
        for item in payload.get("messages", []):
            try:
                self.messages.append(proto.Message.model_validate(item))
            except ValidationError as exc:
                log.warning("Skipped malformed history entry: %s", exc)
        self.show_view()

    def _handle_deliver(self, payload: Dict[str, Any]) -> None:
        try:
            message = proto.Message.model_validate(payload)
        except ValidationError as exc:
            log.warning("Dropped malformed message: %s", exc)
            return
        self.messages.append(message)
        if conversation_view([message], self.user_id, self.peer):
            print(format_message(message))
        elif message.type == "private":
            other = message.recipient_id if message.sender_id == self.user_id else message.sender_id
            print(f"[private message with {other}; /open {other} to view]")

    async def _send_frame(self, type_: str, payload: Dict[str, Any]) -> None:
        assert self.ws is not None
        frame = proto.build_frame(type_, self.user_id, "*", payload)
        await self.ws.send(json.dumps(frame, separators=(",", ":")))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Terminal chat client")
    parser.add_argument("--server", default="ws://localhost:3001", help="ws://host:port of the chat server")
    parser.add_argument("--user", dest="user_id", required=True, help="Username to join as")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.user_id.strip())
    await app.run()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
