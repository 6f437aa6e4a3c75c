from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection

from chatroute.core import proto
from chatroute.core.registry import ConnectionRegistry
from chatroute.core.router import Router
from chatroute.core.store import MessageStore

log = logging.getLogger("chatroute.server.runtime")

DEFAULT_PORT = 3001


@dataclass(eq=False, slots=True)
class Connection:
    """One live client socket. Hashes by identity so it can key the registry."""

    websocket: ServerConnection
    remote: str = "?"
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = json.dumps(frame, separators=(",", ":"))
        async with self.send_lock:
            try:
                await self.websocket.send(text)
            except websockets.ConnectionClosed:
                log.debug("Dropped frame %s to closed connection %s", frame.get("type"), self.remote)


class ServerRuntime:
    """Chat server: websockets transport around the registry/store/router core."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.server_id = str(config.get("server_id", "server"))
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen"))

        self.registry: ConnectionRegistry[Connection] = ConnectionRegistry()
        self.store = MessageStore(limit=config.get("history_limit"))
        self.router = Router(self.registry, self.store, self._deliver, server_id=self.server_id)

        self._connections: list[Connection] = []
        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ws_server = await websockets.serve(self._handle_connection, self.listen_host, self.listen_port)
        log.info("Chat server %s listening on ws://%s:%d", self.server_id, self.listen_host, self.listen_port)

    async def stop(self) -> None:
        for conn in list(self._connections):
            await conn.websocket.close()
        self._connections.clear()

        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket, remote=self._fmt_remote(websocket))
        self._connections.append(conn)
        log.info("User connected: %s", conn.remote)
        try:
            async for raw in websocket:
                await self.handle_raw(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._on_disconnect(conn)
            try:
                self._connections.remove(conn)
            except ValueError:
                pass

    async def handle_raw(self, conn: Connection, raw: str | bytes) -> None:
        try:
            env = proto.parse_envelope(json.loads(raw))
        except (ValueError, RecursionError):
            await self._send_error(conn, "BAD_ENVELOPE", "frame is not valid JSON")
            return
        except proto.ProtocolError as exc:
            log.warning("Rejected frame from %s: %s", conn.remote, exc.detail)
            await self._send_error(conn, exc.code, exc.detail)
            return
        await self._dispatch(conn, env)

    async def _dispatch(self, conn: Connection, envelope: proto.Envelope) -> None:
        type_ = envelope.type
        payload = envelope.payload
        try:
            if type_ == proto.USER_JOIN:
                await self.router.join(conn, payload.get("user_id"))
            elif type_ == proto.MSG_PUBLIC:
                await self.router.send_public(conn, payload.get("text"))
            elif type_ == proto.MSG_PRIVATE:
                await self.router.send_private(conn, payload.get("text"), payload.get("to"))
            elif type_ == proto.HEARTBEAT:
                pass
            else:
                raise proto.ProtocolError("UNKNOWN_TYPE", f"unsupported type {type_}")
        except proto.ProtocolError as exc:
            log.warning("Rejected %s from %s: %s", type_, conn.remote, exc.detail)
            await self._send_error(conn, exc.code, exc.detail)

    def _on_disconnect(self, conn: Connection) -> None:
        log.info("User disconnected: %s", conn.remote)
        self.router.leave(conn)

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _deliver(self, conn: Connection, frame: Dict[str, Any]) -> None:
        await conn.send(frame)

    async def _send_error(self, conn: Connection, code: str, detail: str) -> None:
        target = self.registry.identity_of(conn) or "*"
        frame = proto.build_frame(proto.ERROR, self.server_id, target, {"code": code, "detail": detail})
        await conn.send(frame)

    @staticmethod
    def _parse_listen(value: Optional[str]) -> tuple[str, int]:
        if not value:
            return "0.0.0.0", int(os.environ.get("PORT", DEFAULT_PORT))
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["Connection", "ServerRuntime"]
