"""WebSocket channel for a WhatsApp Web bridge process.

The bridge (a headless WhatsApp Web client) connects to this server, pushes
every received chat message as a ``message`` frame and receives replies as
``send`` frames.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from salesbot.bus.events import OutboundMessage
from salesbot.bus.queue import MessageBus
from salesbot.channels.base import BaseChannel
from salesbot.config import BridgeConfig

HANDSHAKE_TIMEOUT_S = 10


class WhatsAppBridgeChannel(BaseChannel):
    """Serve the WhatsApp bridge over a JSON WebSocket protocol."""

    name = "whatsapp"

    def __init__(self, config: BridgeConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: BridgeConfig = config
        self._server: Any = None
        self._connections: dict[str, ServerConnection] = {}

    async def start(self) -> None:
        """Start WebSocket server and keep it running."""
        self._running = True
        self._server = await serve(self._handle_client, self.config.host, self.config.port)
        logger.info(f"WhatsApp bridge listening on ws://{self.config.host}:{self.config.port}")

        try:
            await self._server.wait_closed()
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop server and close bridge connections."""
        self._running = False

        for ws in list(self._connections.values()):
            try:
                await ws.close(code=1001, reason="server stopping")
            except ConnectionClosed:
                pass

        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def send(self, msg: OutboundMessage) -> None:
        """Forward a reply to every connected bridge."""
        if not self._connections:
            logger.warning(f"WhatsApp bridge not connected, reply to {msg.chat_id} dropped")
            return

        payload: dict[str, Any] = {
            "type": "send",
            "to": msg.chat_id,
            "text": msg.content or "",
        }
        if msg.reply_to:
            payload["replyTo"] = msg.reply_to
        if msg.media:
            payload["media"] = list(msg.media)

        for conn_id, ws in list(self._connections.items()):
            try:
                await self._send_json(ws, payload)
            except ConnectionClosed as e:
                logger.warning(f"WhatsApp bridge send failed conn_id={conn_id}: {e}")

    async def _handle_client(self, websocket: ServerConnection) -> None:
        """Handle one bridge connection lifecycle."""
        conn_id = uuid.uuid4().hex
        logger.info(f"WhatsApp bridge connecting conn_id={conn_id}")

        try:
            ok = await self._handshake(conn_id, websocket)
            if not ok:
                return
            self._connections[conn_id] = websocket

            async for raw in websocket:
                await self._handle_frame(websocket, raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            logger.warning(f"WhatsApp bridge connection error conn_id={conn_id}: {e}")
        finally:
            self._connections.pop(conn_id, None)
            logger.info(f"WhatsApp bridge disconnected conn_id={conn_id}")

    async def _handshake(self, conn_id: str, ws: ServerConnection) -> bool:
        """Validate initial connect frame and reply connected/error."""
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=HANDSHAKE_TIMEOUT_S)
        except asyncio.TimeoutError:
            await self._send_error(ws, "bad_request", "connect message timeout")
            await ws.close(code=1002, reason="connect timeout")
            return False

        data = self._parse_json(raw)
        if data is None or data.get("type") != "connect":
            await self._send_error(ws, "bad_request", "first message must be connect")
            await ws.close(code=1002, reason="invalid handshake")
            return False

        token = str(data.get("token") or "")
        if self.config.require_auth:
            if not self.config.token or token != self.config.token:
                await self._send_error(ws, "unauthorized", "invalid token")
                await ws.close(code=1008, reason="unauthorized")
                return False

        await self._send_json(ws, {"type": "connected", "sessionId": conn_id})
        logger.info(f"WhatsApp bridge connected conn_id={conn_id}")
        return True

    async def _handle_frame(self, ws: ServerConnection, raw: Any) -> None:
        """Handle non-handshake frames."""
        data = self._parse_json(raw)
        if data is None:
            await self._send_error(ws, "bad_request", "invalid JSON payload")
            return

        msg_type = str(data.get("type") or "").strip()
        if msg_type == "message":
            await self._handle_chat_message(ws, data)
            return
        if msg_type == "ping":
            await self._send_json(ws, {"type": "pong"})
            return

        await self._send_error(
            ws,
            "unsupported_type",
            f"unsupported message type: {msg_type or '<empty>'}",
        )

    async def _handle_chat_message(self, ws: ServerConnection, data: dict[str, Any]) -> None:
        """Validate one chat message frame and push it to the bus."""
        message_id = str(data.get("id") or "").strip()
        chat_id = str(data.get("from") or "").strip()
        body = data.get("body")
        content = body if isinstance(body, str) else ""
        media = data.get("media")
        media_list = [str(m) for m in media] if isinstance(media, list) else []

        if not chat_id:
            await self._send_error(ws, "bad_request", "from is required", message_id)
            return
        if not content.strip() and not media_list:
            await self._send_error(ws, "bad_request", "body or media is required", message_id)
            return
        try:
            timestamp = self._parse_timestamp(data.get("timestamp"))
        except ValueError:
            await self._send_error(ws, "bad_request", "invalid timestamp", message_id)
            return

        accepted = await self._handle_message(
            sender_id=str(data.get("author") or chat_id),
            chat_id=chat_id,
            content=content.strip(),
            message_id=message_id or None,
            timestamp=timestamp,
            from_me=bool(data.get("fromMe")),
            media=media_list,
            metadata={"bridge_frame_id": message_id} if message_id else {},
        )
        if not accepted:
            await self._send_error(ws, "forbidden", "sender not allowed", message_id)

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime | None:
        """Bridge timestamps are unix seconds; out-of-range values raise ValueError."""
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"invalid timestamp {value!r}") from e

    @staticmethod
    def _parse_json(raw: Any) -> dict[str, Any] | None:
        """Best-effort JSON parse for text/bytes frames."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="ignore")
        if not isinstance(raw, str):
            return None
        try:
            obj = json.loads(raw)
        except Exception:
            return None
        return obj if isinstance(obj, dict) else None

    @staticmethod
    async def _send_json(ws: ServerConnection, payload: dict[str, Any]) -> None:
        await ws.send(json.dumps(payload, ensure_ascii=False))

    async def _send_error(
        self,
        ws: ServerConnection,
        code: str,
        message: str,
        frame_id: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "type": "error",
            "error": {"code": code, "message": message},
        }
        if frame_id:
            payload["id"] = frame_id
        await self._send_json(ws, payload)
