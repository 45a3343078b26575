"""
Service Commander — WebSocket Event Relay
═══════════════════════════════════════════════════
Relays EventBus traffic to connected dashboard clients.

Protocol (JSON messages over WebSocket):
  Server → Client:
    {"type": "event", "event": "deployment-progress", "data": {"deployment_id": "...", "step": "...", ...}}
    {"type": "event", "event": "health-update", "data": {"container_id": "...", "health": {...}}}
    {"type": "event", "event": "metrics-update", "data": {"container_id": "...", "metrics": {...}}}
    {"type": "event", "event": "health-alert", "data": {"container_id": "...", "type": "high_cpu", ...}}
    {"type": "pong"}
  Client → Server:
    {"type": "ping"}

Events are published from worker threads (deploys, monitor timers) and are
handed to the server's event loop with run_coroutine_threadsafe.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from .events import EventBus

logger = logging.getLogger(__name__)


class WebSocketHub:

    def __init__(self, bus: Optional[EventBus] = None):
        self._connections: Set[WebSocket] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe = None
        if bus is not None:
            self.attach(bus)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def attach(self, bus: EventBus) -> None:
        self._unsubscribe = bus.subscribe(self.broadcast_event_sync)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    # ── Connection Handler ──

    async def handler(self, websocket: WebSocket):
        await websocket.accept()
        self._connections.add(websocket)
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        logger.info(f"[WS] Client connected ({len(self._connections)} total)")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    await _send(websocket, {"type": "error", "message": "Invalid JSON"})
                    continue
                if msg.get("type") == "ping":
                    await _send(websocket, {"type": "pong"})
                else:
                    await _send(websocket, {"type": "error", "message": f"Unknown type: {msg.get('type', '')}"})
        except WebSocketDisconnect:
            logger.info("[WS] Client disconnected")
        finally:
            self._connections.discard(websocket)

    # ── Broadcast ──

    async def broadcast_event(self, event: str, data: Dict[str, Any]):
        """Send an event to every connected client; drop clients that fail."""
        msg = {"type": "event", "event": event, "data": data}
        dead = set()
        for ws in list(self._connections):
            if not await _send(ws, msg):
                dead.add(ws)
        self._connections -= dead

    def broadcast_event_sync(self, event: str, data: Dict[str, Any]) -> None:
        """EventBus subscriber: schedule a broadcast from any thread."""
        if not self._connections or self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._loop.create_task(self.broadcast_event(event, data))
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast_event(event, data), self._loop)


async def _send(ws: WebSocket, data: Dict[str, Any]) -> bool:
    try:
        await ws.send_text(json.dumps(data, default=str))
        return True
    except Exception as e:
        logger.debug(f"[WS] Send failed: {e}")
        return False
