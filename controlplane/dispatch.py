"""
dispatch.py - Task dispatch channel to worker node agents.

Each node agent holds one authenticated WebSocket to the control plane. The
channel keeps an explicit per-node connection registry: an entry is created
when a connection is accepted (replacing any older one for the same node) and
removed when it closes or when the liveness sweep marks the node offline.

``send`` never waits on the network. It drops the envelope on the node's
outbox queue and a per-connection writer task drains it, so sends to one node
are serialized while different nodes never block each other.

Agent -> control plane messages:
    {"type": "heartbeat", "metrics": {...}}
    {"type": "task_result", "task_id": "...", "success": true, "result": {...}}
    {"type": "ping"}

Control plane -> agent messages:
    {"type": "hello", "node_id": "..."}
    {"type": "task", "task": {"task_id": ..., "type": ..., ...}}
    {"type": "pong"}
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from controlplane.registry import NodeRegistry

logger = logging.getLogger("dispatch")

OUTBOX_SIZE = 256
CLOSE_UNAUTHORIZED = 4401
CLOSE_REPLACED = 4409
CLOSE_OFFLINE = 4408
CLOSE_SEND_FAILED = 1011

MessageHandler = Callable[[str, dict], Coroutine[Any, Any, None]]


@dataclass
class NodeConnection:
    node_id: str
    websocket: WebSocket
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_SIZE))
    writer: Optional[asyncio.Task] = None


class TaskChannel:
    def __init__(self, registry: "NodeRegistry"):
        self._registry = registry
        self._connections: Dict[str, NodeConnection] = {}
        self._handlers: List[MessageHandler] = []

    def on_message(self, handler: MessageHandler):
        """Register an async callback invoked on every message from an agent."""
        self._handlers.append(handler)

    @property
    def connected_node_ids(self) -> List[str]:
        return list(self._connections)

    def is_online(self, node_id: str) -> bool:
        return node_id in self._connections

    def send(self, node_id: str, task: dict) -> bool:
        """Queue a task for delivery; False if the node is not connected."""
        conn = self._connections.get(node_id)
        if conn is None:
            return False
        try:
            conn.outbox.put_nowait({"type": "task", "task": task})
        except asyncio.QueueFull:
            logger.warning("Outbox full for node %s, task %s not queued", node_id, task.get("task_id"))
            return False
        return True

    async def handle_connection(self, ws: WebSocket, node_id: str, token: str):
        node = await self._registry.authenticate_agent_token(node_id, token)
        if node is None:
            logger.warning("Rejected agent connection for node %s: bad token", node_id)
            await ws.close(code=CLOSE_UNAUTHORIZED)
            return

        await ws.accept()
        conn = NodeConnection(node_id=node_id, websocket=ws)
        previous = self._connections.get(node_id)
        self._connections[node_id] = conn
        if previous is not None:
            logger.info("Node %s reconnected, replacing previous connection", node_id)
            await self._close(previous, CLOSE_REPLACED)
        conn.writer = asyncio.create_task(self._pump(conn))
        logger.info("Node %s connected (%d online)", node_id, len(self._connections))

        await self._registry.heartbeat(node_id, {})
        conn.outbox.put_nowait({"type": "hello", "node_id": node_id})

        try:
            while True:
                raw = await ws.receive_text()
                await self._dispatch_inbound(conn, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Agent connection error for node %s", node_id)
        finally:
            if conn.writer is not None:
                conn.writer.cancel()
            if self._connections.get(node_id) is conn:
                del self._connections[node_id]
                await self._registry.mark_disconnected(node_id)
                logger.info("Node %s disconnected (%d online)", node_id, len(self._connections))

    async def drop(self, node_id: str):
        """Forget a node's connection, e.g. after the liveness sweep marked it offline."""
        conn = self._connections.pop(node_id, None)
        if conn is not None:
            logger.info("Dropping connection for node %s", node_id)
            await self._close(conn, CLOSE_OFFLINE)

    async def close_all(self):
        for node_id in list(self._connections):
            await self.drop(node_id)

    async def _dispatch_inbound(self, conn: NodeConnection, raw: str):
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from node %s", conn.node_id)
            return
        if not isinstance(msg, dict):
            return
        if msg.get("type") == "ping":
            try:
                conn.outbox.put_nowait({"type": "pong"})
            except asyncio.QueueFull:
                pass
            return
        for handler in self._handlers:
            try:
                await handler(conn.node_id, msg)
            except Exception:
                logger.exception("Handler error for %s message from node %s", msg.get("type"), conn.node_id)

    async def _pump(self, conn: NodeConnection):
        while True:
            msg = await conn.outbox.get()
            try:
                await conn.websocket.send_text(json.dumps(msg))
            except Exception:
                logger.warning("Send to node %s failed, closing connection", conn.node_id)
                break

        # send() must stop accepting work before the socket is closed
        dropped = conn.outbox.qsize()
        if self._connections.get(conn.node_id) is conn:
            del self._connections[conn.node_id]
            if dropped:
                logger.warning("Discarded %d queued messages for node %s", dropped, conn.node_id)
            await self._registry.mark_disconnected(conn.node_id)
        try:
            await conn.websocket.close(code=CLOSE_SEND_FAILED)
        except Exception:
            logger.debug("Close of connection for node %s failed", conn.node_id)

    async def _close(self, conn: NodeConnection, code: int):
        if conn.writer is not None:
            conn.writer.cancel()
        try:
            await conn.websocket.close(code=code)
        except Exception:
            logger.debug("Close of connection for node %s failed", conn.node_id)
