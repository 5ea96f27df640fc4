"""Shared fixtures for the control plane test suite.

Provides:
 - An in-memory StorageManager and every service wired on top of it
 - FakeWebSocket: drives TaskChannel.handle_connection inside the test loop
 - Helpers to register nodes, connect agents and seed tenants
"""

import asyncio
import json
import time
from typing import Callable, List, Optional

import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect

from controlplane.alerts import AlertService
from controlplane.auth import issue_agent_token
from controlplane.backups import BackupScheduler
from controlplane.billing import BillingEngine
from controlplane.crypto import SecretBox
from controlplane.dispatch import TaskChannel
from controlplane.registry import NodeRegistry
from controlplane.scheduler import FleetScheduler
from controlplane.storage import StorageManager
from controlplane.wallet import WalletService
from controlplane.webhooks import WebhookIngest

HOUR = 3600


class FakeWebSocket:
    """Minimal stand-in for a Starlette WebSocket, fed from the test."""

    def __init__(self):
        self.accepted = False
        self.close_code: Optional[int] = None
        self.sent: List[dict] = []
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.accepted = True

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        self.close_code = code
        self._inbox.put_nowait(None)

    async def send_text(self, data: str):
        self.sent.append(json.loads(data))

    async def receive_text(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise WebSocketDisconnect(code=self.close_code or 1000)
        return item

    def push(self, msg: dict):
        self._inbox.put_nowait(json.dumps(msg))

    def disconnect(self):
        self._inbox.put_nowait(None)

    def tasks(self) -> List[dict]:
        return [m["task"] for m in self.sent if m["type"] == "task"]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def make_node(
    registry: NodeRegistry,
    name: str = "node-a",
    region: str = "eu-west",
    cpu_total: float = 4,
    memory_total_mb: float = 8192,
    cpu_used: float = 0,
    memory_used_mb: float = 0,
    now: Optional[float] = None,
) -> dict:
    """Register a node and send its first heartbeat."""
    issued = await registry.issue_registration_token(name, region)
    node = await registry.redeem_token(issued["token"], host_address="10.0.0.1")
    await registry.heartbeat(node["id"], {
        "cpu_total": cpu_total,
        "memory_total_mb": memory_total_mb,
        "disk_total_mb": 100000,
        "cpu_used": cpu_used,
        "memory_used_mb": memory_used_mb,
        "disk_used_mb": 0,
        "container_count": 0,
    }, now=now)
    return await registry.get_node(node["id"])


class Agents:
    """Connects fake node agents to a TaskChannel and tears them down afterwards."""

    def __init__(self, channel: TaskChannel):
        self._channel = channel
        self._tasks: List[asyncio.Task] = []

    async def connect(self, node: dict) -> FakeWebSocket:
        ws = FakeWebSocket()
        token = issue_agent_token(node["id"], node["node_secret"])
        self._tasks.append(asyncio.create_task(self._channel.handle_connection(ws, node["id"], token)))
        await wait_for(lambda: self._channel.is_online(node["id"]))
        await wait_for(lambda: any(m["type"] == "hello" for m in ws.sent))
        return ws

    async def close(self):
        await self._channel.close_all()
        for t in self._tasks:
            try:
                await asyncio.wait_for(t, timeout=2.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                t.cancel()


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def secret_box():
    return SecretBox(SecretBox.generate_key())


@pytest_asyncio.fixture
async def alerts(storage):
    return AlertService(storage.alerts)


@pytest_asyncio.fixture
async def registry(storage, alerts):
    return NodeRegistry(storage.nodes, alerts)


@pytest_asyncio.fixture
async def channel(registry):
    return TaskChannel(registry)


@pytest_asyncio.fixture
async def agents(channel):
    a = Agents(channel)
    yield a
    await a.close()


@pytest_asyncio.fixture
async def scheduler(storage, registry, channel, secret_box):
    return FleetScheduler(storage, registry, channel, secret_box)


@pytest_asyncio.fixture
async def wallet(storage):
    return WalletService(storage.organizations)


@pytest_asyncio.fixture
async def billing(storage, wallet, scheduler, alerts):
    return BillingEngine(storage, wallet, scheduler, alerts)


@pytest_asyncio.fixture
async def backups(storage, scheduler, channel):
    return BackupScheduler(storage.backups, storage.databases, scheduler, channel)


@pytest_asyncio.fixture
async def webhooks(storage, scheduler, secret_box):
    return WebhookIngest(storage.applications, scheduler, secret_box)


@pytest_asyncio.fixture
async def catalog(storage):
    """A plan, a runtime and a funded organization."""
    await storage.plans.create("small", "Small", cpu_cores=1, memory_mb=1024, hourly_rate=0.01)
    await storage.plans.create("large", "Large", cpu_cores=2, memory_mb=1000, hourly_rate=0.05)
    await storage.runtimes.create(
        "node20", "Node.js 20", "node", "node:20-alpine", version="20",
        build_command="npm ci && npm run build", start_command="npm start",
    )
    await storage.organizations.create("org-1", "Acme", balance=10.0)
    return storage
