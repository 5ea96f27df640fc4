"""
registry.py - Worker node registry.

Issues and redeems registration tokens, applies heartbeats, derives node
health, sweeps stale nodes offline and answers capacity questions for the
scheduler.
"""

import hmac
import logging
import secrets
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from controlplane.auth import decode_agent_token

if TYPE_CHECKING:
    from controlplane.alerts import AlertService
    from controlplane.storage import NodeRepo

logger = logging.getLogger("registry")

REGISTRATION_TOKEN_TTL = 1800  # 30 minutes
OFFLINE_THRESHOLD = 90  # seconds without heartbeat
DEGRADED_RATIO = 0.90
CAPACITY_ALERT_COOLDOWN = 900  # 15 minutes

# (label, used column, total column)
_DIMENSIONS = (
    ("cpu", "cpu_used", "cpu_total"),
    ("memory", "memory_used_mb", "memory_total_mb"),
    ("disk", "disk_used_mb", "disk_total_mb"),
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    OFFLINE = "offline"
    ONLINE = "online"
    DEGRADED = "degraded"
    DRAINING = "draining"
    DISABLED = "disabled"


SCHEDULABLE = (NodeStatus.ONLINE.value, NodeStatus.DEGRADED.value)
ADMIN_HELD = (NodeStatus.DRAINING.value, NodeStatus.DISABLED.value)
# States an agent may report about itself; the rest are owned by the control plane.
AGENT_REPORTED = (NodeStatus.ONLINE.value, NodeStatus.DEGRADED.value)


def utilisation(node: dict) -> dict:
    """Per-dimension used/total ratio; dimensions without a total are skipped."""
    ratios = {}
    for label, used_col, total_col in _DIMENSIONS:
        total = node.get(total_col)
        if total:
            ratios[label] = (node.get(used_col) or 0.0) / total
    return ratios


def free_capacity(node: dict) -> Optional[tuple]:
    if node.get("cpu_total") is None or node.get("memory_total_mb") is None:
        return None
    return (
        node["cpu_total"] - (node.get("cpu_used") or 0.0),
        node["memory_total_mb"] - (node.get("memory_used_mb") or 0.0),
    )


def fits(node: dict, cpu: float, memory_mb: float) -> bool:
    free = free_capacity(node)
    return free is not None and free[0] >= cpu and free[1] >= memory_mb


class NodeRegistry:
    def __init__(self, node_repo: "NodeRepo", alerts: "AlertService"):
        self._nodes = node_repo
        self._alerts = alerts

    # -------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------

    async def issue_registration_token(
        self, name: str, region: str, host_address: Optional[str] = None
    ) -> dict:
        node_id = f"node-{uuid.uuid4().hex[:12]}"
        token = secrets.token_urlsafe(32)
        expires_at = time.time() + REGISTRATION_TOKEN_TTL
        await self._nodes.create_pending(node_id, name, region, host_address, token, expires_at)
        logger.info("Issued registration token for node %s (%s, %s)", node_id, name, region)
        return {"node_id": node_id, "token": token, "expires_at": expires_at}

    async def redeem_token(
        self, token: str, host_address: Optional[str] = None, now: Optional[float] = None
    ) -> Optional[dict]:
        now = now if now is not None else time.time()
        node = await self._nodes.get_by_token(token, now)
        if node is None:
            logger.warning("Rejected registration: unknown or expired token")
            return None
        node_secret = secrets.token_hex(32)
        redeemed = await self._nodes.redeem(node["id"], token, node_secret, host_address)
        if redeemed is None:
            # Lost a race with a concurrent redemption of the same token.
            return None
        logger.info("Node %s registered from %s", redeemed["id"], redeemed["host_address"])
        return redeemed

    async def authenticate(self, node_id: str, node_secret: str) -> Optional[dict]:
        node = await self._nodes.get(node_id)
        if node is None or not node.get("node_secret") or not node_secret:
            return None
        if not hmac.compare_digest(node["node_secret"], node_secret):
            return None
        return node

    async def authenticate_agent_token(self, node_id: str, token: str) -> Optional[dict]:
        """Verify a dispatch-channel JWT against the node's current secret."""
        node = await self._nodes.get(node_id)
        if node is None or not node.get("node_secret") or not token:
            return None
        claims = decode_agent_token(token, node["node_secret"])
        if claims is None or claims.get("node_id") != node_id:
            return None
        return node

    # -------------------------------------------------------------------
    # Heartbeats and liveness
    # -------------------------------------------------------------------

    async def heartbeat(
        self, node_id: str, metrics: dict, now: Optional[float] = None
    ) -> Optional[dict]:
        """Merge reported metrics and recompute status.

        Raises ValueError when the agent reports a status other than online
        or degraded. Returns None for unknown or still-pending nodes.
        """
        reported = metrics.get("status")
        if reported and reported not in AGENT_REPORTED:
            raise ValueError(f"Agents may not report status {reported!r}")

        now = now if now is not None else time.time()
        node = await self._nodes.get(node_id)
        if node is None or node["status"] == NodeStatus.PENDING.value:
            return None

        merged = dict(node)
        for key, value in metrics.items():
            if value is not None and key in merged:
                merged[key] = value
        over = {k: round(v, 4) for k, v in utilisation(merged).items() if v >= DEGRADED_RATIO}

        if node["status"] in ADMIN_HELD:
            status = node["status"]
        elif reported:
            status = reported
        else:
            status = NodeStatus.DEGRADED.value if over else NodeStatus.ONLINE.value

        last_alert = node.get("last_capacity_alert_at")
        alert_due = bool(over) and (last_alert is None or now - last_alert >= CAPACITY_ALERT_COOLDOWN)

        updated = await self._nodes.apply_heartbeat(node_id, metrics, status, alert_due, now)
        if alert_due:
            dims = ", ".join(f"{k}={v:.0%}" for k, v in over.items())
            await self._alerts.notify_admins(
                "node_capacity",
                f"Node {node['name']} ({node_id}) is running hot: {dims}",
                entity_type="node",
                entity_id=node_id,
                metadata={"dimensions": over, "region": node["region"]},
            )
        return updated

    async def mark_offline_nodes(
        self, threshold_seconds: float = OFFLINE_THRESHOLD, now: Optional[float] = None
    ) -> List[str]:
        now = now if now is not None else time.time()
        stale = await self._nodes.mark_offline(now - threshold_seconds)
        for n in stale:
            age = now - n["last_heartbeat"] if n["last_heartbeat"] else None
            logger.warning(
                "Node %s marked offline (last heartbeat %s ago)",
                n["id"], f"{age:.0f}s" if age is not None else "never",
            )
            await self._alerts.notify_admins(
                "node_offline",
                f"Node {n['name']} ({n['id']}) in {n['region']} stopped heartbeating",
                entity_type="node",
                entity_id=n["id"],
                metadata={"last_heartbeat": n["last_heartbeat"]},
            )
        return [n["id"] for n in stale]

    async def mark_disconnected(self, node_id: str) -> bool:
        """The node's dispatch connection closed; it is unreachable until it reconnects."""
        ok = await self._nodes.update_status(node_id, NodeStatus.OFFLINE.value, only_from=SCHEDULABLE)
        if ok:
            logger.info("Node %s disconnected, now offline", node_id)
        return ok

    # -------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------

    async def has_capacity(self, node_id: str, cpu: float, memory_mb: float) -> bool:
        node = await self._nodes.get(node_id)
        return node is not None and node["status"] in SCHEDULABLE and fits(node, cpu, memory_mb)

    async def select_node(self, region: str, cpu: float, memory_mb: float) -> Optional[dict]:
        """Least-loaded first fit among the region's online/degraded nodes."""
        candidates = await self._nodes.list_schedulable(region)
        candidates.sort(key=lambda n: (
            n["status"] != NodeStatus.ONLINE.value,
            utilisation(n).get("memory", 0.0),
            n["created_at"],
        ))
        for node in candidates:
            if fits(node, cpu, memory_mb):
                return node
        return None

    # -------------------------------------------------------------------
    # Admin actions
    # -------------------------------------------------------------------

    async def get_node(self, node_id: str) -> Optional[dict]:
        return await self._nodes.get(node_id)

    async def list_nodes(self) -> List[dict]:
        return [_public(n) for n in await self._nodes.list_all()]

    async def drain_node(self, node_id: str) -> bool:
        ok = await self._nodes.update_status(node_id, NodeStatus.DRAINING.value)
        if ok:
            logger.info("Node %s draining", node_id)
        return ok

    async def disable_node(self, node_id: str) -> bool:
        ok = await self._nodes.update_status(node_id, NodeStatus.DISABLED.value)
        if ok:
            logger.info("Node %s disabled", node_id)
        return ok

    async def enable_node(self, node_id: str) -> bool:
        """Release an admin hold; the node returns to offline until it heartbeats."""
        ok = await self._nodes.update_status(node_id, NodeStatus.OFFLINE.value, only_from=ADMIN_HELD)
        if ok:
            logger.info("Node %s enabled", node_id)
        return ok

    async def delete_node(self, node_id: str) -> bool:
        """Delete a node; refused (ValueError) while workloads are bound to it."""
        if await self._nodes.get(node_id) is None:
            return False
        bound = await self._nodes.count_workloads(node_id)
        if bound:
            raise ValueError(f"Node {node_id} still has {bound} workload(s) attached")
        deleted = await self._nodes.delete(node_id)
        if deleted:
            logger.info("Node %s deleted", node_id)
        return deleted

    async def fleet_overview(self, connected: Optional[set] = None) -> dict:
        nodes = await self._nodes.list_all()
        connected = connected or set()
        counts = {s.value: 0 for s in NodeStatus}
        result = []
        for n in nodes:
            counts[n["status"]] += 1
            entry = _public(n)
            entry["connected"] = n["id"] in connected
            entry["utilisation"] = {k: round(v, 4) for k, v in utilisation(n).items()}
            result.append(entry)
        return {"total": len(nodes), "by_status": counts, "nodes": result}


def _public(node: dict) -> dict:
    return {k: v for k, v in node.items() if k not in ("node_secret", "registration_token")}
