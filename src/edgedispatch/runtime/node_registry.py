"""Heartbeat-driven registry of edge nodes."""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

from edgedispatch.exceptions import NoAvailableNodeError
from edgedispatch.models import NodeRecord, utc_now

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Tracks the last heartbeat of each edge node.

    Nodes register themselves by sending heartbeats that carry their own
    callable address. Liveness is recomputed from ``last_heartbeat`` on every
    query, nothing cached survives between dispatch decisions.
    """

    def __init__(self):
        self._nodes: Dict[str, NodeRecord] = {}
        self._round_robin_index = 0
        self._lock = asyncio.Lock()

    async def record_heartbeat(
        self, address: str, at: Optional[datetime] = None
    ) -> NodeRecord:
        """Upsert the heartbeat time for ``address``.

        Out-of-order heartbeats never move ``last_heartbeat`` backward.

        Args:
            address: The node's self-announced callable address
            at: Heartbeat time (defaults to now)

        Returns:
            Copy of the stored record after the upsert
        """
        if not address:
            raise ValueError("Node address must not be empty")
        at = at or utc_now()

        async with self._lock:
            record = self._nodes.get(address)
            if record is None:
                record = NodeRecord(address=address, last_heartbeat=at)
                self._nodes[address] = record
                logger.info(f"Node {address} registered")
            elif at > record.last_heartbeat:
                record.last_heartbeat = at
            else:
                logger.debug(
                    f"Ignoring stale heartbeat from {address} "
                    f"({at.isoformat()} <= {record.last_heartbeat.isoformat()})"
                )
            return NodeRecord(record.address, record.last_heartbeat)

    async def live_nodes(self, now: datetime, timeout: float) -> List[str]:
        """Addresses whose last heartbeat is younger than ``timeout`` seconds."""
        async with self._lock:
            return self._live_addresses(now, timeout)

    def _live_addresses(self, now: datetime, timeout: float) -> List[str]:
        return sorted(
            address
            for address, record in self._nodes.items()
            if record.is_alive(now, timeout)
        )

    async def select_node(self, now: datetime, timeout: float) -> str:
        """Pick a live node with a round-robin cursor.

        The cursor advances on every successful selection, whatever happens to
        the dispatch afterwards.

        Raises:
            NoAvailableNodeError: If no node is alive at ``now``.
        """
        async with self._lock:
            live = self._live_addresses(now, timeout)
            if not live:
                raise NoAvailableNodeError(
                    f"No edge node heartbeat within the last {timeout}s "
                    f"({len(self._nodes)} known)"
                )
            selected = live[self._round_robin_index % len(live)]
            self._round_robin_index += 1

        logger.debug(
            f"Selected node {selected} "
            f"(index {self._round_robin_index - 1}, {len(live)} live)"
        )
        return selected

    async def forget_stale(self, now: datetime, max_age: float) -> List[str]:
        """Drop records of nodes silent for at least ``max_age`` seconds.

        Returns:
            Addresses that were removed
        """
        async with self._lock:
            stale = [
                address
                for address, record in self._nodes.items()
                if record.age(now) >= max_age
            ]
            for address in stale:
                del self._nodes[address]

        for address in stale:
            logger.info(f"Node {address} evicted after {max_age}s without heartbeat")
        return stale

    async def nodes(self) -> List[NodeRecord]:
        """Snapshot of every known node record."""
        async with self._lock:
            return [
                NodeRecord(record.address, record.last_heartbeat)
                for record in sorted(self._nodes.values(), key=lambda r: r.address)
            ]
