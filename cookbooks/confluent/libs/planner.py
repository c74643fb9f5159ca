"""Computation of the order in which the brokers of a cluster are restarted."""
from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from cookbooks.confluent.libs.inventory import Broker
from cookbooks.confluent.libs.metadata import ClusterMetadataClient

LOGGER = logging.getLogger(__name__)
DEFAULT_DISCOVERY_WORKERS = 4


@dataclass(frozen=True)
class LeadershipSnapshot:
    """Leadership held by a broker at discovery time.

    It's stale as soon as any broker is restarted, as leaderships move around.
    """

    broker: Broker
    leader_partitions: int
    cluster_id: Optional[str]

    @property
    def is_leader(self) -> bool:
        """Whether the broker was the leader of at least one partition."""
        return self.leader_partitions > 0


@dataclass(frozen=True)
class RestartOrder:
    """Ordered sequence of brokers, each broker of the cluster exactly once."""

    brokers: Tuple[Broker, ...]

    def __iter__(self):
        """Iterate the brokers in restart order."""
        return iter(self.brokers)

    def __len__(self) -> int:
        """Number of brokers in the plan."""
        return len(self.brokers)

    def __str__(self) -> str:
        """Compact representation for logs and confirmations."""
        return " -> ".join(str(broker.broker_id) for broker in self.brokers)


def build_order(brokers: Iterable[Broker], leadership_of: Callable[[Broker], int]) -> RestartOrder:
    """Compute the restart order from the leadership count of each broker.

    Brokers not leading any partition come first, in the given order: restarting them does not trigger
    any leader election. Brokers leading partitions follow, the one leading the most first, ties keeping the
    given order. Their controlled shutdowns, once the cluster had time to settle, perform the final leader
    re-elections.

    Raises:
        ValueError: if a leadership count is negative.

    """
    counted = [(position, broker, leadership_of(broker)) for position, broker in enumerate(brokers)]
    for _, broker, count in counted:
        if count < 0:
            raise ValueError(f"Invalid leadership count {count} for {broker}")

    non_leaders = [broker for _, broker, count in counted if count == 0]
    leaders = sorted((entry for entry in counted if entry[2] > 0), key=lambda entry: (-entry[2], entry[0]))
    return RestartOrder(brokers=tuple(non_leaders) + tuple(broker for _, broker, _ in leaders))


def discover_leadership(
    brokers: Iterable[Broker],
    metadata_client: ClusterMetadataClient,
    max_workers: int = DEFAULT_DISCOVERY_WORKERS,
) -> Dict[Broker, LeadershipSnapshot]:
    """Query the leadership of all the brokers.

    The queries are read only and independent from each other, so they run in parallel. The returned
    mapping keeps the order of the given brokers.
    """
    brokers = list(brokers)

    def _snapshot(broker: Broker) -> LeadershipSnapshot:
        cluster_id = metadata_client.discover_cluster_id(broker)
        return LeadershipSnapshot(
            broker=broker,
            leader_partitions=metadata_client.count_leader_partitions(broker, cluster_id),
            cluster_id=cluster_id,
        )

    if not brokers:
        return {}

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(brokers)))) as executor:
        # list() evaluates the futures here, including raising any exception
        snapshots = list(executor.map(_snapshot, brokers))

    cluster_ids = {snapshot.cluster_id for snapshot in snapshots if snapshot.cluster_id is not None}
    if len(cluster_ids) > 1:
        LOGGER.warning("Brokers reported different cluster ids: %s", ", ".join(sorted(cluster_ids)))

    return {snapshot.broker: snapshot for snapshot in snapshots}


def plan_restart(snapshots: Dict[Broker, LeadershipSnapshot]) -> RestartOrder:
    """Build the restart order from discovered leadership snapshots."""
    order = build_order(snapshots.keys(), lambda broker: snapshots[broker].leader_partitions)
    LOGGER.info("Restart order: %s", order)
    return order
