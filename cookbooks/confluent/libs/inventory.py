"""Module that holds knowledge of the Confluent Kafka clusters and their brokers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from wmflib.config import load_yaml_config

from cookbooks.confluent.libs.common import ConfluentError

LOGGER = logging.getLogger(__name__)
CONFIG_FILE_NAME = "confluent.yaml"
DEFAULT_SERVICE_NAME = "confluent-server"
DEFAULT_PRIMARY_PORT = 9092
DEFAULT_AUXILIARY_PORTS = (9093,)
DEFAULT_METADATA_PORT = 8090
DEFAULT_METRICS_PORT = 8080


class InventoryError(ConfluentError):
    """Raised when the cluster configuration is missing or inconsistent."""


@dataclass(frozen=True)
class Broker:
    """A Kafka broker as declared in the static inventory."""

    broker_id: int
    address: str
    rack: Optional[str] = None

    def __str__(self) -> str:
        """Used in log lines and reports."""
        return f"broker {self.broker_id} ({self.address})"


@dataclass(frozen=True)
class ListenerPorts:
    """Ports a broker is expected to listen on."""

    primary: int = DEFAULT_PRIMARY_PORT
    # token/AD-style secondary listeners, only checked in the final verification
    auxiliary: Tuple[int, ...] = DEFAULT_AUXILIARY_PORTS
    metadata: int = DEFAULT_METADATA_PORT
    metrics: int = DEFAULT_METRICS_PORT

    @classmethod
    def from_dict(cls, ports: Dict[str, Any]) -> "ListenerPorts":
        """Build the ports from the `ports` section of a cluster, missing keys take the defaults."""
        auxiliary = ports.get("auxiliary", DEFAULT_AUXILIARY_PORTS)
        if isinstance(auxiliary, int):
            auxiliary = (auxiliary,)

        try:
            return cls(
                primary=int(ports.get("primary", DEFAULT_PRIMARY_PORT)),
                auxiliary=tuple(int(port) for port in auxiliary),
                metadata=int(ports.get("metadata", DEFAULT_METADATA_PORT)),
                metrics=int(ports.get("metrics", DEFAULT_METRICS_PORT)),
            )
        except (TypeError, ValueError) as error:
            raise InventoryError(f"Invalid ports configuration {ports}: {error}") from error


@dataclass(frozen=True)
class ClusterConfig:
    """Everything the cookbooks need to know about a cluster."""

    name: str
    brokers: Tuple[Broker, ...]
    ports: ListenerPorts = field(default_factory=ListenerPorts)
    metrics_enabled: bool = False
    service_name: str = DEFAULT_SERVICE_NAME
    trust_anchor: Optional[Path] = None

    def __post_init__(self):
        """Validate the broker inventory."""
        if not self.brokers:
            raise InventoryError(f"Cluster {self.name} has no brokers declared")

        seen_ids = set()
        for broker in self.brokers:
            if broker.broker_id in seen_ids:
                raise InventoryError(f"Cluster {self.name} declares broker id {broker.broker_id} more than once")
            seen_ids.add(broker.broker_id)

    @classmethod
    def from_dict(cls, name: str, cluster: Dict[str, Any]) -> "ClusterConfig":
        """Build a cluster configuration from its section in the configuration file."""
        try:
            brokers = tuple(
                Broker(broker_id=int(broker["id"]), address=str(broker["address"]), rack=broker.get("rack"))
                for broker in cluster.get("brokers", [])
            )
        except (KeyError, TypeError, ValueError) as error:
            raise InventoryError(f"Malformed broker entry in cluster {name}: {error}") from error

        trust_anchor = cluster.get("trust_anchor")
        return cls(
            name=name,
            brokers=brokers,
            ports=ListenerPorts.from_dict(cluster.get("ports") or {}),
            metrics_enabled=bool(cluster.get("metrics_enabled", False)),
            service_name=cluster.get("service_name", DEFAULT_SERVICE_NAME),
            trust_anchor=Path(trust_anchor).expanduser() if trust_anchor else None,
        )

    @property
    def unit(self) -> str:
        """The systemd unit managing the broker process."""
        if self.service_name.endswith(".service"):
            return self.service_name
        return f"{self.service_name}.service"

    def get_broker(self, broker_id: int) -> Broker:
        """Get a broker by id."""
        for broker in self.brokers:
            if broker.broker_id == broker_id:
                return broker

        raise InventoryError(f"Cluster {self.name} has no broker with id {broker_id}")

    def without(self, broker_ids: List[int]) -> "ClusterConfig":
        """Return a copy of the configuration without the given brokers."""
        for broker_id in broker_ids:
            # raises on unknown ids, excluding a typo must not go unnoticed
            self.get_broker(broker_id)

        return ClusterConfig(
            name=self.name,
            brokers=tuple(broker for broker in self.brokers if broker.broker_id not in broker_ids),
            ports=self.ports,
            metrics_enabled=self.metrics_enabled,
            service_name=self.service_name,
            trust_anchor=self.trust_anchor,
        )


def load_cluster_config(config_dir: Path, cluster_name: str) -> ClusterConfig:
    """Load the configuration of the given cluster from the cookbooks configuration directory."""
    config_file = config_dir / CONFIG_FILE_NAME
    LOGGER.debug("Loading Confluent clusters config from %s", config_file)
    config = load_yaml_config(config_file=config_file, raises=False)
    clusters = config.get("clusters") or {}
    if cluster_name not in clusters:
        raise InventoryError(f"Cluster {cluster_name} not found in {config_file}, known clusters: {sorted(clusters)}")

    return ClusterConfig.from_dict(name=cluster_name, cluster=clusters[cluster_name])
