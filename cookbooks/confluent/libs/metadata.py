"""Client for the Confluent REST v3 metadata API embedded in every broker."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from requests import Session
from requests.exceptions import RequestException
from wmflib.requests import http_session

from cookbooks.confluent.libs.common import ConfluentError
from cookbooks.confluent.libs.inventory import Broker
from cookbooks.confluent.libs.service import ServiceController

LOGGER = logging.getLogger(__name__)
DEFAULT_TIMEOUT_SECONDS = 30.0


class MetadataQueryError(ConfluentError):
    """Raised internally when a metadata query fails or returns something unexpected."""


def get_metadata_session(trust_anchor: Optional[Path], timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Session:
    """Get an HTTP session verifying the brokers certificates against the given trust anchor."""
    session = http_session("ConfluentMetadataClient", timeout=timeout, tries=2, backoff=2.0)
    if trust_anchor is not None:
        session.verify = str(trust_anchor)
    return session


class ClusterMetadataClient:
    """Query cluster identity and partition leadership of each broker.

    Failures never propagate: an unknown cluster id is returned as `None` and a leadership count
    that can't be obtained is returned as 0, the broker is then treated as holding no leadership.
    """

    def __init__(self, session: Session, port: int, service: ServiceController, scheme: str = "https"):
        """Init."""
        self._session = session
        self._port = port
        self._service = service
        self._scheme = scheme

    def _get(self, broker: Broker, path: str) -> List[Dict[str, Any]]:
        url = f"{self._scheme}://{broker.address}:{self._port}/kafka/v3{path}"
        LOGGER.debug("GET %s", url)
        try:
            response = self._session.get(url)
            response.raise_for_status()
            payload = response.json()
        except (RequestException, ValueError) as error:
            raise MetadataQueryError(f"Query to {url} failed: {error}") from error

        # the REST proxy wraps lists in {"kind": ..., "data": [...]}
        if isinstance(payload, dict):
            payload = payload.get("data")
        if not isinstance(payload, list):
            raise MetadataQueryError(f"Unexpected response from {url}: {response.text}")

        return payload

    def discover_cluster_id(self, broker: Broker) -> Optional[str]:
        """Get the id of the cluster the broker belongs to, `None` if it can't be determined."""
        try:
            clusters = self._get(broker, "/clusters")
            cluster_id = clusters[0]["cluster_id"]
        except (MetadataQueryError, IndexError, KeyError, TypeError) as error:
            LOGGER.warning("Unable to discover the cluster id from %s, assuming it holds no leadership: %s",
                           broker, error)
            return None

        LOGGER.debug("%s is part of cluster %s", broker, cluster_id)
        return str(cluster_id)

    def count_leader_partitions(self, broker: Broker, cluster_id: Optional[str]) -> int:
        """Count the partitions the broker is currently the elected leader of, 0 if that can't be determined."""
        if cluster_id is None:
            return 0

        if not self._service.is_active(broker):
            LOGGER.warning("%s is not active, assuming it holds no leadership", broker)
            return 0

        try:
            replicas = self._get(broker, f"/clusters/{cluster_id}/brokers/{broker.broker_id}/partition-replicas")
            leaders = sum(1 for replica in replicas if replica.get("is_leader") is True)
        except (MetadataQueryError, AttributeError) as error:
            LOGGER.warning("Unable to count the leader partitions of %s, assuming 0: %s", broker, error)
            return 0

        LOGGER.info("%s is the leader of %d partitions", broker, leaders)
        return leaders
