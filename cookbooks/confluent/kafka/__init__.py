"""Confluent Kafka Clusters Operations

Kafka brokers are restarted one at a time, never more than one broker down at the
same time: every partition is replicated across multiple brokers and losing more
than one replica at once risks availability (and, for some producers settings,
consistency).

As refresh:
* Kafka manages topics, and every topic can be split into multiple partitions.
  Every partition is then replicated across multiple brokers.
* For every partition one of the brokers holding a replica is the elected leader:
  producers and consumers are directed to it.
* When a broker is stopped it performs a controlled shutdown: before the process
  exits its leaderships are handed over to other in-sync replicas.

The rolling restart is leader aware: the brokers that are not leading any partition
are restarted first, while the leaderships are stable, the ones leading partitions
are restarted last, starting from the one leading the most. This way only the
last shutdowns move leaderships around, avoiding a storm of leader elections.
"""

import logging
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from datetime import timedelta
from typing import List

from spicerack import Spicerack
from spicerack.cookbook import CookbookRunnerBase

from cookbooks import ArgparseFormatter
from cookbooks.confluent.libs.health import HealthProbe
from cookbooks.confluent.libs.inventory import load_cluster_config
from cookbooks.confluent.libs.metadata import ClusterMetadataClient, get_metadata_session
from cookbooks.confluent.libs.planner import DEFAULT_DISCOVERY_WORKERS
from cookbooks.confluent.libs.service import ServiceController

__owner_team__ = "Streaming Platform"
logger = logging.getLogger(__name__)


def parse_broker_ids(value: str) -> List[int]:
    """Parse a comma separated list of broker ids, as given on the command line."""
    try:
        return [int(broker_id) for broker_id in value.split(",") if broker_id.strip()]
    except ValueError as error:
        raise ArgumentTypeError(f"'{value}' is not a comma separated list of broker ids") from error


def parse_kafka_arguments(description: str) -> ArgumentParser:
    """Arguments shared by all the Confluent Kafka cookbooks."""
    parser = ArgumentParser(description=description, formatter_class=ArgparseFormatter)
    parser.add_argument("cluster", help="The name of the Kafka cluster to work on, as in confluent.yaml.")
    parser.add_argument(
        "--exclude",
        type=parse_broker_ids,
        default=[],
        help="Comma separated list of broker ids to leave out, e.g. 1,4",
    )
    parser.add_argument(
        "--discovery-workers",
        type=int,
        default=DEFAULT_DISCOVERY_WORKERS,
        help="How many brokers to query for their leadership in parallel.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds between two probes of a broker listener.",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=5.0,
        help="Seconds before a connection attempt to a broker listener is considered failed.",
    )
    return parser


class ConfluentKafkaRunnerBase(CookbookRunnerBase):
    """Load the cluster configuration and build the clients every Kafka cookbook needs."""

    restart_timeout_seconds = 300.0

    def __init__(self, args: Namespace, spicerack: Spicerack):
        """Initialize the runner."""
        self.args = args
        self.dry_run = spicerack.dry_run
        self.cluster = load_cluster_config(spicerack.config_dir, args.cluster).without(args.exclude)
        if args.exclude:
            logger.info("Leaving out brokers %s", ", ".join(str(broker_id) for broker_id in args.exclude))

        self.service = ServiceController(remote=spicerack.remote(), unit=self.cluster.unit)
        self.probe = HealthProbe(
            timeout=timedelta(seconds=getattr(args, "restart_timeout", self.restart_timeout_seconds)),
            poll_interval=timedelta(seconds=args.poll_interval),
            connect_timeout=timedelta(seconds=args.connect_timeout),
            dry_run=self.dry_run,
        )
        self.metadata = ClusterMetadataClient(
            session=get_metadata_session(self.cluster.trust_anchor),
            port=self.cluster.ports.metadata,
            service=self.service,
        )
