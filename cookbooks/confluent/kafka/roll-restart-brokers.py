"""Leader aware rolling restart of all the Kafka brokers of a Confluent cluster."""
import logging
import signal
from argparse import ArgumentTypeError, Namespace
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, List

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase
from wmflib.interactive import ask_confirmation, ensure_shell_is_durable

from cookbooks.confluent.kafka import ConfluentKafkaRunnerBase, parse_kafka_arguments
from cookbooks.confluent.libs.executor import RestartExecutor, RunContext
from cookbooks.confluent.libs.inventory import Broker
from cookbooks.confluent.libs.planner import discover_leadership, plan_restart

logger = logging.getLogger(__name__)
MIN_COOL_DOWN_SECONDS = 10


class RollRestartBrokers(CookbookBase):
    """Restart all the Kafka brokers of a Confluent cluster, one at a time, leaders last.

    The cookbook first asks every broker which partitions it currently leads, then restarts
    the brokers leading no partition (in inventory order) followed by the ones leading
    partitions, from the most to the fewest leaderships. For each broker:
    1) Stop the broker service, the broker hands over its leaderships on shutdown
    2) Wait for the primary listener to close
    3) Sleep for --cool-down seconds, to let leader elections propagate
    4) Start the broker service
    5) Wait for the primary, metadata and (if enabled) metrics listeners to open
    6) Check that systemd reports the service as active (running)
    7) Sleep for --cool-down seconds before the next broker

    The first broker failing any of the steps aborts the whole run, no other broker is touched.
    Once all brokers are restarted every listener and service is checked one last time.

    Usage example:
        cookbook confluent.kafka.roll-restart-brokers --reason "Apply new JVM settings" main
        cookbook confluent.kafka.roll-restart-brokers --reason "Upgrade" --cool-down 120 --exclude 4 main

    """

    def argument_parser(self):
        """As specified by Spicerack API."""
        parser = parse_kafka_arguments(description=self.__doc__)

        def validate_cool_down(cool_down):
            cool_down = float(cool_down)
            if cool_down < MIN_COOL_DOWN_SECONDS:
                raise ArgumentTypeError(f"cool down can not be smaller than {MIN_COOL_DOWN_SECONDS}")
            return cool_down

        parser.add_argument("--reason", required=True, help="Administrative Reason")
        parser.add_argument("--task-id", help="task id for the change")
        parser.add_argument(
            "--restart-timeout",
            type=float,
            default=ConfluentKafkaRunnerBase.restart_timeout_seconds,
            help="Seconds to wait for each listener of a broker to close or open.",
        )
        parser.add_argument(
            "--cool-down",
            type=validate_cool_down,
            default=60.0,
            help="Seconds to sleep after a broker is down and after each broker restart.",
        )
        parser.add_argument(
            "--no-leadership-recheck",
            action="store_true",
            help="Do not query the leaderships again before restarting the first broker leading partitions.",
        )
        return parser

    def get_runner(self, args):
        """As specified by Spicerack API."""
        return RollRestartBrokersRunner(args, self.spicerack)


class RollRestartBrokersRunner(ConfluentKafkaRunnerBase):
    """Confluent Kafka brokers roll restart runner class"""

    def __init__(self, args: Namespace, spicerack: Spicerack):
        """Initialize the runner."""
        ensure_shell_is_durable()
        super().__init__(args, spicerack)
        self.admin_reason = spicerack.admin_reason(args.reason, task_id=args.task_id)
        self.executor = RestartExecutor(
            service=self.service,
            probe=self.probe,
            ports=self.cluster.ports,
            cool_down=timedelta(seconds=args.cool_down),
            metrics_enabled=self.cluster.metrics_enabled,
            leadership_refresh=None if args.no_leadership_recheck else self._leadership_counts,
        )

    @property
    def runtime_description(self):
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for Kafka cluster {self.cluster.name}: {self.admin_reason.reason}"

    def _leadership_counts(self, brokers: List[Broker]) -> Dict[Broker, int]:
        snapshots = discover_leadership(brokers, self.metadata, max_workers=self.args.discovery_workers)
        return {broker: snapshot.leader_partitions for broker, snapshot in snapshots.items()}

    @contextmanager
    def _cancel_on_interrupt(self, context: RunContext):
        """Turn Ctrl+C into a cancellation honored at the next state transition."""
        def _handler(signum, frame):  # pylint: disable=unused-argument
            logger.warning("Cancellation requested, the run will stop at the next state transition")
            context.cancel()

        previous_handler = signal.signal(signal.SIGINT, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous_handler)

    def run(self):
        """Restart all the Kafka brokers of the cluster"""
        snapshots = discover_leadership(self.cluster.brokers, self.metadata, max_workers=self.args.discovery_workers)
        for snapshot in snapshots.values():
            logger.info("%s leads %d partitions", snapshot.broker, snapshot.leader_partitions)

        order = plan_restart(snapshots)
        ask_confirmation(
            f"The brokers of {self.cluster.name} will be restarted one at a time in this order: {order}. "
            "Please check that all brokers are up and in sync before proceeding."
        )

        cluster_ids = [snapshot.cluster_id for snapshot in snapshots.values() if snapshot.cluster_id is not None]
        context = RunContext(
            cluster_id=cluster_ids[0] if cluster_ids else None,
            snapshots=snapshots,
            dry_run=self.dry_run,
        )
        with self._cancel_on_interrupt(context):
            result = self.executor.run(order, context)

        return result.report()
