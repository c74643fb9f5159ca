"""Report leadership and health of the Kafka brokers of a Confluent cluster."""
import logging

from spicerack.cookbook import CookbookBase

from cookbooks.confluent.kafka import ConfluentKafkaRunnerBase, parse_kafka_arguments
from cookbooks.confluent.libs.executor import verify_cluster
from cookbooks.confluent.libs.planner import discover_leadership, plan_restart

logger = logging.getLogger(__name__)


class ClusterStatus(CookbookBase):
    """Show, without changing anything, the state of all the brokers of a Confluent Kafka cluster.

    For each broker it reports the number of partitions it leads, the state of its systemd unit
    and whether each declared listener accepts connections. It also shows the order a rolling
    restart would use. Exits with 1 if any broker is not healthy.

    Usage example:
        cookbook confluent.kafka.cluster-status main

    """

    def argument_parser(self):
        """As specified by Spicerack API."""
        return parse_kafka_arguments(description=self.__doc__)

    def get_runner(self, args):
        """As specified by Spicerack API."""
        return ClusterStatusRunner(args, self.spicerack)


class ClusterStatusRunner(ConfluentKafkaRunnerBase):
    """Confluent Kafka cluster status runner class"""

    @property
    def runtime_description(self):
        """Return a nicely formatted string that represents the cookbook action."""
        return f"status of Kafka cluster {self.cluster.name}"

    def run(self):
        """Report on all the brokers of the cluster"""
        snapshots = discover_leadership(self.cluster.brokers, self.metadata, max_workers=self.args.discovery_workers)
        for snapshot in snapshots.values():
            cluster_id = snapshot.cluster_id or "unknown cluster"
            logger.info("%s (%s) leads %d partitions", snapshot.broker, cluster_id, snapshot.leader_partitions)

        logger.info("A rolling restart would use this order: %s", plan_restart(snapshots))

        reports = verify_cluster(
            list(self.cluster.brokers), self.service, self.probe, self.cluster.ports, self.cluster.metrics_enabled
        )
        unhealthy = [report for report in reports if not report.healthy]
        for report in reports:
            if report.healthy:
                logger.info("%s", report)
            else:
                logger.error("%s", report)

        if unhealthy:
            logger.error("%d of %d brokers are not healthy", len(unhealthy), len(reports))
            return 1

        logger.info("All %d brokers are healthy", len(reports))
        return 0
