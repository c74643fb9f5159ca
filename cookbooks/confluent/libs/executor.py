"""Sequential, fail-fast execution of a broker restart plan."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum, auto
from time import sleep
from typing import Callable, Dict, List, Optional

from cookbooks.confluent.libs.common import ConfluentError
from cookbooks.confluent.libs.health import HealthProbe, PortCloseTimeout, PortOpenTimeout, PortState
from cookbooks.confluent.libs.inventory import Broker, ListenerPorts
from cookbooks.confluent.libs.planner import LeadershipSnapshot, RestartOrder, build_order
from cookbooks.confluent.libs.service import ServiceController, ServiceControlError, ServiceStatus

LOGGER = logging.getLogger(__name__)


class HealthCheckFailed(ConfluentError):
    """Raised when a restarted broker service is not reported as running."""


class RestartState(Enum):
    """States of the restart of a single broker."""

    IDLE = auto()
    STOPPING = auto()
    WAITING_CLOSED = auto()
    COOLING_DOWN = auto()
    STARTING = auto()
    WAITING_OPEN = auto()
    VERIFYING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


TERMINAL_STATES = (RestartState.SUCCEEDED, RestartState.FAILED)


class OutcomeKind(Enum):
    """Terminal result of a broker in a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureReason(Enum):
    """Why the restart of a broker failed."""

    PORT_CLOSE_TIMEOUT = "port close timeout"
    PORT_OPEN_TIMEOUT = "port open timeout"
    HEALTH_CHECK_FAILED = "health check failed"
    SERVICE_CONTROL_FAILED = "service control failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RestartOutcome:
    """Result of a broker in a run, together with the last state it reached."""

    broker: Broker
    kind: OutcomeKind
    state: RestartState = RestartState.IDLE
    reason: Optional[FailureReason] = None
    detail: str = ""

    @classmethod
    def succeeded(cls, broker: Broker) -> "RestartOutcome":
        """The broker was restarted and is healthy."""
        return cls(broker=broker, kind=OutcomeKind.SUCCEEDED, state=RestartState.SUCCEEDED)

    @classmethod
    def failed(cls, broker: Broker, state: RestartState, reason: FailureReason, detail: str) -> "RestartOutcome":
        """The restart of the broker failed while in the given state."""
        return cls(broker=broker, kind=OutcomeKind.FAILED, state=state, reason=reason, detail=detail)

    @classmethod
    def skipped(cls, broker: Broker, detail: str = "not attempted") -> "RestartOutcome":
        """The broker was never touched."""
        return cls(broker=broker, kind=OutcomeKind.SKIPPED, detail=detail)

    def __str__(self) -> str:
        """Human readable outcome."""
        if self.kind == OutcomeKind.FAILED and self.reason is not None:
            return f"{self.broker}: {self.kind.value} in state {self.state.name} ({self.reason.value}): {self.detail}"
        if self.kind == OutcomeKind.SKIPPED:
            return f"{self.broker}: {self.kind.value} ({self.detail})"
        return f"{self.broker}: {self.kind.value}"


@dataclass
class RunContext:
    """Facts about a run, computed once before the restarts and passed along instead of being global."""

    cluster_id: Optional[str]
    snapshots: Dict[Broker, LeadershipSnapshot]
    dry_run: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        """Whether a cancellation was requested, it's honored at state transitions."""
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request the run to stop at the next state transition."""
        self.cancel_event.set()


@dataclass(frozen=True)
class BrokerReport:
    """Read only view of a broker after a run."""

    broker: Broker
    status: Optional[ServiceStatus]
    ports: Dict[int, bool]

    @property
    def healthy(self) -> bool:
        """The service is running and every declared listener accepts connections."""
        return self.status is not None and self.status.is_running and all(self.ports.values())

    def __str__(self) -> str:
        """One line summary."""
        status = str(self.status) if self.status is not None else "unknown"
        ports = ", ".join(f"{port} {'open' if is_open else 'CLOSED'}" for port, is_open in self.ports.items())
        return f"{self.broker}: service {status}, ports: {ports}"


@dataclass
class RestartRun:
    """Outcomes of a run, in the order the brokers were handled."""

    order: RestartOrder
    cluster_id: Optional[str] = None
    outcomes: List[RestartOutcome] = field(default_factory=list)
    final_report: List[BrokerReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failure(self) -> Optional[RestartOutcome]:
        """The outcome that aborted the run, if any."""
        for outcome in self.outcomes:
            if outcome.kind == OutcomeKind.FAILED:
                return outcome
        return None

    @property
    def succeeded(self) -> bool:
        """Every broker of the plan was restarted successfully."""
        return (
            len(self.outcomes) == len(self.order)
            and all(outcome.kind == OutcomeKind.SUCCEEDED for outcome in self.outcomes)
        )

    def report(self) -> int:
        """Log the results of the run, return the exit code of the cookbook."""
        LOGGER.info("Results of the restart of cluster %s:", self.cluster_id or "with unknown id")
        for outcome in self.outcomes:
            LOGGER.info("%s", outcome)

        for broker_report in self.final_report:
            if broker_report.healthy:
                LOGGER.info("%s", broker_report)
            else:
                LOGGER.error("%s", broker_report)

        if self.succeeded:
            if all(broker_report.healthy for broker_report in self.final_report):
                LOGGER.info("All brokers were restarted successfully")
                return 0
            LOGGER.error("All brokers were restarted but the final verification found unhealthy brokers")
            return 1

        failure = self.failure
        if failure is not None:
            LOGGER.error("Run aborted, %s", failure)
        elif self.cancelled:
            LOGGER.error("Run cancelled before all brokers were restarted")
        return 1


def verify_cluster(
    brokers: List[Broker],
    service: ServiceController,
    probe: HealthProbe,
    ports: ListenerPorts,
    metrics_enabled: bool,
) -> List[BrokerReport]:
    """Probe once every declared listener and the service state of each broker.

    Nothing is retried or fixed, this only reports.
    """
    ports_to_check = [ports.primary, *ports.auxiliary, ports.metadata]
    if metrics_enabled:
        ports_to_check.append(ports.metrics)

    reports = []
    for broker in brokers:
        try:
            status: Optional[ServiceStatus] = service.status(broker)
        except ServiceControlError as error:
            LOGGER.error("Unable to get the service status of %s: %s", broker, error)
            status = None

        reports.append(
            BrokerReport(
                broker=broker,
                status=status,
                ports={port: probe.is_port_open(broker.address, port) for port in ports_to_check},
            )
        )

    return reports


class RestartExecutor:
    """Restart the brokers one at a time following a plan, stopping at the first failure.

    Each broker goes through:
        IDLE -> STOPPING -> WAITING_CLOSED -> COOLING_DOWN -> STARTING -> WAITING_OPEN -> VERIFYING
    and ends either SUCCEEDED or FAILED. No two brokers are ever mid-restart at the same time.
    """

    def __init__(
        self,
        service: ServiceController,
        probe: HealthProbe,
        ports: ListenerPorts,
        cool_down: timedelta,
        metrics_enabled: bool = False,
        leadership_refresh: Optional[Callable[[List[Broker]], Dict[Broker, int]]] = None,
    ):
        """Init.

        Arguments:
            service (`ServiceController`): used to stop, start and check the broker service.
            probe (`HealthProbe`): used to wait for the listeners to close and open.
            ports (`ListenerPorts`): the listeners of the brokers.
            cool_down (`datetime.timedelta`): pause between a broker going down and being started again,
                and between two brokers.
            metrics_enabled (bool): whether the metrics listener must be open too.
            leadership_refresh (callable, optional): if set, called with the brokers not restarted yet right
                before the first broker that held leaderships, it must return their current leadership counts.
                The remaining brokers are then re-ordered with the fresh counts.

        """
        self._service = service
        self._probe = probe
        self._ports = ports
        self._cool_down = cool_down
        self._metrics_enabled = metrics_enabled
        self._leadership_refresh = leadership_refresh

    def _sleep(self, duration: timedelta, context: RunContext) -> None:
        """A DRY-RUN aware version of time.sleep()."""
        seconds = duration.total_seconds()
        if context.dry_run:
            LOGGER.info("Would have slept for %s seconds", seconds)
        else:
            LOGGER.info("Sleeping for %s seconds", seconds)
            sleep(seconds)

    def _ports_to_open(self) -> List[int]:
        ports = [self._ports.primary, self._ports.metadata]
        if self._metrics_enabled:
            ports.append(self._ports.metrics)
        return ports

    def _step(self, broker: Broker, state: RestartState, context: RunContext) -> RestartState:
        """Do the work of the given state and return the next one."""
        if state == RestartState.IDLE:
            return RestartState.STOPPING

        if state == RestartState.STOPPING:
            # no timeout here, systemd's own stop timeout applies while the broker hands over its leaderships
            self._service.stop(broker)
            return RestartState.WAITING_CLOSED

        if state == RestartState.WAITING_CLOSED:
            self._probe.wait_for_port(broker, self._ports.primary, PortState.CLOSED)
            return RestartState.COOLING_DOWN

        if state == RestartState.COOLING_DOWN:
            # let the leader elections triggered by the shutdown propagate before the broker comes back
            self._sleep(self._cool_down, context)
            return RestartState.STARTING

        if state == RestartState.STARTING:
            self._service.start(broker)
            return RestartState.WAITING_OPEN

        if state == RestartState.WAITING_OPEN:
            for port in self._ports_to_open():
                self._probe.wait_for_port(broker, port, PortState.OPEN)
            return RestartState.VERIFYING

        if state == RestartState.VERIFYING:
            try:
                status = self._service.status(broker)
            except ServiceControlError as error:
                raise HealthCheckFailed(str(error)) from error

            if not status.is_running:
                raise HealthCheckFailed(f"{self._service.unit} is {status}, expected active (running)")
            return RestartState.SUCCEEDED

        raise ValueError(f"No transition out of state {state.name}")

    def restart_broker(self, broker: Broker, context: RunContext) -> RestartOutcome:
        """Run the restart state machine for one broker.

        A cancellation is honored before each state: before the stop was issued the broker is skipped,
        afterwards it's recorded as failed since the broker might be left down.
        """
        state = RestartState.IDLE
        while state not in TERMINAL_STATES:
            if context.cancelled:
                if state in (RestartState.IDLE, RestartState.STOPPING):
                    LOGGER.warning("Run cancelled, %s was not touched", broker)
                    return RestartOutcome.skipped(broker, detail="run cancelled")

                LOGGER.error("Run cancelled while %s was in state %s", broker, state.name)
                return RestartOutcome.failed(
                    broker, state, FailureReason.CANCELLED,
                    f"cancelled in state {state.name}, the broker might not be running",
                )

            LOGGER.info("%s: %s", broker, state.name)
            try:
                state = self._step(broker, state, context)
            except PortCloseTimeout as error:
                return RestartOutcome.failed(broker, state, FailureReason.PORT_CLOSE_TIMEOUT, str(error))
            except PortOpenTimeout as error:
                return RestartOutcome.failed(broker, state, FailureReason.PORT_OPEN_TIMEOUT, str(error))
            except HealthCheckFailed as error:
                return RestartOutcome.failed(broker, state, FailureReason.HEALTH_CHECK_FAILED, str(error))
            except ServiceControlError as error:
                return RestartOutcome.failed(broker, state, FailureReason.SERVICE_CONTROL_FAILED, str(error))

        LOGGER.info("%s: %s", broker, state.name)
        return RestartOutcome.succeeded(broker)

    def _recheck_leadership(self, remaining: List[Broker]) -> List[Broker]:
        """Re-order the brokers not restarted yet with their current leadership."""
        if self._leadership_refresh is None:
            return remaining

        counts = self._leadership_refresh(remaining)
        new_order = list(build_order(remaining, lambda broker: counts.get(broker, 0)))
        if new_order != remaining:
            LOGGER.warning(
                "Leadership moved since the plan was computed, new order for the remaining brokers: %s",
                RestartOrder(brokers=tuple(new_order)),
            )
        else:
            LOGGER.info("Leadership re-check confirmed the order of the remaining brokers")
        return new_order

    def run(self, order: RestartOrder, context: RunContext) -> RestartRun:
        """Restart all the brokers of the plan, one at a time.

        The first failure aborts the run: the brokers after it are skipped. When all the brokers succeed,
        a final read only verification of the whole plan is added to the result.
        """
        run = RestartRun(order=order, cluster_id=context.cluster_id)
        remaining = list(order)
        rechecked = self._leadership_refresh is None

        while remaining:
            if context.cancelled:
                LOGGER.warning("Run cancelled, %d brokers left", len(remaining))
                run.cancelled = True
                break

            snapshot = context.snapshots.get(remaining[0])
            if not rechecked and snapshot is not None and snapshot.is_leader:
                remaining = self._recheck_leadership(remaining)
                rechecked = True

            broker = remaining.pop(0)
            outcome = self.restart_broker(broker, context)
            run.outcomes.append(outcome)
            if outcome.kind == OutcomeKind.SKIPPED:
                run.cancelled = True
                break

            if outcome.kind == OutcomeKind.FAILED:
                LOGGER.error("Aborting the run on cluster %s: %s", context.cluster_id or "with unknown id", outcome)
                break

            LOGGER.info("%s restarted successfully", broker)
            self._sleep(self._cool_down, context)

        for broker in remaining:
            run.outcomes.append(RestartOutcome.skipped(broker))

        if run.succeeded:
            run.final_report = verify_cluster(
                list(order), self._service, self._probe, self._ports, self._metrics_enabled
            )

        return run
