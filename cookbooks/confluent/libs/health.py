"""Bounded waits on the TCP listeners of a broker."""
from __future__ import annotations

import logging
import socket
from datetime import timedelta
from math import ceil
from time import monotonic
from typing import Optional

from wmflib.decorators import retry

from cookbooks.confluent.libs.common import ArgparsableEnum, ConfluentError
from cookbooks.confluent.libs.inventory import Broker

LOGGER = logging.getLogger(__name__)


class PortState(ArgparsableEnum):
    """States a listener can be waited for."""

    OPEN = "open"
    CLOSED = "closed"


class PortStateMismatch(ConfluentError):
    """Raised by a single probe when the port is not (yet) in the desired state."""


class PortStateTimeout(ConfluentError):
    """Raised when a port did not reach the desired state in time."""

    def __init__(self, broker: Broker, port: int, state: PortState, timeout: timedelta):
        """Keep the details around for the restart report."""
        super().__init__(
            f"Port {port} of {broker} did not become {state} within {int(timeout.total_seconds())} seconds"
        )
        self.broker = broker
        self.port = port
        self.state = state


class PortCloseTimeout(PortStateTimeout):
    """Raised when a port did not close in time."""


class PortOpenTimeout(PortStateTimeout):
    """Raised when a port did not open in time."""


class HealthProbe:
    """Poll the listeners of a broker until they reach a state, or give up after a timeout.

    Both the timeout and the interval between probes are explicit: there are at most
    `ceil(timeout / poll_interval)` probes, with at least one probe. The timeout is a deadline on the
    whole wait, each connection attempt is cut short to the time left before it.
    """

    def __init__(
        self,
        timeout: timedelta,
        poll_interval: timedelta,
        connect_timeout: timedelta = timedelta(seconds=5),
        dry_run: bool = False,
    ):
        """Init."""
        if poll_interval.total_seconds() <= 0:
            raise ValueError(f"The poll interval must be positive, got {poll_interval}")

        self.timeout = timeout
        self.poll_interval = poll_interval
        self.connect_timeout = connect_timeout
        self._dry_run = dry_run

    def is_port_open(self, host: str, port: int, connect_timeout: Optional[timedelta] = None) -> bool:
        """Whether a TCP connection to the given port is accepted.

        The connection attempt gives up after `connect_timeout`, by default the one of the probe.
        """
        if connect_timeout is None:
            connect_timeout = self.connect_timeout

        try:
            with socket.create_connection((host, port), timeout=connect_timeout.total_seconds()):
                return True
        except OSError:
            return False

    def _timeout_error(self, broker: Broker, port: int, state: PortState) -> PortStateTimeout:
        timeout_class = PortOpenTimeout if state == PortState.OPEN else PortCloseTimeout
        return timeout_class(broker=broker, port=port, state=state, timeout=self.timeout)

    def _check_port_state(self, broker: Broker, port: int, state: PortState, deadline: float) -> None:
        remaining = deadline - monotonic()
        if remaining <= 0:
            raise self._timeout_error(broker, port, state)

        # connection attempts never outlive the deadline
        connect_timeout = min(self.connect_timeout, timedelta(seconds=remaining))
        is_open = self.is_port_open(broker.address, port, connect_timeout=connect_timeout)
        if is_open == (state == PortState.OPEN):
            return

        if monotonic() + self.poll_interval.total_seconds() > deadline:
            raise self._timeout_error(broker, port, state)

        raise PortStateMismatch(f"Port {port} of {broker} is not {state} yet")

    def wait_for_port(self, broker: Broker, port: int, state: PortState) -> None:
        """Block until the port of the broker is in the given state, for at most the probe timeout.

        Raises:
            PortCloseTimeout: if waiting for the port to close timed out.
            PortOpenTimeout: if waiting for the port to open timed out.

        """
        if self._dry_run:
            LOGGER.info("Would have waited up to %s for port %d of %s to be %s", self.timeout, port, broker, state)
            return

        tries = max(1, ceil(self.timeout.total_seconds() / self.poll_interval.total_seconds()))
        deadline = monotonic() + self.timeout.total_seconds()
        LOGGER.info("Waiting up to %s for port %d of %s to be %s", self.timeout, port, broker, state)
        check = retry(
            tries=tries,
            delay=self.poll_interval,
            backoff_mode="constant",
            exceptions=(PortStateMismatch,),
        )(self._check_port_state)
        try:
            check(broker, port, state, deadline)
        except PortStateMismatch as error:
            raise self._timeout_error(broker, port, state) from error

        LOGGER.info("Port %d of %s is %s", port, broker, state)
