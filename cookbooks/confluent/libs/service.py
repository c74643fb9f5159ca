"""Control of the systemd unit running a Kafka broker."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from spicerack.remote import Remote, RemoteExecutionError, RemoteHosts

from cookbooks.confluent.libs.common import ConfluentError, run_one_raw
from cookbooks.confluent.libs.inventory import Broker

LOGGER = logging.getLogger(__name__)
SYSTEMCTL = "/bin/systemctl"


class ServiceControlError(ConfluentError):
    """Raised when the service manager on a broker host can't be driven or queried."""


@dataclass(frozen=True)
class ServiceStatus:
    """Snapshot of the state systemd reports for a unit."""

    active_state: str
    sub_state: str

    @classmethod
    def from_systemctl_show(cls, raw_output: str) -> "ServiceStatus":
        """Parse the output of `systemctl show --property ActiveState --property SubState`.

        Example of output:
        ```
        ActiveState=active
        SubState=running
        ```
        """
        properties = {}
        for line in raw_output.splitlines():
            key, sep, value = line.strip().partition("=")
            if sep:
                properties[key] = value

        try:
            return cls(active_state=properties["ActiveState"], sub_state=properties["SubState"])
        except KeyError as error:
            raise ServiceControlError(f"Unable to parse the unit status from:\n{raw_output}") from error

    @property
    def is_running(self) -> bool:
        """The unit is healthy only if it's active and its process is running, one of the two is not enough."""
        return self.active_state == "active" and self.sub_state == "running"

    def __str__(self) -> str:
        """Same format systemctl status uses."""
        return f"{self.active_state} ({self.sub_state})"


class ServiceController:
    """Start, stop and inspect the broker service on a single host at a time."""

    def __init__(self, remote: Remote, unit: str):
        """Init."""
        self._remote = remote
        self.unit = unit

    def _hosts(self, broker: Broker) -> RemoteHosts:
        return self._remote.query(f"D{{{broker.address}}}")

    def _systemctl(self, broker: Broker, action: str) -> None:
        LOGGER.info("Running systemctl %s %s on %s", action, self.unit, broker)
        try:
            run_one_raw(
                command=[SYSTEMCTL, action, self.unit],
                node=self._hosts(broker),
                print_output=False,
                print_progress_bars=False,
            )
        except RemoteExecutionError as error:
            raise ServiceControlError(f"Failed to {action} {self.unit} on {broker}: {error}") from error

    def start(self, broker: Broker) -> None:
        """Start the broker service, returns as soon as systemd accepted the request."""
        self._systemctl(broker, "start")

    def stop(self, broker: Broker) -> None:
        """Stop the broker service.

        The broker performs a controlled shutdown, handing over its leaderships before the process exits.
        """
        self._systemctl(broker, "stop")

    def status(self, broker: Broker) -> ServiceStatus:
        """Get the current systemd state of the broker service."""
        try:
            raw_output = run_one_raw(
                command=[SYSTEMCTL, "show", "--property", "ActiveState", "--property", "SubState", self.unit],
                node=self._hosts(broker),
                is_safe=True,
                print_output=False,
                print_progress_bars=False,
            )
        except RemoteExecutionError as error:
            raise ServiceControlError(f"Failed to get the status of {self.unit} on {broker}: {error}") from error

        status = ServiceStatus.from_systemctl_show(raw_output)
        LOGGER.debug("%s: %s is %s", broker, self.unit, status)
        return status

    def is_active(self, broker: Broker) -> bool:
        """Whether the broker service is up, any failure to tell counts as not active."""
        try:
            return self.status(broker).is_running
        except ServiceControlError as error:
            LOGGER.warning(
                "Unable to get the status of %s on %s, considering it not active: %s", self.unit, broker, error
            )
            return False
