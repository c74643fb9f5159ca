from datetime import timedelta
from typing import Any, Dict, List, Type
from unittest import mock

import pytest

from cookbooks.confluent.libs.common import TestUtils
from cookbooks.confluent.libs.health import HealthProbe, PortCloseTimeout, PortOpenTimeout, PortState
from cookbooks.confluent.libs.inventory import Broker

BROKER = Broker(broker_id=3, address="kafka1003.example.org", rack="rack-c")


def parametrize(params: Dict[str, Any]):
    def decorator(decorated):
        return pytest.mark.parametrize(**TestUtils.to_parametrize(params))(decorated)

    return decorator


def _get_probe(dry_run: bool = False) -> HealthProbe:
    return HealthProbe(timeout=timedelta(seconds=30), poll_interval=timedelta(seconds=5), dry_run=dry_run)


@parametrize(
    {
        "Closing right away.": {
            "state": PortState.CLOSED,
            "probes": [False],
        },
        "Closing after a few probes.": {
            "state": PortState.CLOSED,
            "probes": [True, True, True, False],
        },
        "Opening right away.": {
            "state": PortState.OPEN,
            "probes": [True],
        },
        "Opening on the last probe.": {
            "state": PortState.OPEN,
            "probes": [False, False, False, False, False, True],
        },
    }
)
@mock.patch("wmflib.decorators.time.sleep")
def test_wait_for_port_happy_path(_, state: PortState, probes: List[bool]):
    probe = _get_probe()

    with mock.patch.object(HealthProbe, "is_port_open", side_effect=probes) as is_port_open:
        probe.wait_for_port(BROKER, 9092, state)

    assert is_port_open.call_count == len(probes)
    is_port_open.assert_called_with("kafka1003.example.org", 9092, connect_timeout=timedelta(seconds=5))


@parametrize(
    {
        "A port that never closes.": {
            "state": PortState.CLOSED,
            "always_open": True,
            "expected_exception": PortCloseTimeout,
        },
        "A port that never opens.": {
            "state": PortState.OPEN,
            "always_open": False,
            "expected_exception": PortOpenTimeout,
        },
    }
)
@mock.patch("wmflib.decorators.time.sleep")
def test_wait_for_port_times_out(_, state: PortState, always_open: bool, expected_exception: Type[Exception]):
    probe = _get_probe()

    with mock.patch.object(HealthProbe, "is_port_open", return_value=always_open) as is_port_open:
        with pytest.raises(expected_exception) as error:
            probe.wait_for_port(BROKER, 8090, state)

    # 30s timeout polled every 5s
    assert is_port_open.call_count == 6
    assert error.value.port == 8090
    assert error.value.broker == BROKER
    assert error.value.state == state


@mock.patch("cookbooks.confluent.libs.health.monotonic", return_value=1000.0)
@mock.patch("wmflib.decorators.time.sleep")
def test_wait_for_port_probes_at_least_once(*_):
    probe = HealthProbe(timeout=timedelta(seconds=1), poll_interval=timedelta(seconds=5))

    with mock.patch.object(HealthProbe, "is_port_open", return_value=True) as is_port_open:
        with pytest.raises(PortCloseTimeout):
            probe.wait_for_port(BROKER, 9092, PortState.CLOSED)

    # the connection attempt is cut to the time left
    is_port_open.assert_called_once_with("kafka1003.example.org", 9092, connect_timeout=timedelta(seconds=1))


class FakeClock:
    """Monotonic clock moved forward only by the sleeps and the connection attempts."""

    def __init__(self):
        self.now = 100.0

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def hanging_connection(self, address, timeout):
        self.now += timeout
        raise TimeoutError(f"timed out connecting to {address}")


@parametrize(
    {
        "A single attempt as long as the whole timeout.": {
            "timeout": 2,
            "poll_interval": 1,
            "connect_timeout": 2,
            "expected_connect_timeouts": [2.0],
        },
        "The last attempt is cut to the time left.": {
            "timeout": 30,
            "poll_interval": 5,
            "connect_timeout": 4,
            "expected_connect_timeouts": [4.0, 4.0, 4.0, 3.0],
        },
    }
)
def test_wait_for_port_hanging_connections_respect_the_timeout(
    timeout: int, poll_interval: int, connect_timeout: int, expected_connect_timeouts: List[float]
):
    clock = FakeClock()
    probe = HealthProbe(
        timeout=timedelta(seconds=timeout),
        poll_interval=timedelta(seconds=poll_interval),
        connect_timeout=timedelta(seconds=connect_timeout),
    )

    with mock.patch("cookbooks.confluent.libs.health.monotonic", side_effect=clock.monotonic), mock.patch(
        "wmflib.decorators.time.sleep", side_effect=clock.sleep
    ), mock.patch(
        "cookbooks.confluent.libs.health.socket.create_connection", side_effect=clock.hanging_connection
    ) as create_connection:
        with pytest.raises(PortOpenTimeout):
            probe.wait_for_port(BROKER, 9092, PortState.OPEN)

    assert clock.now - 100.0 <= timeout
    assert [call[1]["timeout"] for call in create_connection.call_args_list] == expected_connect_timeouts


def test_wait_for_port_dry_run_does_not_probe():
    probe = _get_probe(dry_run=True)

    with mock.patch.object(HealthProbe, "is_port_open") as is_port_open:
        probe.wait_for_port(BROKER, 9092, PortState.OPEN)

    is_port_open.assert_not_called()


def test_poll_interval_must_be_positive():
    with pytest.raises(ValueError):
        HealthProbe(timeout=timedelta(seconds=30), poll_interval=timedelta(seconds=0))


@mock.patch("cookbooks.confluent.libs.health.socket.create_connection")
def test_is_port_open_when_the_connection_is_accepted(create_connection):
    probe = HealthProbe(
        timeout=timedelta(seconds=30), poll_interval=timedelta(seconds=5), connect_timeout=timedelta(seconds=2)
    )

    assert probe.is_port_open("kafka1003.example.org", 9092) is True
    create_connection.assert_called_once_with(("kafka1003.example.org", 9092), timeout=2.0)


@parametrize(
    {
        "Connection refused.": {"error": ConnectionRefusedError(111, "Connection refused")},
        "Connection timed out.": {"error": TimeoutError("timed out")},
        "Unknown host.": {"error": OSError(-2, "Name or service not known")},
    }
)
def test_is_port_open_when_the_connection_fails(error: Exception):
    probe = _get_probe()

    with mock.patch("cookbooks.confluent.libs.health.socket.create_connection", side_effect=error):
        assert probe.is_port_open("kafka1003.example.org", 9092) is False
