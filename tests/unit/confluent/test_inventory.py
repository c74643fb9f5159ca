from pathlib import Path
from typing import Any, Dict

import pytest

from cookbooks.confluent.libs.common import TestUtils
from cookbooks.confluent.libs.inventory import (
    Broker,
    ClusterConfig,
    InventoryError,
    ListenerPorts,
    load_cluster_config,
)

CONFIG = """
clusters:
  main:
    service_name: confluent-server
    metrics_enabled: true
    trust_anchor: /etc/ssl/certs/confluent-ca.pem
    ports:
      primary: 9092
      auxiliary: [9093, 9094]
      metadata: 8090
      metrics: 7770
    brokers:
      - id: 1
        address: kafka1001.example.org
        rack: rack-a
      - id: 2
        address: kafka1002.example.org
        rack: rack-b
      - id: 3
        address: kafka1003.example.org
  test:
    brokers:
      - id: 101
        address: kafka-test1001.example.org
"""


def parametrize(params: Dict[str, Any]):
    def decorator(decorated):
        return pytest.mark.parametrize(**TestUtils.to_parametrize(params))(decorated)

    return decorator


def test_from_dict_defaults():
    cluster = ClusterConfig.from_dict(name="test", cluster={"brokers": [{"id": 5, "address": "kafka1005.example.org"}]})

    assert cluster.brokers == (Broker(broker_id=5, address="kafka1005.example.org"),)
    assert cluster.ports == ListenerPorts(primary=9092, auxiliary=(9093,), metadata=8090, metrics=8080)
    assert cluster.metrics_enabled is False
    assert cluster.unit == "confluent-server.service"
    assert cluster.trust_anchor is None


@parametrize(
    {
        "Auxiliary listeners can be a single port.": {
            "ports": {"auxiliary": 9095},
            "expected_ports": ListenerPorts(auxiliary=(9095,)),
        },
        "Auxiliary listeners can be empty.": {
            "ports": {"primary": "19092", "auxiliary": []},
            "expected_ports": ListenerPorts(primary=19092, auxiliary=()),
        },
    }
)
def test_listener_ports_from_dict(ports: Dict[str, Any], expected_ports: ListenerPorts):
    assert ListenerPorts.from_dict(ports) == expected_ports


def test_listener_ports_from_dict_rejects_garbage():
    with pytest.raises(InventoryError):
        ListenerPorts.from_dict({"metadata": "https"})


@parametrize(
    {
        "No brokers at all.": {"cluster": {"brokers": []}},
        "Duplicated broker ids.": {
            "cluster": {
                "brokers": [
                    {"id": 1, "address": "kafka1001.example.org"},
                    {"id": 1, "address": "kafka1002.example.org"},
                ]
            }
        },
        "Broker without address.": {"cluster": {"brokers": [{"id": 1}]}},
        "Broker with a non numeric id.": {"cluster": {"brokers": [{"id": "one", "address": "kafka1001.example.org"}]}},
        "Broker that is not a mapping.": {"cluster": {"brokers": ["kafka1001.example.org"]}},
    }
)
def test_from_dict_rejects_bad_inventories(cluster: Dict[str, Any]):
    with pytest.raises(InventoryError):
        ClusterConfig.from_dict(name="broken", cluster=cluster)


def test_unit_is_not_suffixed_twice():
    cluster = ClusterConfig.from_dict(
        name="test",
        cluster={"service_name": "kafka.service", "brokers": [{"id": 1, "address": "kafka1001.example.org"}]},
    )

    assert cluster.unit == "kafka.service"


def _write_config(config_dir: Path) -> Path:
    (config_dir / "confluent.yaml").write_text(CONFIG)
    return config_dir


def test_load_cluster_config(tmp_path):
    cluster = load_cluster_config(_write_config(tmp_path), "main")

    assert cluster.name == "main"
    assert [broker.broker_id for broker in cluster.brokers] == [1, 2, 3]
    assert cluster.brokers[0].rack == "rack-a"
    assert cluster.brokers[2].rack is None
    assert cluster.ports == ListenerPorts(primary=9092, auxiliary=(9093, 9094), metadata=8090, metrics=7770)
    assert cluster.metrics_enabled is True
    assert cluster.trust_anchor == Path("/etc/ssl/certs/confluent-ca.pem")


def test_load_cluster_config_unknown_cluster(tmp_path):
    with pytest.raises(InventoryError, match="Cluster staging not found"):
        load_cluster_config(_write_config(tmp_path), "staging")


def test_load_cluster_config_missing_file(tmp_path):
    with pytest.raises(InventoryError):
        load_cluster_config(tmp_path, "main")


def test_without_removes_the_given_brokers(tmp_path):
    cluster = load_cluster_config(_write_config(tmp_path), "main")

    reduced = cluster.without([2])

    assert [broker.broker_id for broker in reduced.brokers] == [1, 3]
    assert reduced.ports == cluster.ports
    assert reduced.unit == cluster.unit
    # the full configuration is untouched
    assert len(cluster.brokers) == 3


@parametrize(
    {
        "Excluding an unknown broker.": {"broker_ids": [7]},
        "Excluding every broker.": {"broker_ids": [1, 2, 3]},
    }
)
def test_without_rejects_bad_exclusions(tmp_path, broker_ids):
    cluster = load_cluster_config(_write_config(tmp_path), "main")

    with pytest.raises(InventoryError):
        cluster.without(broker_ids)
