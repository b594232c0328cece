import pytest

from kvr.labels import component_labels, parse_store_address, pod_name, pod_ordinal, selector_string


def test_parse_store_address_owned():
    addr = parse_store_address("basic-tikv-2.basic-tikv-peer.default.svc:20160")
    assert addr is not None
    assert addr.pod_name == "basic-tikv-2"
    assert addr.cluster == "basic"
    assert addr.kind == "tikv"
    assert addr.ordinal == 2
    assert addr.port == 20160
    assert addr.host == "basic-tikv-2.basic-tikv-peer.default.svc"
    assert addr.owned_by("basic", "default")


def test_parse_store_address_with_cluster_domain_and_dashed_name():
    addr = parse_store_address("my-kv-tikv-10.my-kv-tikv-peer.prod.svc.cluster.local:20160")
    assert addr is not None
    assert addr.cluster == "my-kv"
    assert addr.ordinal == 10
    assert addr.host == "my-kv-tikv-10.my-kv-tikv-peer.prod.svc.cluster.local"
    assert addr.owned_by("my-kv", "prod")
    assert not addr.owned_by("my-kv", "default")


@pytest.mark.parametrize(
    "address",
    [
        "10.0.0.7:20160",
        "basic-tikv-0.basic-tikv-peer.default:20160",
        "basic-tikv-0.basic-tikv-peer.default.svc",
        "basic-tikv-x.basic-tikv-peer.default.svc:20160",
        "tikv-0.basic-tikv-peer.default.svc:20160",
        "",
    ],
)
def test_parse_store_address_rejects_other_forms(address):
    assert parse_store_address(address) is None


def test_foreign_cluster_is_not_owned():
    addr = parse_store_address("other-tikv-0.other-tikv-peer.default.svc:20160")
    assert addr is not None
    assert not addr.owned_by("basic", "default")

    # right pod name but some other service
    addr = parse_store_address("basic-tikv-0.external.default.svc:20160")
    assert not addr.owned_by("basic", "default")


def test_naming_helpers():
    assert pod_name("basic", 3) == "basic-tikv-3"
    assert pod_ordinal("basic-tikv-3") == 3
    assert pod_ordinal("basic-tikv") is None
    labels = component_labels("basic")
    assert labels["app.kubernetes.io/instance"] == "basic"
    assert selector_string({"b": "2", "a": "1"}) == "a=1,b=2"
