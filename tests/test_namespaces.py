import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import namespaces
from config import InjectConfig
from exc import ConfigurationError, RegistryError, RegistryUnavailable
from models import Namespace
from namespaces import NamespaceReconciler, NamespaceStatus

from conftest import FakeRegistry


@pytest.mark.parametrize(
    "namespace,allow,deny,expected",
    [
        ("web", {"*"}, set(), True),
        ("web", {"web"}, set(), True),
        ("web", {"other"}, set(), False),
        ("web", set(), set(), False),
        ("web", {"*"}, {"web"}, False),
        ("web", {"web"}, {"web"}, False),
        ("web", {"*"}, {"*"}, False),
        ("web", {"*"}, {"other"}, True),
    ],
)
def test_in_scope(namespace, allow, deny, expected):
    assert namespaces.in_scope(namespace, frozenset(allow), frozenset(deny)) is expected


def test_validate_patterns():
    namespaces.validate_patterns(["*", "default", "team-a"])

    for bad in ["", "Team_A", "web*", "-web"]:
        with pytest.raises(ConfigurationError):
            namespaces.validate_patterns([bad])


@pytest.mark.parametrize("source", ["default", "dest", "kube-system", "abcd"])
def test_resolve_without_mirroring(source):
    config = InjectConfig(enable_namespaces=True, consul_destination_namespace="fixed")
    assert namespaces.resolve(source, config) == "fixed"


@pytest.mark.parametrize("prefix", ["", "k8s-"])
@pytest.mark.parametrize("source", ["default", "dest"])
def test_resolve_with_mirroring(source, prefix):
    config = InjectConfig(
        enable_namespaces=True,
        enable_k8s_ns_mirroring=True,
        k8s_ns_mirroring_prefix=prefix,
        consul_destination_namespace="default",
    )
    assert namespaces.resolve(source, config) == prefix + source


def test_resolve_namespaces_disabled():
    config = InjectConfig(enable_k8s_ns_mirroring=True, consul_destination_namespace="dest")
    assert namespaces.resolve("dest", config) == ""


def test_ensure_default_never_creates(registry):
    config = InjectConfig(
        enable_namespaces=True, cross_namespace_acl_policy="cross-namespace-policy"
    )
    status = NamespaceReconciler(registry).ensure_exists("default", config)

    assert status == NamespaceStatus.PRESENT
    assert registry.creates == []
    assert registry.namespaces["default"].ACLs is None
    assert registry.namespaces["default"].Description == "Builtin Default Namespace"


def test_ensure_default_unreadable(registry):
    del registry.namespaces["default"]

    with pytest.raises(RegistryUnavailable):
        NamespaceReconciler(registry).ensure_exists("default", InjectConfig())
    assert registry.creates == []


def test_ensure_creates_namespace(registry):
    status = NamespaceReconciler(registry).ensure_exists("dest", InjectConfig())

    assert status == NamespaceStatus.CREATED
    ns = registry.namespaces["dest"]
    assert ns.Description == "Auto-generated by consul-k8s"
    assert ns.Meta == {"external-source": "kubernetes"}
    assert ns.ACLs is None


def test_ensure_attaches_cross_namespace_policy(registry):
    config = InjectConfig(cross_namespace_acl_policy="cross-namespace-policy")
    NamespaceReconciler(registry).ensure_exists("dest", config)

    policies = registry.namespaces["dest"].ACLs.PolicyDefaults
    assert len(policies) == 1
    assert policies[0].Name == "cross-namespace-policy"


def test_ensure_leaves_existing_namespace_alone(registry):
    registry.namespaces["dest"] = Namespace(Name="dest", Description="managed elsewhere")
    config = InjectConfig(cross_namespace_acl_policy="cross-namespace-policy")

    status = NamespaceReconciler(registry).ensure_exists("dest", config)

    assert status == NamespaceStatus.PRESENT
    assert registry.creates == []
    assert registry.namespaces["dest"].Description == "managed elsewhere"
    assert registry.namespaces["dest"].ACLs is None


def test_ensure_read_failure():
    class BrokenRegistry(FakeRegistry):
        def read_namespace(self, name, timeout=None):
            raise RegistryError("connection refused")

    with pytest.raises(RegistryUnavailable, match="connection refused"):
        NamespaceReconciler(BrokenRegistry()).ensure_exists("dest", InjectConfig())


def test_ensure_create_failure():
    class DeniedRegistry(FakeRegistry):
        def create_namespace(self, namespace, timeout=None):
            raise RegistryError("403 Permission denied")

    with pytest.raises(RegistryUnavailable, match="Permission denied"):
        NamespaceReconciler(DeniedRegistry()).ensure_exists("dest", InjectConfig())


def test_ensure_lost_create_race_is_success(registry):
    class LateRegistry(FakeRegistry):
        # Another request creates the namespace between our read and create.
        def read_namespace(self, name, timeout=None):
            ns = super().read_namespace(name, timeout)
            self.namespaces.setdefault(name, Namespace(Name=name))
            return ns

    status = NamespaceReconciler(LateRegistry()).ensure_exists("dest", InjectConfig())
    assert status == NamespaceStatus.PRESENT


def test_ensure_concurrent_creates():
    class RacingRegistry(FakeRegistry):
        def __init__(self, parties):
            super().__init__()
            self.barrier = threading.Barrier(parties, timeout=5)

        def read_namespace(self, name, timeout=None):
            ns = super().read_namespace(name, timeout)
            # Every caller sees the namespace as missing before anyone creates it.
            self.barrier.wait()
            return ns

    parties = 4
    registry = RacingRegistry(parties)
    reconciler = NamespaceReconciler(registry)
    config = InjectConfig(cross_namespace_acl_policy="cross-namespace-policy")

    with ThreadPoolExecutor(max_workers=parties) as pool:
        futures = [
            pool.submit(reconciler.ensure_exists, "dest", config) for _ in range(parties)
        ]
        statuses = [future.result() for future in futures]

    assert statuses.count(NamespaceStatus.CREATED) == 1
    assert statuses.count(NamespaceStatus.PRESENT) == parties - 1
    assert len(registry.creates) == parties
    assert sorted(registry.namespaces) == ["default", "dest"]

    ns = registry.namespaces["dest"]
    assert ns.Description == "Auto-generated by consul-k8s"
    assert ns.Meta == {"external-source": "kubernetes"}
    assert [p.Name for p in ns.ACLs.PolicyDefaults] == ["cross-namespace-policy"]
