import threading

import pytest

import mutate
from config import InjectConfig
from exc import NamespaceExists
from models import Namespace, Pod


BASIC_POD = {
    "metadata": {},
    "spec": {
        "containers": [
            {
                "name": "web",
            }
        ],
    },
}


class FakeRegistry:
    """In-memory stand-in for the Consul namespace API.

    Like a real Consul Enterprise cluster, it starts with the `default`
    namespace already present.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.namespaces = {
            "default": Namespace(Name="default", Description="Builtin Default Namespace"),
        }
        self.reads = []
        self.creates = []

    def read_namespace(self, name, timeout=None):
        with self._lock:
            self.reads.append(name)
            ns = self.namespaces.get(name)
        return ns.model_copy(deep=True) if ns else None

    def create_namespace(self, namespace, timeout=None):
        with self._lock:
            self.creates.append(namespace.Name)
            if namespace.Name in self.namespaces:
                raise NamespaceExists(namespace.Name)
            self.namespaces[namespace.Name] = namespace.model_copy(deep=True)
        return namespace

    def list_namespaces(self, timeout=None):
        with self._lock:
            return list(self.namespaces.values())


@pytest.fixture()
def registry():
    return FakeRegistry()


@pytest.fixture()
def make_app(registry):
    def _make_app(**config):
        config.setdefault("PROVIDER", lambda **_: registry)
        config.setdefault("ALLOW_K8S_NAMESPACES", "*")
        return mutate.create_app(TESTING=True, **config)

    return _make_app


@pytest.fixture()
def app(make_app):
    yield make_app()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def basic_pod():
    return Pod.model_validate(BASIC_POD)


@pytest.fixture()
def ns_config():
    return InjectConfig(
        allow_k8s_namespaces="*",
        enable_namespaces=True,
        consul_destination_namespace="dest",
    )
