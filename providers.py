import logging
from urllib.parse import quote

import requests
from typing_extensions import Protocol

from models import Namespace
from exc import NamespaceExists, RegistryError

LOG = logging.getLogger(__name__)


class Registry(Protocol):
    def read_namespace(self, name: str, timeout: float | None = None) -> Namespace | None: ...

    def create_namespace(self, namespace: Namespace, timeout: float | None = None) -> Namespace: ...

    def list_namespaces(self, timeout: float | None = None) -> list[Namespace]: ...


class ConsulProvider(Registry):
    """Namespace access through the Consul HTTP API."""

    def __init__(self, address="http://127.0.0.1:8500", token=None, cacert=None):
        super().__init__()

        self._address = address.rstrip("/")
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        if token:
            self._session.headers["X-Consul-Token"] = token
        if cacert:
            self._session.verify = cacert

    def _request(self, method, path, timeout=None, **kwargs) -> requests.Response:
        url = f"{self._address}{path}"
        try:
            return self._session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as err:
            LOG.error("%s %s failed: %s", method, url, err)
            raise RegistryError(f"{method} {path}: {err}") from err

    def read_namespace(self, name, timeout=None):
        path = "/v1/namespace/" + quote(name, safe="")
        res = self._request("GET", path, timeout=timeout)
        if res.status_code == 404:
            return None
        if not res.ok:
            raise RegistryError(
                f"reading namespace {name}: {res.status_code} {res.text.strip()}"
            )

        return Namespace.model_validate(res.json())

    def create_namespace(self, namespace, timeout=None):
        res = self._request(
            "PUT",
            "/v1/namespace",
            timeout=timeout,
            json=namespace.model_dump(exclude_none=True),
        )
        if res.ok:
            return Namespace.model_validate(res.json())

        if res.status_code == 409:
            raise NamespaceExists(namespace.Name)

        # Consul does not give a dedicated status for a duplicate name, so a
        # failed create is a conflict only if the namespace is there now.
        # Credential failures are never conflicts.
        if res.status_code not in (401, 403):
            if self.read_namespace(namespace.Name, timeout=timeout) is not None:
                raise NamespaceExists(namespace.Name)

        raise RegistryError(
            f"creating namespace {namespace.Name}: {res.status_code} {res.text.strip()}"
        )

    def list_namespaces(self, timeout=None):
        res = self._request("GET", "/v1/namespaces", timeout=timeout)
        if not res.ok:
            raise RegistryError(f"listing namespaces: {res.status_code} {res.text.strip()}")

        return [Namespace.model_validate(item) for item in res.json() or []]
