"""Mapping of Kubernetes namespaces onto Consul namespaces.

Three pieces live here: the allow/deny filter that decides whether a
Kubernetes namespace is eligible for injection at all, the resolver that
turns a Kubernetes namespace into the name of a Consul namespace, and the
reconciler that makes sure that Consul namespace exists before any pod is
registered into it.
"""

import logging
import re
from enum import StrEnum

from models import ACLLink, Namespace, NamespaceACLConfig
from exc import (
    ConfigurationError,
    NamespaceExists,
    ProviderError,
    RegistryUnavailable,
)

LOG = logging.getLogger(__name__)

WILDCARD = "*"
DEFAULT_NAMESPACE = "default"
SYSTEM_NAMESPACES = frozenset(["kube-system", "kube-public"])

NAMESPACE_DESCRIPTION = "Auto-generated by consul-k8s"
NAMESPACE_META = {"external-source": "kubernetes"}

# https://kubernetes.io/docs/concepts/overview/working-with-objects/names/#dns-label-names
K8S_NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")


class NamespaceStatus(StrEnum):
    CREATED = "created"
    PRESENT = "present"


def validate_patterns(patterns):
    """Reject anything that is neither the wildcard nor a namespace name."""

    for pattern in patterns:
        if pattern != WILDCARD and not K8S_NAMESPACE_RE.match(pattern):
            raise ConfigurationError(f"invalid namespace pattern: {pattern!r}")


def in_scope(namespace: str, allow: frozenset[str], deny: frozenset[str]) -> bool:
    # Deny wins over allow.
    if WILDCARD in deny or namespace in deny:
        return False

    return WILDCARD in allow or namespace in allow


def resolve(namespace: str, config) -> str:
    """Return the Consul namespace for pods created in `namespace`.

    An empty string means Consul namespaces are not in use.
    """

    if not config.enable_namespaces:
        return ""

    if not config.enable_k8s_ns_mirroring:
        return config.consul_destination_namespace

    return f"{config.k8s_ns_mirroring_prefix}{namespace}"


def namespace_template(name: str, cross_namespace_acl_policy: str = "") -> Namespace:
    ns = Namespace(
        Name=name,
        Description=NAMESPACE_DESCRIPTION,
        Meta=dict(NAMESPACE_META),
    )

    if cross_namespace_acl_policy:
        ns.ACLs = NamespaceACLConfig(
            PolicyDefaults=[ACLLink(Name=cross_namespace_acl_policy)]
        )

    return ns


class NamespaceReconciler:
    def __init__(self, registry):
        self._registry = registry

    def ensure_exists(self, name: str, config, timeout: float | None = None) -> NamespaceStatus:
        """Make sure the Consul namespace `name` exists.

        An existing namespace is never modified, and the `default` namespace
        is never created: its ACLs are managed by the ACL bootstrapper. A
        create that loses a race against another request counts as success.
        Every other registry failure raises RegistryUnavailable; retrying is
        left to the caller.
        """

        try:
            existing = self._registry.read_namespace(name, timeout=timeout)
        except ProviderError as err:
            raise RegistryUnavailable(f"unable to read namespace {name}: {err}") from err

        if name == DEFAULT_NAMESPACE:
            if existing is None:
                raise RegistryUnavailable(f"namespace {name} is not readable")
            return NamespaceStatus.PRESENT

        if existing is not None:
            return NamespaceStatus.PRESENT

        ns = namespace_template(name, config.cross_namespace_acl_policy)
        try:
            self._registry.create_namespace(ns, timeout=timeout)
        except NamespaceExists:
            LOG.warning("namespace %s was created by a concurrent request", name)
            return NamespaceStatus.PRESENT
        except ProviderError as err:
            raise RegistryUnavailable(f"unable to create namespace {name}: {err}") from err

        LOG.info("created namespace %s", name)
        return NamespaceStatus.CREATED
