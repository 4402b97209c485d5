import logging
import re

import containers
from containers import Service, Upstream
from models import Patch, PatchAction, PatchOp, Pod
from exc import InvalidPod

LOG = logging.getLogger(__name__)

ANNOTATION_STATUS = "consul.hashicorp.com/connect-inject-status"
ANNOTATION_INJECT = "consul.hashicorp.com/connect-inject"
ANNOTATION_SERVICE = "consul.hashicorp.com/connect-service"
ANNOTATION_PORT = "consul.hashicorp.com/connect-service-port"
ANNOTATION_PROTOCOL = "consul.hashicorp.com/connect-service-protocol"
ANNOTATION_UPSTREAMS = "consul.hashicorp.com/connect-service-upstreams"
ANNOTATION_TAGS = "consul.hashicorp.com/connect-service-tags"
ANNOTATION_META_PREFIX = "consul.hashicorp.com/service-meta-"
ANNOTATION_CONSUL_NAMESPACE = "consul.hashicorp.com/consul-namespace"
LABEL_STATUS = "consul.hashicorp.com/connect-inject-status"

STATUS_INJECTED = "injected"

SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9_.-]*[a-zA-Z0-9])?$")


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def _add(path, value):
    return PatchAction(op=PatchOp.ADD, path=path, value=value)


def _append(path, existing, items) -> list[PatchAction]:
    # An absent (or empty) list is added whole, otherwise each item is
    # appended on its own.
    if not existing:
        return [_add(path, list(items))]

    return [_add(f"{path}/-", item) for item in items]


def _update_map(path, existing, updates) -> list[PatchAction]:
    if not existing:
        return [_add(path, dict(updates))]

    return [
        _add(f"{path}/{json_patch_escape(key)}", value)
        for key, value in updates.items()
    ]


def default_annotations(pod: Pod) -> dict[str, str]:
    """Annotations the injector fills in when the pod does not set them.

    The service is named after the first container and listens on that
    container's first port.
    """

    annotations = pod.metadata.annotations or {}
    defaults = {}

    if pod.spec.containers:
        first = pod.spec.containers[0]
        if ANNOTATION_SERVICE not in annotations:
            defaults[ANNOTATION_SERVICE] = first.name
        if ANNOTATION_PORT not in annotations and first.ports:
            port = first.ports[0]
            defaults[ANNOTATION_PORT] = port.name or str(port.containerPort)

    return dict(sorted(defaults.items()))


def _resolve_port(pod: Pod, raw: str | None) -> int | None:
    if not raw:
        return None

    if raw.isdigit():
        return int(raw)

    for container in pod.spec.containers:
        for port in container.ports:
            if port.name == raw:
                return port.containerPort

    raise InvalidPod(f"unknown port {raw!r} in annotation {ANNOTATION_PORT}")


def parse_upstreams(raw: str) -> list[Upstream]:
    """Parse `name:port[:datacenter]` entries separated by commas."""

    upstreams = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue

        parts = entry.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1].isdigit():
            raise InvalidPod(f"invalid upstream {entry!r} in annotation {ANNOTATION_UPSTREAMS}")

        port = int(parts[1])
        if not 0 < port < 65536:
            raise InvalidPod(f"invalid upstream port {port} for {parts[0]}")

        upstreams.append(
            Upstream(
                name=parts[0],
                port=port,
                datacenter=parts[2] if len(parts) == 3 and parts[2] else None,
            )
        )

    return upstreams


def service_from_annotations(pod: Pod, annotations: dict[str, str]) -> Service:
    name = annotations.get(ANNOTATION_SERVICE)
    if not name:
        raise InvalidPod(
            f"pod has no containers and no {ANNOTATION_SERVICE} annotation"
        )
    if not SERVICE_NAME_RE.match(name):
        raise InvalidPod(f"invalid service name {name!r}")

    tags = annotations.get(ANNOTATION_TAGS, "")
    meta = sorted(
        (key[len(ANNOTATION_META_PREFIX):], val)
        for key, val in annotations.items()
        if key.startswith(ANNOTATION_META_PREFIX) and key != ANNOTATION_META_PREFIX
    )

    return Service(
        name=name,
        port=_resolve_port(pod, annotations.get(ANNOTATION_PORT)),
        protocol=annotations.get(ANNOTATION_PROTOCOL) or None,
        tags=tuple(tag.strip() for tag in tags.split(",") if tag.strip()),
        meta=tuple(meta),
        upstreams=tuple(parse_upstreams(annotations.get(ANNOTATION_UPSTREAMS, ""))),
    )


def build(pod: Pod, config, destination_namespace: str) -> Patch:
    """Build the JSON patch that injects the connect sidecar into `pod`.

    Operations are emitted in a fixed order, and each one is valid against
    the document produced by the ones before it: the annotations map is
    created first so the status and namespace annotations can be added by
    key later on. The result depends only on the arguments.
    """

    existing = pod.metadata.annotations or {}
    defaults = default_annotations(pod)
    annotations = {**existing, **defaults}
    service = service_from_annotations(pod, annotations)

    actions = []
    actions.extend(
        _update_map("/metadata/annotations", pod.metadata.annotations, defaults)
    )
    actions.extend(
        _append("/spec/volumes", pod.spec.volumes, [containers.volume()])
    )
    actions.extend(
        _append(
            "/spec/initContainers",
            pod.spec.initContainers,
            [containers.init_container(service, destination_namespace, config)],
        )
    )

    sidecars = [containers.envoy_sidecar(config)]
    if config.enable_lifecycle_sidecar:
        sidecars.append(containers.lifecycle_sidecar(config))
    actions.extend(_append("/spec/containers", pod.spec.containers, sidecars))

    actions.append(
        _add(
            f"/metadata/annotations/{json_patch_escape(ANNOTATION_STATUS)}",
            STATUS_INJECTED,
        )
    )
    actions.extend(
        _update_map(
            "/metadata/labels", pod.metadata.labels, {LABEL_STATUS: STATUS_INJECTED}
        )
    )

    if config.enable_namespaces:
        actions.append(
            _add(
                f"/metadata/annotations/{json_patch_escape(ANNOTATION_CONSUL_NAMESPACE)}",
                destination_namespace,
            )
        )

    LOG.debug("built %d patch operations for service %s", len(actions), service.name)
    return Patch(actions)
