import json

from kubernetes.client import (
    ApiClient,
    V1Container,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1EnvVarSource,
    V1ObjectFieldSelector,
    V1Volume,
    V1VolumeMount,
)
from pydantic import BaseModel

VOLUME_NAME = "consul-connect-inject-data"
VOLUME_PATH = "/consul/connect-inject"
INIT_CONTAINER_NAME = "consul-connect-inject-init"
ENVOY_CONTAINER_NAME = "consul-connect-envoy-sidecar"
LIFECYCLE_CONTAINER_NAME = "consul-connect-lifecycle-sidecar"

PROXY_PORT = 20000
SERVICE_CONFIG = f"{VOLUME_PATH}/service.hcl"
ENVOY_BOOTSTRAP = f"{VOLUME_PATH}/envoy-bootstrap.yaml"
CONSUL_BINARY = f"{VOLUME_PATH}/consul"


class Upstream(BaseModel, frozen=True):
    name: str
    port: int
    datacenter: str | None = None


class Service(BaseModel, frozen=True):
    name: str
    port: int | None = None
    protocol: str | None = None
    tags: tuple[str, ...] = ()
    meta: tuple[tuple[str, str], ...] = ()
    upstreams: tuple[Upstream, ...] = ()


def _serialize(obj):
    return ApiClient().sanitize_for_serialization(obj)


def _field_env(name, field_path):
    return V1EnvVar(
        name=name,
        value_from=V1EnvVarSource(
            field_ref=V1ObjectFieldSelector(field_path=field_path),
        ),
    )


def _downward_env():
    return [
        _field_env("HOST_IP", "status.hostIP"),
        _field_env("POD_IP", "status.podIP"),
        _field_env("POD_NAME", "metadata.name"),
        _field_env("POD_NAMESPACE", "metadata.namespace"),
    ]


def _volume_mount():
    return V1VolumeMount(name=VOLUME_NAME, mount_path=VOLUME_PATH)


def _quote(val) -> str:
    # JSON string literals are valid HCL string literals. The result lands in
    # an unquoted heredoc, so shell expansion characters are escaped.
    quoted = json.dumps(val)
    for char in ("\\", "$", "`"):
        quoted = quoted.replace(char, "\\" + char)
    return quoted


def _tags_and_meta(service: Service) -> list[str]:
    lines = []
    if service.tags:
        lines.append(f'  tags = [{", ".join(_quote(tag) for tag in service.tags)}]')
    if service.meta:
        lines.append("  meta = {")
        lines.extend(f"    {_quote(key)} = {_quote(val)}" for key, val in service.meta)
        lines.append("  }")
    return lines


def service_config(service: Service, namespace: str = "") -> str:
    """Render the HCL that registers the service and its sidecar proxy."""

    service_id = f"${{POD_NAME}}-{service.name}"
    proxy_id = f"{service_id}-sidecar-proxy"

    lines = [
        "services {",
        f'  id = "{proxy_id}"',
        f'  name = {_quote(service.name + "-sidecar-proxy")}',
        '  kind = "connect-proxy"',
        '  address = "${POD_IP}"',
        f"  port = {PROXY_PORT}",
    ]
    if namespace:
        lines.append(f"  namespace = {_quote(namespace)}")
    lines.extend(_tags_and_meta(service))

    lines.extend([
        "",
        "  proxy {",
        f"    destination_service_name = {_quote(service.name)}",
        f'    destination_service_id = "{service_id}"',
    ])
    if service.port:
        lines.extend([
            '    local_service_address = "127.0.0.1"',
            f"    local_service_port = {service.port}",
        ])
    if service.protocol:
        lines.extend([
            "    config {",
            f"      protocol = {_quote(service.protocol)}",
            "    }",
        ])
    for upstream in service.upstreams:
        lines.extend([
            "    upstreams {",
            '      destination_type = "service"',
            f"      destination_name = {_quote(upstream.name)}",
            f"      local_bind_port = {upstream.port}",
        ])
        if upstream.datacenter:
            lines.append(f"      datacenter = {_quote(upstream.datacenter)}")
        lines.append("    }")
    lines.extend([
        "  }",
        "",
        "  checks {",
        '    name = "Proxy Public Listener"',
        f'    tcp = "${{POD_IP}}:{PROXY_PORT}"',
        '    interval = "10s"',
        '    deregister_critical_service_after = "10m"',
        "  }",
        "",
        "  checks {",
        '    name = "Destination Alias"',
        f'    alias_service = "{service_id}"',
        "  }",
        "}",
        "",
        "services {",
        f'  id = "{service_id}"',
        f"  name = {_quote(service.name)}",
        '  address = "${POD_IP}"',
        f"  port = {service.port or 0}",
    ])
    if namespace:
        lines.append(f"  namespace = {_quote(namespace)}")
    lines.extend(_tags_and_meta(service))
    lines.append("}")

    return "\n".join(lines)


def init_script(service: Service, namespace: str = "") -> str:
    namespace_flag = f" -namespace={_quote(namespace)}" if namespace else ""
    proxy_id = f"${{POD_NAME}}-{service.name}-sidecar-proxy"

    return "\n".join([
        'export CONSUL_HTTP_ADDR="${HOST_IP}:8500"',
        'export CONSUL_GRPC_ADDR="${HOST_IP}:8502"',
        "",
        f"cat <<EOF >{SERVICE_CONFIG}",
        service_config(service, namespace),
        "EOF",
        "",
        f"/bin/consul services register{namespace_flag} {SERVICE_CONFIG}",
        "",
        f'/bin/consul connect envoy -proxy-id="{proxy_id}"{namespace_flag} \\',
        f"  -bootstrap > {ENVOY_BOOTSTRAP}",
        "",
        f"cp /bin/consul {CONSUL_BINARY}",
    ])


def volume() -> dict:
    return _serialize(
        V1Volume(
            name=VOLUME_NAME,
            empty_dir=V1EmptyDirVolumeSource(medium="Memory"),
        )
    )


def init_container(service: Service, namespace: str, config) -> dict:
    return _serialize(
        V1Container(
            name=INIT_CONTAINER_NAME,
            image=config.consul_image,
            env=_downward_env(),
            volume_mounts=[_volume_mount()],
            command=["/bin/sh", "-ec", init_script(service, namespace)],
        )
    )


def envoy_sidecar(config) -> dict:
    return _serialize(
        V1Container(
            name=ENVOY_CONTAINER_NAME,
            image=config.envoy_image,
            env=_downward_env(),
            volume_mounts=[_volume_mount()],
            command=["envoy", "--config-path", ENVOY_BOOTSTRAP],
        )
    )


def lifecycle_sidecar(config) -> dict:
    return _serialize(
        V1Container(
            name=LIFECYCLE_CONTAINER_NAME,
            image=config.consul_k8s_image,
            env=[
                _field_env("HOST_IP", "status.hostIP"),
                V1EnvVar(name="CONSUL_HTTP_ADDR", value="$(HOST_IP):8500"),
            ],
            volume_mounts=[_volume_mount()],
            command=[
                "consul-k8s",
                "lifecycle-sidecar",
                "-service-config",
                SERVICE_CONFIG,
                "-consul-binary",
                CONSUL_BINARY,
            ],
        )
    )
