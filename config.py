from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from exc import ConfigurationError
from namespaces import validate_patterns

DEFAULT_CONSUL_IMAGE = "hashicorp/consul:1.8.0"
DEFAULT_ENVOY_IMAGE = "envoyproxy/envoy-alpine:v1.14.2"
DEFAULT_CONSUL_K8S_IMAGE = "hashicorp/consul-k8s:0.16.0"


class InjectConfig(BaseModel):
    """Injector settings, fixed for the lifetime of the process."""

    model_config = ConfigDict(frozen=True)

    allow_k8s_namespaces: frozenset[str] = frozenset()
    deny_k8s_namespaces: frozenset[str] = frozenset()
    require_annotation: bool = False

    enable_namespaces: bool = False
    consul_destination_namespace: str = "default"
    enable_k8s_ns_mirroring: bool = False
    k8s_ns_mirroring_prefix: str = ""
    cross_namespace_acl_policy: str = ""

    consul_image: str = DEFAULT_CONSUL_IMAGE
    envoy_image: str = DEFAULT_ENVOY_IMAGE
    consul_k8s_image: str = DEFAULT_CONSUL_K8S_IMAGE
    enable_lifecycle_sidecar: bool = True

    admission_timeout: float = 10.0
    registry_retries: int = 2
    registry_retry_delay: float = 0.3

    @field_validator("allow_k8s_namespaces", "deny_k8s_namespaces", mode="before")
    @classmethod
    def split_namespaces(cls, val):
        if val is None:
            return frozenset()
        if isinstance(val, str):
            val = [item.strip() for item in val.split(",") if item.strip()]
        return val

    @field_validator("allow_k8s_namespaces", "deny_k8s_namespaces")
    @classmethod
    def validate_namespaces(cls, val):
        validate_patterns(val)
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if (
            self.enable_namespaces
            and not self.enable_k8s_ns_mirroring
            and not self.consul_destination_namespace
        ):
            raise ConfigurationError(
                "a consul destination namespace is required when namespaces are enabled"
            )

        return self

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "InjectConfig":
        """Build from uppercase Flask-style config keys, ignoring the rest."""

        return cls(
            **{
                name: config[name.upper()]
                for name in cls.model_fields
                if name.upper() in config
            }
        )
