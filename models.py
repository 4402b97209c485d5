import base64
from typing import Any
from pydantic import (
    BaseModel,
    Field,
    RootModel,
    constr,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    ADD = "add"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str
    code: int | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: constr(min_length=1)
    name: str | None = None
    namespace: str = ""
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: str = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


# Only the parts of a pod the injector reads are modelled; everything else
# is carried along untouched.
class ContainerPort(BaseModel, extra="allow"):
    name: str | None = None
    containerPort: int


class Container(BaseModel, extra="allow"):
    name: str
    ports: list[ContainerPort] = []


class PodMetadata(BaseModel, extra="allow"):
    name: str | None = None
    annotations: dict[str, str] | None = None
    labels: dict[str, str] | None = None


class PodSpec(BaseModel, extra="allow"):
    containers: list[Container] = []
    initContainers: list[dict[str, Any]] | None = None
    volumes: list[dict[str, Any]] | None = None


class Pod(BaseModel, extra="allow"):
    metadata: PodMetadata = Field(default_factory=PodMetadata)
    spec: PodSpec


# https://developer.hashicorp.com/consul/api-docs/namespaces
class ACLLink(BaseModel):
    ID: str | None = None
    Name: str | None = None


class NamespaceACLConfig(BaseModel):
    PolicyDefaults: list[ACLLink] = []
    RoleDefaults: list[ACLLink] = []


class Namespace(BaseModel):
    Name: str
    Description: str = ""
    Meta: dict[str, str] | None = None
    ACLs: NamespaceACLConfig | None = None
