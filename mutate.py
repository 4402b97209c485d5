import logging
import sys
import time

import pydantic

from flask import Flask, abort, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Operation,
    PatchType,
    Pod,
)

import namespaces
import patches
from config import InjectConfig
from providers import ConsulProvider
from exc import ApplicationError, ConfigurationError, InvalidPod, RegistryUnavailable

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


class DEFAULTS:
    PROVIDER = ConsulProvider
    CONSUL_ADDRESS = "http://127.0.0.1:8500"
    CONSUL_TOKEN = None
    CONSUL_CACERT = None


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(mode="json", exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def parse_bool(val: str) -> bool:
    if val in ("1", "t", "T", "true", "TRUE", "True"):
        return True
    if val in ("0", "f", "F", "false", "FALSE", "False"):
        return False
    raise ValueError(f"invalid boolean value {val!r}")


def allowed(uid, message=None) -> AdmissionResponse:
    return AdmissionResponse(
        uid=uid,
        allowed=True,
        status=AdmissionReviewStatus(message=message) if message else None,
    )


def rejected(uid, message, code) -> AdmissionResponse:
    return AdmissionResponse(
        uid=uid,
        allowed=False,
        status=AdmissionReviewStatus(message=message, code=code),
    )


class Handler:
    """Decides whether a pod gets the connect sidecar and builds the patch.

    The handler holds no per-request state, so a single instance serves
    concurrent requests.
    """

    def __init__(self, config: InjectConfig, registry):
        self._config = config
        self._reconciler = namespaces.NamespaceReconciler(registry)

    @property
    def config(self) -> InjectConfig:
        return self._config

    def should_inject(self, pod: Pod, namespace: str) -> bool:
        if namespace in namespaces.SYSTEM_NAMESPACES:
            return False

        if not namespaces.in_scope(
            namespace,
            self._config.allow_k8s_namespaces,
            self._config.deny_k8s_namespaces,
        ):
            return False

        # An explicit annotation wins over the default.
        raw = (pod.metadata.annotations or {}).get(patches.ANNOTATION_INJECT)
        if raw is not None:
            try:
                return parse_bool(raw)
            except ValueError:
                raise InvalidPod(
                    f"invalid value {raw!r} for annotation {patches.ANNOTATION_INJECT}"
                )

        return not self._config.require_annotation

    def ensure_namespace(self, name: str, deadline: float):
        """Run the reconciler with backoff until it succeeds or time runs out."""

        attempt = 0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RegistryUnavailable(f"timed out ensuring namespace {name}")

            try:
                return self._reconciler.ensure_exists(name, self._config, timeout=remaining)
            except RegistryUnavailable as err:
                delay = self._config.registry_retry_delay * 2**attempt
                if (
                    attempt >= self._config.registry_retries
                    or time.monotonic() + delay >= deadline
                ):
                    raise

                LOG.warning("retrying namespace %s in %.2fs: %s", name, delay, err)
                time.sleep(delay)
                attempt += 1

    def mutate(self, req: AdmissionRequest) -> AdmissionResponse:
        deadline = time.monotonic() + self._config.admission_timeout

        if req.operation != Operation.CREATE:
            return allowed(req.uid)

        try:
            pod = Pod.model_validate(req.object or {})
        except pydantic.ValidationError as err:
            LOG.error("unable to decode pod in request %s: %s", req.uid, err)
            return rejected(req.uid, f"Error decoding pod: {err}", 400)

        if patches.ANNOTATION_STATUS in (pod.metadata.annotations or {}):
            return allowed(req.uid, "Pod is already injected.")

        try:
            if not self.should_inject(pod, req.namespace):
                return allowed(req.uid, "Pod is not selected for injection.")

            destination = namespaces.resolve(req.namespace, self._config)
            if self._config.enable_namespaces:
                # A mirrored destination is derived from the source namespace.
                if self._config.enable_k8s_ns_mirroring and not req.namespace:
                    raise InvalidPod("request has no namespace to mirror")
                self.ensure_namespace(destination, deadline)

            patch = patches.build(pod, self._config, destination)
        except InvalidPod as err:
            LOG.error("rejecting pod in request %s: %s", req.uid, err)
            return rejected(req.uid, str(err), 400)
        except RegistryUnavailable as err:
            LOG.error("rejecting pod in request %s: %s", req.uid, err)
            return rejected(req.uid, str(err), 500)

        LOG.info(
            "injecting connect sidecar into pod %s in namespace %s",
            pod.metadata.name or req.name or req.uid,
            req.namespace,
        )
        return AdmissionResponse(
            uid=req.uid,
            allowed=True,
            patchType=PatchType.JSONPatch,
            patch=patch,
        )


@jsonresponse()
def mutate_pod():
    body = AdmissionReview.model_validate(request.get_json())
    if body.request is None:
        abort(400, "admission review has no request")

    return AdmissionReview(
        apiVersion=body.apiVersion,
        response=current_app.handler.mutate(body.request),
    )


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Create the webhook application.

    Settings come from DEFAULTS, then from CONSUL_K8S_* environment
    variables, then from keyword arguments. They are turned into an
    InjectConfig once, here, and an invalid configuration stops the process.
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("CONSUL_K8S")
    if config:
        app.config.update(config)

    try:
        inject_config = InjectConfig.from_mapping(app.config)
    except (ConfigurationError, pydantic.ValidationError) as err:
        LOG.error("invalid configuration: %s", err)
        sys.exit(1)

    registry = app.config["PROVIDER"](
        address=app.config["CONSUL_ADDRESS"],
        token=app.config["CONSUL_TOKEN"],
        cacert=app.config["CONSUL_CACERT"],
    )
    app.handler = Handler(inject_config, registry)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app
