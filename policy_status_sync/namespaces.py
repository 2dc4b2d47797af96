"""Watch namespace scope selection and namespace helpers."""

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from kubernetes import client
from kubernetes.client.rest import ApiException

from policy_status_sync.exceptions import (
    NamespaceProvisioningError,
    NoNamespaceError,
    RunLocalError,
    ScopeConfigurationError,
)
from policy_status_sync.logging_config import get_logger

logger = get_logger(__name__)

WATCH_NAMESPACE_ENV = "WATCH_NAMESPACE"
FORCE_RUN_MODE_ENV = "OSDK_FORCE_RUN_MODE"
SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")
CLUSTER_NAMESPACE_LABEL = "policy.open-cluster-management.io/isClusterNamespace"

NAMESPACE_SEPARATOR = ","


@dataclass(frozen=True)
class SingleNamespace:
    """Watch one namespace. An empty name means every namespace."""

    name: str

    @property
    def all_namespaces(self) -> bool:
        return self.name == ""

    @property
    def namespaces(self) -> list[str]:
        return [self.name]

    @property
    def primary(self) -> str:
        return self.name

    def __str__(self) -> str:
        return self.name or "<all namespaces>"


@dataclass(frozen=True)
class MultiNamespace:
    """Watch a fixed set of namespaces, one cache per namespace."""

    names: frozenset[str]

    def __post_init__(self):
        names = frozenset(self.names)
        if not names:
            raise ValueError("a multi-namespace scope needs at least one namespace")
        if "" in names:
            raise ValueError("a multi-namespace scope cannot contain an empty namespace")
        object.__setattr__(self, "names", names)

    @property
    def all_namespaces(self) -> bool:
        return False

    @property
    def namespaces(self) -> list[str]:
        return sorted(self.names)

    @property
    def primary(self) -> str:
        return self.namespaces[0]

    def __str__(self) -> str:
        return NAMESPACE_SEPARATOR.join(self.namespaces)


NamespaceScope = SingleNamespace | MultiNamespace


def select_namespace_scope(raw: str) -> NamespaceScope:
    """Turn a watch namespace value into a cache scope.

    Args:
        raw: A namespace name, a comma-separated list of names, or "" for all namespaces

    Returns:
        MultiNamespace when the value contains a separator, SingleNamespace otherwise
    """
    if NAMESPACE_SEPARATOR not in raw:
        return SingleNamespace(raw)

    names = [segment for segment in raw.split(NAMESPACE_SEPARATOR) if segment]
    if not names:
        logger.warning(
            f"Watch namespace {raw!r} lists no namespaces; falling back to all namespaces"
        )
        return SingleNamespace("")

    scope = MultiNamespace(frozenset(names))
    logger.warning(
        f"Watching {len(scope.names)} namespaces ({scope}); each namespace keeps its own "
        "watch cache, so memory and CPU grow with the number of namespaces"
    )
    return scope


def get_watch_namespace(environ: Mapping[str, str] | None = None) -> str:
    """Return the raw watch namespace value.

    Raises:
        ScopeConfigurationError: If WATCH_NAMESPACE is not set
    """
    environ = os.environ if environ is None else environ
    namespace = environ.get(WATCH_NAMESPACE_ENV)
    if namespace is None:
        raise ScopeConfigurationError(
            f"{WATCH_NAMESPACE_ENV} must be set",
            "Set it to the cluster namespace, a comma-separated list, or an empty string "
            "to watch all namespaces.",
        )
    return namespace


def get_operator_namespace(
    environ: Mapping[str, str] | None = None,
    namespace_file: Path = SERVICE_ACCOUNT_NAMESPACE_FILE,
) -> str:
    """Return the namespace the operator pod runs in.

    Raises:
        RunLocalError: If the operator is forced to run locally
        NoNamespaceError: If the service account namespace file is missing
    """
    environ = os.environ if environ is None else environ
    if environ.get(FORCE_RUN_MODE_ENV) == "local":
        raise RunLocalError("Operator run mode forced to local")

    try:
        namespace = namespace_file.read_text().strip()
    except FileNotFoundError:
        raise NoNamespaceError(
            "Namespace not found for current environment",
            f"{namespace_file} does not exist; the operator is not running in a pod.",
        )

    logger.debug(f"Found operator namespace {namespace}")
    return namespace


class NamespaceProvisioner:
    """Makes sure the cluster namespace exists and carries the cluster label."""

    def __init__(self, labels: dict[str, str] | None = None):
        self.labels = labels if labels is not None else {CLUSTER_NAMESPACE_LABEL: "true"}

    def ensure(self, api_client: client.ApiClient, name: str) -> None:
        """Create the namespace, or add missing labels to an existing one.

        Raises:
            NamespaceProvisioningError: If the namespace cannot be read, created or patched
        """
        core_v1 = client.CoreV1Api(api_client)
        try:
            existing = core_v1.read_namespace(name)
        except ApiException as e:
            if e.status != 404:
                raise NamespaceProvisioningError(
                    f"Failed to read namespace {name}", f"API returned {e.status}: {e.reason}"
                )
            existing = None

        try:
            if existing is None:
                body = client.V1Namespace(
                    metadata=client.V1ObjectMeta(name=name, labels=dict(self.labels))
                )
                core_v1.create_namespace(body)
                logger.info(f"Created namespace {name}")
                return

            current = existing.metadata.labels or {}
            missing = {k: v for k, v in self.labels.items() if current.get(k) != v}
            if missing:
                core_v1.patch_namespace(name, {"metadata": {"labels": missing}})
                logger.info(f"Labeled namespace {name} with {missing}")
        except ApiException as e:
            # Another replica may have created it between the read and the create
            if e.status == 409:
                logger.debug(f"Namespace {name} already exists")
                return
            raise NamespaceProvisioningError(
                f"Failed to provision namespace {name}", f"API returned {e.status}: {e.reason}"
            )

    def ensure_scope(self, api_client: client.ApiClient, namespaces: Iterable[str]) -> None:
        """Ensure every concrete namespace of a scope; "" (all namespaces) is skipped."""
        for name in namespaces:
            if name:
                self.ensure(api_client, name)
