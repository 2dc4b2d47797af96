"""Hub and managed cluster connection resolution.

The controller talks to two API servers: the hub, where policy status is
published, and the managed cluster it runs against. Each gets its own typed
connection so a hub client can never be handed to code expecting the managed
one.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml
from kubernetes import client, config

from policy_status_sync.exceptions import ClusterConnectionError
from policy_status_sync.logging_config import get_logger

logger = get_logger(__name__)

HUB_CONFIG_ENV = "HUB_CONFIG"
MANAGED_CONFIG_ENV = "MANAGED_CONFIG"

IN_CLUSTER_SOURCE = "in-cluster"
DEFAULT_KUBECONFIG_SOURCE = "default-kubeconfig"


@dataclass(frozen=True)
class _ClusterConnection:
    """Credentials and an API client for one cluster.

    Attributes:
        source: Kubeconfig path the credentials came from, or an ambient source marker
        configuration: Client configuration built from the credentials
        api_client: Shared API client; safe to use from several threads
    """

    source: str
    configuration: client.Configuration
    api_client: client.ApiClient

    @property
    def host(self) -> str:
        return self.configuration.host

    @property
    def is_file_backed(self) -> bool:
        return self.source not in (IN_CLUSTER_SOURCE, DEFAULT_KUBECONFIG_SOURCE)

    def core_v1(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    def coordination_v1(self) -> client.CoordinationV1Api:
        return client.CoordinationV1Api(self.api_client)

    def custom_objects(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self.api_client)


@dataclass(frozen=True)
class HubConnection(_ClusterConnection):
    """Connection to the hub cluster."""

    role = "hub"


@dataclass(frozen=True)
class ManagedConnection(_ClusterConnection):
    """Connection to the managed cluster the controller runs against."""

    role = "managed"


def load_kubeconfig_file(path: str | Path, role: str) -> client.Configuration:
    """Parse a kubeconfig file into a fresh client configuration.

    Args:
        path: Path to the kubeconfig file
        role: Cluster role used in error messages ("hub" or "managed")

    Returns:
        Client configuration for the file's current context

    Raises:
        ClusterConnectionError: If the file cannot be read or is not a valid kubeconfig
    """
    kubeconfig_path = Path(path).expanduser()
    logger.debug(f"Loading {role} kubeconfig from {kubeconfig_path}")

    try:
        raw = kubeconfig_path.read_text()
    except OSError as e:
        raise ClusterConnectionError(
            f"Unable to read {role} kubeconfig: {kubeconfig_path}",
            f"{e}\n\nCheck that the file exists and is readable by the controller.",
        )

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ClusterConnectionError(
            f"Malformed {role} kubeconfig: {kubeconfig_path}",
            f"The file is not valid YAML: {e}",
        )

    if not isinstance(data, dict) or not data.get("clusters"):
        raise ClusterConnectionError(
            f"Malformed {role} kubeconfig: {kubeconfig_path}",
            "The file does not define any clusters.",
        )

    configuration = client.Configuration()
    try:
        config.load_kube_config(
            config_file=str(kubeconfig_path),
            client_configuration=configuration,
            persist_config=False,
        )
    except config.ConfigException as e:
        raise ClusterConnectionError(f"Invalid {role} kubeconfig: {kubeconfig_path}", str(e))
    except Exception as e:
        logger.error(f"Unexpected error loading {role} kubeconfig: {e}", exc_info=True)
        raise ClusterConnectionError(f"Invalid {role} kubeconfig: {kubeconfig_path}", str(e))

    return configuration


def load_ambient_config(environ: Mapping[str, str]) -> tuple[str, client.Configuration]:
    """Discover credentials from the environment the process runs in.

    In-cluster service account credentials win; otherwise the local kubeconfig
    (``KUBECONFIG`` or ``~/.kube/config``) is used.

    Returns:
        Tuple of (source marker, client configuration)

    Raises:
        ClusterConnectionError: If neither source is usable
    """
    configuration = client.Configuration()
    try:
        config.load_incluster_config(client_configuration=configuration)
        logger.info("Using in-cluster configuration for the managed cluster")
        return IN_CLUSTER_SOURCE, configuration
    except config.ConfigException as e:
        logger.debug(f"In-cluster configuration unavailable: {e}")

    configuration = client.Configuration()
    try:
        config.load_kube_config(
            config_file=environ.get("KUBECONFIG") or None,
            client_configuration=configuration,
            persist_config=False,
        )
    except Exception as e:
        raise ClusterConnectionError(
            "Unable to discover managed cluster credentials",
            f"{e}\n\nSet MANAGED_CONFIG, pass --managed-cluster-configfile, "
            "or run the controller inside the managed cluster.",
        )

    logger.info("Using local kubeconfig for the managed cluster")
    return DEFAULT_KUBECONFIG_SOURCE, configuration


class ClusterConnectionResolver:
    """Resolves the hub and managed cluster connections for the process."""

    def __init__(
        self,
        hub_config_path: str | None = None,
        managed_config_path: str | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """Initialize the resolver.

        Args:
            hub_config_path: Explicit hub kubeconfig path; overrides HUB_CONFIG
            managed_config_path: Explicit managed kubeconfig path; overrides MANAGED_CONFIG
            environ: Environment to read variables from (defaults to os.environ)
        """
        self.hub_config_path = hub_config_path or None
        self.managed_config_path = managed_config_path or None
        self.environ = os.environ if environ is None else environ

    def resolve_hub_path(self) -> str:
        """Return the hub kubeconfig path.

        Raises:
            ClusterConnectionError: If no path is given and HUB_CONFIG is unset
        """
        if self.hub_config_path:
            return self.hub_config_path

        path = self.environ.get(HUB_CONFIG_ENV)
        if path:
            logger.info(f"Found ENV {HUB_CONFIG_ENV}, initializing using {path}")
            return path

        raise ClusterConnectionError(
            "No hub cluster kubeconfig configured",
            f"Pass --hub-cluster-configfile or set the {HUB_CONFIG_ENV} environment variable.",
        )

    def resolve_hub(self) -> HubConnection:
        path = self.resolve_hub_path()
        configuration = load_kubeconfig_file(path, "hub")
        return HubConnection(
            source=str(path),
            configuration=configuration,
            api_client=client.ApiClient(configuration),
        )

    def resolve_managed(self) -> ManagedConnection:
        path = self.managed_config_path
        if not path:
            path = self.environ.get(MANAGED_CONFIG_ENV)
            if path:
                logger.info(f"Found ENV {MANAGED_CONFIG_ENV}, initializing using {path}")

        if path:
            source = str(path)
            configuration = load_kubeconfig_file(path, "managed")
        else:
            source, configuration = load_ambient_config(self.environ)

        return ManagedConnection(
            source=source,
            configuration=configuration,
            api_client=client.ApiClient(configuration),
        )

    def resolve(self) -> tuple[HubConnection, ManagedConnection]:
        """Build both cluster connections.

        Configuration is parsed eagerly; no request is sent to either API
        server until a client is first used.

        Returns:
            Tuple of (hub connection, managed connection)

        Raises:
            ClusterConnectionError: If either cluster's credentials are unusable
        """
        hub = self.resolve_hub()
        managed = self.resolve_managed()
        for connection in (hub, managed):
            logger.info(
                f"{connection.role.capitalize()} cluster: {connection.host} "
                f"(from {connection.source})"
            )
        return hub, managed
