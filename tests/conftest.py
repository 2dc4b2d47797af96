"""Pytest configuration and shared fixtures."""

from unittest.mock import Mock

import pytest
import yaml
from hypothesis import Verbosity, settings
from kubernetes import client

from policy_status_sync.connections import HubConnection, ManagedConnection

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


def kubeconfig_data(server: str = "https://hub.example.com:6443", name: str = "hub") -> dict:
    """Minimal token-based kubeconfig."""
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": name, "cluster": {"server": server, "insecure-skip-tls-verify": True}}
        ],
        "users": [{"name": "admin", "user": {"token": "test-token"}}],
        "contexts": [{"name": name, "context": {"cluster": name, "user": "admin"}}],
        "current-context": name,
    }


@pytest.fixture
def write_kubeconfig(tmp_path):
    """Write a kubeconfig file and return its path."""

    def _write(filename: str = "kubeconfig", server: str = "https://hub.example.com:6443"):
        path = tmp_path / filename
        path.write_text(yaml.safe_dump(kubeconfig_data(server=server)))
        return path

    return _write


def _configuration(host: str) -> client.Configuration:
    configuration = client.Configuration()
    configuration.host = host
    return configuration


@pytest.fixture
def hub_connection():
    """Hub connection with a mocked API client."""
    return HubConnection(
        source="/var/run/hub/kubeconfig",
        configuration=_configuration("https://hub.example.com:6443"),
        api_client=Mock(),
    )


@pytest.fixture
def managed_connection():
    """Managed connection with a mocked API client."""
    return ManagedConnection(
        source="in-cluster",
        configuration=_configuration("https://managed.example.com:6443"),
        api_client=Mock(),
    )
