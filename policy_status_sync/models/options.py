"""Configuration models for the controller bootstrap."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

LEADER_ELECTION_ID = "policy-status-sync.open-cluster-management.io"
LEASE_LOCK = "leases"
CONFIGMAP_LOCK = "configmaps"

# Bind address that turns an HTTP endpoint off
DISABLED_BIND_ADDRESS = "0"


def parse_bind_address(address: str) -> tuple[str, int] | None:
    """Parse a ``host:port`` or ``:port`` bind address.

    Returns:
        (host, port) tuple, or None when the address is the disabled sentinel

    Raises:
        ValueError: If the address is not in a supported format
    """
    if address == DISABLED_BIND_ADDRESS:
        return None
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"bind address '{address}' must be host:port, :port or '0'")
    port_number = int(port)
    if not 0 <= port_number <= 65535:
        raise ValueError(f"bind address '{address}' has an invalid port")
    return host.strip("[]") or "0.0.0.0", port_number


class BootstrapOptions(BaseModel):
    """Process-level options for the controller.

    Built once from the command line and environment, then passed to the
    bootstrap without further mutation.
    """

    model_config = ConfigDict(frozen=True)

    hub_config_path: str | None = None
    managed_config_path: str | None = None
    enable_leader_election: bool = True
    legacy_leader_election: bool = False
    leader_election_namespace: str | None = None
    probe_addr: str = ":8081"
    enable_lease: bool = True
    lease_interval_seconds: float = Field(default=60.0)

    @field_validator("probe_addr")
    @classmethod
    def validate_probe_addr(cls, v: str) -> str:
        """Validate the probe bind address format."""
        parse_bind_address(v)
        return v

    @field_validator("lease_interval_seconds")
    @classmethod
    def validate_lease_interval(cls, v: float) -> float:
        """Validate the heartbeat interval is positive."""
        if v <= 0:
            raise ValueError("lease_interval_seconds must be positive")
        return v

    @property
    def resource_lock(self) -> str:
        # Legacy mode is for clusters without the coordination.k8s.io Lease API
        return CONFIGMAP_LOCK if self.legacy_leader_election else LEASE_LOCK


class ManagerOptions(BaseModel):
    """Settings the controller manager is constructed with."""

    model_config = ConfigDict(frozen=True)

    leader_election: bool = False
    leader_election_id: str = LEADER_ELECTION_ID
    leader_election_namespace: str | None = None
    leader_election_resource_lock: str = LEASE_LOCK
    lease_duration_seconds: float = 15.0
    renew_deadline_seconds: float = 10.0
    retry_period_seconds: float = 2.0
    health_probe_bind_address: str = ":8081"
    metrics_bind_address: str = DISABLED_BIND_ADDRESS
    watch_timeout_seconds: int = 60
    # Extra seconds a watch read may stall past the server-side timeout
    watch_read_slack_seconds: float = 5.0
    # Total time shutdown waits for watch workers before releasing leadership
    shutdown_timeout_seconds: float = 0.5

    @field_validator("leader_election_resource_lock")
    @classmethod
    def validate_resource_lock(cls, v: str) -> str:
        """Validate the lock kind is a supported one."""
        allowed = [LEASE_LOCK, CONFIGMAP_LOCK]
        if v not in allowed:
            raise ValueError(f"leader_election_resource_lock must be one of {allowed}, got '{v}'")
        return v

    @field_validator("health_probe_bind_address", "metrics_bind_address")
    @classmethod
    def validate_bind_address(cls, v: str) -> str:
        """Validate bind addresses are parseable."""
        parse_bind_address(v)
        return v
