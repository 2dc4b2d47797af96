"""Data models for controller configuration and lease state."""

from policy_status_sync.models.lease import LeaderElectionRecord, LeaseRecord
from policy_status_sync.models.options import (
    DISABLED_BIND_ADDRESS,
    BootstrapOptions,
    ManagerOptions,
    parse_bind_address,
)

__all__ = [
    "BootstrapOptions",
    "DISABLED_BIND_ADDRESS",
    "LeaderElectionRecord",
    "LeaseRecord",
    "ManagerOptions",
    "parse_bind_address",
]
