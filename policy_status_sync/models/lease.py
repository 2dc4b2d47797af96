"""Lease records written by leader election and the status heartbeat."""

from datetime import datetime, timezone

from kubernetes import client
from pydantic import BaseModel, ConfigDict, Field

HEALTHY_ANNOTATION = "policy.open-cluster-management.io/healthy"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LeaderElectionRecord(BaseModel):
    """Leader election state stored in a Lease or in a ConfigMap annotation."""

    holder_identity: str = Field(default="", alias="holderIdentity")
    lease_duration_seconds: int = Field(default=15, alias="leaseDurationSeconds")
    acquire_time: datetime | None = Field(default=None, alias="acquireTime")
    renew_time: datetime | None = Field(default=None, alias="renewTime")
    leader_transitions: int = Field(default=0, alias="leaderTransitions")

    model_config = ConfigDict(populate_by_name=True)


class LeaseRecord(BaseModel):
    """The heartbeat lease published on the hub for the addon manager.

    The renew time only advances on healthy ticks, so an unhealthy controller
    shows up as a lease that is going stale.
    """

    name: str
    namespace: str
    holder_identity: str
    lease_duration_seconds: int = 60
    renew_time: datetime | None = None
    healthy: bool = False

    def to_lease(self, existing: client.V1Lease | None = None) -> client.V1Lease:
        """Build the V1Lease body for a create or replace call.

        When replacing, the existing object's metadata and spec are carried
        over so labels, annotations and fields owned by other writers survive;
        only the healthy annotation and the heartbeat fields change.
        """
        if existing is None:
            metadata = client.V1ObjectMeta(name=self.name, namespace=self.namespace)
            spec = client.V1LeaseSpec()
        else:
            metadata = existing.metadata
            spec = existing.spec or client.V1LeaseSpec()
        annotations = dict(metadata.annotations or {})
        annotations[HEALTHY_ANNOTATION] = str(self.healthy).lower()
        metadata.annotations = annotations
        spec.holder_identity = self.holder_identity
        spec.lease_duration_seconds = self.lease_duration_seconds
        spec.renew_time = self.renew_time
        return client.V1Lease(
            api_version="coordination.k8s.io/v1", kind="Lease", metadata=metadata, spec=spec
        )

    @classmethod
    def from_lease(cls, lease: client.V1Lease) -> "LeaseRecord":
        """Parse from an existing V1Lease."""
        annotations = lease.metadata.annotations or {}
        spec = lease.spec or client.V1LeaseSpec()
        return cls(
            name=lease.metadata.name,
            namespace=lease.metadata.namespace,
            holder_identity=spec.holder_identity or "",
            lease_duration_seconds=spec.lease_duration_seconds or 60,
            renew_time=spec.renew_time,
            healthy=annotations.get(HEALTHY_ANNOTATION) == "true",
        )
