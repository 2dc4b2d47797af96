"""Unit tests for leader election locks and the elector."""

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from policy_status_sync.exceptions import BootstrapError, LeaderElectionError
from policy_status_sync.leaderelection import (
    LEADER_ANNOTATION,
    ConfigMapLock,
    LeaderElector,
    LeaseLock,
    new_resource_lock,
)
from policy_status_sync.models.lease import LeaderElectionRecord

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class InMemoryLock:
    """Lock that keeps its record in memory."""

    def __init__(self, identity: str, record: LeaderElectionRecord | None = None):
        self.identity = identity
        self.record = record
        self.updates = 0
        self.fail_updates = False
        self.timeouts = []

    def get(self, timeout=None) -> LeaderElectionRecord:
        self.timeouts.append(timeout)
        if self.record is None:
            raise ApiException(status=404, reason="Not Found")
        return self.record

    def create(self, record, timeout=None):
        self.timeouts.append(timeout)
        self.record = record

    def update(self, record, timeout=None):
        self.timeouts.append(timeout)
        if self.fail_updates:
            raise ApiException(status=500, reason="Internal Server Error")
        self.updates += 1
        self.record = record

    def describe(self):
        return "ns/lock"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _elector(lock, clock=lambda: NOW):
    return LeaderElector(lock, lease_duration=15, renew_deadline=10, retry_period=0.01, clock=clock)


def test_acquire_creates_missing_lock():
    """Test that the first replica creates the lock and becomes leader."""
    lock = InMemoryLock("me")
    elector = _elector(lock)

    assert elector.try_acquire_or_renew()
    assert elector.is_leader
    assert lock.record.holder_identity == "me"
    assert lock.record.acquire_time == NOW


def test_unexpired_lock_held_by_other_blocks():
    """Test that a live lock held by another replica is respected."""
    record = LeaderElectionRecord(
        holder_identity="other", lease_duration_seconds=15, renew_time=NOW - timedelta(seconds=5)
    )
    lock = InMemoryLock("me", record)

    assert not _elector(lock).try_acquire_or_renew()
    assert lock.record.holder_identity == "other"


def test_expired_lock_is_taken_over():
    """Test that a lock left unchanged for a full lease duration is taken over."""
    record = LeaderElectionRecord(
        holder_identity="other",
        lease_duration_seconds=15,
        renew_time=NOW - timedelta(seconds=30),
        leader_transitions=2,
    )
    lock = InMemoryLock("me", record)
    clock = FakeClock()
    elector = _elector(lock, clock=clock)

    assert not elector.try_acquire_or_renew()
    clock.advance(16)
    assert elector.try_acquire_or_renew()
    assert lock.record.holder_identity == "me"
    assert lock.record.leader_transitions == 3


def test_remote_renew_time_is_not_trusted():
    """Test that expiry follows the local observation time, not the holder's clock."""
    record = LeaderElectionRecord(
        holder_identity="other", lease_duration_seconds=15, renew_time=NOW - timedelta(hours=1)
    )
    lock = InMemoryLock("me", record)
    clock = FakeClock()
    elector = _elector(lock, clock=clock)

    assert not elector.try_acquire_or_renew()
    clock.advance(10)
    lock.record = record.model_copy(update={"renew_time": NOW - timedelta(minutes=59)})
    assert not elector.try_acquire_or_renew()
    clock.advance(10)
    assert not elector.try_acquire_or_renew()
    assert lock.record.holder_identity == "other"


def test_renew_calls_are_bounded_by_deadline():
    """Test that every lock call made while renewing carries a timeout within the deadline."""
    lock = InMemoryLock("me")
    elector = _elector(lock)
    elector.try_acquire_or_renew()
    lock.timeouts.clear()

    assert elector.try_acquire_or_renew(deadline=time.monotonic() + 3)

    assert len(lock.timeouts) == 2
    assert all(t is not None and 0 < t <= 3 for t in lock.timeouts)


def test_renew_keeps_acquire_time():
    """Test that renewing our own lock keeps the original acquire time."""
    acquired = NOW - timedelta(minutes=5)
    record = LeaderElectionRecord(
        holder_identity="me", acquire_time=acquired, renew_time=NOW - timedelta(seconds=2)
    )
    lock = InMemoryLock("me", record)

    assert _elector(lock).try_acquire_or_renew()
    assert lock.record.acquire_time == acquired
    assert lock.record.renew_time == NOW
    assert lock.record.leader_transitions == 0


def test_acquire_returns_false_when_stopped():
    """Test that acquire gives up once the stop event is set."""
    record = LeaderElectionRecord(holder_identity="other", renew_time=NOW)
    stop_event = threading.Event()
    stop_event.set()

    assert not _elector(InMemoryLock("me", record)).acquire(stop_event)


def test_renew_loop_raises_after_deadline():
    """Test that failing renewals past the deadline lose leadership."""
    lock = InMemoryLock("me")
    elector = LeaderElector(
        lock, lease_duration=0.5, renew_deadline=0.05, retry_period=0.01, clock=lambda: NOW
    )
    assert elector.try_acquire_or_renew()
    lock.fail_updates = True

    with pytest.raises(LeaderElectionError):
        elector.renew_loop(threading.Event())
    assert not elector.is_leader


def test_release_clears_holder():
    """Test that releasing leaves the lock free for another replica."""
    lock = InMemoryLock("me")
    elector = _elector(lock)
    elector.try_acquire_or_renew()

    elector.release()

    assert lock.record.holder_identity == ""
    assert not elector.is_leader


def test_renew_deadline_must_be_shorter_than_lease():
    """Test that inconsistent timings are rejected."""
    with pytest.raises(BootstrapError):
        LeaderElector(InMemoryLock("me"), lease_duration=10, renew_deadline=10)


def test_new_resource_lock_kinds():
    """Test that the lock kind selects the lock implementation."""
    api_client = Mock()

    assert isinstance(new_resource_lock("leases", api_client, "id", "ns", "me"), LeaseLock)
    assert isinstance(new_resource_lock("configmaps", api_client, "id", "ns", "me"), ConfigMapLock)
    with pytest.raises(BootstrapError):
        new_resource_lock("endpoints", api_client, "id", "ns", "me")


@patch("policy_status_sync.leaderelection.client.CoordinationV1Api")
def test_lease_lock_replaces_with_resource_version(mock_coordination):
    """Test that lease updates carry the resourceVersion that was read."""
    api = mock_coordination.return_value
    api.read_namespaced_lease.return_value = client.V1Lease(
        metadata=client.V1ObjectMeta(name="id", namespace="ns", resource_version="42"),
        spec=client.V1LeaseSpec(holder_identity="me", lease_duration_seconds=15, renew_time=NOW),
    )
    api.replace_namespaced_lease.return_value = client.V1Lease(
        metadata=client.V1ObjectMeta(resource_version="43")
    )
    lock = LeaseLock(Mock(), "id", "ns", "me")

    record = lock.get()
    lock.update(record)

    assert record.holder_identity == "me"
    body = api.replace_namespaced_lease.call_args[0][2]
    assert body.metadata.resource_version == "42"
    assert body.spec.holder_identity == "me"


@patch("policy_status_sync.leaderelection.client.CoreV1Api")
def test_configmap_lock_uses_leader_annotation(mock_core):
    """Test that the legacy lock round-trips its record through an annotation."""
    api = mock_core.return_value
    stored = {"holderIdentity": "me", "leaseDurationSeconds": 15, "leaderTransitions": 1}
    api.read_namespaced_config_map.return_value = client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name="id",
            namespace="ns",
            resource_version="7",
            annotations={LEADER_ANNOTATION: json.dumps(stored)},
        )
    )
    lock = ConfigMapLock(Mock(), "id", "ns", "me")

    record = lock.get()
    record.renew_time = NOW
    lock.update(record)

    assert record.holder_identity == "me"
    assert record.leader_transitions == 1
    body = api.replace_namespaced_config_map.call_args[0][2]
    written = json.loads(body.metadata.annotations[LEADER_ANNOTATION])
    assert written["holderIdentity"] == "me"
    assert written["renewTime"] is not None
    assert body.metadata.resource_version == "7"


@patch("policy_status_sync.leaderelection.client.CoordinationV1Api")
def test_lease_lock_passes_request_timeout(mock_coordination):
    """Test that lock reads are sent with a client-side request timeout."""
    api = mock_coordination.return_value
    api.read_namespaced_lease.return_value = client.V1Lease(
        metadata=client.V1ObjectMeta(name="id", namespace="ns", resource_version="1"),
        spec=client.V1LeaseSpec(holder_identity="other"),
    )

    LeaseLock(Mock(), "id", "ns", "me").get(timeout=2.5)

    assert api.read_namespaced_lease.call_args.kwargs["_request_timeout"] == 2.5


def test_release_swallows_transport_errors():
    """Test that a failed release does not break shutdown."""
    lock = InMemoryLock("me")
    elector = _elector(lock)
    elector.try_acquire_or_renew()
    lock.update = Mock(side_effect=TimeoutError("read timed out"))

    elector.release()

    assert not elector.is_leader
