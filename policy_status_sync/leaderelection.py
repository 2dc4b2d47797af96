"""Leader election for the controller manager.

Only one replica of the controller reconciles at a time. Leadership is held
through a lock object on the managed cluster: a coordination.k8s.io Lease by
default, or a ConfigMap annotation on clusters that predate the Lease API.
Every write carries the resourceVersion that was read, so two replicas racing
for the lock cannot both succeed.

Expiry of another replica's lock is measured on the local clock from when this
process last saw the record change, not from the renew time that replica
wrote.
"""

import json
import socket
import threading
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from kubernetes import client
from kubernetes.client.rest import ApiException

from policy_status_sync.exceptions import BootstrapError, LeaderElectionError
from policy_status_sync.logging_config import get_logger
from policy_status_sync.models.lease import LeaderElectionRecord, utc_now
from policy_status_sync.models.options import CONFIGMAP_LOCK, LEASE_LOCK

logger = get_logger(__name__)

LEADER_ANNOTATION = "control-plane.alpha.kubernetes.io/leader"

# Lowest per-request timeout handed to the API client while renewing
MIN_REQUEST_TIMEOUT = 0.5


def default_identity() -> str:
    """Hostname plus a random suffix, unique per process."""
    return f"{socket.gethostname()}_{uuid.uuid4()}"


class LeaseLock:
    """Leader election lock backed by a coordination.k8s.io/v1 Lease."""

    kind = LEASE_LOCK

    def __init__(self, api_client: client.ApiClient, name: str, namespace: str, identity: str):
        self.api = client.CoordinationV1Api(api_client)
        self.name = name
        self.namespace = namespace
        self.identity = identity
        self._resource_version: str | None = None

    def get(self, timeout: float | None = None) -> LeaderElectionRecord:
        """Read the current record.

        Raises:
            ApiException: 404 when the lock object does not exist yet
        """
        lease = self.api.read_namespaced_lease(
            self.name, self.namespace, _request_timeout=timeout
        )
        self._resource_version = lease.metadata.resource_version
        spec = lease.spec or client.V1LeaseSpec()
        return LeaderElectionRecord(
            holder_identity=spec.holder_identity or "",
            lease_duration_seconds=spec.lease_duration_seconds or 0,
            acquire_time=spec.acquire_time,
            renew_time=spec.renew_time,
            leader_transitions=spec.lease_transitions or 0,
        )

    def _body(self, record: LeaderElectionRecord) -> client.V1Lease:
        return client.V1Lease(
            metadata=client.V1ObjectMeta(
                name=self.name, namespace=self.namespace, resource_version=self._resource_version
            ),
            spec=client.V1LeaseSpec(
                holder_identity=record.holder_identity,
                lease_duration_seconds=record.lease_duration_seconds,
                acquire_time=record.acquire_time,
                renew_time=record.renew_time,
                lease_transitions=record.leader_transitions,
            ),
        )

    def create(self, record: LeaderElectionRecord, timeout: float | None = None) -> None:
        self._resource_version = None
        lease = self.api.create_namespaced_lease(
            self.namespace, self._body(record), _request_timeout=timeout
        )
        self._resource_version = lease.metadata.resource_version

    def update(self, record: LeaderElectionRecord, timeout: float | None = None) -> None:
        lease = self.api.replace_namespaced_lease(
            self.name, self.namespace, self._body(record), _request_timeout=timeout
        )
        self._resource_version = lease.metadata.resource_version

    def describe(self) -> str:
        return f"{self.namespace}/{self.name}"


class ConfigMapLock:
    """Legacy leader election lock stored as an annotation on a ConfigMap."""

    kind = CONFIGMAP_LOCK

    def __init__(self, api_client: client.ApiClient, name: str, namespace: str, identity: str):
        self.api = client.CoreV1Api(api_client)
        self.name = name
        self.namespace = namespace
        self.identity = identity
        self._config_map: client.V1ConfigMap | None = None

    def get(self, timeout: float | None = None) -> LeaderElectionRecord:
        """Read the current record.

        Raises:
            ApiException: 404 when the lock object does not exist yet
        """
        self._config_map = self.api.read_namespaced_config_map(
            self.name, self.namespace, _request_timeout=timeout
        )
        annotations = self._config_map.metadata.annotations or {}
        raw = annotations.get(LEADER_ANNOTATION)
        if not raw:
            return LeaderElectionRecord()
        return LeaderElectionRecord.model_validate(json.loads(raw))

    @staticmethod
    def _annotation(record: LeaderElectionRecord) -> str:
        return json.dumps(record.model_dump(mode="json", by_alias=True))

    def create(self, record: LeaderElectionRecord, timeout: float | None = None) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                annotations={LEADER_ANNOTATION: self._annotation(record)},
            )
        )
        self._config_map = self.api.create_namespaced_config_map(
            self.namespace, body, _request_timeout=timeout
        )

    def update(self, record: LeaderElectionRecord, timeout: float | None = None) -> None:
        if self._config_map is None:
            raise RuntimeError("ConfigMap lock must be read before it is updated")
        metadata = self._config_map.metadata
        annotations = dict(metadata.annotations or {})
        annotations[LEADER_ANNOTATION] = self._annotation(record)
        metadata.annotations = annotations
        self._config_map = self.api.replace_namespaced_config_map(
            self.name, self.namespace, self._config_map, _request_timeout=timeout
        )

    def describe(self) -> str:
        return f"{self.namespace}/{self.name}"


def new_resource_lock(
    kind: str, api_client: client.ApiClient, name: str, namespace: str, identity: str
) -> LeaseLock | ConfigMapLock:
    """Build the lock for a resource lock kind.

    Raises:
        BootstrapError: If the kind is not supported
    """
    if kind == LEASE_LOCK:
        return LeaseLock(api_client, name, namespace, identity)
    if kind == CONFIGMAP_LOCK:
        return ConfigMapLock(api_client, name, namespace, identity)
    raise BootstrapError(
        f"Unsupported leader election resource lock: {kind}",
        f"Use '{LEASE_LOCK}' or '{CONFIGMAP_LOCK}'.",
    )


class LeaderElector:
    """Acquires and keeps renewing a leader election lock."""

    def __init__(
        self,
        lock: LeaseLock | ConfigMapLock,
        lease_duration: float = 15.0,
        renew_deadline: float = 10.0,
        retry_period: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the elector.

        Args:
            lock: Lock object holding the election record
            lease_duration: Seconds a non-leader waits before taking over an unrenewed lock
            renew_deadline: Seconds the leader keeps retrying a failed renew before giving up
            retry_period: Seconds between acquire and renew attempts
            clock: Source of the current time, for tests
        """
        if renew_deadline >= lease_duration:
            raise BootstrapError("leader election renew deadline must be shorter than the lease")
        self.lock = lock
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.clock = clock
        self._observed: LeaderElectionRecord | None = None
        self._observed_time: datetime | None = None
        self._is_leader = False

    @property
    def identity(self) -> str:
        return self.lock.identity

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _observe(self, record: LeaderElectionRecord, now: datetime) -> None:
        if record != self._observed:
            self._observed = record
            self._observed_time = now

    def _remaining(self, deadline: float | None) -> float | None:
        """Per-request timeout: the renew deadline bounds every call made while renewing."""
        if deadline is None:
            return self.renew_deadline
        return max(deadline - time.monotonic(), MIN_REQUEST_TIMEOUT)

    def try_acquire_or_renew(self, deadline: float | None = None) -> bool:
        """Make one attempt to take or extend leadership.

        Args:
            deadline: time.monotonic() value no API call may run past

        Returns:
            True if this process holds the lock after the attempt
        """
        now = self.clock()
        desired = LeaderElectionRecord(
            holder_identity=self.identity,
            lease_duration_seconds=int(self.lease_duration),
            acquire_time=now,
            renew_time=now,
        )

        try:
            current = self.lock.get(timeout=self._remaining(deadline))
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Error retrieving lock {self.lock.describe()}: {e.reason}")
                return False
            try:
                self.lock.create(desired, timeout=self._remaining(deadline))
            except ApiException as create_error:
                logger.error(f"Error creating lock {self.lock.describe()}: {create_error.reason}")
                return False
            self._observe(desired, now)
            self._is_leader = True
            return True
        except Exception as e:
            logger.error(f"Error retrieving lock {self.lock.describe()}: {e}")
            return False

        self._observe(current, now)
        held_by_other = current.holder_identity not in ("", self.identity)
        if held_by_other:
            expires = self._observed_time + timedelta(seconds=current.lease_duration_seconds)
            if expires > now:
                logger.debug(f"Lock is held by {current.holder_identity} and has not yet expired")
                self._is_leader = False
                return False

        if current.holder_identity == self.identity:
            desired.acquire_time = current.acquire_time or now
            desired.leader_transitions = current.leader_transitions
        else:
            desired.leader_transitions = current.leader_transitions + 1

        try:
            self.lock.update(desired, timeout=self._remaining(deadline))
        except ApiException as e:
            logger.error(f"Failed to update lock {self.lock.describe()}: {e.reason}")
            return False
        except Exception as e:
            logger.error(f"Failed to update lock {self.lock.describe()}: {e}")
            return False

        self._observe(desired, now)
        self._is_leader = True
        return True

    def acquire(self, stop_event: threading.Event) -> bool:
        """Block until leadership is acquired or the stop event is set.

        Returns:
            True if leadership was acquired, False if stopped first
        """
        logger.info(f"Attempting to acquire leader lease {self.lock.describe()}...")
        while not stop_event.is_set():
            if self.try_acquire_or_renew():
                logger.info(f"Successfully acquired lease {self.lock.describe()}")
                return True
            stop_event.wait(self.retry_period)
        return False

    def renew_loop(self, stop_event: threading.Event) -> None:
        """Keep renewing leadership until stopped.

        Raises:
            LeaderElectionError: If the lock could not be renewed within the renew deadline
        """
        while not stop_event.wait(self.retry_period):
            deadline = time.monotonic() + self.renew_deadline
            while not self.try_acquire_or_renew(deadline):
                if stop_event.is_set():
                    return
                if time.monotonic() >= deadline:
                    self._is_leader = False
                    raise LeaderElectionError(
                        f"Leader election lost for {self.lock.describe()}",
                        f"Failed to renew the lock within {self.renew_deadline}s.",
                    )
                stop_event.wait(self.retry_period)

    def release(self) -> None:
        """Give up leadership so another replica can take over without waiting."""
        if not self._is_leader or self._observed is None:
            return
        now = self.clock()
        released = LeaderElectionRecord(
            holder_identity="",
            lease_duration_seconds=1,
            acquire_time=now,
            renew_time=now,
            leader_transitions=self._observed.leader_transitions,
        )
        try:
            self.lock.update(released, timeout=self.retry_period)
            logger.info(f"Released leader lease {self.lock.describe()}")
        except ApiException as e:
            logger.warning(f"Failed to release lock {self.lock.describe()}: {e.reason}")
        except Exception as e:
            logger.warning(f"Failed to release lock {self.lock.describe()}: {e}")
        self._is_leader = False
