"""Status heartbeat published as a Lease on the hub cluster.

This lease is not related to leader election. The addon framework on the hub
reads it to show whether the controller is healthy in the status of the
ManagedClusterAddOn resource. Each tick evaluates the registered health
predicates against the managed cluster, upserts the lease in the operator
namespace of the managed cluster and then mirrors it to the cluster namespace
on the hub. The renew time only moves forward while every predicate passes.
"""

import random
import socket
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from policy_status_sync.connections import HubConnection, ManagedConnection
from policy_status_sync.exceptions import HeartbeatEvaluationError, HeartbeatPublishError
from policy_status_sync.logging_config import get_logger
from policy_status_sync.models.lease import LeaseRecord, utc_now

logger = get_logger(__name__)

DEFAULT_LEASE_NAME = "policy-controller"
DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_JITTER_FACTOR = 0.25
DEFAULT_REQUEST_TIMEOUT = 5.0
DEFAULT_STOP_TIMEOUT = 15.0
ADDON_POD_SELECTORS = ("app=policy-framework", "app=policy-config-policy")


class HeartbeatState(str, Enum):
    """States of the heartbeat loop."""

    IDLE = "Idle"
    EVALUATING = "Evaluating"
    PUBLISHING = "Publishing"
    SLEEPING = "Sleeping"
    CANCELLED = "Cancelled"
    STOPPED = "Stopped"


class HealthEvaluator(Protocol):
    """Side-effect-free check run against a cluster."""

    def evaluate(
        self, api_client: client.ApiClient, namespace: str, label_selector: str
    ) -> bool: ...


class AddonPodCheck:
    """Healthy when at least one pod matching the selector is running."""

    def __init__(self, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self.request_timeout = request_timeout

    def evaluate(self, api_client: client.ApiClient, namespace: str, label_selector: str) -> bool:
        pods = client.CoreV1Api(api_client).list_namespaced_pod(
            namespace, label_selector=label_selector, _request_timeout=self.request_timeout
        )
        return any(pod.status is not None and pod.status.phase == "Running" for pod in pods.items)


@dataclass(frozen=True)
class HealthPredicate:
    """A health check bound to the namespace and selector it is evaluated with."""

    name: str
    namespace: str
    label_selector: str
    evaluator: HealthEvaluator = field(default_factory=AddonPodCheck)

    def evaluate(self, managed: ManagedConnection) -> bool:
        """Run the check against the managed cluster.

        Raises:
            HeartbeatEvaluationError: If the check could not be evaluated
        """
        try:
            verdict = self.evaluator.evaluate(
                managed.api_client, self.namespace, self.label_selector
            )
        except Exception as e:
            raise HeartbeatEvaluationError(
                f"Health check {self.name} could not be evaluated", str(e)
            )
        return bool(verdict)


def addon_pod_predicates(
    namespace: str, selectors: Sequence[str] = ADDON_POD_SELECTORS
) -> list[HealthPredicate]:
    """Default predicates: the policy addon pods are running in the operator namespace."""
    return [
        HealthPredicate(name=selector, namespace=namespace, label_selector=selector)
        for selector in selectors
    ]


class LeaseHeartbeat:
    """Periodically republishes the controller's health as a lease.

    With a managed lease namespace set, the lease is written to the managed
    cluster first and then mirrored to the hub. A failed write to one cluster
    does not prevent the write to the other.
    """

    def __init__(
        self,
        hub: HubConnection,
        managed: ManagedConnection,
        lease_namespace: str,
        predicates: Sequence[HealthPredicate],
        managed_lease_namespace: str | None = None,
        lease_name: str = DEFAULT_LEASE_NAME,
        holder_identity: str | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        jitter_factor: float = DEFAULT_JITTER_FACTOR,
        lease_duration_seconds: int = 60,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the heartbeat.

        Args:
            hub: Hub connection the lease is mirrored to
            managed: Managed connection the predicates are evaluated against
            lease_namespace: Hub namespace of the lease (the cluster namespace)
            predicates: Health predicates, all of which must pass for a healthy tick
            managed_lease_namespace: Managed cluster namespace of the lease; None skips it
            lease_name: Name of the lease object
            holder_identity: Identity written to the lease; defaults to the hostname
            interval_seconds: Time between ticks
            jitter_factor: Up to this fraction of the interval is added to each sleep
            lease_duration_seconds: Lease duration advertised to the addon manager
            request_timeout_seconds: Timeout applied to every lease API request
            clock: Source of the current time, for tests
        """
        if not isinstance(hub, HubConnection):
            raise TypeError(
                f"the heartbeat lease is mirrored through the hub connection, "
                f"got the {getattr(hub, 'role', type(hub).__name__)} connection"
            )
        if not isinstance(managed, ManagedConnection):
            raise TypeError(
                f"health predicates are evaluated through the managed connection, "
                f"got the {getattr(managed, 'role', type(managed).__name__)} connection"
            )
        self.hub = hub
        self.managed = managed
        self.lease_namespace = lease_namespace
        self.managed_lease_namespace = managed_lease_namespace
        self.predicates = list(predicates)
        self.lease_name = lease_name
        self.holder_identity = holder_identity or socket.gethostname()
        self.interval_seconds = interval_seconds
        self.jitter_factor = jitter_factor
        self.lease_duration_seconds = lease_duration_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.clock = clock
        self.publish_count = 0
        self.last_record: LeaseRecord | None = None
        self._state = HeartbeatState.IDLE
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> HeartbeatState:
        return self._state

    def _set_state(self, state: HeartbeatState) -> None:
        logger.debug(f"Lease heartbeat {self._state.value} -> {state.value}")
        self._state = state

    def evaluate(self) -> bool:
        """Evaluate every predicate; the verdict is their logical AND.

        A predicate that fails to evaluate counts as unhealthy for this tick.
        All predicates are evaluated even after one fails, so every problem is
        logged.
        """
        healthy = True
        for predicate in self.predicates:
            try:
                ok = predicate.evaluate(self.managed)
            except HeartbeatEvaluationError as e:
                logger.warning(e.format_message())
                ok = False
            if not ok:
                logger.info(f"Health check {predicate.name} in {predicate.namespace} is failing")
            healthy = healthy and ok
        return healthy

    def _targets(self) -> list[tuple[HubConnection | ManagedConnection, str]]:
        targets = []
        if self.managed_lease_namespace:
            targets.append((self.managed, self.managed_lease_namespace))
        targets.append((self.hub, self.lease_namespace))
        return targets

    def upsert(
        self, connection: HubConnection | ManagedConnection, namespace: str, healthy: bool
    ) -> LeaseRecord:
        """Create or replace the lease in one cluster.

        Raises:
            HeartbeatPublishError: If the lease cannot be read or written
        """
        api = connection.coordination_v1()
        now = self.clock()
        where = f"{namespace}/{self.lease_name} on the {connection.role} cluster"
        try:
            try:
                existing = api.read_namespaced_lease(
                    self.lease_name, namespace, _request_timeout=self.request_timeout_seconds
                )
            except ApiException as e:
                if e.status != 404:
                    raise
                existing = None

            record = LeaseRecord(
                name=self.lease_name,
                namespace=namespace,
                holder_identity=self.holder_identity,
                lease_duration_seconds=self.lease_duration_seconds,
                renew_time=now if healthy else None,
                healthy=healthy,
            )

            if existing is None:
                api.create_namespaced_lease(
                    namespace, record.to_lease(), _request_timeout=self.request_timeout_seconds
                )
                logger.info(f"Created lease {where}")
            else:
                if not healthy:
                    record.renew_time = LeaseRecord.from_lease(existing).renew_time
                api.replace_namespaced_lease(
                    self.lease_name,
                    namespace,
                    record.to_lease(existing),
                    _request_timeout=self.request_timeout_seconds,
                )
        except ApiException as e:
            raise HeartbeatPublishError(
                f"Unable to update lease {where}", f"API returned {e.status}: {e.reason}"
            )
        except Exception as e:
            logger.debug("Unexpected lease update failure", exc_info=True)
            raise HeartbeatPublishError(f"Unable to update lease {where}", str(e))

        self.publish_count += 1
        return record

    def publish(self, healthy: bool) -> list[LeaseRecord]:
        """Write the verdict to the managed cluster, then mirror it to the hub.

        Returns:
            The records that were written, managed cluster first
        """
        written = []
        for connection, namespace in self._targets():
            try:
                written.append(self.upsert(connection, namespace, healthy))
            except HeartbeatPublishError as e:
                logger.error(e.format_message())
        if written:
            self.last_record = written[-1]
        return written

    def tick(self) -> bool:
        """Run one evaluate-then-publish cycle.

        Returns:
            The aggregate health verdict of this tick
        """
        self._set_state(HeartbeatState.EVALUATING)
        healthy = self.evaluate()

        self._set_state(HeartbeatState.PUBLISHING)
        self.publish(healthy)
        return healthy

    def _next_delay(self) -> float:
        if self.jitter_factor <= 0:
            return self.interval_seconds
        return self.interval_seconds * (1 + random.random() * self.jitter_factor)

    def run(self, stop_event: threading.Event) -> None:
        """Loop until the stop event is set.

        Cancellation is checked between states, so a lease write that has
        started always finishes first.
        """
        self._set_state(HeartbeatState.IDLE)
        while not stop_event.is_set():
            self.tick()
            if stop_event.is_set():
                break
            self._set_state(HeartbeatState.SLEEPING)
            if stop_event.wait(self._next_delay()):
                break
            self._set_state(HeartbeatState.IDLE)

        self._set_state(HeartbeatState.CANCELLED)
        self._set_state(HeartbeatState.STOPPED)
        logger.info("Lease heartbeat stopped")

    def start(self, stop_event: threading.Event | None = None) -> threading.Thread:
        """Start the loop on a background thread.

        Args:
            stop_event: Process-wide shutdown event; a private one is used if omitted

        Raises:
            RuntimeError: If the heartbeat is already running
        """
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("lease heartbeat is already running")
        if stop_event is not None:
            self._stop_event = stop_event
        targets = ", ".join(f"{ns}/{self.lease_name} ({c.role})" for c, ns in self._targets())
        logger.info(f"Starting lease heartbeat {targets} every {self.interval_seconds}s")
        self._thread = threading.Thread(
            target=self.run, args=(self._stop_event,), name="lease-heartbeat", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> bool:
        """Signal the loop to stop and wait up to ``timeout`` for it to exit.

        Returns:
            True if the loop has exited
        """
        self._stop_event.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"Lease heartbeat did not stop within {timeout}s")
            return False
        return True
