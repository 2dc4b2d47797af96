"""Controller manager: watches, probes and leader election for the managed cluster."""

import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from policy_status_sync.connections import ManagedConnection
from policy_status_sync.events import EventRecorder
from policy_status_sync.exceptions import (
    BootstrapError,
    LeaderElectionError,
    NotInClusterError,
    RegistrationError,
)
from policy_status_sync.leaderelection import LeaderElector, default_identity, new_resource_lock
from policy_status_sync.logging_config import get_logger
from policy_status_sync.models.options import (
    DISABLED_BIND_ADDRESS,
    BootstrapOptions,
    ManagerOptions,
    parse_bind_address,
)
from policy_status_sync.namespaces import (
    MultiNamespace,
    NamespaceScope,
    SingleNamespace,
    get_operator_namespace,
)
from policy_status_sync.probes import Checker, ProbeServer, ping
from policy_status_sync.scheme import ResourceType, Scheme

logger = get_logger(__name__)

# Handlers receive the watch event type (ADDED, MODIFIED, DELETED) and the object
EventHandler = Callable[[str, object], None]


@dataclass(frozen=True)
class WatchRegistration:
    """A resource type and the handler its watch events are delivered to."""

    resource: ResourceType
    handler: EventHandler


def _snake_case(kind: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", kind).lower()


def _resource_version(obj) -> str | None:
    if isinstance(obj, dict):
        return obj.get("metadata", {}).get("resourceVersion")
    metadata = getattr(obj, "metadata", None)
    return getattr(metadata, "resource_version", None)


class ControllerManager:
    """Runs registered watches against the managed cluster.

    Watches are scoped to the configured namespaces: one watch per namespace
    for a multi-namespace scope, a cluster-wide watch for the all-namespaces
    scope. With leader election on, watches only start once this process
    holds the lock.
    """

    def __init__(
        self,
        managed: ManagedConnection,
        scheme: Scheme,
        scope: NamespaceScope,
        options: ManagerOptions,
        identity: str | None = None,
    ):
        if not isinstance(scope, (SingleNamespace, MultiNamespace)):
            raise BootstrapError(f"Invalid namespace scope: {scope!r}")
        if options.leader_election and not options.leader_election_namespace:
            raise BootstrapError(
                "Unable to find leader election namespace",
                "Set the leader election namespace or run the controller in a cluster.",
            )

        self.managed = managed
        self.scheme = scheme
        self.scope = scope
        self.options = options
        self.identity = identity or default_identity()
        self._healthz: dict[str, Checker] = {}
        self._readyz: dict[str, Checker] = {}
        self._registrations: list[WatchRegistration] = []
        self._watches: list[watch.Watch] = []
        self._workers: list[threading.Thread] = []
        self._started = False
        self._leader_error: LeaderElectionError | None = None

        self.elector: LeaderElector | None = None
        if options.leader_election:
            lock = new_resource_lock(
                options.leader_election_resource_lock,
                managed.api_client,
                options.leader_election_id,
                options.leader_election_namespace,
                self.identity,
            )
            self.elector = LeaderElector(
                lock,
                lease_duration=options.lease_duration_seconds,
                renew_deadline=options.renew_deadline_seconds,
                retry_period=options.retry_period_seconds,
            )

    @property
    def started(self) -> bool:
        return self._started

    def get_client(self) -> ManagedConnection:
        return self.managed

    def get_scheme(self) -> Scheme:
        return self.scheme

    def get_event_recorder_for(self, component: str) -> EventRecorder:
        return EventRecorder(self.managed.api_client, component)

    def add_healthz_check(self, name: str, check: Checker) -> None:
        self._add_check(self._healthz, "healthz", name, check)

    def add_readyz_check(self, name: str, check: Checker) -> None:
        self._add_check(self._readyz, "readyz", name, check)

    def _add_check(self, checks: dict[str, Checker], kind: str, name: str, check: Checker) -> None:
        if self._started:
            raise BootstrapError(f"Cannot add {kind} check {name!r} after the manager has started")
        if name in checks:
            raise BootstrapError(f"{kind} check {name!r} is already registered")
        checks[name] = check

    def add_watch(self, kind: str, handler: EventHandler, group: str = "") -> WatchRegistration:
        """Register a handler for watch events of a kind.

        Raises:
            RegistrationError: If the kind is unknown or the manager already started
        """
        if self._started:
            raise RegistrationError(
                f"Cannot watch {kind} after the manager has started",
                "Register every controller before calling start().",
            )
        try:
            resource = self.scheme.lookup(kind, group)
        except KeyError as e:
            known = ", ".join(f"{r.api_version}/{r.kind}" for r in self.scheme.known_types())
            raise RegistrationError(f"Unknown kind {kind}", f"{e.args[0]}; known types: {known}")

        registration = WatchRegistration(resource=resource, handler=handler)
        self._registrations.append(registration)
        logger.debug(f"Registered watch for {resource.api_version}, Kind={kind}")
        return registration

    def _list_call(self, resource: ResourceType, namespace: str) -> tuple[Callable, dict]:
        """Return the list function and arguments a watch streams from."""
        if resource.is_core:
            core_v1 = client.CoreV1Api(self.managed.api_client)
            snake = _snake_case(resource.kind)
            if not resource.namespaced:
                return getattr(core_v1, f"list_{snake}"), {}
            if namespace:
                return getattr(core_v1, f"list_namespaced_{snake}"), {"namespace": namespace}
            return getattr(core_v1, f"list_{snake}_for_all_namespaces"), {}

        custom = client.CustomObjectsApi(self.managed.api_client)
        kwargs = {"group": resource.group, "version": resource.version, "plural": resource.plural}
        if resource.namespaced and namespace:
            return custom.list_namespaced_custom_object, {**kwargs, "namespace": namespace}
        return custom.list_cluster_custom_object, kwargs

    def _watch_loop(
        self,
        registration: WatchRegistration,
        namespace: str,
        stop_event: threading.Event,
        w: watch.Watch,
    ) -> None:
        resource = registration.resource
        list_fn, kwargs = self._list_call(resource, namespace)
        request_timeout = (
            self.options.retry_period_seconds,
            self.options.watch_timeout_seconds + self.options.watch_read_slack_seconds,
        )
        resource_version = None
        where = namespace or "all namespaces"
        logger.info(f"Starting watch for {resource.kind} in {where}")

        while not stop_event.is_set():
            stream_kwargs = dict(
                kwargs,
                timeout_seconds=self.options.watch_timeout_seconds,
                _request_timeout=request_timeout,
            )
            if resource_version:
                stream_kwargs["resource_version"] = resource_version
            try:
                for event in w.stream(list_fn, **stream_kwargs):
                    if stop_event.is_set():
                        w.stop()
                        break
                    obj = event["object"]
                    resource_version = _resource_version(obj) or resource_version
                    try:
                        registration.handler(event["type"], obj)
                    except Exception as e:
                        logger.error(
                            f"Handler for {resource.kind} failed on {event['type']} event: {e}",
                            exc_info=True,
                        )
            except ApiException as e:
                if e.status == 410:
                    logger.debug(f"Watch for {resource.kind} in {where} expired, relisting")
                    resource_version = None
                    continue
                logger.error(f"Watch for {resource.kind} in {where} failed: {e.status} {e.reason}")
                stop_event.wait(self.options.retry_period_seconds)
            except Exception as e:
                if stop_event.is_set():
                    break
                logger.error(f"Watch for {resource.kind} in {where} failed: {e}")
                stop_event.wait(self.options.retry_period_seconds)

        logger.debug(f"Stopped watch for {resource.kind} in {where}")

    def _watch_namespaces(self, resource: ResourceType) -> list[str]:
        if not resource.namespaced or self.scope.all_namespaces:
            return [""]
        return self.scope.namespaces

    def _start_watches(self, stop_event: threading.Event) -> None:
        for registration in self._registrations:
            for namespace in self._watch_namespaces(registration.resource):
                w = watch.Watch()
                self._watches.append(w)
                worker = threading.Thread(
                    target=self._watch_loop,
                    args=(registration, namespace, stop_event, w),
                    name=f"watch-{registration.resource.plural}-{namespace or 'all'}",
                    daemon=True,
                )
                self._workers.append(worker)
                worker.start()

    def _stop_watches(self) -> None:
        """Stop every watch and wait a bounded time for the workers to exit.

        A worker blocked reading an idle stream only notices the stop once the
        read returns; it is a daemon thread and is left behind after the
        shutdown timeout.
        """
        for w in self._watches:
            w.stop()
        deadline = time.monotonic() + self.options.shutdown_timeout_seconds
        for worker in self._workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0))
        lingering = [worker.name for worker in self._workers if worker.is_alive()]
        if lingering:
            logger.debug(f"Watch workers still blocked at shutdown: {', '.join(lingering)}")

    def _renew_leadership(self, stop_event: threading.Event) -> None:
        try:
            self.elector.renew_loop(stop_event)
        except LeaderElectionError as e:
            logger.error(f"Leader election lost: {e.message}")
            self._leader_error = e
            stop_event.set()

    def _preflight(self) -> None:
        try:
            version = client.VersionApi(self.managed.api_client).get_code()
        except Exception as e:
            raise BootstrapError(
                f"Unable to reach the managed cluster at {self.managed.host}", str(e)
            )
        logger.info(f"Managed cluster version: {version.git_version}")

    def start(self, stop_event: threading.Event) -> None:
        """Run until the stop event is set.

        Raises:
            BootstrapError: If the manager cannot start
            LeaderElectionError: If leadership is lost while running
        """
        if self._started:
            raise BootstrapError("Manager was already started")
        self._started = True

        self._preflight()
        logger.info(
            f"Starting manager with {len(self._registrations)} watches "
            f"over {len(self.scheme)} known types"
        )

        probe_server = None
        probe_address = parse_bind_address(self.options.health_probe_bind_address)
        if probe_address is not None:
            probe_server = ProbeServer(probe_address, self._healthz, self._readyz)
            probe_server.start()
        if self.options.metrics_bind_address == DISABLED_BIND_ADDRESS:
            logger.debug("Metrics server is disabled")

        renew_thread = None
        try:
            if self.elector is not None:
                if not self.elector.acquire(stop_event):
                    logger.info("Stopped before acquiring leadership")
                    return
                renew_thread = threading.Thread(
                    target=self._renew_leadership,
                    args=(stop_event,),
                    name="leader-election",
                    daemon=True,
                )
                renew_thread.start()

            self._start_watches(stop_event)
            stop_event.wait()
            logger.info("Stopping manager")
        finally:
            self._stop_watches()
            if renew_thread is not None:
                renew_thread.join(timeout=self.options.renew_deadline_seconds)
            if self.elector is not None and self.elector.is_leader:
                self.elector.release()
            if probe_server is not None:
                probe_server.stop()

        if self._leader_error is not None:
            raise self._leader_error


def bootstrap_manager(
    options: BootstrapOptions,
    scope: NamespaceScope,
    managed: ManagedConnection,
    scheme: Scheme,
    config_checker,
    operator_namespace: Callable[[], str] = get_operator_namespace,
) -> ControllerManager:
    """Build the controller manager for the managed cluster.

    Args:
        options: Process options
        scope: Namespaces the manager's watches cover
        managed: Managed cluster connection
        scheme: Known resource types
        config_checker: Object whose ``check`` backs the healthz probe
        operator_namespace: Lookup for the leader election namespace when none is configured

    Returns:
        A manager ready for reconcilers to be registered

    Raises:
        BootstrapError: If options are invalid or probes cannot be registered
    """
    election_namespace = options.leader_election_namespace
    if options.enable_leader_election and not election_namespace:
        try:
            election_namespace = operator_namespace()
        except NotInClusterError as e:
            raise BootstrapError(
                "Unable to find leader election namespace",
                f"{e.message}. Pass --leader-election-namespace when running outside a cluster.",
            )

    try:
        manager_options = ManagerOptions(
            leader_election=options.enable_leader_election,
            leader_election_namespace=election_namespace,
            leader_election_resource_lock=options.resource_lock,
            health_probe_bind_address=options.probe_addr,
            metrics_bind_address=DISABLED_BIND_ADDRESS,
        )
    except ValidationError as e:
        raise BootstrapError("Invalid manager options", str(e))

    if options.legacy_leader_election:
        logger.info("Using legacy ConfigMap leader election lock")

    manager = ControllerManager(managed, scheme, scope, manager_options)
    manager.add_healthz_check("healthz", config_checker.check)
    manager.add_readyz_check("readyz", ping)
    return manager
