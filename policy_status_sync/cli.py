"""Main CLI entry point for the policy status sync controller."""

import os
import platform
import signal
import threading
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from policy_status_sync.exceptions import NotInClusterError, StatusSyncError
from policy_status_sync.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="policy-status-sync",
    help="Synchronize policy status from a managed cluster to the hub cluster",
    add_completion=False,
)

console = Console(stderr=True)
logger = get_logger(__name__)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    try:
        setup_logging(verbose=verbose, log_file=log_path)
    except ValueError as e:
        console.print(f"[red]Invalid logging configuration:[/red] {e}")
        raise typer.Exit(code=1)
    logger.debug("Logging initialized")


def print_version() -> None:
    """Log the operator, Python and platform versions."""
    from policy_status_sync import __version__

    logger.info(f"Operator Version: {__version__}")
    logger.info(f"Python Version: {platform.python_version()}")
    logger.info(f"OS/Arch: {platform.system().lower()}/{platform.machine()}")


@app.command()
def version() -> None:
    """Show version information."""
    from policy_status_sync import __version__

    typer.echo(f"policy-status-sync version {__version__}")


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set the stop event on SIGTERM/SIGINT; a second signal exits immediately."""

    def handler(signum, frame):
        if stop_event.is_set():
            os._exit(1)
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, handler)
    signal.signal(signal.SIGINT, handler)


def start_heartbeat(options, hub, managed, scope, stop_event: threading.Event):
    """Start the status lease heartbeat if it is enabled and possible.

    Returns:
        The running LeaseHeartbeat, or None if status reporting is skipped
    """
    from policy_status_sync.heartbeat import LeaseHeartbeat, addon_pod_predicates
    from policy_status_sync.namespaces import get_operator_namespace

    if not options.enable_lease:
        logger.info("Status reporting is not enabled")
        return None

    try:
        operator_namespace = get_operator_namespace()
    except NotInClusterError:
        logger.info("Skipping lease; not running in a cluster.")
        return None

    if scope.all_namespaces:
        logger.warning("Skipping lease; no cluster namespace to publish it in on the hub")
        return None

    logger.info("Starting lease controller to report status")
    heartbeat = LeaseHeartbeat(
        hub,
        managed,
        lease_namespace=scope.primary,
        managed_lease_namespace=operator_namespace,
        predicates=addon_pod_predicates(operator_namespace),
        interval_seconds=options.lease_interval_seconds,
    )
    heartbeat.start(stop_event)
    return heartbeat


def run_controller(options, watch_namespace: str | None, stop_event: threading.Event) -> None:
    """Initialize every component and block until the stop event is set.

    Raises:
        StatusSyncError: On any fatal initialization or run error
    """
    from policy_status_sync.connections import ClusterConnectionResolver
    from policy_status_sync.controllers import register_reconciler
    from policy_status_sync.controllers.sync import CONTROLLER_NAME, PolicyReconciler
    from policy_status_sync.events import EventRecorder
    from policy_status_sync.manager import bootstrap_manager
    from policy_status_sync.namespaces import (
        NamespaceProvisioner,
        get_watch_namespace,
        select_namespace_scope,
    )
    from policy_status_sync.probes import ConfigChecker
    from policy_status_sync.scheme import build_scheme

    resolver = ClusterConnectionResolver(options.hub_config_path, options.managed_config_path)
    hub, managed = resolver.resolve()

    raw_namespace = watch_namespace if watch_namespace is not None else get_watch_namespace()
    scope = select_namespace_scope(raw_namespace)
    logger.info(f"Watch namespace scope: {scope}")

    scheme = build_scheme()
    hub_recorder = EventRecorder(hub.api_client, CONTROLLER_NAME, namespace=scope.primary)
    config_checker = ConfigChecker(CONTROLLER_NAME, hub.source)

    manager = bootstrap_manager(options, scope, managed, scheme, config_checker)

    reconciler = PolicyReconciler(
        hub_client=hub,
        hub_recorder=hub_recorder,
        managed_client=manager.get_client(),
        managed_recorder=manager.get_event_recorder_for(CONTROLLER_NAME),
        scheme=manager.get_scheme(),
    )
    register_reconciler(manager, reconciler)

    NamespaceProvisioner().ensure_scope(managed.api_client, scope.namespaces)

    heartbeat = start_heartbeat(options, hub, managed, scope, stop_event)

    logger.info("starting manager")
    try:
        manager.start(stop_event)
    finally:
        stop_event.set()
        if heartbeat is not None:
            heartbeat.stop()


@app.command()
def run(
    hub_config: str | None = typer.Option(
        None,
        "--hub-cluster-configfile",
        help="Kubeconfig for the hub cluster (defaults to the HUB_CONFIG environment variable)",
    ),
    managed_config: str | None = typer.Option(
        None,
        "--managed-cluster-configfile",
        help="Kubeconfig for the managed cluster (defaults to MANAGED_CONFIG, then in-cluster)",
    ),
    watch_namespace: str | None = typer.Option(
        None,
        "--watch-namespace",
        help="Namespace, or comma-separated namespaces, to watch (defaults to WATCH_NAMESPACE)",
    ),
    probe_addr: str = typer.Option(
        ":8081", "--health-probe-bind-address", help="Address the probe endpoint binds to"
    ),
    leader_elect: bool = typer.Option(
        True, "--leader-elect/--no-leader-elect", help="Enable leader election"
    ),
    legacy_leader_elect: bool = typer.Option(
        False,
        "--legacy-leader-elect",
        help="Use a ConfigMap lock for clusters without the Lease API",
    ),
    leader_election_namespace: str | None = typer.Option(
        None,
        "--leader-election-namespace",
        help="Namespace of the leader election lock (defaults to the operator namespace)",
    ),
    enable_lease: bool = typer.Option(
        True,
        "--enable-lease/--disable-lease",
        help="Report controller status to the addon framework through a hub lease",
    ),
    lease_interval: float = typer.Option(
        60.0, "--lease-interval", help="Seconds between status lease updates"
    ),
) -> None:
    """
    Run the policy status sync controller.

    Connects to the hub and managed clusters, starts the controller manager
    against the managed cluster and, when enabled, reports the controller's
    health to the hub through a lease until the process is terminated.
    """
    from policy_status_sync.models.options import BootstrapOptions

    print_version()

    try:
        options = BootstrapOptions(
            hub_config_path=hub_config,
            managed_config_path=managed_config,
            enable_leader_election=leader_elect,
            legacy_leader_election=legacy_leader_elect,
            leader_election_namespace=leader_election_namespace,
            probe_addr=probe_addr,
            enable_lease=enable_lease,
            lease_interval_seconds=lease_interval,
        )
    except ValidationError as e:
        console.print("[red]Invalid options:[/red]")
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(code=1)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    try:
        run_controller(options, watch_namespace, stop_event)
    except StatusSyncError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        console.print(f"[red]{type(e).__name__}:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)
    except Exception as e:
        logger.error(f"problem running manager: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        raise typer.Exit(code=1)

    logger.info("Manager stopped")


if __name__ == "__main__":
    app()
