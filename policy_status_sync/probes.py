"""Health and readiness probe endpoints."""

import hashlib
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

from policy_status_sync.exceptions import BootstrapError
from policy_status_sync.logging_config import get_logger

logger = get_logger(__name__)

# A check returns None when healthy and raises when it is not
Checker = Callable[[object], None]


def ping(request: object) -> None:
    """Always-healthy check."""
    return None


class ConfigChecker:
    """Health check that fails once watched config files change on disk.

    The hub kubeconfig is typically mounted from a secret that is rotated in
    place; failing the health check gets the pod restarted with the new
    credentials.
    """

    def __init__(self, name: str, *paths: str | Path):
        """Initialize the checker and record the current file checksums.

        Args:
            name: Checker name used in error messages
            paths: Files to watch; empty paths are ignored

        Raises:
            BootstrapError: If a watched file cannot be read
        """
        self.name = name
        self.paths = [Path(p).expanduser() for p in paths if p]
        self.checksum = self._compute()

    def _compute(self) -> str:
        digest = hashlib.sha256()
        for path in self.paths:
            try:
                digest.update(path.read_bytes())
            except OSError as e:
                raise BootstrapError(f"Unable to read config file {path} for {self.name}", str(e))
        return digest.hexdigest()

    def check(self, request: object) -> None:
        """Raise if any watched file differs from its content at start-up."""
        current = self._compute()
        if current != self.checksum:
            raise RuntimeError(
                f"checksum of config files for {self.name} changed, restart to pick up the change"
            )


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves /healthz and /readyz, including per-check sub-paths."""

    server: "_ProbeHTTPServer"

    def do_GET(self) -> None:  # noqa: N802
        path = self.path.split("?", 1)[0].rstrip("/")
        endpoint, _, check_name = path.lstrip("/").partition("/")

        checks = self.server.checks.get(endpoint)
        if checks is None:
            self._respond(404, "404 page not found\n")
            return

        if check_name:
            if check_name not in checks:
                self._respond(404, f"no such check: {check_name}\n")
                return
            checks = {check_name: checks[check_name]}

        failures = []
        for name, check in checks.items():
            try:
                check(self)
            except Exception as e:
                failures.append(f"[-]{name} failed: {e}")

        if failures:
            body = "\n".join(failures) + f"\n{endpoint} check failed\n"
            logger.info(f"{endpoint} check failed: {'; '.join(failures)}")
            self._respond(500, body)
        else:
            self._respond(200, "ok")

    def _respond(self, status: int, body: str) -> None:
        data = body.encode()
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


class _ProbeHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], checks: dict[str, dict[str, Checker]]):
        super().__init__(address, _ProbeHandler)
        self.checks = checks


class ProbeServer:
    """HTTP server exposing the registered healthz and readyz checks."""

    def __init__(
        self,
        address: tuple[str, int],
        healthz: dict[str, Checker],
        readyz: dict[str, Checker],
    ):
        self.address = address
        self.checks = {"healthz": healthz, "readyz": readyz}
        self._server: _ProbeHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.server_address[1]

    def start(self) -> None:
        """Bind the socket and serve on a background thread.

        Raises:
            BootstrapError: If the address cannot be bound
        """
        try:
            self._server = _ProbeHTTPServer(self.address, self.checks)
        except OSError as e:
            raise BootstrapError(
                f"Unable to bind health probe address {self.address[0]}:{self.address[1]}", str(e)
            )
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="health-probes", daemon=True
        )
        self._thread.start()
        logger.info(f"Starting health probe server on {self.address[0]}:{self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None
        logger.debug("Health probe server stopped")
