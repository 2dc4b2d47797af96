"""Reconcilers and their registration with the controller manager."""

from typing import Protocol

from policy_status_sync.exceptions import RegistrationError, StatusSyncError
from policy_status_sync.logging_config import get_logger

logger = get_logger(__name__)


class Reconciler(Protocol):
    """A controller that wires its watches into a manager."""

    def setup_with_manager(self, manager) -> None: ...


def register_reconciler(manager, reconciler: Reconciler) -> None:
    """Attach a reconciler to the manager before it starts.

    Raises:
        RegistrationError: If the reconciler cannot be set up
    """
    name = type(reconciler).__name__
    try:
        reconciler.setup_with_manager(manager)
    except RegistrationError:
        raise
    except StatusSyncError as e:
        raise RegistrationError(f"Unable to create controller {name}", e.message)
    except Exception as e:
        logger.error(f"Unexpected error setting up {name}: {e}", exc_info=True)
        raise RegistrationError(f"Unable to create controller {name}", str(e))
    logger.info(f"Registered controller {name}")
