"""Policy status synchronization from the managed cluster to the hub."""

from kubernetes.client.rest import ApiException

from policy_status_sync.connections import HubConnection, ManagedConnection
from policy_status_sync.events import NORMAL, WARNING, EventRecorder
from policy_status_sync.logging_config import get_logger
from policy_status_sync.scheme import POLICY_GROUP, Scheme

logger = get_logger(__name__)

CONTROLLER_NAME = "policy-status-sync"


class PolicyReconciler:
    """Copies the status of replicated policies up to their hub counterparts.

    A replicated policy has the same name and namespace (the cluster
    namespace) on the hub and on the managed cluster.
    """

    def __init__(
        self,
        hub_client: HubConnection,
        hub_recorder: EventRecorder,
        managed_client: ManagedConnection,
        managed_recorder: EventRecorder,
        scheme: Scheme,
    ):
        self.hub_client = hub_client
        self.hub_recorder = hub_recorder
        self.managed_client = managed_client
        self.managed_recorder = managed_recorder
        self.policy_type = scheme.lookup("Policy", POLICY_GROUP)

    def setup_with_manager(self, manager) -> None:
        manager.add_watch("Policy", self.handle_event, group=POLICY_GROUP)

    def handle_event(self, event_type: str, obj: dict) -> None:
        if event_type == "DELETED":
            return
        metadata = obj.get("metadata", {})
        self.reconcile(metadata.get("namespace"), metadata.get("name"))

    def _policy_args(self, namespace: str, name: str) -> dict:
        return {
            "group": self.policy_type.group,
            "version": self.policy_type.version,
            "plural": self.policy_type.plural,
            "namespace": namespace,
            "name": name,
        }

    def reconcile(self, namespace: str, name: str) -> bool:
        """Sync one policy's status.

        Returns:
            True if the hub policy status was updated
        """
        args = self._policy_args(namespace, name)
        try:
            managed_policy = self.managed_client.custom_objects().get_namespaced_custom_object(
                **args
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Policy {namespace}/{name} no longer exists on the managed cluster")
                return False
            raise

        status = managed_policy.get("status")
        if not status:
            return False

        hub_api = self.hub_client.custom_objects()
        try:
            hub_policy = hub_api.get_namespaced_custom_object(**args)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Policy {namespace}/{name} not found on the hub, skipping")
                return False
            raise

        if hub_policy.get("status") == status:
            return False

        try:
            hub_api.patch_namespaced_custom_object_status(body={"status": status}, **args)
        except ApiException as e:
            self.managed_recorder.event(
                managed_policy,
                WARNING,
                "PolicyStatusSyncFailed",
                f"Policy {name} status could not be sent to the hub: {e.reason}",
            )
            raise
        logger.info(f"Updated status of policy {namespace}/{name} on the hub")
        self.hub_recorder.event(
            hub_policy,
            NORMAL,
            "PolicyStatusSync",
            f"Policy {name} status was updated in cluster namespace {namespace}",
        )
        self.managed_recorder.event(
            managed_policy, NORMAL, "PolicyStatusSync", f"Policy {name} status was sent to the hub"
        )
        return True
