"""Kubernetes event recording."""

from kubernetes import client
from kubernetes.client.rest import ApiException

from policy_status_sync.logging_config import get_logger
from policy_status_sync.models.lease import utc_now

logger = get_logger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


def object_reference(obj) -> client.V1ObjectReference:
    """Build a reference to an API object given as a dict or a client model."""
    if isinstance(obj, dict):
        metadata = obj.get("metadata", {})
        return client.V1ObjectReference(
            api_version=obj.get("apiVersion"),
            kind=obj.get("kind"),
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            uid=metadata.get("uid"),
            resource_version=metadata.get("resourceVersion"),
        )
    return client.V1ObjectReference(
        api_version=obj.api_version,
        kind=obj.kind,
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        uid=obj.metadata.uid,
        resource_version=obj.metadata.resource_version,
    )


class EventRecorder:
    """Writes core/v1 Events about objects to a cluster.

    Event delivery is best effort: a failed write is logged and dropped so it
    never interrupts the caller.
    """

    def __init__(self, api_client: client.ApiClient, component: str, namespace: str | None = None):
        """Initialize the recorder.

        Args:
            api_client: Client for the cluster the events are written to
            component: Reporting component name
            namespace: Namespace to write events in; defaults to the object's namespace
        """
        self.api = client.CoreV1Api(api_client)
        self.component = component
        self.namespace = namespace or None

    def event(self, obj, event_type: str, reason: str, message: str) -> client.CoreV1Event | None:
        """Record an event about an object.

        Returns:
            The created event, or None if it could not be written
        """
        reference = object_reference(obj)
        namespace = self.namespace or reference.namespace or "default"
        now = utc_now()
        body = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{reference.name}.", namespace=namespace),
            involved_object=reference,
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            return self.api.create_namespaced_event(namespace, body)
        except ApiException as e:
            logger.warning(
                f"Unable to record event {reason} for {reference.kind} {reference.name}: {e.reason}"
            )
            return None
