"""Registry of the API types the controller knows how to watch and write."""

from pydantic import BaseModel, ConfigDict, field_validator

from policy_status_sync.logging_config import get_logger

logger = get_logger(__name__)

POLICY_GROUP = "policy.open-cluster-management.io"
POLICY_VERSION = "v1"


class ResourceType(BaseModel):
    """A group/version/kind together with its REST plural."""

    model_config = ConfigDict(frozen=True)

    group: str = ""  # empty for the core API group
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    @field_validator("version", "kind", "plural")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Validate required identifiers are not empty."""
        if not v:
            raise ValueError("version, kind and plural cannot be empty")
        return v

    @property
    def api_version(self) -> str:
        """apiVersion string as it appears in object manifests."""
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def is_core(self) -> bool:
        return self.group == ""


class Scheme:
    """Explicit registry of known resource types.

    A single instance is built at start-up and handed to every component that
    needs to resolve a kind, instead of relying on a package-level registry.
    """

    def __init__(self):
        self._types: dict[tuple[str, str], ResourceType] = {}

    def add_known_type(self, resource: ResourceType) -> None:
        """Register a resource type.

        Raises:
            ValueError: If a different type is already registered for the group/kind
        """
        key = (resource.group, resource.kind)
        existing = self._types.get(key)
        if existing is not None and existing != resource:
            raise ValueError(
                f"kind {resource.kind!r} in group {resource.group!r} is already registered "
                f"as {existing.api_version}/{existing.plural}"
            )
        self._types[key] = resource
        logger.debug(f"Registered {resource.api_version}, Kind={resource.kind}")

    def lookup(self, kind: str, group: str = "") -> ResourceType:
        """Return the registered type for a kind.

        Raises:
            KeyError: If the kind is unknown to the scheme
        """
        try:
            return self._types[(group, kind)]
        except KeyError:
            raise KeyError(f"no kind {kind!r} is registered for group {group!r}") from None

    def recognizes(self, kind: str, group: str = "") -> bool:
        return (group, kind) in self._types

    def known_types(self) -> list[ResourceType]:
        return sorted(self._types.values(), key=lambda r: (r.group, r.kind))

    def __len__(self) -> int:
        return len(self._types)


PodType = ResourceType(version="v1", kind="Pod", plural="pods")
NamespaceType = ResourceType(version="v1", kind="Namespace", plural="namespaces", namespaced=False)
EventType = ResourceType(version="v1", kind="Event", plural="events")
ConfigMapType = ResourceType(version="v1", kind="ConfigMap", plural="configmaps")
LeaseType = ResourceType(group="coordination.k8s.io", version="v1", kind="Lease", plural="leases")
PolicyType = ResourceType(
    group=POLICY_GROUP, version=POLICY_VERSION, kind="Policy", plural="policies"
)


def build_scheme() -> Scheme:
    """Build the scheme used by the controller process."""
    scheme = Scheme()
    for resource in (PodType, NamespaceType, EventType, ConfigMapType, LeaseType, PolicyType):
        scheme.add_known_type(resource)
    return scheme
