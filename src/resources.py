"""
Resource model - Read-only views of the watched Kubernetes objects.

Provides the identifiers used to address resources, pydantic views over the
raw API objects, and JSON merge patch construction for conditional writes.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Label on a primary naming the secondary it drives (same namespace).
SYNC_LABEL_KEY = "memcached-operator/associated-memcached-deployment-name"


@dataclass(frozen=True)
class NamespacedName:
    """Namespace and name of a namespaced object."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "NamespacedName":
        """Parse a ``namespace/name`` key."""
        namespace, sep, name = key.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Invalid key '{key}', expected 'namespace/name'")
        return cls(namespace=namespace, name=name)


@dataclass(frozen=True)
class ReconcileRequest:
    """Identifies the primary instance a reconciliation is for."""

    namespace: str
    name: str

    @property
    def namespaced_name(self) -> NamespacedName:
        return NamespacedName(self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a resource kind."""

    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def api_path(self, namespace: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Build the REST path for this kind.

        Args:
            namespace: Namespace to scope to, or None for all namespaces
            name: Object name, or None for the collection

        Returns:
            Path relative to the API server root
        """
        if self.group:
            path = f"/apis/{self.group}/{self.version}"
        else:
            path = f"/api/{self.version}"
        if namespace:
            path += f"/namespaces/{namespace}"
        path += f"/{self.plural}"
        if name:
            path += f"/{name}"
        return path


DEPLOYMENTS = ResourceKind(
    group="apps", version="v1", plural="deployments", kind="Deployment"
)
MEMCACHEDS = ResourceKind(
    group="cache.example.com", version="v1alpha1", plural="memcacheds", kind="Memcached"
)


class ObjectMeta(BaseModel):
    """Subset of object metadata the operator reads."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str
    namespace: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")

    @field_validator("labels", mode="before")
    @classmethod
    def default_labels(cls, v: Optional[Dict[str, str]]) -> Dict[str, str]:
        return v or {}


class PrimarySpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    # The API server defaults an omitted replica count to 1
    replicas: int = Field(default=1, ge=0)

    @field_validator("replicas", mode="before")
    @classmethod
    def default_replicas(cls, v: Optional[int]) -> int:
        return 1 if v is None else v


class SecondarySpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    size: int = Field(default=0, ge=0)

    @field_validator("size", mode="before")
    @classmethod
    def default_size(cls, v: Optional[int]) -> int:
        return 0 if v is None else v


class PrimaryInstance(BaseModel):
    """View of a primary object: its labels and authoritative replica count."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    metadata: ObjectMeta
    spec: PrimarySpec = Field(default_factory=PrimarySpec)

    @property
    def replicas(self) -> int:
        return self.spec.replicas


class SecondaryInstance(BaseModel):
    """View of a secondary object: the synchronized size and its version."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    metadata: ObjectMeta
    spec: SecondarySpec = Field(default_factory=SecondarySpec)

    @property
    def size(self) -> int:
        return self.spec.size


def lookup_label(labels: Mapping[str, str], key: str) -> Optional[str]:
    """Return the value of label ``key``, or None when it is not set."""
    value = labels.get(key)
    if value is None or value == "":
        return None
    return value


def create_merge_patch(
    original: Dict[str, Any], modified: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Compute a JSON merge patch (RFC 7386) turning ``original`` into ``modified``.

    Only changed keys are included. Keys missing from ``modified`` are set to
    None, nested objects are diffed recursively and lists are replaced whole.

    Args:
        original: Snapshot taken before mutation
        modified: The mutated copy

    Returns:
        The minimal merge patch, empty if nothing changed
    """
    patch: Dict[str, Any] = {}

    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
            continue

        old_value = original[key]
        if isinstance(old_value, dict) and isinstance(value, dict):
            nested = create_merge_patch(old_value, value)
            if nested:
                patch[key] = nested
        elif old_value != value:
            patch[key] = copy.deepcopy(value)

    return patch


def with_optimistic_lock(
    patch: Dict[str, Any], resource_version: Optional[str]
) -> Dict[str, Any]:
    """
    Embed ``metadata.resourceVersion`` so the API server rejects stale writes.

    Args:
        patch: Merge patch to make conditional
        resource_version: Version token of the snapshot the patch was built on

    Returns:
        A new patch dict; the input is not modified
    """
    result = copy.deepcopy(patch)
    if resource_version:
        metadata = result.setdefault("metadata", {})
        metadata["resourceVersion"] = resource_version
    return result
