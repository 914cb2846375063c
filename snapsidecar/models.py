"""Snapshot API objects handled by the sidecar controller."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(RuntimeError):
    """The object was modified concurrently (stale resource version)."""


class DeletionPolicy(str, enum.Enum):
    """What happens to the physical snapshot when its content object goes away."""

    DELETE = "Delete"
    RETAIN = "Retain"


@dataclass
class ObjectMeta:
    """Metadata shared by all API objects."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    deletion_timestamp: datetime | None = None
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)

    def has_annotation(self, key: str) -> bool:
        """Return True if the annotation is present, whatever its value."""
        return key in self.annotations


@dataclass
class ObjectReference:
    """Reference from one object to another."""

    kind: str = ""
    api_version: str = ""
    uid: str = ""
    namespace: str = ""
    name: str = ""
    resource_version: str = ""


@dataclass(frozen=True)
class SecretReference:
    """Name and namespace of a secret."""

    name: str = ""
    namespace: str = ""


@dataclass
class Secret:
    """A secret holding binary values."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    data: dict[str, bytes] = field(default_factory=dict)


@dataclass
class VolumeSnapshotContentSource:
    """Where a snapshot content comes from: a volume or an existing snapshot."""

    volume_handle: str | None = None
    snapshot_handle: str | None = None


@dataclass
class VolumeSnapshotContentSpec:
    """Desired state of a snapshot content."""

    volume_snapshot_ref: ObjectReference = field(default_factory=ObjectReference)
    deletion_policy: DeletionPolicy | None = None
    driver: str = ""
    volume_snapshot_class_name: str | None = None
    source: VolumeSnapshotContentSource = field(
        default_factory=VolumeSnapshotContentSource
    )


@dataclass
class VolumeSnapshotError:
    """The last error seen while handling a snapshot."""

    time: datetime | None = None
    message: str | None = None


@dataclass
class VolumeSnapshotContentStatus:
    """Observed state of a snapshot content."""

    snapshot_handle: str | None = None
    creation_time: int | None = None
    restore_size: int | None = None
    ready_to_use: bool | None = None
    error: VolumeSnapshotError | None = None


@dataclass
class VolumeSnapshotContent:
    """A physical snapshot on the storage system."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: VolumeSnapshotContentSpec = field(default_factory=VolumeSnapshotContentSpec)
    status: VolumeSnapshotContentStatus | None = None

    def deep_copy(self) -> VolumeSnapshotContent:
        """Return an independent copy of this object."""
        return copy.deepcopy(self)


@dataclass
class VolumeSnapshotSource:
    """Where a volume snapshot comes from."""

    persistent_volume_claim_name: str | None = None
    volume_snapshot_content_name: str | None = None


@dataclass
class VolumeSnapshotSpec:
    """Desired state of a volume snapshot."""

    source: VolumeSnapshotSource = field(default_factory=VolumeSnapshotSource)
    volume_snapshot_class_name: str | None = None


@dataclass
class VolumeSnapshotStatus:
    """Observed state of a volume snapshot."""

    bound_volume_snapshot_content_name: str | None = None
    creation_time: datetime | None = None
    ready_to_use: bool | None = None
    restore_size: int | None = None
    error: VolumeSnapshotError | None = None


@dataclass
class VolumeSnapshot:
    """A user's request for a snapshot of a volume."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: VolumeSnapshotSpec = field(default_factory=VolumeSnapshotSpec)
    status: VolumeSnapshotStatus | None = None

    def deep_copy(self) -> VolumeSnapshot:
        """Return an independent copy of this object."""
        return copy.deepcopy(self)


@dataclass
class VolumeSnapshotClass:
    """Driver and parameters used to take snapshots."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    driver: str = ""
    parameters: dict[str, str] = field(default_factory=dict)
    deletion_policy: DeletionPolicy | None = None