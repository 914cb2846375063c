"""Create, delete and inspect snapshots through a CSI driver."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Protocol, Sequence

from snapsidecar.models import NotFoundError

log = logging.getLogger(__name__)

LIST_SNAPSHOTS_CAPABILITY = "LIST_SNAPSHOTS"


@dataclass(frozen=True)
class SnapshotResult:
    """What a driver reports after creating a snapshot."""

    driver_name: str
    snapshot_id: str
    creation_time: datetime | None
    size: int
    ready_to_use: bool


@dataclass(frozen=True)
class SnapshotStatus:
    """Readiness, creation time and restore size of a snapshot.

    ``creation_time`` is None when the driver cannot tell.
    """

    ready_to_use: bool
    creation_time: datetime | None
    size: int


@dataclass
class CreateSnapshotRequest:
    """CSI CreateSnapshot request."""

    source_volume_id: str
    name: str
    parameters: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class DeleteSnapshotRequest:
    """CSI DeleteSnapshot request."""

    snapshot_id: str
    secrets: dict[str, str] = field(default_factory=dict)


@dataclass
class ListSnapshotsRequest:
    """CSI ListSnapshots request for a single snapshot."""

    snapshot_id: str


@dataclass
class CsiSnapshot:
    """A snapshot as described by a CSI driver."""

    snapshot_id: str
    source_volume_id: str = ""
    size_bytes: int = 0
    creation_time: datetime | None = None
    ready_to_use: bool = False


class _CSIConnection(Protocol):
    def get_driver_name(self, timeout: float | None) -> str: ...

    def create_snapshot(
        self, request: CreateSnapshotRequest, timeout: float | None
    ) -> CsiSnapshot: ...

    def delete_snapshot(
        self, request: DeleteSnapshotRequest, timeout: float | None
    ) -> None: ...

    def controller_get_capabilities(self, timeout: float | None) -> Iterable[str]: ...

    def list_snapshots(
        self, request: ListSnapshotsRequest, timeout: float | None
    ) -> Sequence[CsiSnapshot]: ...


def _creation_time(value: datetime | None) -> datetime:
    if value is None:
        raise ValueError("timestamp: nil Timestamp")
    return value


class Snapshotter(abc.ABC):
    """Snapshot operations against a storage driver."""

    @abc.abstractmethod
    def create_snapshot(
        self,
        snapshot_name: str,
        volume_handle: str,
        parameters: Mapping[str, str] | None,
        credentials: Mapping[str, str] | None,
        timeout: float | None = None,
    ) -> SnapshotResult:
        """Create a snapshot of a volume."""

    @abc.abstractmethod
    def delete_snapshot(
        self,
        snapshot_id: str,
        credentials: Mapping[str, str] | None,
        timeout: float | None = None,
    ) -> None:
        """Delete a snapshot."""

    @abc.abstractmethod
    def get_snapshot_status(
        self, snapshot_id: str, timeout: float | None = None
    ) -> SnapshotStatus:
        """Return whether a snapshot is ready, when it was made and its size."""


class CSISnapshotter(Snapshotter):
    """Snapshotter talking to a CSI driver over a connection.

    The connection offers get_driver_name, create_snapshot, delete_snapshot,
    controller_get_capabilities and list_snapshots, each taking a timeout in
    seconds; its errors propagate unchanged.
    """

    def __init__(self, connection: _CSIConnection) -> None:
        self.connection = connection

    def create_snapshot(
        self,
        snapshot_name: str,
        volume_handle: str,
        parameters: Mapping[str, str] | None,
        credentials: Mapping[str, str] | None,
        timeout: float | None = None,
    ) -> SnapshotResult:
        log.debug("CSI CreateSnapshot: %s", snapshot_name)
        driver_name = self.connection.get_driver_name(timeout)
        request = CreateSnapshotRequest(
            source_volume_id=volume_handle,
            name=snapshot_name,
            parameters=dict(parameters or {}),
            secrets=dict(credentials or {}),
        )
        snapshot = self.connection.create_snapshot(request, timeout)
        log.debug(
            "CSI CreateSnapshot: %s driver name [%s] snapshot ID [%s] time stamp [%s] "
            "size [%d] readyToUse [%s]",
            snapshot_name,
            driver_name,
            snapshot.snapshot_id,
            snapshot.creation_time,
            snapshot.size_bytes,
            snapshot.ready_to_use,
        )
        return SnapshotResult(
            driver_name=driver_name,
            snapshot_id=snapshot.snapshot_id,
            creation_time=_creation_time(snapshot.creation_time),
            size=snapshot.size_bytes,
            ready_to_use=snapshot.ready_to_use,
        )

    def delete_snapshot(
        self,
        snapshot_id: str,
        credentials: Mapping[str, str] | None,
        timeout: float | None = None,
    ) -> None:
        request = DeleteSnapshotRequest(
            snapshot_id=snapshot_id, secrets=dict(credentials or {})
        )
        self.connection.delete_snapshot(request, timeout)

    def is_list_snapshots_supported(self, timeout: float | None = None) -> bool:
        """True if the driver advertises the ListSnapshots capability."""
        capabilities = self.connection.controller_get_capabilities(timeout)
        return LIST_SNAPSHOTS_CAPABILITY in capabilities

    def get_snapshot_status(
        self, snapshot_id: str, timeout: float | None = None
    ) -> SnapshotStatus:
        log.debug("GetSnapshotStatus: %s", snapshot_id)
        try:
            supported = self.is_list_snapshots_supported(timeout)
        except Exception as exc:
            raise RuntimeError(
                f"failed to check if ListSnapshots is supported: {exc}"
            ) from exc
        if not supported:
            # Without ListSnapshots the snapshot id is assumed to be valid.
            return SnapshotStatus(ready_to_use=True, creation_time=None, size=0)

        entries = self.connection.list_snapshots(
            ListSnapshotsRequest(snapshot_id=snapshot_id), timeout
        )
        if not entries:
            raise NotFoundError(f"can not find snapshot for snapshotID {snapshot_id}")
        snapshot = entries[0]
        return SnapshotStatus(
            ready_to_use=snapshot.ready_to_use,
            creation_time=_creation_time(snapshot.creation_time),
            size=snapshot.size_bytes,
        )