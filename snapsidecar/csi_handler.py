"""Bridge between snapshot content objects and a snapshotter."""

from __future__ import annotations

import json
from typing import Mapping

from snapsidecar.models import VolumeSnapshotContent
from snapsidecar.snapshotter import SnapshotResult, Snapshotter, SnapshotStatus
from snapsidecar.utils import remove_prefixed_parameters


def _quote(value: object) -> str:
    return json.dumps(str(value), ensure_ascii=False)


def make_snapshot_name(prefix: str, snapshot_uid: str, uuid_length: int) -> str:
    """Build a stable snapshot name from a prefix and the snapshot's UID.

    A length of -1 keeps the UID as is; otherwise dashes are removed and the
    UID is cut to ``uuid_length`` characters.
    """
    if not snapshot_uid:
        raise ValueError("Corrupted snapshot object, it is missing UID")
    if uuid_length == -1:
        return f"{prefix}-{snapshot_uid}"
    compact = snapshot_uid.replace("-", "")
    if not 0 <= uuid_length <= len(compact):
        raise ValueError(
            f"snapshot name UUID length {uuid_length} is out of range for UID {snapshot_uid}"
        )
    return f"{prefix}-{compact[:uuid_length]}"


class CSIHandler:
    """Creates, deletes and checks the snapshots behind content objects."""

    def __init__(
        self,
        snapshotter: Snapshotter,
        timeout: float | None,
        snapshot_name_prefix: str,
        snapshot_name_uuid_length: int,
    ) -> None:
        self.snapshotter = snapshotter
        self.timeout = timeout
        self.snapshot_name_prefix = snapshot_name_prefix
        self.snapshot_name_uuid_length = snapshot_name_uuid_length

    def create_snapshot(
        self,
        content: VolumeSnapshotContent,
        parameters: Mapping[str, str] | None,
        credentials: Mapping[str, str] | None,
    ) -> SnapshotResult:
        """Take a snapshot of the content's source volume."""
        name = content.metadata.name
        uid = content.spec.volume_snapshot_ref.uid
        if not uid:
            raise ValueError(
                f"cannot create snapshot. Snapshot content {name} not bound to a snapshot"
            )
        volume_handle = content.spec.source.volume_handle
        if volume_handle is None:
            raise ValueError(
                f"cannot create snapshot. Volume handle not found in snapshot content {name}"
            )
        snapshot_name = make_snapshot_name(
            self.snapshot_name_prefix, uid, self.snapshot_name_uuid_length
        )
        try:
            driver_parameters = remove_prefixed_parameters(parameters)
        except ValueError as exc:
            raise ValueError(
                f"failed to remove CSI Parameters of prefixed keys: {exc}"
            ) from exc
        return self.snapshotter.create_snapshot(
            snapshot_name, volume_handle, driver_parameters, credentials, self.timeout
        )

    @staticmethod
    def _snapshot_handle(content: VolumeSnapshotContent) -> str | None:
        if content.status is not None and content.status.snapshot_handle is not None:
            return content.status.snapshot_handle
        return content.spec.source.snapshot_handle

    def delete_snapshot(
        self, content: VolumeSnapshotContent, credentials: Mapping[str, str] | None
    ) -> None:
        """Delete the physical snapshot behind the content."""
        name = content.metadata.name
        handle = self._snapshot_handle(content)
        if handle is None:
            raise ValueError(
                f"failed to delete snapshot content {name}: snapshotHandle is missing"
            )
        try:
            self.snapshotter.delete_snapshot(handle, credentials, self.timeout)
        except Exception as exc:
            raise RuntimeError(
                f"failed to delete snapshot content {name}: {_quote(exc)}"
            ) from exc

    def get_snapshot_status(self, content: VolumeSnapshotContent) -> SnapshotStatus:
        """Ask the driver about the snapshot behind the content."""
        name = content.metadata.name
        handle = self._snapshot_handle(content)
        if handle is None:
            raise ValueError(
                f"failed to list snapshot for content {name}: snapshotHandle is missing"
            )
        try:
            return self.snapshotter.get_snapshot_status(handle, self.timeout)
        except Exception as exc:
            raise RuntimeError(
                f"failed to list snapshot for content {name}: {_quote(exc)}"
            ) from exc