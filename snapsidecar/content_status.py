"""Status bookkeeping and deletion rules for snapshot content objects."""

from __future__ import annotations

import json

from snapsidecar.models import (
    SecretReference,
    VolumeSnapshotContent,
    VolumeSnapshotContentStatus,
    VolumeSnapshotError,
)
from snapsidecar.utils import (
    ANN_DELETION_SECRET_REF_NAME,
    ANN_DELETION_SECRET_REF_NAMESPACE,
    ANN_VOLUME_SNAPSHOT_BEING_DELETED,
)

CONTROLLER_UPDATE_FAIL_MSG = "snapshot controller failed to update"


class ControllerUpdateError(RuntimeError):
    """The controller could not write an object back to the API server."""


def new_controller_update_error(name: str, message: str) -> ControllerUpdateError:
    """Build the error raised when saving object ``name`` failed with ``message``."""
    return ControllerUpdateError(
        f"{CONTROLLER_UPDATE_FAIL_MSG} {name} on API server: {message}"
    )


def is_controller_update_fail_error(status_error: VolumeSnapshotError | None) -> bool:
    """True if a recorded status error came from a failed API server update."""
    if status_error is None or status_error.message is None:
        return False
    return CONTROLLER_UPDATE_FAIL_MSG in status_error.message


def merge_content_status(
    current: VolumeSnapshotContentStatus | None,
    snapshot_handle: str,
    ready_to_use: bool,
    created_at: int,
    size: int,
) -> tuple[VolumeSnapshotContentStatus, bool]:
    """Fold what the driver reported into a content status.

    Returns the new status and whether it differs from ``current``. Fields that
    are already set are kept, except readiness, which always follows the
    driver; becoming ready clears a recorded error. ``current`` is not changed.
    """
    if current is None:
        status = VolumeSnapshotContentStatus(
            snapshot_handle=snapshot_handle,
            ready_to_use=ready_to_use,
            creation_time=created_at,
            restore_size=size,
        )
        return status, True

    status = VolumeSnapshotContentStatus(
        snapshot_handle=current.snapshot_handle,
        creation_time=current.creation_time,
        restore_size=current.restore_size,
        ready_to_use=current.ready_to_use,
        error=None
        if current.error is None
        else VolumeSnapshotError(time=current.error.time, message=current.error.message),
    )
    updated = False
    if status.snapshot_handle is None:
        status.snapshot_handle = snapshot_handle
        updated = True
    if status.ready_to_use is None or status.ready_to_use != ready_to_use:
        status.ready_to_use = ready_to_use
        updated = True
        if ready_to_use and status.error is not None:
            status.error = None
    if status.creation_time is None:
        status.creation_time = created_at
        updated = True
    if status.restore_size is None:
        status.restore_size = size
        updated = True
    return status, updated


def should_delete(content: VolumeSnapshotContent) -> bool:
    """True if the content is being deleted and its snapshot should be handled.

    That is the case for an unbound pre-provisioned content, or when the
    common controller marked the bound snapshot as being deleted.
    """
    meta = content.metadata
    if meta.deletion_timestamp is None:
        return False
    if (
        content.spec.source.snapshot_handle is not None
        and not content.spec.volume_snapshot_ref.uid
    ):
        return True
    return meta.has_annotation(ANN_VOLUME_SNAPSHOT_BEING_DELETED)


def deletion_secret_reference(content: VolumeSnapshotContent) -> SecretReference | None:
    """Return the deletion secret named by the content's annotations.

    Returns None when the annotations are absent; raises ValueError when they
    are present but the name or namespace is empty.
    """
    meta = content.metadata
    if not (
        meta.has_annotation(ANN_DELETION_SECRET_REF_NAME)
        and meta.has_annotation(ANN_DELETION_SECRET_REF_NAMESPACE)
    ):
        return None
    name = meta.annotations[ANN_DELETION_SECRET_REF_NAME]
    namespace = meta.annotations[ANN_DELETION_SECRET_REF_NAMESPACE]
    if not name or not namespace:
        raise ValueError(
            f"cannot retrieve secrets for snapshot content "
            f"{json.dumps(meta.name, ensure_ascii=False)}, "
            "err: secret name or namespace not specified"
        )
    return SecretReference(name=name, namespace=namespace)