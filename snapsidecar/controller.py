"""Sidecar controller that creates and deletes snapshots for content objects."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol

from snapsidecar.content_status import (
    ControllerUpdateError,
    deletion_secret_reference,
    is_controller_update_fail_error,
    merge_content_status,
    new_controller_update_error,
    should_delete,
)
from snapsidecar.csi_handler import CSIHandler
from snapsidecar.models import (
    ConflictError,
    DeletionPolicy,
    NotFoundError,
    Secret,
    VolumeSnapshotClass,
    VolumeSnapshotContent,
    VolumeSnapshotContentStatus,
    VolumeSnapshotError,
)
from snapsidecar.operations import (
    AlreadyRunningError,
    BackoffError,
    OperationMap,
    WorkQueue,
)
from snapsidecar.snapshotter import Snapshotter
from snapsidecar.utils import (
    VOLUME_SNAPSHOT_CONTENT_FINALIZER,
    ObjectStore,
    get_credentials,
    is_content_deletion_candidate,
    object_key,
    store_object_update,
)

log = logging.getLogger(__name__)

EVENT_TYPE_WARNING = "Warning"
EVENT_TYPE_NORMAL = "Normal"


class _ContentClient(Protocol):
    def get_content(self, name: str) -> VolumeSnapshotContent: ...

    def update_content(self, content: VolumeSnapshotContent) -> VolumeSnapshotContent: ...

    def update_content_status(
        self, content: VolumeSnapshotContent
    ) -> VolumeSnapshotContent: ...


class _ContentLister(Protocol):
    def get(self, name: str) -> VolumeSnapshotContent: ...

    def list(self) -> Iterable[VolumeSnapshotContent]: ...


class _ClassLister(Protocol):
    def get(self, name: str) -> VolumeSnapshotClass: ...


EventRecorder = Callable[[Any, str, str, str], None]


def _quote(value: object) -> str:
    return json.dumps(str(value), ensure_ascii=False)


def _unix_nano(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


class SidecarController:
    """Watches snapshot contents and drives the CSI driver for them.

    ``client`` saves contents to the API server, ``secret_getter`` reads a
    secret given (namespace, name), and the listers read the informer caches;
    listers raise NotFoundError for missing objects. Events go to
    ``event_recorder`` or, by default, to ``events`` as "type reason message".
    """

    def __init__(
        self,
        client: _ContentClient,
        secret_getter: Callable[[str, str], Secret],
        driver_name: str,
        content_lister: _ContentLister,
        class_lister: _ClassLister,
        snapshotter: Snapshotter,
        timeout: float | None = None,
        resync_period: float = 60.0,
        snapshot_name_prefix: str = "snapshot",
        snapshot_name_uuid_length: int = -1,
        event_recorder: EventRecorder | None = None,
    ) -> None:
        self.client = client
        self.secret_getter = secret_getter
        self.driver_name = driver_name
        self.content_lister = content_lister
        self.class_lister = class_lister
        self.resync_period = resync_period
        self.handler = CSIHandler(
            snapshotter, timeout, snapshot_name_prefix, snapshot_name_uuid_length
        )
        self.events: list[str] = []
        self.event_recorder = event_recorder or self._record_event
        self.running_operations = OperationMap(exponential_backoff_on_error=True)
        self.content_store = ObjectStore()
        self.content_queue = WorkQueue("csi-snapshotter-content")

    def _record_event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self.events.append(f"{event_type} {reason} {message}")

    # Worker loop

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Fill the caches, start ``workers`` workers and block until stopped."""
        log.info("Starting CSI snapshotter")
        threads = []
        try:
            self.initialize_caches()
            for index in range(workers):
                thread = threading.Thread(
                    target=self._worker, name=f"content-worker-{index}", daemon=True
                )
                thread.start()
                threads.append(thread)
            stop_event.wait()
        finally:
            self.content_queue.shut_down()
            for thread in threads:
                thread.join()
            log.info("Shutting CSI snapshotter")

    def _worker(self) -> None:
        while self.process_next_item():
            pass
        log.info("content worker queue shutting down")

    def enqueue_content_work(self, obj: Any) -> None:
        """Queue the key of a content object; tombstones carry it in ``obj``."""
        inner = getattr(obj, "obj", None)
        if not isinstance(obj, VolumeSnapshotContent) and inner is not None:
            obj = inner
        if not isinstance(obj, VolumeSnapshotContent):
            return
        try:
            key = object_key(obj)
        except TypeError as exc:
            log.error("failed to get key from object: %s, %r", exc, obj)
            return
        log.debug("enqueued %r for sync", key)
        self.content_queue.add(key)

    def process_next_item(self) -> bool:
        """Handle one queued key; return False once the queue is shut down."""
        key = self.content_queue.get()
        if key is None:
            return False
        try:
            self._process_key(str(key))
        finally:
            self.content_queue.done(key)
        return True

    def _process_key(self, key: str) -> None:
        parts = key.split("/")
        if len(parts) > 2:
            log.debug("unexpected key format: %r", key)
            return
        name = parts[-1]
        try:
            content = self.content_lister.get(name)
        except NotFoundError:
            content = None
        except Exception as exc:  # noqa: BLE001
            log.warning("error getting content %r from informer: %s", key, exc)
            return
        if content is not None:
            if self.is_driver_match(content):
                self._update_content_in_cache_store(content)
            return

        cached = self.content_store.get_by_key(key)
        if cached is None:
            log.debug("deletion of content %r was already processed", key)
            return
        if not isinstance(cached, VolumeSnapshotContent):
            log.error("expected content, got %r", cached)
            return
        self.content_store.delete(cached)
        log.debug("content %r deleted", cached.metadata.name)

    def is_driver_match(self, content: VolumeSnapshotContent) -> bool:
        """True if this controller's driver is responsible for the content."""
        source = content.spec.source
        if source.volume_handle is None and source.snapshot_handle is None:
            return False
        if content.spec.driver != self.driver_name:
            return False
        class_name = content.spec.volume_snapshot_class_name
        if class_name is not None:
            try:
                snapshot_class = self.class_lister.get(class_name)
            except Exception:  # noqa: BLE001 - a missing class does not exclude it
                return True
            if snapshot_class.driver != self.driver_name:
                return False
        return True

    def _store_content_update(self, content: VolumeSnapshotContent) -> bool:
        return store_object_update(self.content_store, content, "content")

    def _update_content_in_cache_store(self, content: VolumeSnapshotContent) -> None:
        try:
            is_new = self._store_content_update(content)
        except ValueError as exc:
            log.error("%s", exc)
            return
        if not is_new:
            return
        try:
            self.sync_content(content)
        except ConflictError as exc:
            log.info("could not sync content %r: %s", content.metadata.name, exc)
        except Exception as exc:  # noqa: BLE001
            log.error("could not sync content %r: %s", content.metadata.name, exc)

    def initialize_caches(self) -> None:
        """Load every matching content from the lister into the cache."""
        try:
            contents = list(self.content_lister.list())
        except Exception as exc:  # noqa: BLE001
            log.error("CSISnapshotController can't initialize caches: %s", exc)
            return
        for content in contents:
            if self.is_driver_match(content):
                try:
                    self._store_content_update(content.deep_copy())
                except ValueError as exc:
                    log.error("error updating volume snapshot content cache: %s", exc)
        log.debug("controller initialized")

    # Synchronisation

    def sync_content(self, content: VolumeSnapshotContent) -> None:
        """Bring one content object towards its desired state."""
        name = content.metadata.name
        log.debug("synchronizing VolumeSnapshotContent[%s]", name)
        if should_delete(content):
            policy = content.spec.deletion_policy
            if policy == DeletionPolicy.RETAIN:
                if is_content_deletion_candidate(content):
                    self.remove_content_finalizer(content)
                    return
            elif policy == DeletionPolicy.DELETE:
                self._schedule_operation(
                    f"delete-{name}", lambda: self._delete_csi_snapshot_operation(content)
                )
                if is_content_deletion_candidate(content):
                    self.remove_content_finalizer(content)
                    return
            else:
                self.event_recorder(
                    content,
                    EVENT_TYPE_WARNING,
                    "SnapshotUnknownDeletionPolicy",
                    "Volume Snapshot Content has unrecognized deletion policy",
                )
            log.debug("VolumeSnapshotContent[%s]: the policy is %s", name, policy)
            return

        if content.spec.source.volume_handle is not None and content.status is None:
            self._schedule_operation(f"create-{name}", lambda: self._create_snapshot_job(content))
        else:
            self._schedule_operation(f"check-{name}", lambda: self._check_job(content))

    def _schedule_operation(self, name: str, operation: Callable[[], Any]) -> None:
        try:
            self.running_operations.run(name, operation)
        except AlreadyRunningError:
            log.debug("operation %r is already running, skipping", name)
        except BackoffError:
            log.debug("operation %r postponed due to exponential backoff", name)

    def _safe_error_status(
        self, content: VolumeSnapshotContent, reason: str, message: str
    ) -> None:
        try:
            self.update_content_error_status_with_event(
                content, EVENT_TYPE_WARNING, reason, message
            )
        except Exception as exc:  # noqa: BLE001
            log.debug("updating error status of %s failed: %s", content.metadata.name, exc)

    def _create_snapshot_job(self, content: VolumeSnapshotContent) -> None:
        try:
            updated = self._create_snapshot_operation(content)
        except Exception as exc:
            self._safe_error_status(
                content, "SnapshotCreationFailed", f"Failed to create snapshot: {exc}"
            )
            raise
        try:
            self._store_content_update(updated)
        except ValueError as exc:
            log.debug("cannot update internal content cache: %s", exc)

    def _check_job(self, content: VolumeSnapshotContent) -> None:
        try:
            updated = self._check_and_update_content_status_operation(content)
        except Exception as exc:
            self._safe_error_status(
                content,
                "SnapshotContentCheckandUpdateFailed",
                f"Failed to check and update snapshot content: {exc}",
            )
            raise
        try:
            self._store_content_update(updated)
        except ValueError as exc:
            log.debug("cannot update internal cache: %s", exc)

    def update_content_error_status_with_event(
        self,
        content: VolumeSnapshotContent,
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        """Save an error on the content's status and emit an event for it.

        Nothing happens when the same message is already recorded.
        """
        status = content.status
        if status is not None and status.error is not None and status.error.message == message:
            log.debug("the same error %s is already set", message)
            return
        if status is None:
            content.status = VolumeSnapshotContentStatus()
        clone = content.deep_copy()
        clone.status.error = VolumeSnapshotError(
            time=datetime.now(timezone.utc), message=message
        )
        clone.status.ready_to_use = False
        new_content = self.client.update_content_status(clone)
        self.event_recorder(new_content, event_type, reason, message)
        self._store_content_update(new_content)

    def _get_snapshot_class(self, class_name: str) -> VolumeSnapshotClass:
        try:
            return self.class_lister.get(class_name)
        except Exception as exc:
            raise RuntimeError(
                f"failed to retrieve snapshot class {class_name} from the informer: "
                f"{_quote(exc)}"
            ) from exc

    def _get_csi_snapshot_input(
        self, content: VolumeSnapshotContent
    ) -> tuple[VolumeSnapshotClass | None, dict[str, str] | None]:
        class_name = content.spec.volume_snapshot_class_name
        snapshot_class = None
        if class_name is not None:
            snapshot_class = self._get_snapshot_class(class_name)
        elif content.spec.source.volume_handle is not None:
            raise ValueError(
                f"failed to take snapshot {content.metadata.name} without a snapshot class"
            )
        credentials = self.get_credentials_from_annotation(content)
        return snapshot_class, credentials

    def _check_and_update_content_status_operation(
        self, content: VolumeSnapshotContent
    ) -> VolumeSnapshotContent:
        if content.spec.source.snapshot_handle is not None:
            status = self.handler.get_snapshot_status(content)
            ready, creation_time, size = status.ready_to_use, status.creation_time, status.size
            snapshot_id = content.spec.source.snapshot_handle
        else:
            try:
                snapshot_class, credentials = self._get_csi_snapshot_input(content)
            except Exception as exc:
                raise RuntimeError(
                    f"failed to get input parameters to create snapshot "
                    f"{content.metadata.name}: {_quote(exc)}"
                ) from exc
            params = snapshot_class.parameters if snapshot_class is not None else None
            result = self.handler.create_snapshot(content, params, credentials)
            ready, creation_time, size = result.ready_to_use, result.creation_time, result.size
            snapshot_id = result.snapshot_id
        if creation_time is None:
            creation_time = datetime.now(timezone.utc)
        return self.update_snapshot_content_status(
            content, snapshot_id, ready, _unix_nano(creation_time), size
        )

    def _create_snapshot_operation(
        self, content: VolumeSnapshotContent
    ) -> VolumeSnapshotContent:
        status = content.status
        if (
            status is not None
            and status.error is not None
            and status.error.message is not None
            and not is_controller_update_fail_error(status.error)
        ):
            log.debug("error is already set in snapshot, do not retry to create")
            return content
        try:
            snapshot_class, credentials = self._get_csi_snapshot_input(content)
        except Exception as exc:
            raise RuntimeError(
                f"failed to get input parameters to create snapshot for content "
                f"{content.metadata.name}: {_quote(exc)}"
            ) from exc
        params = snapshot_class.parameters if snapshot_class is not None else None
        volume_handle = content.spec.source.volume_handle
        try:
            result = self.handler.create_snapshot(content, params, credentials)
        except Exception as exc:
            raise RuntimeError(
                f"failed to take snapshot of the volume, {volume_handle}: {_quote(exc)}"
            ) from exc
        class_driver = snapshot_class.driver if snapshot_class is not None else ""
        if result.driver_name != class_driver:
            raise RuntimeError(
                f"failed to take snapshot of the volume, {volume_handle}: driver name "
                f"{result.driver_name} returned from the driver is different from "
                f"driver {class_driver} in snapshot class"
            )
        creation_time = result.creation_time or datetime.now(timezone.utc)
        try:
            content = self.update_snapshot_content_status(
                content,
                result.snapshot_id,
                result.ready_to_use,
                _unix_nano(creation_time),
                result.size,
            )
        except Exception as exc:  # noqa: BLE001
            log.error(
                "error updating volume snapshot content status for snapshot %s: %s.",
                content.metadata.name,
                exc,
            )
        try:
            self._store_content_update(content)
        except ValueError as exc:
            log.error("failed to update content store %s", exc)
        return content

    def _delete_csi_snapshot_operation(self, content: VolumeSnapshotContent) -> None:
        name = content.metadata.name
        try:
            _, credentials = self._get_csi_snapshot_input(content)
        except Exception as exc:
            raise RuntimeError(
                f"failed to get input parameters to delete snapshot for content "
                f"{name}: {_quote(exc)}"
            ) from exc
        try:
            self.handler.delete_snapshot(content, credentials)
        except Exception as exc:
            self.event_recorder(
                content, EVENT_TYPE_WARNING, "SnapshotDeleteError", "Failed to delete snapshot"
            )
            raise RuntimeError(
                f"failed to delete snapshot {_quote(name)}, err: {exc}"
            ) from exc

    def update_snapshot_content_status(
        self,
        content: VolumeSnapshotContent,
        snapshot_handle: str,
        ready_to_use: bool,
        created_at: int,
        size: int,
    ) -> VolumeSnapshotContent:
        """Record the driver's report on the stored content and return it."""
        name = content.metadata.name
        try:
            current = self.client.get_content(name)
        except Exception as exc:
            raise RuntimeError(
                f"error get snapshot content {name} from api server: {exc}"
            ) from exc
        new_status, updated = merge_content_status(
            current.status, snapshot_handle, ready_to_use, created_at, size
        )
        if not updated:
            return current
        clone = current.deep_copy()
        clone.status = new_status
        try:
            return self.client.update_content_status(clone)
        except Exception as exc:
            raise new_controller_update_error(name, str(exc)) from exc

    def get_credentials_from_annotation(
        self, content: VolumeSnapshotContent
    ) -> dict[str, str] | None:
        """Read the deletion secret named by the content's annotations, if any."""
        ref = deletion_secret_reference(content)
        if ref is None:
            return None
        try:
            return get_credentials(self.secret_getter, ref)
        except RuntimeError as exc:
            log.error("Failed to get credentials for snapshot %s: %s", content.metadata.name, exc)
            raise RuntimeError(
                f"cannot get credentials for snapshot content {_quote(content.metadata.name)}"
            ) from exc

    def remove_content_finalizer(self, content: VolumeSnapshotContent) -> None:
        """Drop the protection finalizer from the content and save it."""
        clone = content.deep_copy()
        clone.metadata.finalizers = [
            item
            for item in clone.metadata.finalizers
            if item != VOLUME_SNAPSHOT_CONTENT_FINALIZER
        ]
        try:
            self.client.update_content(clone)
        except Exception as exc:
            raise new_controller_update_error(content.metadata.name, str(exc)) from exc
        try:
            self._store_content_update(clone)
        except ValueError as exc:
            log.error("failed to update content store %s", exc)


__all__ = ["SidecarController", "ControllerUpdateError", "EVENT_TYPE_WARNING"]