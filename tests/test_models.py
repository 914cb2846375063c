from datetime import datetime, timezone

from snapsidecar.models import (
    NotFoundError,
    ObjectMeta,
    ObjectReference,
    VolumeSnapshot,
    VolumeSnapshotContent,
    VolumeSnapshotContentSource,
    VolumeSnapshotContentSpec,
    VolumeSnapshotContentStatus,
    VolumeSnapshotStatus,
    DeletionPolicy,
)


def _content():
    return VolumeSnapshotContent(
        metadata=ObjectMeta(
            name="content1-1",
            resource_version="1",
            annotations={"a": "b"},
            finalizers=["f"],
            deletion_timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ),
        spec=VolumeSnapshotContentSpec(
            volume_snapshot_ref=ObjectReference(name="snap1-1", uid="snapuid1-1"),
            deletion_policy=DeletionPolicy.DELETE,
            driver="csi-mock-plugin",
            volume_snapshot_class_name="gold",
            source=VolumeSnapshotContentSource(volume_handle="vol"),
        ),
        status=VolumeSnapshotContentStatus(snapshot_handle="sid1-1", restore_size=1000),
    )


def test_content_deep_copy_equal_and_independent():
    original = _content()
    clone = original.deep_copy()
    assert clone == original
    clone.metadata.finalizers.clear()
    clone.metadata.annotations["x"] = "y"
    clone.status.ready_to_use = True
    clone.spec.source.volume_handle = None
    assert original.metadata.finalizers == ["f"]
    assert "x" not in original.metadata.annotations
    assert original.status.ready_to_use is None
    assert original.spec.source.volume_handle == "vol"


def test_snapshot_deep_copy_equal_and_independent():
    original = VolumeSnapshot(
        metadata=ObjectMeta(name="snap", namespace="default", uid="uid"),
        status=VolumeSnapshotStatus(bound_volume_snapshot_content_name="content"),
    )
    clone = original.deep_copy()
    assert clone == original
    clone.status.bound_volume_snapshot_content_name = None
    assert original.status.bound_volume_snapshot_content_name == "content"


def test_has_annotation_ignores_value():
    meta = ObjectMeta(annotations={"present": ""})
    assert meta.has_annotation("present") is True
    assert meta.has_annotation("absent") is False


def test_default_collections_are_not_shared():
    first = ObjectMeta()
    second = ObjectMeta()
    first.finalizers.append("f")
    first.annotations["k"] = "v"
    assert second.finalizers == []
    assert second.annotations == {}


def test_content_defaults_have_no_status():
    content = VolumeSnapshotContent()
    assert content.status is None
    assert content.spec.source.volume_handle is None
    assert content.spec.volume_snapshot_class_name is None


def test_not_found_error_is_lookup_error():
    error = NotFoundError("content1-1")
    assert isinstance(error, LookupError)
    assert "content1-1" in str(error)