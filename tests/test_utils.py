from datetime import datetime, timezone

import pytest

from snapsidecar.models import (
    ObjectMeta,
    ObjectReference,
    Secret,
    SecretReference,
    VolumeSnapshot,
    VolumeSnapshotContent,
    VolumeSnapshotContentSource,
    VolumeSnapshotContentSpec,
    VolumeSnapshotSource,
    VolumeSnapshotSpec,
    VolumeSnapshotStatus,
    DeletionPolicy,
    NotFoundError,
)
from snapsidecar import utils
from snapsidecar.utils import (
    CSI_PARAMETER_PREFIX,
    PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY,
    PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY,
    VOLUME_SNAPSHOT_CONTENT_FINALIZER,
    VOLUME_SNAPSHOT_BOUND_FINALIZER,
    VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER,
    ObjectStore,
)

NOW = datetime(2020, 1, 1, tzinfo=timezone.utc)


def _new_content(version="1", name="contentName"):
    return VolumeSnapshotContent(
        metadata=ObjectMeta(name=name, resource_version=version),
        spec=VolumeSnapshotContentSpec(
            volume_snapshot_ref=ObjectReference(
                kind="VolumeSnapshot", uid="snapuid1-1", namespace="default", name="snap1-1"
            ),
            deletion_policy=DeletionPolicy.DELETE,
            driver="csi-mock-plugin",
            volume_snapshot_class_name="gold",
            source=VolumeSnapshotContentSource(volume_handle="pv-handle-1-1"),
        ),
    )


def _store_version(store, version, expected):
    content = _new_content(version)
    assert utils.store_object_update(store, content, "content") is expected
    stored = store.get_by_key("contentName")
    assert stored is not None
    if expected:
        assert stored.metadata.resource_version == version
    else:
        assert stored.metadata.resource_version != version


def test_controller_cache():
    store = ObjectStore()
    _store_version(store, "1", True)
    _store_version(store, "1", True)
    _store_version(store, "2", True)
    _store_version(store, "1", False)
    _store_version(store, "10", True)


def test_controller_cache_parsing_error():
    store = ObjectStore()
    _store_version(store, "1", True)
    with pytest.raises(ValueError, match="error parsing ResourceVersion"):
        utils.store_object_update(store, _new_content("xxx"), "content")


def test_store_accepts_unparsable_version_for_new_object():
    store = ObjectStore()
    assert utils.store_object_update(store, _new_content("xxx"), "content") is True
    assert len(store) == 1


def test_store_object_update_without_metadata():
    with pytest.raises(ValueError, match="Couldn't get key"):
        utils.store_object_update(ObjectStore(), object(), "content")


def test_object_store_operations():
    store = ObjectStore()
    first = _new_content(name="a")
    second = VolumeSnapshotContent(metadata=ObjectMeta(name="b", namespace="ns"))
    store.add(first)
    store.add(second)
    assert store.get(first) is first
    assert store.get_by_key("ns/b") is second
    assert "ns/b" in store
    assert sorted(obj.metadata.name for obj in store.list()) == ["a", "b"]
    store.delete(first)
    assert store.get_by_key("a") is None
    store.delete(first)
    assert len(store) == 1


def test_object_key():
    assert utils.object_key(_new_content(name="contentName")) == "contentName"
    snapshot = VolumeSnapshot(metadata=ObjectMeta(name="snap", namespace="default"))
    assert utils.object_key(snapshot) == "default/snap"
    with pytest.raises(TypeError):
        utils.object_key("no metadata")


def test_snapshot_keys():
    snapshot = VolumeSnapshot(metadata=ObjectMeta(name="snap1-1", namespace="default"))
    assert utils.snapshot_key(snapshot) == "default/snap1-1"
    ref = ObjectReference(name="snap1-1", namespace="default")
    assert utils.snapshot_ref_key(ref) == "default/snap1-1"


@pytest.mark.parametrize(
    "params, snapshot, expected",
    [
        (None, None, None),
        (
            {PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "name", PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "ns"},
            VolumeSnapshot(),
            SecretReference(name="name", namespace="ns"),
        ),
    ],
)
def test_get_secret_reference_valid(params, snapshot, expected):
    assert utils.get_secret_reference(params, "", snapshot) == expected


@pytest.mark.parametrize(
    "params, content_name, snapshot",
    [
        ({PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "foo"}, "", None),
        (
            {PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "bad name", PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "ns"},
            "",
            VolumeSnapshot(),
        ),
        (
            {
                PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "static-${volumesnapshotcontent.name}-${volumesnapshot.namespace}-${volumesnapshot.name}-${volumesnapshot.annotations['akey']}",
                PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "static-${volumesnapshotcontent.name}-${volumesnapshot.namespace}",
            },
            "snapcontentname",
            VolumeSnapshot(
                metadata=ObjectMeta(
                    name="snapshotname",
                    namespace="snapshotnamespace",
                    annotations={"akey": "avalue"},
                )
            ),
        ),
    ],
)
def test_get_secret_reference_errors(params, content_name, snapshot):
    with pytest.raises(ValueError):
        utils.get_secret_reference(params, content_name, snapshot)


def test_get_secret_reference_templates_resolve():
    params = {
        PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "${volumesnapshot.name}-${volumesnapshotcontent.name}",
        PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "${volumesnapshot.namespace}",
    }
    snapshot = VolumeSnapshot(metadata=ObjectMeta(name="snapshotname", namespace="snapshotnamespace"))
    ref = utils.get_secret_reference(params, "snapcontentname", snapshot)
    assert ref == SecretReference(name="snapshotname-snapcontentname", namespace="snapshotnamespace")


def test_get_secret_reference_empty_values():
    params = {PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "", PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "ns"}
    with pytest.raises(ValueError, match="value of either namespace or name is empty"):
        utils.get_secret_reference(params, "", None)


@pytest.mark.parametrize(
    "params, expected",
    [
        ({"csiFoo": "bar", "bim": "baz"}, {"csiFoo": "bar", "bim": "baz"}),
        ({PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "bar", "bim": "baz"}, {"bim": "baz"}),
        (
            {PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY: "csiBar", PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY: "csiBar"},
            {},
        ),
        ({}, {}),
    ],
)
def test_remove_prefixed_parameters(params, expected):
    assert utils.remove_prefixed_parameters(params) == expected


def test_remove_prefixed_parameters_unknown_key():
    with pytest.raises(ValueError, match="found unknown parameter key"):
        utils.remove_prefixed_parameters({CSI_PARAMETER_PREFIX + "bim": "baz"})


def test_resolve_template():
    params = {"a": "x", "b": "y"}
    assert utils.resolve_template("${a}-$b", params) == "x-y"
    assert utils.resolve_template("plain", params) == "plain"
    assert utils.resolve_template("end$", params) == "end$"
    assert utils.resolve_template("x${a", params) == "xa"


def test_resolve_template_missing_tokens():
    with pytest.raises(ValueError, match='invalid tokens: \\["c" "d"\\]'):
        utils.resolve_template("${d}${c}${a}", {"a": "x"})


@pytest.mark.parametrize("value", ["ns", "default", "a-b-1"])
def test_dns1123_label_valid(value):
    assert utils.is_dns1123_label(value) == []


@pytest.mark.parametrize("value", ["", "Bad", "-a", "a-", "bad name", "a" * 64])
def test_dns1123_label_invalid(value):
    assert utils.is_dns1123_label(value)


def test_dns1123_subdomain():
    assert utils.is_dns1123_subdomain("secret.example.com") == []
    assert utils.is_dns1123_subdomain("bad name")
    assert utils.is_dns1123_subdomain("a." * 130)


def test_get_credentials():
    secrets = {("default", "secret"): Secret(metadata=ObjectMeta(name="secret"), data={"foo": b"bar"})}

    def getter(namespace, name):
        try:
            return secrets[(namespace, name)]
        except KeyError:
            raise NotFoundError(name) from None

    ref = SecretReference(name="secret", namespace="default")
    assert utils.get_credentials(getter, ref) == {"foo": "bar"}
    assert utils.get_credentials(getter, None) is None
    with pytest.raises(RuntimeError, match="error getting secret missing"):
        utils.get_credentials(getter, SecretReference(name="missing", namespace="default"))


def test_no_resync_period():
    assert utils.no_resync_period() == 0


def test_get_snapshot_content_name_for_snapshot():
    dynamic = VolumeSnapshot(metadata=ObjectMeta(uid="snapuid1-1"))
    assert utils.get_snapshot_content_name_for_snapshot(dynamic) == "snapcontent-snapuid1-1"
    static = VolumeSnapshot(
        metadata=ObjectMeta(uid="snapuid1-1"),
        spec=VolumeSnapshotSpec(source=VolumeSnapshotSource(volume_snapshot_content_name="content1-1")),
    )
    assert utils.get_snapshot_content_name_for_snapshot(static) == "content1-1"


def test_is_default_annotation():
    key = utils.IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION
    assert utils.is_default_annotation(ObjectMeta(annotations={key: "true"})) is True
    assert utils.is_default_annotation(ObjectMeta(annotations={key: "false"})) is False
    assert utils.is_default_annotation(ObjectMeta()) is False


def test_content_finalizer_predicates():
    live = _new_content()
    assert utils.need_to_add_content_finalizer(live) is True
    assert utils.is_content_deletion_candidate(live) is False
    live.metadata.finalizers.append(VOLUME_SNAPSHOT_CONTENT_FINALIZER)
    assert utils.need_to_add_content_finalizer(live) is False
    live.metadata.deletion_timestamp = NOW
    assert utils.is_content_deletion_candidate(live) is True


def test_snapshot_finalizer_predicates():
    snapshot = VolumeSnapshot(metadata=ObjectMeta(name="snap"))
    assert utils.need_to_add_snapshot_as_source_finalizer(snapshot) is True
    assert utils.need_to_add_snapshot_bound_finalizer(snapshot) is False
    snapshot.status = VolumeSnapshotStatus(bound_volume_snapshot_content_name="content")
    assert utils.need_to_add_snapshot_bound_finalizer(snapshot) is True
    snapshot.metadata.finalizers = [VOLUME_SNAPSHOT_BOUND_FINALIZER]
    assert utils.need_to_add_snapshot_bound_finalizer(snapshot) is False
    assert utils.is_snapshot_deletion_candidate(snapshot) is False
    snapshot.metadata.deletion_timestamp = NOW
    assert utils.is_snapshot_deletion_candidate(snapshot) is True
    snapshot.metadata.finalizers = [VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER]
    assert utils.is_snapshot_deletion_candidate(snapshot) is True
    assert utils.need_to_add_snapshot_as_source_finalizer(snapshot) is False


def test_deprecation_warning():
    assert (
        utils.deprecation_warning("old", "new", "")
        == '"old" is deprecated and will be removed in a future release, please use "new" instead'
    )
    assert utils.deprecation_warning("old", "", "v2") == '"old" is deprecated and will be removed in v2'


def test_get_snapshot_status_for_logging():
    snapshot = VolumeSnapshot()
    assert utils.get_snapshot_status_for_logging(snapshot) == 'bound to: "", Completed: false'
    snapshot.status = VolumeSnapshotStatus(bound_volume_snapshot_content_name="content1-1", ready_to_use=True)
    assert utils.get_snapshot_status_for_logging(snapshot) == 'bound to: "content1-1", Completed: true'


def test_binding_predicates():
    snapshot = VolumeSnapshot(metadata=ObjectMeta(name="snap1-1", namespace="default", uid="snapuid1-1"))
    content = _new_content()
    assert utils.is_volume_snapshot_ref_set(snapshot, content) is True
    assert utils.is_bound_volume_snapshot_content_name_set(snapshot) is False
    assert utils.is_snapshot_bound(snapshot, content) is False
    snapshot.status = VolumeSnapshotStatus(bound_volume_snapshot_content_name="")
    assert utils.is_bound_volume_snapshot_content_name_set(snapshot) is False
    snapshot.status.bound_volume_snapshot_content_name = "contentName"
    assert utils.is_snapshot_bound(snapshot, content) is True
    content.spec.volume_snapshot_ref.uid = "other"
    assert utils.is_snapshot_bound(snapshot, content) is False


def test_is_snapshot_ready():
    snapshot = VolumeSnapshot()
    assert utils.is_snapshot_ready(snapshot) is False
    snapshot.status = VolumeSnapshotStatus(ready_to_use=False)
    assert utils.is_snapshot_ready(snapshot) is False
    snapshot.status.ready_to_use = True
    assert utils.is_snapshot_ready(snapshot) is True