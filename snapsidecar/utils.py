"""Helpers shared by the snapshot controllers."""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from snapsidecar.models import (
    ObjectMeta,
    ObjectReference,
    Secret,
    SecretReference,
    VolumeSnapshot,
    VolumeSnapshotContent,
)

log = logging.getLogger(__name__)

# Parameters with this prefix are consumed by the sidecar, not passed to drivers.
CSI_PARAMETER_PREFIX = "csi.storage.k8s.io/"

PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY = CSI_PARAMETER_PREFIX + "snapshotter-secret-name"
PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY = (
    CSI_PARAMETER_PREFIX + "snapshotter-secret-namespace"
)

VOLUME_SNAPSHOT_CONTENT_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshotcontent-bound-protection"
)
VOLUME_SNAPSHOT_BOUND_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshot-bound-protection"
)
VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshot-as-source-protection"
)
PVC_FINALIZER = "snapshot.storage.kubernetes.io/pvc-as-source-protection"

IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION = "snapshot.storage.kubernetes.io/is-default-class"

ANN_VOLUME_SNAPSHOT_BEING_DELETED = (
    "snapshot.storage.kubernetes.io/volumesnapshot-being-deleted"
)

ANN_DELETION_SECRET_REF_NAME = "snapshot.storage.kubernetes.io/deletion-secret-name"
ANN_DELETION_SECRET_REF_NAMESPACE = (
    "snapshot.storage.kubernetes.io/deletion-secret-namespace"
)


@dataclass(frozen=True)
class _SecretParams:
    name: str
    name_key: str
    namespace_key: str


_SNAPSHOTTER_SECRET_PARAMS = _SecretParams(
    name="Snapshotter",
    name_key=PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY,
    namespace_key=PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY,
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def object_key(obj: Any) -> str:
    """Return the cache key of an object: "namespace/name", or "name" without a namespace."""
    meta = getattr(obj, "metadata", None)
    if not isinstance(meta, ObjectMeta):
        raise TypeError(f"object has no meta: {obj!r}")
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


class ObjectStore:
    """Thread-safe cache of API objects keyed by namespace and name."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, obj: Any) -> Any | None:
        """Return the cached object with the same key as ``obj``, or None."""
        return self.get_by_key(object_key(obj))

    def get_by_key(self, key: str) -> Any | None:
        """Return the cached object stored under ``key``, or None."""
        with self._lock:
            return self._items.get(key)

    def add(self, obj: Any) -> None:
        """Store ``obj`` under its key."""
        key = object_key(obj)
        with self._lock:
            self._items[key] = obj

    def update(self, obj: Any) -> None:
        """Replace the cached version of ``obj``."""
        self.add(obj)

    def delete(self, obj: Any) -> None:
        """Forget ``obj``; nothing happens if it is not cached."""
        key = object_key(obj)
        with self._lock:
            self._items.pop(key, None)

    def list(self) -> list[Any]:
        """Return all cached objects."""
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items


def snapshot_key(snapshot: VolumeSnapshot) -> str:
    """Return "namespace/name" of a volume snapshot."""
    return f"{snapshot.metadata.namespace}/{snapshot.metadata.name}"


def snapshot_ref_key(ref: ObjectReference) -> str:
    """Return "namespace/name" of a referenced object."""
    return f"{ref.namespace}/{ref.name}"


def _parse_resource_version(version: str, what: str) -> int:
    if not _INTEGER_RE.fullmatch(version):
        raise ValueError(f"{what}: invalid syntax")
    number = int(version)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise ValueError(f"{what}: value out of range")
    return number


def store_object_update(store: ObjectStore, obj: Any, class_name: str) -> bool:
    """Put a new object version into ``store``.

    Returns True if the cache was updated, False if ``obj`` is older than the
    cached version. Equal versions pass so that periodic syncs are seen.
    """
    try:
        key = object_key(obj)
    except TypeError as exc:
        raise ValueError(f"Couldn't get key for object {obj!r}: {exc}") from exc

    version = obj.metadata.resource_version
    old = store.get(obj)
    if old is None:
        log.debug("store_object_update: adding %s %r, version %s", class_name, key, version)
        store.add(obj)
        return True

    new_version = _parse_resource_version(
        version, f"error parsing ResourceVersion {_quote(version)} of {class_name} {_quote(key)}"
    )
    old_raw = old.metadata.resource_version
    old_version = _parse_resource_version(
        old_raw, f"error parsing old ResourceVersion {_quote(old_raw)} of {class_name} {_quote(key)}"
    )

    if old_version > new_version:
        log.debug("store_object_update: ignoring %s %r version %s", class_name, key, version)
        return False

    log.debug("store_object_update: updating %s %r with version %s", class_name, key, version)
    store.update(obj)
    return True


def get_snapshot_content_name_for_snapshot(snapshot: VolumeSnapshot) -> str:
    """Return the content name a snapshot is, or will be, bound to."""
    if snapshot.spec.source.volume_snapshot_content_name is not None:
        return snapshot.spec.source.volume_snapshot_content_name
    return "snapcontent-" + snapshot.metadata.uid


def is_default_annotation(meta: ObjectMeta) -> bool:
    """Return True if the object is marked as the default snapshot class."""
    return meta.annotations.get(IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION) == "true"


_DNS1123_LABEL_FMT = r"[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_LABEL_RE = re.compile(_DNS1123_LABEL_FMT)
_DNS1123_SUBDOMAIN_FMT = _DNS1123_LABEL_FMT + r"(\." + _DNS1123_LABEL_FMT + r")*"
_DNS1123_SUBDOMAIN_RE = re.compile(_DNS1123_SUBDOMAIN_FMT)
_DNS1123_LABEL_MAX = 63
_DNS1123_SUBDOMAIN_MAX = 253


def is_dns1123_label(value: str) -> list[str]:
    """Return the reasons ``value`` is not a DNS-1123 label; empty if it is one."""
    errors = []
    if len(value) > _DNS1123_LABEL_MAX:
        errors.append(f"must be no more than {_DNS1123_LABEL_MAX} characters")
    if not _DNS1123_LABEL_RE.fullmatch(value):
        errors.append(
            "a DNS-1123 label must consist of lower case alphanumeric characters "
            "or '-', and must start and end with an alphanumeric character "
            f"(regex used for validation is '{_DNS1123_LABEL_FMT}')"
        )
    return errors


def is_dns1123_subdomain(value: str) -> list[str]:
    """Return the reasons ``value`` is not a DNS-1123 subdomain; empty if it is one."""
    errors = []
    if len(value) > _DNS1123_SUBDOMAIN_MAX:
        errors.append(f"must be no more than {_DNS1123_SUBDOMAIN_MAX} characters")
    if not _DNS1123_SUBDOMAIN_RE.fullmatch(value):
        errors.append(
            "a DNS-1123 subdomain must consist of lower case alphanumeric "
            "characters, '-' or '.', and must start and end with an alphanumeric "
            f"character (regex used for validation is '{_DNS1123_SUBDOMAIN_FMT}')"
        )
    return errors


_SPECIAL = r"[*#$@!?\-0-9]"
_TOKEN_RE = re.compile(
    r"\$(?:"
    r"\{(?P<braced_special>" + _SPECIAL + r")\}"
    r"|\{(?P<braced>[^}]*)\}"
    r"|(?P<open>\{)"
    r"|(?P<special>" + _SPECIAL + r")"
    r"|(?P<plain>[A-Za-z0-9_]+)"
    r")",
    re.DOTALL,
)


def resolve_template(template: str, params: Mapping[str, str]) -> str:
    """Expand $name and ${name} tokens in ``template`` from ``params``.

    Raises ValueError naming every token that has no value.
    """
    missing: set[str] = set()

    def substitute(match: re.Match[str]) -> str:
        name = (
            match.group("braced_special")
            or match.group("braced")
            or match.group("special")
            or match.group("plain")
        )
        if not name:
            # "${}" or an unterminated "${": the characters are dropped.
            return ""
        if name not in params:
            missing.add(name)
            return ""
        return params[name]

    resolved = _TOKEN_RE.sub(substitute, template)
    if missing:
        tokens = " ".join(_quote(token) for token in sorted(missing))
        raise ValueError(f"invalid tokens: [{tokens}]")
    return resolved


def _verify_and_get_secret_templates(
    secret: _SecretParams, params: Mapping[str, str]
) -> tuple[str, str]:
    has_name = secret.name_key in params
    has_namespace = secret.namespace_key in params
    if has_name != has_namespace:
        raise ValueError(
            f"either name and namespace for {secret.name} secrets specified, "
            "Both must be specified"
        )
    if not has_name:
        return "", ""
    name_template = params[secret.name_key]
    namespace_template = params[secret.namespace_key]
    if not name_template or not namespace_template:
        raise ValueError(
            f"{secret.name} secrets specified in parameters but value of either "
            "namespace or name is empty"
        )
    return name_template, namespace_template


def get_secret_reference(
    snapshot_class_params: Mapping[str, str] | None,
    snap_content_name: str,
    snapshot: VolumeSnapshot | None,
) -> SecretReference | None:
    """Resolve the snapshotter secret named by class parameters.

    Returns None when the parameters name no secret. The namespace template may
    use ${volumesnapshotcontent.name} and ${volumesnapshot.namespace}; the name
    template may also use ${volumesnapshot.name}. Raises ValueError on bad
    templates or on names that are not valid.
    """
    try:
        name_template, namespace_template = _verify_and_get_secret_templates(
            _SNAPSHOTTER_SECRET_PARAMS, snapshot_class_params or {}
        )
    except ValueError as exc:
        raise ValueError(
            f"failed to get name and namespace template from params: {exc}"
        ) from exc

    if not name_template and not namespace_template:
        return None

    namespace_params = {"volumesnapshotcontent.name": snap_content_name}
    if snapshot is not None:
        namespace_params["volumesnapshot.namespace"] = snapshot.metadata.namespace
    try:
        resolved_namespace = resolve_template(namespace_template, namespace_params)
    except ValueError as exc:
        raise ValueError(f"error resolving value {_quote(namespace_template)}: {exc}") from exc
    log.debug(
        "get_secret_reference namespace template %s, params %s, resolved %s",
        namespace_template,
        namespace_params,
        resolved_namespace,
    )
    if is_dns1123_label(resolved_namespace):
        if namespace_template != resolved_namespace:
            raise ValueError(
                f"{_quote(namespace_template)} resolved to {_quote(resolved_namespace)} "
                "which is not a valid namespace name"
            )
        raise ValueError(f"{_quote(namespace_template)} is not a valid namespace name")

    name_params = {"volumesnapshotcontent.name": snap_content_name}
    if snapshot is not None:
        name_params["volumesnapshot.name"] = snapshot.metadata.name
        name_params["volumesnapshot.namespace"] = snapshot.metadata.namespace
    try:
        resolved_name = resolve_template(name_template, name_params)
    except ValueError as exc:
        raise ValueError(f"error resolving value {_quote(name_template)}: {exc}") from exc
    if is_dns1123_subdomain(resolved_name):
        if name_template != resolved_name:
            raise ValueError(
                f"{_quote(name_template)} resolved to {_quote(resolved_name)} "
                "which is not a valid secret name"
            )
        raise ValueError(f"{_quote(name_template)} is not a valid secret name")

    ref = SecretReference(name=resolved_name, namespace=resolved_namespace)
    log.debug("get_secret_reference validated secret: %s", ref)
    return ref


def get_credentials(
    secret_getter: Callable[[str, str], Secret], ref: SecretReference | None
) -> dict[str, str] | None:
    """Read the secret ``ref`` points to and return its values as text.

    ``secret_getter`` is called with (namespace, name). Returns None when there
    is no reference; raises RuntimeError when the secret cannot be read.
    """
    if ref is None:
        return None
    try:
        secret = secret_getter(ref.namespace, ref.name)
    except Exception as exc:
        raise RuntimeError(
            f"error getting secret {ref.name} in namespace {ref.namespace}: {exc}"
        ) from exc
    return {
        key: value.decode("utf-8", errors="surrogateescape")
        for key, value in secret.data.items()
    }


def no_resync_period() -> float:
    """Resync period, in seconds, for informers that need no periodic resync."""
    return 0.0


def is_content_deletion_candidate(content: VolumeSnapshotContent) -> bool:
    """True if the content is being deleted and still carries its finalizer."""
    meta = content.metadata
    return (
        meta.deletion_timestamp is not None
        and VOLUME_SNAPSHOT_CONTENT_FINALIZER in meta.finalizers
    )


def need_to_add_content_finalizer(content: VolumeSnapshotContent) -> bool:
    """True if the content is live and lacks its finalizer."""
    meta = content.metadata
    return (
        meta.deletion_timestamp is None
        and VOLUME_SNAPSHOT_CONTENT_FINALIZER not in meta.finalizers
    )


def is_snapshot_deletion_candidate(snapshot: VolumeSnapshot) -> bool:
    """True if the snapshot is being deleted and carries one of its finalizers."""
    meta = snapshot.metadata
    return meta.deletion_timestamp is not None and (
        VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER in meta.finalizers
        or VOLUME_SNAPSHOT_BOUND_FINALIZER in meta.finalizers
    )


def need_to_add_snapshot_as_source_finalizer(snapshot: VolumeSnapshot) -> bool:
    """True if the live snapshot lacks the as-source finalizer."""
    meta = snapshot.metadata
    return (
        meta.deletion_timestamp is None
        and VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER not in meta.finalizers
    )


def need_to_add_snapshot_bound_finalizer(snapshot: VolumeSnapshot) -> bool:
    """True if the live, bound snapshot lacks the bound finalizer."""
    meta = snapshot.metadata
    return (
        meta.deletion_timestamp is None
        and VOLUME_SNAPSHOT_BOUND_FINALIZER not in meta.finalizers
        and snapshot.status is not None
        and snapshot.status.bound_volume_snapshot_content_name is not None
    )


def deprecation_warning(
    deprecated_param: str, new_param: str = "", removal_version: str = ""
) -> str:
    """Build the message announcing that a parameter is deprecated."""
    removal_version = removal_version or "a future release"
    replacement = f', please use "{new_param}" instead' if new_param else ""
    return f'"{deprecated_param}" is deprecated and will be removed in {removal_version}{replacement}'


def remove_prefixed_parameters(params: Mapping[str, str] | None) -> dict[str, str]:
    """Drop the sidecar's own parameters before they are sent to a driver.

    Raises ValueError for an unknown key in the reserved prefix.
    """
    known = {PREFIXED_SNAPSHOTTER_SECRET_NAME_KEY, PREFIXED_SNAPSHOTTER_SECRET_NAMESPACE_KEY}
    result = {}
    for key, value in (params or {}).items():
        if not key.startswith(CSI_PARAMETER_PREFIX):
            result[key] = value
        elif key not in known:
            raise ValueError(
                f'found unknown parameter key "{key}" with reserved namespace '
                f"{CSI_PARAMETER_PREFIX}"
            )
    return result


def get_snapshot_status_for_logging(snapshot: VolumeSnapshot) -> str:
    """Summarise a snapshot's binding and readiness for log lines."""
    status = snapshot.status
    content_name = ""
    ready = False
    if status is not None:
        if status.bound_volume_snapshot_content_name is not None:
            content_name = status.bound_volume_snapshot_content_name
        if status.ready_to_use is not None:
            ready = status.ready_to_use
    return f"bound to: {_quote(content_name)}, Completed: {str(ready).lower()}"


def is_snapshot_bound(snapshot: VolumeSnapshot, content: VolumeSnapshotContent) -> bool:
    """True if snapshot and content point at each other."""
    return is_volume_snapshot_ref_set(
        snapshot, content
    ) and is_bound_volume_snapshot_content_name_set(snapshot)


def is_volume_snapshot_ref_set(
    snapshot: VolumeSnapshot, content: VolumeSnapshotContent
) -> bool:
    """True if the content's snapshot reference names this snapshot."""
    ref = content.spec.volume_snapshot_ref
    meta = snapshot.metadata
    return ref.name == meta.name and ref.namespace == meta.namespace and ref.uid == meta.uid


def is_bound_volume_snapshot_content_name_set(snapshot: VolumeSnapshot) -> bool:
    """True if the snapshot status names a bound content."""
    status = snapshot.status
    return bool(status is not None and status.bound_volume_snapshot_content_name)


def is_snapshot_ready(snapshot: VolumeSnapshot) -> bool:
    """True if the snapshot status says it is ready to use."""
    status = snapshot.status
    return bool(status is not None and status.ready_to_use)