# snapsidecar

The logic of a sidecar controller for volume snapshots. It looks at volume
snapshot content objects, asks a CSI driver to create, inspect or delete
the snapshot behind each one, and writes the result back into the
content's status.

The package also ships a small command, `filter-junit`, that filters and
merges JUnit result files.

It has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `snapsidecar.models`: dataclasses for the snapshot objects
  (`VolumeSnapshot`, `VolumeSnapshotContent`, `VolumeSnapshotClass`,
  `ObjectMeta`, `Secret`, `SecretReference` and their parts), the
  `DeletionPolicy` enum (`DELETE`, `RETAIN`), and `NotFoundError` and
  `ConflictError`.
- `snapsidecar.utils`: `ObjectStore`, a thread-safe cache keyed by
  `"namespace/name"` (or `"name"`), and helpers: `store_object_update`
  (keeps the newest resource version and rejects versions that are not
  integers), `get_secret_reference`, `resolve_template`, `get_credentials`,
  `remove_prefixed_parameters`, `is_dns1123_label`, `is_dns1123_subdomain`,
  the finalizer checks and the binding/readiness checks.
- `snapsidecar.snapshotter`: the abstract `Snapshotter` and `CSISnapshotter`,
  which issues CreateSnapshot, DeleteSnapshot, ControllerGetCapabilities and
  ListSnapshots calls on a connection object you supply.
- `snapsidecar.csi_handler`: `CSIHandler`, which turns content objects into
  snapshotter calls, and `make_snapshot_name`.
- `snapsidecar.content_status`: `merge_content_status`, `should_delete`,
  `deletion_secret_reference` and `ControllerUpdateError`.
- `snapsidecar.operations`: `OperationMap`, which runs at most one background
  operation per name with exponential backoff after failures, and
  `WorkQueue`, a FIFO queue in which a key waits at most once.
- `snapsidecar.controller`: `SidecarController`, which ties these together:
  `sync_content`, `process_next_item`, `run`, `initialize_caches`,
  `is_driver_match` and the status and finalizer updates. Events go to a
  recorder you pass in or, by default, to the `events` list as
  `"type reason message"` strings.

## Examples

Snapshot names are built from a prefix and the snapshot's UID. A length of
`-1` keeps the UID as it is; any other length strips the dashes and
truncates:

```python
from snapsidecar.csi_handler import make_snapshot_name

make_snapshot_name("snapshot", "abc-def", -1)  # "snapshot-abc-def"
make_snapshot_name("snapshot", "abc-def", 6)   # "snapshot-abcdef"
```

Class parameters under the reserved `csi.storage.k8s.io/` prefix are not
passed to the driver. The known secret keys are dropped; an unknown key
under that prefix raises `ValueError`:

```python
from snapsidecar.utils import remove_prefixed_parameters

remove_prefixed_parameters({
    "csiFoo": "bar",
    "csi.storage.k8s.io/snapshotter-secret-name": "bar",
})
# {"csiFoo": "bar"}
```

Secret names in class parameters may be templates:

```python
from snapsidecar.utils import get_secret_reference

get_secret_reference(
    {
        "csi.storage.k8s.io/snapshotter-secret-name": "${volumesnapshotcontent.name}",
        "csi.storage.k8s.io/snapshotter-secret-namespace": "default",
    },
    "content1",
    None,
)
# SecretReference(name="content1", namespace="default")
```

## Filtering JUnit files

`filter-junit` reads one or more JUnit files (`-` for standard input),
keeps the test cases whose names match a regular expression, and writes a
single merged `<testsuite>`. A test that was skipped in one run but ran in
another is kept once, as the real run.

```
filter-junit -t "Snapshot" -o merged.xml run1.xml run2.xml
```

`-o -` (the default) writes to standard output. On an unreadable file,
malformed XML or a bad expression it prints a message to standard error
and exits with status 1.

## What this package does not do

- It does not talk to an API server or a CSI driver by itself.
  `SidecarController` takes a client, listers and a secret getter, and
  `CSISnapshotter` takes a connection object; you provide these.
- There is no command that starts the controller; call
  `SidecarController.run` from your own program.
- It does not watch objects: feed changes in with
  `SidecarController.enqueue_content_work`.