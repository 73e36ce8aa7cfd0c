"""Unit tests for the storage index and the storage-only pass."""

import pytest

from usage_aggregator.aggregator_storage import StorageIndex, StorageOnlyPass
from usage_aggregator.models import NamespaceResult, StorageClass, StorageSnapshot

GIB = 2 ** 30


@pytest.fixture
def offline():
    return StorageSnapshot(StorageClass.OFFLINE, {"project_42": 5 * GIB, "Idle_Project": 2 * GIB})


@pytest.fixture
def online():
    return StorageSnapshot(StorageClass.ONLINE, {"idle_project": GIB, "feature_only": 3 * GIB})


class TestStorageIndex:
    """Per-namespace occupancy."""

    def test_keys_by_namespace(self, offline, online):
        index = StorageIndex(offline=offline, online=online)
        assert index.namespaces() == {"project-42", "idle-project", "feature-only"}
        assert index.for_namespace("idle-project") == (GIB, 2 * GIB)

    def test_absent_namespace_has_zero_storage(self, offline, online):
        assert StorageIndex(offline=offline, online=online).for_namespace("nothing") == (0.0, 0.0)

    def test_failed_read_is_none(self, offline):
        index = StorageIndex(offline=offline, online=None)
        assert not index.online_available
        assert index.for_namespace("project-42") == (None, 5 * GIB)


class TestStorageOnlyPass:
    """Idle namespaces with retained data."""

    def test_pending_excludes_compute_namespaces(self, offline, online):
        index = StorageIndex(offline=offline, online=online)
        assert StorageOnlyPass().pending(index, processed=["project-42"]) == ["feature-only", "idle-project"]

    def test_pending_excludes_platform_namespaces(self):
        index = StorageIndex(offline=StorageSnapshot(StorageClass.OFFLINE, {"opencost": GIB, "demo": GIB}))
        assert StorageOnlyPass(excluded_namespaces={"opencost"}).pending(index, processed=[]) == ["demo"]

    def test_run_processes_each_pending_namespace(self, offline, online):
        index = StorageIndex(offline=offline, online=online)
        seen = []

        def process(namespace):
            seen.append(namespace)
            if namespace == "feature-only":
                return None
            return NamespaceResult(cluster="eu-west", namespace=namespace, status="success", pass_name="storage")

        results = StorageOnlyPass().run(index, processed=["project-42"], process=process)

        assert seen == ["feature-only", "idle-project"]
        assert [r.namespace for r in results] == ["idle-project"]

    def test_nothing_pending(self, offline):
        index = StorageIndex(offline=offline)
        assert StorageOnlyPass().run(index, processed=["project-42", "idle-project"], process=lambda ns: None) == []
