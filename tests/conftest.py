"""
Shared pytest fixtures for all tests.

Provides an in-memory usage store, a controllable clock, and common
clusters, users and configuration.
"""

import copy
from datetime import datetime, timedelta, timezone

import pytest

from usage_aggregator.config_loader import DEFAULT_CONFIG, deep_merge
from usage_aggregator.db_writer import UsageStore
from usage_aggregator.errors import ConcurrentUpdateError
from usage_aggregator.models import BillableUser, Cluster, MappingStatus, RegistryProject

GIB = 2 ** 30


class InMemoryStore(UsageStore):
    """UsageStore kept in dictionaries, with the same version semantics as PostgreSQL."""

    def __init__(self, clusters=None, users=None):
        self.clusters = list(clusters or [])
        self.users = {user.id: user for user in (users or [])}
        self.mappings = {}  # (namespace, user_id) → OwnershipMapping
        self.usage = {}  # (user_id, usage_date) → DailyUsageAggregate
        self.customers = {}  # user_id → billing customer id (postpaid users)
        self.lock_held = False
        self.lock_acquisitions = 0

    # clusters and users
    def list_active_clusters(self):
        return [cluster for cluster in self.clusters if cluster.status == "active"]

    def get_user(self, user_id):
        return self.users.get(user_id)

    def find_user_by_owner(self, owner_username, cluster_id):
        for user in self.users.values():
            if user.owner_username == owner_username and user.cluster_id == cluster_id:
                return user
        return None

    # ownership mappings
    def get_mapping(self, namespace):
        for (ns, _), mapping in self.mappings.items():
            if ns == namespace and mapping.status == MappingStatus.ACTIVE:
                return copy.deepcopy(mapping)
        return None

    def save_mapping(self, mapping):
        for key in [key for key in self.mappings if key[0] == mapping.namespace and key[1] != mapping.user_id]:
            del self.mappings[key]
        self.mappings[(mapping.namespace, mapping.user_id)] = copy.deepcopy(mapping)

    def touch_mapping(self, namespace, seen_at):
        for (ns, _), mapping in self.mappings.items():
            if ns == namespace and mapping.status == MappingStatus.ACTIVE:
                mapping.last_seen_at = seen_at

    def _deactivate(self, predicate):
        count = 0
        for mapping in self.mappings.values():
            if mapping.status == MappingStatus.ACTIVE and predicate(mapping):
                mapping.status = MappingStatus.INACTIVE
                count += 1
        return count

    def deactivate_mapping(self, namespace):
        return self._deactivate(lambda m: m.namespace == namespace)

    def deactivate_user_mappings(self, user_id):
        return self._deactivate(lambda m: m.user_id == user_id)

    def expire_stale_mappings(self, cluster_id, cutoff):
        return self._deactivate(lambda m: m.cluster_id == cluster_id and m.last_seen_at < cutoff)

    # daily usage
    def get_daily_usage(self, user_id, usage_date):
        row = self.usage.get((user_id, usage_date))
        return copy.deepcopy(row) if row else None

    def insert_daily_usage(self, row):
        key = (row.user_id, row.usage_date)
        if key in self.usage:
            raise ConcurrentUpdateError(row.user_id, row.usage_date, row.version)
        stored = copy.deepcopy(row)
        stored.version = 1
        self.usage[key] = stored
        return 1

    def update_daily_usage(self, row):
        key = (row.user_id, row.usage_date)
        current = self.usage.get(key)
        if current is None or current.version != row.version or current.reported:
            raise ConcurrentUpdateError(row.user_id, row.usage_date, row.version)
        stored = copy.deepcopy(row)
        stored.version = row.version + 1
        self.usage[key] = stored
        return stored.version

    def list_unreported_usage(self, usage_date):
        return [
            (copy.deepcopy(row), self.customers[user_id])
            for (user_id, day), row in sorted(self.usage.items())
            if day == usage_date and not row.reported and user_id in self.customers
        ]

    def mark_reported(self, user_id, usage_date, version):
        row = self.usage.get((user_id, usage_date))
        if row is None or row.version != version or row.reported:
            raise ConcurrentUpdateError(user_id, usage_date, version)
        row.reported = True
        row.version += 1
        return row.version

    # run lock
    def try_acquire_run_lock(self, key):
        if self.lock_held:
            return False
        self.lock_held = True
        self.lock_acquisitions += 1
        return True

    def release_run_lock(self, key):
        self.lock_held = False

    # helpers for assertions
    def row(self, user_id, usage_date):
        return self.usage.get((user_id, usage_date))

    def active_mappings(self):
        return [m for m in self.mappings.values() if m.status == MappingStatus.ACTIVE]


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRegistry:
    """Registry client double that counts enumerations."""

    def __init__(self, projects=None, error=None):
        self.projects = list(projects or [])
        self.error = error
        self.calls = 0
        self.closed = 0

    def list_projects(self):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.projects)

    def close(self):
        self.closed += 1


@pytest.fixture
def config():
    """Default configuration with the built-in rate table."""
    return deep_merge(DEFAULT_CONFIG, {"api": {"cron_secret": "test-secret"}})


@pytest.fixture
def cluster():
    return Cluster(
        id="cluster-1",
        name="eu-west",
        opencost_url="http://opencost.test",
        api_url="http://hopsworks.test",
        api_key="cluster-key",
    )


@pytest.fixture
def other_cluster():
    return Cluster(
        id="cluster-2",
        name="us-east",
        opencost_url="http://opencost-us.test",
        api_url="http://hopsworks-us.test",
        api_key="cluster-key-2",
    )


@pytest.fixture
def user():
    return BillableUser(id="user-u", owner_username="alice", cluster_id="cluster-1")


@pytest.fixture
def team_member():
    return BillableUser(id="user-m", owner_username="bob", cluster_id="cluster-1", account_owner_id="user-u")


@pytest.fixture
def store(cluster, user, team_member):
    return InMemoryStore(clusters=[cluster], users=[user, team_member])


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 10, 15, 10, 5, tzinfo=timezone.utc))


@pytest.fixture
def registry():
    return FakeRegistry(
        projects=[
            RegistryProject(id=42, name="project_42", owner="alice"),
            RegistryProject(id=7, name="Team_Shared", owner="bob"),
            RegistryProject(id=1, name="airflow", owner="admin"),
        ]
    )


@pytest.fixture
def make_registry():
    return FakeRegistry
