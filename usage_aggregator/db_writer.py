"""PostgreSQL persistence for ownership mappings and daily usage aggregates."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd
import psycopg2
import psycopg2.extensions
from psycopg2.extras import Json, RealDictCursor

from .db_adapter import get_db_config, get_db_connection
from .errors import ConcurrentUpdateError, PersistenceError
from .models import (
    BillableUser,
    Cluster,
    DailyUsageAggregate,
    MappingStatus,
    OwnershipMapping,
)
from .utils import PerformanceTimer, get_logger


class UsageStore(ABC):
    """
    Persisted state the engine reads and writes.

    Only two tables are mutated by a run: the namespace ownership mappings and
    the per-(user, date) daily usage rows. Clusters and users are read-only.
    """

    @abstractmethod
    def list_active_clusters(self) -> List[Cluster]:
        """Clusters with status 'active'."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[BillableUser]:
        """User record with its current cluster assignment."""

    @abstractmethod
    def find_user_by_owner(self, owner_username: str, cluster_id: str) -> Optional[BillableUser]:
        """User whose external owner identity matches and who is assigned to the cluster."""

    @abstractmethod
    def get_mapping(self, namespace: str) -> Optional[OwnershipMapping]:
        """The active mapping of a namespace, if any."""

    @abstractmethod
    def save_mapping(self, mapping: OwnershipMapping) -> None:
        """Upsert the active mapping of a namespace and prune other users' rows."""

    @abstractmethod
    def touch_mapping(self, namespace: str, seen_at: datetime) -> None:
        """Refresh last_seen_at of the active mapping."""

    @abstractmethod
    def deactivate_mapping(self, namespace: str) -> int:
        """Mark the active mapping of a namespace inactive."""

    @abstractmethod
    def deactivate_user_mappings(self, user_id: str) -> int:
        """Mark every active mapping of a user inactive."""

    @abstractmethod
    def expire_stale_mappings(self, cluster_id: str, cutoff: datetime) -> int:
        """Deactivate the cluster's active mappings last seen before cutoff."""

    @abstractmethod
    def get_daily_usage(self, user_id: str, usage_date: date) -> Optional[DailyUsageAggregate]:
        """Daily usage row for (user, date)."""

    @abstractmethod
    def insert_daily_usage(self, row: DailyUsageAggregate) -> int:
        """Insert a new daily row; returns its version."""

    @abstractmethod
    def update_daily_usage(self, row: DailyUsageAggregate) -> int:
        """Update a daily row if its version is unchanged; returns the new version."""

    @abstractmethod
    def list_unreported_usage(self, usage_date: date) -> List[Tuple[DailyUsageAggregate, str]]:
        """Unreported rows of metered (postpaid) users, with the billing customer id."""

    @abstractmethod
    def mark_reported(self, user_id: str, usage_date: date, version: int) -> int:
        """Flag a daily row as consumed by the billing sync if its version is unchanged; returns the new version."""

    @abstractmethod
    def try_acquire_run_lock(self, key: int) -> bool:
        """Take the run-wide mutual exclusion lock without waiting."""

    @abstractmethod
    def release_run_lock(self, key: int) -> None:
        """Release the run-wide lock."""


SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS {schema}.clusters (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    opencost_url TEXT NOT NULL,
    api_url TEXT NOT NULL,
    api_key TEXT,
    storage_url TEXT
);

CREATE TABLE IF NOT EXISTS {schema}.users (
    id TEXT PRIMARY KEY,
    owner_username TEXT,
    account_owner_id TEXT REFERENCES {schema}.users (id),
    billing_mode TEXT NOT NULL DEFAULT 'prepaid',
    billing_customer_id TEXT
);

CREATE TABLE IF NOT EXISTS {schema}.user_cluster_assignments (
    user_id TEXT PRIMARY KEY REFERENCES {schema}.users (id) ON DELETE CASCADE,
    cluster_id TEXT NOT NULL REFERENCES {schema}.clusters (id),
    assigned_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.namespace_ownership (
    namespace TEXT NOT NULL,
    user_id TEXT NOT NULL,
    billable_user_id TEXT,
    project_id BIGINT,
    project_name TEXT NOT NULL,
    cluster_id TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (namespace, user_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS namespace_ownership_one_active
    ON {schema}.namespace_ownership (namespace) WHERE status = 'active';

CREATE INDEX IF NOT EXISTS namespace_ownership_cluster_seen
    ON {schema}.namespace_ownership (cluster_id, last_seen_at) WHERE status = 'active';

CREATE TABLE IF NOT EXISTS {schema}.usage_daily (
    user_id TEXT NOT NULL,
    usage_date DATE NOT NULL,
    cpu_hours DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (cpu_hours >= 0),
    gpu_hours DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (gpu_hours >= 0),
    ram_gb_hours DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (ram_gb_hours >= 0),
    online_storage_gb DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (online_storage_gb >= 0),
    offline_storage_gb DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (offline_storage_gb >= 0),
    total_credits DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (total_credits >= 0),
    total_cost DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (total_cost >= 0),
    project_breakdown JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    reported BOOLEAN NOT NULL DEFAULT false,
    cluster_id TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, usage_date)
);
"""

USAGE_COLUMNS = (
    "user_id, usage_date, cpu_hours, gpu_hours, ram_gb_hours, online_storage_gb, "
    "offline_storage_gb, total_credits, total_cost, project_breakdown, reported, cluster_id, version"
)

USER_SELECT = """
    SELECT u.id, u.owner_username, u.account_owner_id, a.cluster_id
    FROM {schema}.users u
    LEFT JOIN {schema}.user_cluster_assignments a ON a.user_id = u.id
"""


class DatabaseWriter(UsageStore):
    """Usage store backed by PostgreSQL."""

    def __init__(self, config: Dict):
        """Initialize database writer.

        Args:
            config: Configuration dictionary with postgresql section
        """
        self.config = config
        self.logger = get_logger("db_writer")

        db_config = get_db_config(config)
        self.host = db_config['host']
        self.database = db_config['database']
        self.schema = db_config['schema']

        self.connection = None
        self.logger.info(
            "Initialized database writer",
            host=self.host,
            database=self.database,
            schema=self.schema
        )

    def connect(self):
        """Establish database connection."""
        try:
            self.connection = get_db_connection(self.config)
            self.logger.info("Database connection established")
        except psycopg2.Error as e:
            self.logger.error("Failed to connect to database", error=str(e))
            raise PersistenceError(f"Failed to connect to database: {e}", e) from e

    def disconnect(self):
        """Close database connection.

        Note: psycopg2 rolls back on close() without commit(), so a pending
        transaction is committed first.
        """
        if self.connection:
            if self.connection.status == psycopg2.extensions.STATUS_IN_TRANSACTION:
                self.logger.info("Committing pending transaction before disconnect...")
                self.connection.commit()
            self.connection.close()
            self.connection = None
            self.logger.info("Database connection closed")

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    @contextmanager
    def _transaction(self, description: str):
        """Run statements in one transaction, rolling back on any failure."""
        if self.connection is None:
            raise PersistenceError("Database connection is not open")
        try:
            with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            self.connection.commit()
        except psycopg2.Error as e:
            self.connection.rollback()
            self.logger.error(f"Failed to {description}", error=str(e))
            raise PersistenceError(f"Failed to {description}: {e}", e) from e
        except Exception:
            self.connection.rollback()
            raise

    def create_schema(self):
        """Create the tables used by the aggregator if they don't exist."""
        with PerformanceTimer("Create schema", self.logger):
            with self._transaction("create schema") as cursor:
                cursor.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")
                cursor.execute(SCHEMA_DDL.format(schema=self.schema))

    def list_active_clusters(self) -> List[Cluster]:
        with self._transaction("list clusters") as cursor:
            cursor.execute(
                f"""
                SELECT id, name, status, opencost_url, api_url, api_key, storage_url
                FROM {self.schema}.clusters
                WHERE status = 'active'
                ORDER BY name
                """
            )
            rows = cursor.fetchall()

        clusters = [Cluster(**dict(row)) for row in rows]
        self.logger.info("Fetched active clusters", count=len(clusters))
        return clusters

    def get_user(self, user_id: str) -> Optional[BillableUser]:
        with self._transaction("fetch user") as cursor:
            cursor.execute(USER_SELECT.format(schema=self.schema) + " WHERE u.id = %s", (user_id,))
            row = cursor.fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_owner(self, owner_username: str, cluster_id: str) -> Optional[BillableUser]:
        with self._transaction("find user by owner") as cursor:
            cursor.execute(
                USER_SELECT.format(schema=self.schema)
                + " WHERE u.owner_username = %s AND a.cluster_id = %s",
                (owner_username, cluster_id),
            )
            row = cursor.fetchone()
        return self._user_from_row(row) if row else None

    @staticmethod
    def _user_from_row(row) -> BillableUser:
        return BillableUser(
            id=row["id"],
            owner_username=row["owner_username"],
            cluster_id=row["cluster_id"],
            account_owner_id=row["account_owner_id"],
        )

    def get_mapping(self, namespace: str) -> Optional[OwnershipMapping]:
        with self._transaction("fetch ownership mapping") as cursor:
            cursor.execute(
                f"""
                SELECT namespace, user_id, billable_user_id, project_id, project_name,
                       cluster_id, status, last_seen_at
                FROM {self.schema}.namespace_ownership
                WHERE namespace = %s AND status = 'active'
                """,
                (namespace,),
            )
            row = cursor.fetchone()

        if not row:
            return None
        data = dict(row)
        data["status"] = MappingStatus(data["status"])
        return OwnershipMapping(**data)

    def save_mapping(self, mapping: OwnershipMapping) -> None:
        with self._transaction("save ownership mapping") as cursor:
            # Rows of other users for this namespace are dropped, keeping one active owner
            cursor.execute(
                f"DELETE FROM {self.schema}.namespace_ownership WHERE namespace = %s AND user_id <> %s",
                (mapping.namespace, mapping.user_id),
            )
            pruned = cursor.rowcount
            cursor.execute(
                f"""
                INSERT INTO {self.schema}.namespace_ownership
                    (namespace, user_id, billable_user_id, project_id, project_name,
                     cluster_id, status, last_seen_at)
                VALUES (%s, %s, %s, %s, %s, %s, 'active', %s)
                ON CONFLICT (namespace, user_id) DO UPDATE SET
                    billable_user_id = EXCLUDED.billable_user_id,
                    project_id = EXCLUDED.project_id,
                    project_name = EXCLUDED.project_name,
                    cluster_id = EXCLUDED.cluster_id,
                    status = 'active',
                    last_seen_at = EXCLUDED.last_seen_at
                """,
                (
                    mapping.namespace,
                    mapping.user_id,
                    mapping.billable_user_id,
                    mapping.project_id,
                    mapping.project_name,
                    mapping.cluster_id,
                    mapping.last_seen_at,
                ),
            )

        self.logger.debug(
            "Saved ownership mapping",
            namespace=mapping.namespace,
            user_id=mapping.user_id,
            pruned=pruned,
        )

    def touch_mapping(self, namespace: str, seen_at: datetime) -> None:
        with self._transaction("touch ownership mapping") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.namespace_ownership
                SET last_seen_at = %s
                WHERE namespace = %s AND status = 'active'
                """,
                (seen_at, namespace),
            )

    def deactivate_mapping(self, namespace: str) -> int:
        with self._transaction("deactivate ownership mapping") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.namespace_ownership
                SET status = 'inactive'
                WHERE namespace = %s AND status = 'active'
                """,
                (namespace,),
            )
            return cursor.rowcount

    def deactivate_user_mappings(self, user_id: str) -> int:
        with self._transaction("deactivate user mappings") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.namespace_ownership
                SET status = 'inactive'
                WHERE user_id = %s AND status = 'active'
                """,
                (user_id,),
            )
            return cursor.rowcount

    def expire_stale_mappings(self, cluster_id: str, cutoff: datetime) -> int:
        with self._transaction("expire stale mappings") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.namespace_ownership
                SET status = 'inactive'
                WHERE cluster_id = %s AND status = 'active' AND last_seen_at < %s
                """,
                (cluster_id, cutoff),
            )
            return cursor.rowcount

    def get_daily_usage(self, user_id: str, usage_date: date) -> Optional[DailyUsageAggregate]:
        with self._transaction("fetch daily usage") as cursor:
            cursor.execute(
                f"SELECT {USAGE_COLUMNS} FROM {self.schema}.usage_daily WHERE user_id = %s AND usage_date = %s",
                (user_id, usage_date),
            )
            row = cursor.fetchone()
        return self._usage_from_row(row) if row else None

    @staticmethod
    def _usage_from_row(row) -> DailyUsageAggregate:
        return DailyUsageAggregate(
            user_id=row["user_id"],
            usage_date=row["usage_date"],
            cpu_hours=float(row["cpu_hours"]),
            gpu_hours=float(row["gpu_hours"]),
            ram_gb_hours=float(row["ram_gb_hours"]),
            online_storage_gb=float(row["online_storage_gb"]),
            offline_storage_gb=float(row["offline_storage_gb"]),
            total_credits=float(row["total_credits"]),
            total_cost=float(row["total_cost"]),
            project_breakdown=DailyUsageAggregate.breakdown_from_json(row["project_breakdown"]),
            reported=bool(row["reported"]),
            cluster_id=row["cluster_id"],
            version=int(row["version"]),
        )

    def _usage_values(self, row: DailyUsageAggregate) -> tuple:
        return (
            row.cpu_hours,
            row.gpu_hours,
            row.ram_gb_hours,
            row.online_storage_gb,
            row.offline_storage_gb,
            row.total_credits,
            row.total_cost,
            Json(row.breakdown_to_json()),
            row.cluster_id,
        )

    def insert_daily_usage(self, row: DailyUsageAggregate) -> int:
        with self._transaction("insert daily usage") as cursor:
            cursor.execute(
                f"""
                INSERT INTO {self.schema}.usage_daily
                    (user_id, usage_date, cpu_hours, gpu_hours, ram_gb_hours, online_storage_gb,
                     offline_storage_gb, total_credits, total_cost, project_breakdown, cluster_id, version)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1)
                ON CONFLICT (user_id, usage_date) DO NOTHING
                """,
                (row.user_id, row.usage_date) + self._usage_values(row),
            )
            if cursor.rowcount == 0:
                raise ConcurrentUpdateError(row.user_id, row.usage_date, row.version)
        return 1

    def update_daily_usage(self, row: DailyUsageAggregate) -> int:
        with self._transaction("update daily usage") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.usage_daily SET
                    cpu_hours = %s,
                    gpu_hours = %s,
                    ram_gb_hours = %s,
                    online_storage_gb = %s,
                    offline_storage_gb = %s,
                    total_credits = %s,
                    total_cost = %s,
                    project_breakdown = %s,
                    cluster_id = %s,
                    version = version + 1,
                    updated_at = now()
                WHERE user_id = %s AND usage_date = %s AND version = %s AND reported = false
                """,
                self._usage_values(row) + (row.user_id, row.usage_date, row.version),
            )
            if cursor.rowcount == 0:
                raise ConcurrentUpdateError(row.user_id, row.usage_date, row.version)
        return row.version + 1

    def list_unreported_usage(self, usage_date: date) -> List[Tuple[DailyUsageAggregate, str]]:
        """Read unreported rows of postpaid users that have a billing customer id."""
        with PerformanceTimer("Fetch unreported usage", self.logger):
            query = f"""
                SELECT {", ".join("d." + col.strip() for col in USAGE_COLUMNS.split(","))},
                       u.billing_customer_id
                FROM {self.schema}.usage_daily d
                JOIN {self.schema}.users u ON u.id = d.user_id
                WHERE d.usage_date = %(usage_date)s
                  AND d.reported = false
                  AND u.billing_mode = 'postpaid'
                  AND u.billing_customer_id IS NOT NULL
                ORDER BY d.user_id
            """
            try:
                df = pd.read_sql(query, self.connection, params={"usage_date": usage_date})
            except (psycopg2.Error, pd.errors.DatabaseError) as e:
                self.logger.error("Failed to fetch unreported usage", error=str(e))
                raise PersistenceError(f"Failed to fetch unreported usage: {e}", e) from e

            self.logger.info("Fetched unreported usage", count=len(df), usage_date=str(usage_date))
            return [
                (self._usage_from_row(record), record["billing_customer_id"])
                for record in df.to_dict(orient="records")
            ]

    def mark_reported(self, user_id: str, usage_date: date, version: int) -> int:
        with self._transaction("mark usage reported") as cursor:
            cursor.execute(
                f"""
                UPDATE {self.schema}.usage_daily
                SET reported = true, version = version + 1, updated_at = now()
                WHERE user_id = %s AND usage_date = %s AND version = %s AND reported = false
                """,
                (user_id, usage_date, version),
            )
            if cursor.rowcount == 0:
                raise ConcurrentUpdateError(user_id, usage_date, version)
        return version + 1

    def try_acquire_run_lock(self, key: int) -> bool:
        with self._transaction("acquire run lock") as cursor:
            cursor.execute("SELECT pg_try_advisory_lock(%s) AS locked", (key,))
            return bool(cursor.fetchone()["locked"])

    def release_run_lock(self, key: int) -> None:
        with self._transaction("release run lock") as cursor:
            cursor.execute("SELECT pg_advisory_unlock(%s)", (key,))

