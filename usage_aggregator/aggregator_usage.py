"""
Incremental usage aggregator.

Folds one hourly measurement of one namespace into the owner's daily usage
row. The job is triggered with at-least-once delivery, so the fold must be
idempotent within an hour and strictly additive across hours:

1. Sanitize: negative cpu/gpu/ram readings are clamped to 0 (anomaly recorded)
2. Load (or start) the (user, date) row and the namespace's breakdown entry
3. If the entry's last contribution falls in the current hour bucket, it is a
   re-run: subtract that contribution from the entry and the row first
   (a measurement from an earlier bucket than the last contribution is refused)
4. Compute this cycle's contribution (storage pro-rated to GB-months)
5. Add compute hours and cost, REPLACE storage (occupancy, not flow), and
   remember the contribution with processed_at = now
6. Persist with a version check

The daily total therefore equals exactly one measurement per elapsed hour per
namespace, however many times the job actually ran.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .cost_calculator import CostCalculator
from .db_writer import UsageStore
from .errors import AlreadyReportedError, StaleMeasurementError
from .models import (
    Contribution,
    DailyUsageAggregate,
    NamespaceAllocation,
    ProjectBreakdownEntry,
)
from .utils import (
    clamp_non_negative,
    convert_bytes_to_gigabytes,
    ensure_utc,
    get_logger,
    subtract_floor_zero,
    utc_now,
)


class HourBucketPolicy:
    """
    Decides whether two processing times belong to the same billing bucket.

    Buckets are absolute UTC intervals of `bucket_seconds` (one hour by
    default), so 10:05 on Monday and 10:40 on Tuesday are different buckets.
    Missed buckets are not backfilled; an hour in which the job never ran
    contributes nothing.
    """

    def __init__(self, bucket_seconds: int = 3600):
        self.bucket_seconds = int(bucket_seconds)
        if self.bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be > 0")

    def bucket_of(self, moment: datetime) -> int:
        """Index of the bucket containing a moment."""
        return int(ensure_utc(moment).timestamp()) // self.bucket_seconds

    def same_bucket(self, earlier: Optional[datetime], now: datetime) -> bool:
        """True if `earlier` is in the same bucket as `now`."""
        if earlier is None:
            return False
        return self.bucket_of(earlier) == self.bucket_of(now)

    def is_behind(self, last: Optional[datetime], now: datetime) -> bool:
        """True if `now` falls in an earlier bucket than `last`."""
        if last is None:
            return False
        return self.bucket_of(now) < self.bucket_of(last)


@dataclass
class ApplyResult:
    """What one fold did to a daily row."""
    user_id: str
    namespace: str
    contribution: Contribution
    reversed_contribution: Optional[Contribution] = None
    created_row: bool = False
    anomalies: List[str] = field(default_factory=list)

    @property
    def was_rerun(self) -> bool:
        return self.reversed_contribution is not None


class UsageAggregator:
    """Idempotently fold hourly namespace measurements into daily usage rows."""

    def __init__(
        self,
        store: UsageStore,
        calculator: Optional[CostCalculator] = None,
        config: Optional[Dict] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize usage aggregator.

        Args:
            store: Persistence for daily usage rows
            calculator: Cost calculator (built from config if omitted)
            config: Configuration dictionary
            clock: Returns the current UTC time
        """
        config = config or {}
        self.store = store
        self.calculator = calculator or CostCalculator(config)
        self.clock = clock
        self.bucket_policy = HourBucketPolicy(config.get("collection", {}).get("bucket_seconds", 3600))
        self.logger = get_logger("aggregator_usage")

    def apply(
        self,
        user_id: str,
        namespace: str,
        project_name: str,
        allocation: Optional[NamespaceAllocation] = None,
        online_storage_bytes: Optional[float] = 0.0,
        offline_storage_bytes: Optional[float] = 0.0,
        cluster_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApplyResult:
        """
        Fold one hourly measurement of a namespace into the user's daily row.

        Args:
            user_id: Billable user
            namespace: Kubernetes namespace (breakdown key)
            project_name: Canonical project name
            allocation: Hourly allocation, None for the storage-only pass
            online_storage_bytes: Current online storage occupancy, None if the read failed
            offline_storage_bytes: Current offline storage occupancy, None if the read failed
            cluster_id: Cluster the measurement came from
            now: Processing time (defaults to the clock)

        Returns:
            ApplyResult describing the fold

        Raises:
            AlreadyReportedError: If the day's row was already handed to billing
            StaleMeasurementError: If `now` is in an earlier bucket than the namespace's last contribution
            ConcurrentUpdateError: If the row changed between read and write
            PersistenceError: If the store fails
        """
        now = ensure_utc(now or self.clock())
        usage_date = now.date()
        anomalies: List[str] = []

        # Step 1: sanitize
        cpu_hours, gpu_hours, ram_gb_hours = self._sanitize(namespace, allocation, anomalies)
        online_storage_gb = self._storage_gb(online_storage_bytes)
        offline_storage_gb = self._storage_gb(offline_storage_bytes)

        # Step 2: load row and entry
        row = self.store.get_daily_usage(user_id, usage_date)
        created_row = row is None
        if row is None:
            row = DailyUsageAggregate(user_id=user_id, usage_date=usage_date, cluster_id=cluster_id)
        elif row.reported:
            raise AlreadyReportedError(user_id, usage_date)

        entry = row.project_breakdown.get(namespace) or ProjectBreakdownEntry(name=project_name)

        # Step 3: reverse a same-bucket contribution; an older bucket is never folded
        previous = entry.last_contribution
        if previous is not None and self.bucket_policy.is_behind(previous.processed_at, now):
            raise StaleMeasurementError(namespace, now, previous.processed_at)
        reversed_contribution = None
        if previous is not None and self.bucket_policy.same_bucket(previous.processed_at, now):
            self._reverse(row, entry, previous)
            reversed_contribution = previous
            self.logger.info(
                "Re-run within the same hour, reversed previous contribution",
                namespace=namespace,
                user_id=user_id,
                previous_cost=previous.hourly_cost,
            )

        # processed_at never moves backwards, even for a re-run stamped earlier in the same bucket
        processed_at = max(now, ensure_utc(previous.processed_at)) if reversed_contribution is not None else now

        # Step 4: compute this cycle's contribution
        credits = self.calculator.hourly_credits(
            cpu_hours=cpu_hours,
            gpu_hours=gpu_hours,
            ram_gb_hours=ram_gb_hours,
            online_storage_gb=online_storage_gb or 0.0,
            offline_storage_gb=offline_storage_gb or 0.0,
        )
        contribution = Contribution(
            cpu_hours=cpu_hours,
            gpu_hours=gpu_hours,
            ram_gb_hours=ram_gb_hours,
            online_storage_gb=online_storage_gb or 0.0,
            offline_storage_gb=offline_storage_gb or 0.0,
            credits=credits,
            hourly_cost=self.calculator.dollars(credits),
            processed_at=processed_at,
        )

        # Step 5: apply
        entry.name = project_name or entry.name
        self._add(row, entry, contribution, allocation)
        # A storage class whose read failed keeps its previous snapshot
        if online_storage_gb is not None:
            entry.online_storage_gb = online_storage_gb
        if offline_storage_gb is not None:
            entry.offline_storage_gb = offline_storage_gb
        row.project_breakdown[namespace] = entry
        row.online_storage_gb = sum(e.online_storage_gb for e in row.project_breakdown.values())
        row.offline_storage_gb = sum(e.offline_storage_gb for e in row.project_breakdown.values())
        if cluster_id:
            row.cluster_id = cluster_id

        # Step 6: persist
        if created_row:
            row.version = self.store.insert_daily_usage(row)
        else:
            row.version = self.store.update_daily_usage(row)

        self.logger.debug(
            "Applied contribution",
            namespace=namespace,
            user_id=user_id,
            usage_date=str(usage_date),
            hourly_cost=round(contribution.hourly_cost, 6),
            rerun=reversed_contribution is not None,
        )

        return ApplyResult(
            user_id=user_id,
            namespace=namespace,
            contribution=contribution,
            reversed_contribution=reversed_contribution,
            created_row=created_row,
            anomalies=anomalies,
        )

    def _sanitize(self, namespace: str, allocation: Optional[NamespaceAllocation], anomalies: List[str]):
        """Clamp negative compute readings, recording each as an anomaly."""
        if allocation is None:
            return 0.0, 0.0, 0.0

        readings = {
            "cpuCoreHours": allocation.cpu_core_hours,
            "gpuHours": allocation.gpu_hours,
            "ramByteHours": allocation.ram_byte_hours,
        }
        clean = {}
        for metric, raw in readings.items():
            value, clamped = clamp_non_negative(raw)
            clean[metric] = value
            if clamped:
                message = f"Namespace {namespace}: negative {metric} ({raw}) clamped to 0"
                anomalies.append(message)
                self.logger.warning("Clamped anomalous metric", namespace=namespace, metric=metric, value=raw)

        return clean["cpuCoreHours"], clean["gpuHours"], convert_bytes_to_gigabytes(clean["ramByteHours"])

    @staticmethod
    def _storage_gb(occupied_bytes: Optional[float]) -> Optional[float]:
        if occupied_bytes is None:
            return None
        return convert_bytes_to_gigabytes(clamp_non_negative(occupied_bytes)[0])

    @staticmethod
    def _reverse(row: DailyUsageAggregate, entry: ProjectBreakdownEntry, previous: Contribution):
        """Undo a contribution on both the entry and the row, never below zero."""
        entry.cpu_hours = subtract_floor_zero(entry.cpu_hours, previous.cpu_hours)
        entry.gpu_hours = subtract_floor_zero(entry.gpu_hours, previous.gpu_hours)
        entry.ram_gb_hours = subtract_floor_zero(entry.ram_gb_hours, previous.ram_gb_hours)
        entry.total_cost = subtract_floor_zero(entry.total_cost, previous.hourly_cost)
        entry.total_credits = subtract_floor_zero(entry.total_credits, previous.credits)

        row.cpu_hours = subtract_floor_zero(row.cpu_hours, previous.cpu_hours)
        row.gpu_hours = subtract_floor_zero(row.gpu_hours, previous.gpu_hours)
        row.ram_gb_hours = subtract_floor_zero(row.ram_gb_hours, previous.ram_gb_hours)
        row.total_cost = subtract_floor_zero(row.total_cost, previous.hourly_cost)
        row.total_credits = subtract_floor_zero(row.total_credits, previous.credits)

        entry.last_contribution = None

    @staticmethod
    def _add(
        row: DailyUsageAggregate,
        entry: ProjectBreakdownEntry,
        contribution: Contribution,
        allocation: Optional[NamespaceAllocation],
    ):
        entry.cpu_hours += contribution.cpu_hours
        entry.gpu_hours += contribution.gpu_hours
        entry.ram_gb_hours += contribution.ram_gb_hours
        entry.total_cost += contribution.hourly_cost
        entry.total_credits += contribution.credits
        if allocation is not None:
            entry.cpu_efficiency = clamp_non_negative(allocation.cpu_efficiency)[0]
            entry.ram_efficiency = clamp_non_negative(allocation.ram_efficiency)[0]
        entry.last_contribution = contribution

        row.cpu_hours += contribution.cpu_hours
        row.gpu_hours += contribution.gpu_hours
        row.ram_gb_hours += contribution.ram_gb_hours
        row.total_cost += contribution.hourly_cost
        row.total_credits += contribution.credits

