"""
Unit tests for the incremental usage aggregator.

Tests idempotence within an hour, accrual across hours, storage replacement,
sanitization of negative readings and frozen reported rows.
"""

from datetime import datetime, timezone

import pytest

from usage_aggregator.aggregator_usage import HourBucketPolicy, UsageAggregator
from usage_aggregator.errors import AlreadyReportedError, ConcurrentUpdateError, StaleMeasurementError
from usage_aggregator.models import NamespaceAllocation

GIB = 2 ** 30


def allocation(namespace="project-42", cpu=0.0, ram_bytes=0.0, gpu=0.0, **kwargs):
    return NamespaceAllocation(
        namespace=namespace, cpu_core_hours=cpu, ram_byte_hours=ram_bytes, gpu_hours=gpu, **kwargs
    )


@pytest.fixture
def aggregator(store, config, clock):
    return UsageAggregator(store, config=config, clock=clock)


def apply(aggregator, namespace="project-42", **kwargs):
    kwargs.setdefault("allocation", allocation(namespace))
    return aggregator.apply("user-u", namespace, "project_42", cluster_id="cluster-1", **kwargs)


class TestHourBucketPolicy:
    """Explicit bucketing of processing times."""

    def test_same_hour(self):
        policy = HourBucketPolicy()
        a = datetime(2025, 10, 15, 10, 5, tzinfo=timezone.utc)
        b = datetime(2025, 10, 15, 10, 59, 59, tzinfo=timezone.utc)
        assert policy.same_bucket(a, b)

    def test_next_hour(self):
        policy = HourBucketPolicy()
        a = datetime(2025, 10, 15, 10, 59, tzinfo=timezone.utc)
        b = datetime(2025, 10, 15, 11, 0, tzinfo=timezone.utc)
        assert not policy.same_bucket(a, b)

    def test_same_hour_of_day_on_another_day(self):
        """Buckets are absolute, not hour-of-day."""
        policy = HourBucketPolicy()
        a = datetime(2025, 10, 14, 10, 5, tzinfo=timezone.utc)
        b = datetime(2025, 10, 15, 10, 5, tzinfo=timezone.utc)
        assert not policy.same_bucket(a, b)

    def test_no_previous(self):
        assert not HourBucketPolicy().same_bucket(None, datetime(2025, 10, 15, tzinfo=timezone.utc))

    def test_custom_bucket(self):
        policy = HourBucketPolicy(bucket_seconds=900)
        a = datetime(2025, 10, 15, 10, 0, tzinfo=timezone.utc)
        assert policy.same_bucket(a, datetime(2025, 10, 15, 10, 14, tzinfo=timezone.utc))
        assert not policy.same_bucket(a, datetime(2025, 10, 15, 10, 15, tzinfo=timezone.utc))

    def test_invalid_bucket(self):
        with pytest.raises(ValueError):
            HourBucketPolicy(bucket_seconds=0)

    def test_is_behind(self):
        policy = HourBucketPolicy()
        last = datetime(2025, 10, 15, 11, 5, tzinfo=timezone.utc)
        assert policy.is_behind(last, datetime(2025, 10, 15, 10, 30, tzinfo=timezone.utc))
        assert not policy.is_behind(last, datetime(2025, 10, 15, 11, 0, tzinfo=timezone.utc))
        assert not policy.is_behind(None, last)


class TestIdempotence:
    """Re-runs within the same hour."""

    def test_rerun_same_hour_yields_identical_state(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=2, ram_bytes=4 * GIB), online_storage_bytes=GIB)
        first = store.row("user-u", clock.now.date())
        snapshot = first.breakdown_to_json(), first.cpu_hours, first.total_cost, first.total_credits

        clock.advance(minutes=30)
        result = apply(aggregator, allocation=allocation(cpu=2, ram_bytes=4 * GIB), online_storage_bytes=GIB)
        second = store.row("user-u", clock.now.date())

        assert result.was_rerun
        assert second.cpu_hours == pytest.approx(snapshot[1])
        assert second.total_cost == pytest.approx(snapshot[2])
        assert second.total_credits == pytest.approx(snapshot[3])
        assert second.project_breakdown["project-42"].cpu_hours == pytest.approx(2.0)

    def test_rerun_with_new_reading_replaces_contribution(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=2))
        clock.advance(minutes=10)
        apply(aggregator, allocation=allocation(cpu=3))

        row = store.row("user-u", clock.now.date())
        assert row.cpu_hours == pytest.approx(3.0)
        assert row.total_cost == pytest.approx(3 * 0.5 * 0.25)

    def test_many_reruns(self, aggregator, store, clock):
        for _ in range(5):
            apply(aggregator, allocation=allocation(cpu=1))
            clock.advance(minutes=5)
        assert store.row("user-u", clock.now.date()).cpu_hours == pytest.approx(1.0)


class TestAccrual:
    """Contributions in distinct hours."""

    def test_cpu_hours_accumulate(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        clock.advance(hours=1)
        result = apply(aggregator, allocation=allocation(cpu=1))

        assert not result.was_rerun
        row = store.row("user-u", clock.now.date())
        assert row.cpu_hours == pytest.approx(2.0)
        assert row.project_breakdown["project-42"].cpu_hours == pytest.approx(2.0)

    def test_three_hours_of_fifty_cents(self, aggregator, store, clock):
        # 4 CPU hours = 2 credits = $0.50
        for _ in range(3):
            result = apply(aggregator, allocation=allocation(cpu=4))
            assert result.contribution.hourly_cost == pytest.approx(0.50)
            clock.advance(hours=1)

        row = store.row("user-u", clock.now.date())
        assert row.total_cost == pytest.approx(1.50)
        assert row.total_credits == pytest.approx(6.0)

    def test_missed_hour_is_not_backfilled(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        clock.advance(hours=3)
        apply(aggregator, allocation=allocation(cpu=1))
        assert store.row("user-u", clock.now.date()).cpu_hours == pytest.approx(2.0)

    def test_namespaces_accumulate_into_one_row(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        aggregator.apply("user-u", "other-ns", "other_ns", allocation=allocation("other-ns", cpu=2))

        row = store.row("user-u", clock.now.date())
        assert row.cpu_hours == pytest.approx(3.0)
        assert set(row.project_breakdown) == {"project-42", "other-ns"}

    def test_new_day_starts_new_row(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        first_day = clock.now.date()
        clock.advance(days=1)
        apply(aggregator, allocation=allocation(cpu=1))

        assert store.row("user-u", first_day).cpu_hours == pytest.approx(1.0)
        assert store.row("user-u", clock.now.date()).cpu_hours == pytest.approx(1.0)


class TestStorage:
    """Storage is occupancy: replaced, never summed."""

    def test_storage_replaces_compute_accumulates(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1), online_storage_bytes=10 * GIB)
        clock.advance(hours=1)
        apply(aggregator, allocation=allocation(cpu=1), online_storage_bytes=12 * GIB)

        row = store.row("user-u", clock.now.date())
        assert row.online_storage_gb == pytest.approx(12.0)
        assert row.project_breakdown["project-42"].online_storage_gb == pytest.approx(12.0)
        assert row.cpu_hours == pytest.approx(2.0)

    def test_row_storage_is_sum_of_namespaces(self, aggregator, store, clock):
        apply(aggregator, offline_storage_bytes=3 * GIB)
        aggregator.apply("user-u", "other-ns", "other_ns", allocation=None, offline_storage_bytes=5 * GIB)

        row = store.row("user-u", clock.now.date())
        assert row.offline_storage_gb == pytest.approx(8.0)

    def test_storage_cost_pro_rated(self, aggregator):
        result = apply(aggregator, allocation=None, online_storage_bytes=730 * GIB, offline_storage_bytes=730 * GIB)
        # One GB-month of each class: 2 + 0.12 credits
        assert result.contribution.credits == pytest.approx(2.12)
        assert result.contribution.hourly_cost == pytest.approx(2.12 * 0.25)

    def test_failed_storage_read_keeps_previous_snapshot(self, aggregator, store, clock):
        apply(aggregator, online_storage_bytes=10 * GIB)
        clock.advance(hours=1)
        result = apply(aggregator, online_storage_bytes=None)

        assert result.contribution.online_storage_gb == 0.0
        row = store.row("user-u", clock.now.date())
        assert row.online_storage_gb == pytest.approx(10.0)

    def test_storage_only_pass_adds_no_compute(self, aggregator, store, clock):
        apply(aggregator, allocation=None, offline_storage_bytes=GIB)
        row = store.row("user-u", clock.now.date())
        assert row.cpu_hours == 0.0
        assert row.total_cost > 0


class TestSanitization:
    """Negative readings."""

    def test_negative_cpu_clamped(self, aggregator, store, clock):
        result = apply(aggregator, allocation=allocation(cpu=-5, ram_bytes=GIB))

        assert len(result.anomalies) == 1
        assert "cpuCoreHours" in result.anomalies[0]
        row = store.row("user-u", clock.now.date())
        assert row.cpu_hours == 0.0
        assert row.ram_gb_hours == pytest.approx(1.0)
        assert row.total_cost >= 0

    def test_all_negative(self, aggregator, store, clock):
        result = apply(aggregator, allocation=allocation(cpu=-1, ram_bytes=-1, gpu=-1))
        assert len(result.anomalies) == 3
        row = store.row("user-u", clock.now.date())
        assert (row.cpu_hours, row.gpu_hours, row.ram_gb_hours, row.total_cost) == (0.0, 0.0, 0.0, 0.0)

    def test_negative_storage_clamped(self, aggregator, store, clock):
        apply(aggregator, online_storage_bytes=-GIB)
        assert store.row("user-u", clock.now.date()).online_storage_gb == 0.0

    def test_reversal_never_goes_negative(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=2))
        stored = store.row("user-u", clock.now.date())
        # Simulate a row whose totals were reduced out of band
        stored.cpu_hours = 0.5

        clock.advance(minutes=1)
        apply(aggregator, allocation=allocation(cpu=0))

        assert store.row("user-u", clock.now.date()).cpu_hours == 0.0


class TestPersistence:
    """Row lifecycle and concurrency."""

    def test_row_created_lazily(self, aggregator, store, clock):
        assert store.row("user-u", clock.now.date()) is None
        result = apply(aggregator, allocation=allocation(cpu=1))
        assert result.created_row
        assert store.row("user-u", clock.now.date()).version == 1

    def test_version_increments(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        clock.advance(hours=1)
        apply(aggregator, allocation=allocation(cpu=1))
        assert store.row("user-u", clock.now.date()).version == 2

    def test_last_contribution_recorded(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=2, ram_bytes=4 * GIB), online_storage_bytes=GIB)

        last = store.row("user-u", clock.now.date()).project_breakdown["project-42"].last_contribution
        assert last.cpu_hours == 2.0
        assert last.ram_gb_hours == pytest.approx(4.0)
        assert last.storage_gb == pytest.approx(1.0)
        assert last.processed_at == clock.now

    def test_reported_row_is_frozen(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=1))
        store.mark_reported("user-u", clock.now.date(), store.row("user-u", clock.now.date()).version)
        before = store.row("user-u", clock.now.date()).cpu_hours

        clock.advance(hours=1)
        with pytest.raises(AlreadyReportedError):
            apply(aggregator, allocation=allocation(cpu=1))
        assert store.row("user-u", clock.now.date()).cpu_hours == before

    def test_lost_race_raises(self, aggregator, store, clock, monkeypatch):
        apply(aggregator, allocation=allocation(cpu=1))
        original_get = store.get_daily_usage

        def stale_read(user_id, usage_date):
            row = original_get(user_id, usage_date)
            # Another writer commits between our read and write
            store.usage[(user_id, usage_date)].version += 1
            return row

        monkeypatch.setattr(store, "get_daily_usage", stale_read)
        clock.advance(hours=1)
        with pytest.raises(ConcurrentUpdateError):
            apply(aggregator, allocation=allocation(cpu=1))

    def test_breakdown_survives_json_round_trip(self, aggregator, store, clock):
        apply(aggregator, allocation=allocation(cpu=2), offline_storage_bytes=GIB)
        row = store.row("user-u", clock.now.date())

        restored = row.breakdown_from_json(row.breakdown_to_json())
        assert restored == row.project_breakdown


class TestClockRegression:
    """Measurements stamped before the last applied contribution."""

    def test_earlier_hour_is_refused(self, aggregator, store):
        late = datetime(2025, 10, 15, 11, 5, tzinfo=timezone.utc)
        early = datetime(2025, 10, 15, 10, 30, tzinfo=timezone.utc)
        apply(aggregator, allocation=allocation(cpu=1), now=late)

        with pytest.raises(StaleMeasurementError):
            apply(aggregator, allocation=allocation(cpu=1), now=early)

        row = store.row("user-u", late.date())
        assert row.cpu_hours == pytest.approx(1.0)
        assert row.project_breakdown["project-42"].last_contribution.processed_at == late

    def test_earlier_stamp_in_same_hour_keeps_processed_at(self, aggregator, store):
        late = datetime(2025, 10, 15, 11, 40, tzinfo=timezone.utc)
        early = datetime(2025, 10, 15, 11, 5, tzinfo=timezone.utc)
        apply(aggregator, allocation=allocation(cpu=1), now=late)

        result = apply(aggregator, allocation=allocation(cpu=2), now=early)

        assert result.was_rerun
        row = store.row("user-u", late.date())
        assert row.cpu_hours == pytest.approx(2.0)
        assert row.project_breakdown["project-42"].last_contribution.processed_at == late
