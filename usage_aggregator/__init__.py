"""
Usage Aggregator

Hourly usage metering for a multi-tenant ML platform: pulls per-namespace cost
allocations and storage snapshots from every managed cluster, resolves each
namespace to a billable owner, and folds the measurement into per-user daily
totals without double-counting on retry.

Usage:
    from usage_aggregator import UsageCollectionRun, DatabaseWriter, get_config

    config = get_config()
    with DatabaseWriter(config) as store:
        report = UsageCollectionRun(store, config).run()
"""

from .aggregator_usage import HourBucketPolicy, UsageAggregator
from .billing_sync import UsageReporter
from .config_loader import get_config
from .cost_calculator import CostCalculator, RateTable
from .db_writer import DatabaseWriter, UsageStore
from .orchestrator import UsageCollectionRun, collect_usage
from .ownership_resolver import OwnershipResolver

__version__ = "0.1.0"

__all__ = [
    'CostCalculator',
    'DatabaseWriter',
    'HourBucketPolicy',
    'OwnershipResolver',
    'RateTable',
    'UsageAggregator',
    'UsageCollectionRun',
    'UsageReporter',
    'UsageStore',
    'collect_usage',
    'get_config',
]
