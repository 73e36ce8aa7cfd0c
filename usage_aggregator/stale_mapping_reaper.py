"""Expire ownership mappings not seen for a retention window."""

from datetime import datetime, timedelta
from typing import Optional

from .db_writer import UsageStore
from .models import Cluster
from .utils import ensure_utc, get_logger, utc_now


class StaleMappingReaper:
    """
    Deactivate namespace mappings of one cluster that have not been seen recently.

    Reaping is always scoped to a cluster: a project may have moved to another
    cluster where its mapping is still current.
    """

    DEFAULT_RETENTION_DAYS = 30

    def __init__(self, store: UsageStore, retention_days: int = DEFAULT_RETENTION_DAYS):
        retention_days = int(retention_days)
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.logger = get_logger("stale_mapping_reaper")

    def reap(self, cluster: Cluster, now: Optional[datetime] = None) -> int:
        """
        Deactivate the cluster's mappings last seen before now - retention.

        Returns:
            Number of mappings deactivated
        """
        cutoff = ensure_utc(now or utc_now()) - self.retention
        count = self.store.expire_stale_mappings(cluster.id, cutoff)
        if count:
            self.logger.info("Deactivated stale mappings", cluster=cluster.name, count=count, cutoff=cutoff.isoformat())
        return count
