"""
Usage collection run.

One run, triggered once per scheduling interval:

    acquire run lock (skip if held)
    for each active cluster, sequentially:
        fetch allocations + offline + online storage concurrently (deadline-bounded)
        compute pass:      each allocated namespace → resolve → aggregate
        storage-only pass: namespaces with storage but no allocation
        reap mappings of the cluster unseen for the retention window
    release run lock

Failures are recorded at the cluster or namespace boundary and the run always
returns a RunReport; it never raises.
"""

import time
from datetime import datetime
from typing import Callable, Dict, Optional

from .aggregator_storage import STORAGE_PASS, StorageIndex, StorageOnlyPass
from .aggregator_usage import UsageAggregator
from .config_loader import lookup
from .cost_calculator import CostCalculator
from .db_writer import DatabaseWriter, UsageStore
from .errors import ClusterDeadlineExceeded, PersistenceError, UsageAggregatorError
from .models import Cluster, NamespaceAllocation, NamespaceResult, RunReport
from .opencost_client import SYSTEM_NAMESPACES, OpenCostClient
from .ownership_resolver import OwnershipResolver, Resolution
from .parallel_fetcher import ParallelFetcher, close_when_done
from .registry_client import RegistryClient
from .stale_mapping_reaper import StaleMappingReaper
from .utils import PerformanceTimer, format_duration, get_logger, utc_now

COMPUTE_PASS = "compute"
SUCCESS = "success"
FAILED = "failed"


class UsageCollectionRun:
    """Collect one hour of usage from every active cluster."""

    def __init__(
        self,
        store: UsageStore,
        config: Dict,
        source_factory: Optional[Callable[[Cluster], object]] = None,
        registry_factory: Optional[Callable[[Cluster], object]] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a collection run.

        Args:
            store: Usage store (clusters, users, mappings, daily rows, run lock)
            config: Configuration dictionary
            source_factory: Builds a cost/storage source client for a cluster
            registry_factory: Builds a project registry client for a cluster
            clock: Returns the current UTC time
            monotonic: Monotonic seconds, used for the per-cluster deadline
        """
        self.store = store
        self.config = config
        self.clock = clock
        self.monotonic = monotonic
        self.logger = get_logger("orchestrator")

        self.source_factory = source_factory or (lambda cluster: OpenCostClient(cluster, config))
        registry_factory = registry_factory or (lambda cluster: RegistryClient(cluster, config))

        self.window = lookup(config, "collection.window", "1h")
        self.cluster_timeout = float(lookup(config, "collection.cluster_timeout_seconds", 300))
        self.run_lock_key = int(lookup(config, "collection.run_lock_key", 74201))
        excluded = set(SYSTEM_NAMESPACES) | set(lookup(config, "collection.excluded_namespaces", []))

        self.resolver = OwnershipResolver(store, registry_factory, clock=clock)
        self.aggregator = UsageAggregator(store, CostCalculator(config), config, clock=clock)
        self.storage_pass = StorageOnlyPass(excluded_namespaces=excluded)
        self.reaper = StaleMappingReaper(store, int(lookup(config, "collection.mapping_retention_days", 30)))
        self.fetcher = ParallelFetcher(max_workers=3)

    def run(self) -> RunReport:
        """
        Execute the run.

        Returns:
            RunReport with per-cluster errors and per-namespace results
        """
        started = self.monotonic()
        report = RunReport(timestamp=self.clock())

        try:
            acquired = self.store.try_acquire_run_lock(self.run_lock_key)
        except PersistenceError as e:
            report.errors.append(f"Run lock unavailable: {e}")
            self.logger.error("Could not acquire run lock", error=str(e))
            return report

        if not acquired:
            report.skipped = True
            self.logger.warning("Another collection run holds the lock, skipping")
            return report

        try:
            self.resolver.reset()
            try:
                clusters = self.store.list_active_clusters()
            except PersistenceError as e:
                report.errors.append(f"Could not list clusters: {e}")
                self.logger.error("Could not list clusters", error=str(e))
                return report

            self.logger.info("=" * 80)
            self.logger.info("Starting usage collection", clusters=len(clusters))
            self.logger.info("=" * 80)

            for cluster in clusters:
                self._process_cluster(cluster, report)
        finally:
            try:
                self.store.release_run_lock(self.run_lock_key)
            except PersistenceError as e:
                self.logger.error("Could not release run lock", error=str(e))

        self.logger.info(
            f"✓ Usage collection complete in {format_duration(self.monotonic() - started)}",
            clusters=report.clusters_processed,
            successful=report.successful,
            failed=report.failed,
            total_cost=round(report.total_cost, 4),
            registry_calls=self.resolver.registry_calls,
        )
        return report

    def _process_cluster(self, cluster: Cluster, report: RunReport):
        logger = self.logger.bind(cluster=cluster.name)
        report.clusters_processed += 1
        deadline = self.monotonic() + self.cluster_timeout

        try:
            with PerformanceTimer(f"Cluster {cluster.name}", logger):
                source = self.source_factory(cluster)
                reads = None
                try:
                    reads = self.fetcher.fetch_sources(source, self.window, timeout=self.cluster_timeout)
                finally:
                    close = getattr(source, "close", None)
                    if close:
                        # Reads abandoned at the deadline still hold the client
                        close_when_done(reads.abandoned if reads else [], close)

                for name, message in sorted(reads.errors.items()):
                    report.errors.append(f"Cluster {cluster.name}: {name} unavailable: {message}")

                if reads.all_failed:
                    logger.error("All source reads failed, skipping cluster")
                    return

                storage = StorageIndex(offline=reads.offline, online=reads.online)
                allocations = reads.allocations or {}

                logger.info("Processing namespaces", allocated=len(allocations))
                for namespace, allocation in allocations.items():
                    self._record(
                        report,
                        self._process_namespace(cluster, namespace, allocation, storage, COMPUTE_PASS, deadline),
                    )

                if storage.offline_available or storage.online_available:
                    results = self.storage_pass.run(
                        storage,
                        processed=allocations.keys(),
                        process=lambda ns: self._process_namespace(cluster, ns, None, storage, STORAGE_PASS, deadline),
                    )
                    for result in results:
                        self._record(report, result)

                self.reaper.reap(cluster, self.clock())
        except Exception as e:
            report.errors.append(f"Cluster {cluster.name}: {e}")
            logger.error("Cluster processing failed", error=str(e))

    def _process_namespace(
        self,
        cluster: Cluster,
        namespace: str,
        allocation: Optional[NamespaceAllocation],
        storage: StorageIndex,
        pass_name: str,
        deadline: float,
    ) -> Optional[NamespaceResult]:
        """Resolve and fold one namespace; None when it is unbillable."""
        result = NamespaceResult(cluster=cluster.name, namespace=namespace, status=FAILED, pass_name=pass_name)

        try:
            if self.monotonic() >= deadline:
                raise ClusterDeadlineExceeded(f"Cluster deadline of {self.cluster_timeout:.0f}s exceeded")

            resolution = self.resolver.resolve(namespace, cluster)
            if resolution.resolution == Resolution.UNBILLABLE:
                self.logger.debug("Skipping system namespace", namespace=namespace)
                return None
            if not resolution.resolved:
                self.logger.warning("No user mapping found", namespace=namespace, reason=resolution.reason)
                result.error = resolution.reason
                return result

            mapping = resolution.mapping
            result.project_name = mapping.project_name
            result.user_id = mapping.bill_to

            online_bytes, offline_bytes = storage.for_namespace(namespace)
            applied = self.aggregator.apply(
                user_id=mapping.bill_to,
                namespace=namespace,
                project_name=mapping.project_name,
                allocation=allocation,
                online_storage_bytes=online_bytes,
                offline_storage_bytes=offline_bytes,
                cluster_id=cluster.id,
            )
            result.status = SUCCESS
            result.hourly_cost = applied.contribution.hourly_cost
            result.anomalies = applied.anomalies
        except UsageAggregatorError as e:
            self.logger.error("Failed to process namespace", namespace=namespace, error=str(e))
            result.error = str(e)
        except Exception as e:
            self.logger.exception("Unexpected error processing namespace", namespace=namespace)
            result.error = f"{type(e).__name__}: {e}"

        return result

    @staticmethod
    def _record(report: RunReport, result: Optional[NamespaceResult]):
        if result is None:
            return
        report.namespaces.append(result)
        report.anomalies.extend(result.anomalies)
        if result.status == SUCCESS:
            report.successful += 1
            report.total_cost += result.hourly_cost
        else:
            report.failed += 1
            report.errors.append(f"Namespace {result.namespace}: {result.error}")


def collect_usage(config: Dict) -> RunReport:
    """
    Run one collection against the configured PostgreSQL database.

    Raises:
        PersistenceError: If the database cannot be reached
    """
    with DatabaseWriter(config) as store:
        return UsageCollectionRun(store, config).run()
