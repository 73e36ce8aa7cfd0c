"""Storage accounting for idle projects.

Storage snapshots are keyed by project name while allocations are keyed by
namespace; StorageIndex re-keys both classes by namespace so the compute pass
and the storage-only pass read the same figures.

Projects that retain data but ran no workload in the last hour never appear in
the allocation set. The storage-only pass picks them up after the compute pass
and folds them through the same aggregator with zero compute, so storage keeps
accruing for idle tenants.
"""

from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .models import NamespaceResult, StorageSnapshot
from .utils import get_logger

STORAGE_PASS = "storage"


class StorageIndex:
    """Offline and online occupancy per namespace for one cluster."""

    def __init__(self, offline: Optional[StorageSnapshot] = None, online: Optional[StorageSnapshot] = None):
        """
        Build the index.

        Args:
            offline: Offline snapshot, None if the read failed
            online: Online snapshot, None if the read failed
        """
        self.offline_available = offline is not None
        self.online_available = online is not None
        self._offline: Dict[str, float] = offline.by_namespace() if offline is not None else {}
        self._online: Dict[str, float] = online.by_namespace() if online is not None else {}

    def namespaces(self) -> Set[str]:
        return set(self._offline) | set(self._online)

    def for_namespace(self, namespace: str) -> Tuple[Optional[float], Optional[float]]:
        """
        Occupied bytes of a namespace.

        Returns:
            Tuple of (online bytes, offline bytes); a class whose read failed is None
        """
        online = self._online.get(namespace, 0.0) if self.online_available else None
        offline = self._offline.get(namespace, 0.0) if self.offline_available else None
        return online, offline


class StorageOnlyPass:
    """Process namespaces that hold storage but were absent from the compute pass."""

    def __init__(self, excluded_namespaces: Iterable[str] = ()):
        """
        Initialize storage-only pass.

        Args:
            excluded_namespaces: Platform namespaces never billed
        """
        self.excluded_namespaces = set(excluded_namespaces)
        self.logger = get_logger("aggregator_storage")

    def pending(self, storage: StorageIndex, processed: Iterable[str]) -> List[str]:
        """Namespaces with storage that the compute pass did not touch, in name order."""
        remaining = storage.namespaces() - set(processed) - self.excluded_namespaces
        return sorted(remaining)

    def run(
        self,
        storage: StorageIndex,
        processed: Iterable[str],
        process: Callable[[str], Optional[NamespaceResult]],
    ) -> List[NamespaceResult]:
        """
        Run the pass.

        Args:
            storage: Storage index of the cluster
            processed: Namespaces already handled by the compute pass
            process: Folds one namespace with zero compute; None means skipped silently

        Returns:
            Results of the namespaces processed
        """
        pending = self.pending(storage, processed)
        if not pending:
            return []

        self.logger.info("Starting storage-only pass", namespaces=len(pending))
        results = []
        for namespace in pending:
            result = process(namespace)
            if result is not None:
                results.append(result)

        self.logger.info(
            "✓ Storage-only pass complete",
            processed=len(results),
            succeeded=sum(1 for r in results if r.status == "success"),
        )
        return results
