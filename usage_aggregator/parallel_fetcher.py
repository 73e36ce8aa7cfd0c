"""
Concurrent fan-out of a cluster's independent source reads.

The allocation fetch and the two storage batches have no data dependency on
each other, so they are submitted to a small thread pool and collected as they
complete. A failing read is recorded and the others are still returned; reads
still running when the deadline passes are abandoned. An abandoned read keeps using the
source client until it returns, so `close_when_done` defers closing it.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .models import NamespaceAllocation, StorageSnapshot
from .utils import get_logger

ALLOCATIONS = "allocations"
OFFLINE_STORAGE = "offline_storage"
ONLINE_STORAGE = "online_storage"


@dataclass
class SourceReads:
    """Results of the three per-cluster reads; a failed read is None with an error."""
    allocations: Optional[Dict[str, NamespaceAllocation]] = None
    offline: Optional[StorageSnapshot] = None
    online: Optional[StorageSnapshot] = None
    errors: Dict[str, str] = field(default_factory=dict)
    abandoned: List[Future] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.allocations is None and self.offline is None and self.online is None


class ParallelFetcher:
    """Run independent blocking calls concurrently with an overall deadline."""

    def __init__(self, max_workers: int = 3):
        """
        Initialize parallel fetcher.

        Args:
            max_workers: Maximum number of concurrent reads
        """
        self.max_workers = max_workers
        self.logger = get_logger("parallel_fetcher")

    def run(self, tasks: Dict[str, Callable[[], Any]], timeout: Optional[float] = None):
        """
        Run named tasks concurrently.

        Args:
            tasks: Task name → zero-argument callable
            timeout: Seconds to wait for all tasks (None waits forever)

        Returns:
            Tuple of (results by name, error message by name, futures still running at the deadline)
        """
        results: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        abandoned: List[Future] = []

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fetch")
        future_to_name = {executor.submit(func): name for name, func in tasks.items()}
        try:
            for future in as_completed(future_to_name, timeout=timeout):
                self._collect(future, future_to_name[future], results, errors)
        except FuturesTimeoutError:
            for future, name in future_to_name.items():
                if name in results or name in errors:
                    continue
                if future.done():
                    # Finished between the deadline and this check
                    self._collect(future, name, results, errors)
                    continue
                if not future.cancel():
                    abandoned.append(future)
                errors[name] = f"{name} did not complete within {timeout:.0f}s"
                self.logger.error(f"✗ {name} timed out", timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results, errors, abandoned

    def _collect(self, future: Future, name: str, results: Dict[str, Any], errors: Dict[str, str]):
        try:
            results[name] = future.result()
            self.logger.debug(f"✓ Completed {name}")
        except Exception as e:
            self.logger.error(f"✗ {name} failed", error=str(e))
            errors[name] = str(e)

    def fetch_sources(self, client, window: str = "1h", timeout: Optional[float] = None) -> SourceReads:
        """
        Fetch allocations and both storage snapshots of one cluster concurrently.

        Args:
            client: Source client (OpenCostClient or compatible)
            window: Allocation window
            timeout: Seconds to wait for all three reads

        Returns:
            SourceReads with per-read errors
        """
        results, errors, abandoned = self.run(
            {
                ALLOCATIONS: lambda: client.fetch_allocations(window),
                OFFLINE_STORAGE: client.fetch_offline_storage,
                ONLINE_STORAGE: client.fetch_online_storage,
            },
            timeout=timeout,
        )
        return SourceReads(
            allocations=results.get(ALLOCATIONS),
            offline=results.get(OFFLINE_STORAGE),
            online=results.get(ONLINE_STORAGE),
            errors=errors,
            abandoned=abandoned,
        )


def close_when_done(futures: List[Future], close: Callable[[], None]):
    """Call `close` once every future has finished, immediately if none are pending."""
    pending = [future for future in futures if not future.done()]
    if not pending:
        close()
        return

    lock = threading.Lock()
    remaining = len(pending)

    def on_done(_future):
        nonlocal remaining
        with lock:
            remaining -= 1
            last = remaining == 0
        if last:
            close()

    for future in pending:
        future.add_done_callback(on_done)
