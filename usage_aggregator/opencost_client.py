"""
Cost and storage source client for one cluster.

Reads three independent sources:
- OpenCost hourly allocation, aggregated by namespace
- Offline (dataset) storage occupancy per project
- Online (feature store) storage occupancy per project

Responses are normalized with pandas: missing metrics become 0, platform
namespaces are dropped, and storage readings under a noise floor are ignored
(empty project metadata would otherwise produce tiny charges). Negative values
are passed through untouched; sanitizing them is the aggregator's job so the
anomaly can be reported against the namespace.
"""

from typing import Dict, Optional

import httpx
import pandas as pd

from .errors import SourceUnavailableError
from .http_client import BaseHTTPClient, HTTPClientError
from .models import Cluster, NamespaceAllocation, StorageClass, StorageSnapshot
from .project_matcher import is_system_database
from .utils import PerformanceTimer, format_bytes, get_logger


# Namespaces that belong to the platform itself and are never billed
SYSTEM_NAMESPACES = frozenset({
    "kube-system",
    "kube-public",
    "kube-node-lease",
    "opencost",
    "hopsworks",
    "ingress-nginx",
    "__idle__",
    "__unallocated__",
})

ALLOCATION_FIELDS = {
    "cpuCoreHours": "cpu_core_hours",
    "ramByteHours": "ram_byte_hours",
    "gpuHours": "gpu_hours",
    "totalCost": "total_cost",
    "cpuEfficiency": "cpu_efficiency",
    "ramEfficiency": "ram_efficiency",
}


class OpenCostClient:
    """Fetch namespace cost allocations and storage snapshots for a cluster."""

    DEFAULT_MIN_OFFLINE_BYTES = 10000
    DEFAULT_MIN_ONLINE_BYTES = 100000

    def __init__(
        self,
        cluster: Cluster,
        config: Optional[Dict] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the source client.

        Args:
            cluster: Cluster whose sources are read
            config: Configuration dictionary (collection and storage sections)
            transport: Optional httpx transport, used by tests
        """
        config = config or {}
        self.cluster = cluster
        self.logger = get_logger("opencost_client").bind(cluster=cluster.name)

        collection = config.get("collection", {})
        storage = config.get("storage", {})
        timeout = float(collection.get("http_timeout_seconds", 30))
        self.excluded_namespaces = set(SYSTEM_NAMESPACES) | set(collection.get("excluded_namespaces") or [])
        self.min_offline_bytes = float(storage.get("min_offline_bytes", self.DEFAULT_MIN_OFFLINE_BYTES))
        self.min_online_bytes = float(storage.get("min_online_bytes", self.DEFAULT_MIN_ONLINE_BYTES))

        headers = {"Authorization": f"ApiKey {cluster.api_key}"} if cluster.api_key else {}
        self._cost_http = BaseHTTPClient(cluster.opencost_url, headers=headers, timeout=timeout, transport=transport)
        self._storage_http = BaseHTTPClient(
            cluster.storage_url or cluster.api_url, headers=headers, timeout=timeout, transport=transport
        )

    def close(self):
        self._cost_http.close()
        self._storage_http.close()

    def fetch_allocations(self, window: str = "1h") -> Dict[str, NamespaceAllocation]:
        """
        Fetch per-namespace cost allocation for a trailing window.

        Args:
            window: OpenCost window expression (one hour by default)

        Returns:
            Mapping of namespace → NamespaceAllocation, platform namespaces excluded

        Raises:
            SourceUnavailableError: If OpenCost cannot be reached or answers with an error envelope
        """
        with PerformanceTimer("Fetch OpenCost allocations", self.logger):
            try:
                payload = self._cost_http.get_json(
                    "/allocation/compute", params={"window": window, "aggregate": "namespace"}
                )
            except HTTPClientError as e:
                raise SourceUnavailableError(f"OpenCost unreachable: {e}", e) from e

            if not isinstance(payload, dict) or payload.get("code") != 200:
                code = payload.get("code") if isinstance(payload, dict) else None
                raise SourceUnavailableError(f"Invalid OpenCost response (code={code})")

            data = payload.get("data")
            if not isinstance(data, list) or not data:
                raise SourceUnavailableError("Invalid OpenCost response (no allocation set)")

            allocations = self.normalize_allocations(data[0] or {})

        self.logger.info("✓ Fetched allocations", namespaces=len(allocations))
        return allocations

    def normalize_allocations(self, raw: Dict[str, Dict]) -> Dict[str, NamespaceAllocation]:
        """
        Turn a raw OpenCost allocation set into NamespaceAllocation records.

        Args:
            raw: Mapping of namespace → OpenCost allocation object

        Returns:
            Mapping of namespace → NamespaceAllocation
        """
        if not raw:
            return {}

        df = pd.DataFrame.from_dict(raw, orient="index")
        df = df[~df.index.isin(self.excluded_namespaces)]
        df = df[df.index.astype(str).str.len() > 0]

        for source_col in ALLOCATION_FIELDS:
            if source_col not in df.columns:
                df[source_col] = 0.0
            df[source_col] = pd.to_numeric(df[source_col], errors="coerce").fillna(0.0)

        df = df[list(ALLOCATION_FIELDS)].rename(columns=ALLOCATION_FIELDS)

        return {
            str(namespace): NamespaceAllocation(namespace=str(namespace), **{k: float(v) for k, v in row.items()})
            for namespace, row in df.to_dict(orient="index").items()
        }

    def fetch_offline_storage(self) -> StorageSnapshot:
        """Fetch offline (dataset) storage occupancy for all projects of the cluster."""
        return self._fetch_storage(StorageClass.OFFLINE)

    def fetch_online_storage(self) -> StorageSnapshot:
        """Fetch online (feature store) storage occupancy for all projects of the cluster."""
        return self._fetch_storage(StorageClass.ONLINE)

    def _fetch_storage(self, storage_class: StorageClass) -> StorageSnapshot:
        with PerformanceTimer(f"Fetch {storage_class.value} storage", self.logger):
            try:
                payload = self._storage_http.get_json(f"/storage/{storage_class.value}")
            except HTTPClientError as e:
                raise SourceUnavailableError(f"{storage_class.value} storage batch failed: {e}", e) from e

            if isinstance(payload, dict) and isinstance(payload.get("projects"), dict):
                payload = payload["projects"]
            if not isinstance(payload, dict):
                raise SourceUnavailableError(f"Invalid {storage_class.value} storage response")

            snapshot = self.normalize_storage(storage_class, payload)

        self.logger.info(
            "✓ Fetched storage snapshot",
            storage_class=storage_class.value,
            projects=len(snapshot),
            total=format_bytes(sum(snapshot.bytes_by_project.values())),
        )
        return snapshot

    def normalize_storage(self, storage_class: StorageClass, raw: Dict[str, object]) -> StorageSnapshot:
        """
        Clean a raw project → bytes map.

        Args:
            storage_class: Offline or online
            raw: Mapping of project name → occupied bytes

        Returns:
            StorageSnapshot with noise and system databases removed
        """
        if not raw:
            return StorageSnapshot(storage_class=storage_class)

        series = pd.to_numeric(pd.Series(raw, dtype=object), errors="coerce").fillna(0.0)

        if storage_class == StorageClass.ONLINE:
            series = series[[not is_system_database(name) for name in series.index]]
            threshold = self.min_online_bytes
        else:
            threshold = self.min_offline_bytes

        series = series[series >= threshold]
        return StorageSnapshot(
            storage_class=storage_class,
            bytes_by_project={str(name): float(value) for name, value in series.items()},
        )

