"""Data model for usage metering.

Persisted records (OwnershipMapping, DailyUsageAggregate) and the ephemeral
per-fetch records (NamespaceAllocation, StorageSnapshot). The breakdown JSON
stored with each daily row uses camelCase keys.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .project_matcher import namespace_for_project
from .utils import format_timestamp, parse_timestamp


class MappingStatus(str, Enum):
    """Lifecycle of a namespace → owner mapping."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class StorageClass(str, Enum):
    """Independent storage classes reported per project."""
    OFFLINE = "offline"
    ONLINE = "online"


@dataclass(frozen=True)
class Cluster:
    """A managed cluster and the endpoints/credentials to reach it."""
    id: str
    name: str
    opencost_url: str
    api_url: str
    api_key: str
    storage_url: Optional[str] = None
    status: str = "active"


@dataclass(frozen=True)
class BillableUser:
    """Local user record as seen by the resolver."""
    id: str
    owner_username: str
    cluster_id: Optional[str]
    account_owner_id: Optional[str] = None

    @property
    def billable_id(self) -> str:
        """Team members are billed to their account owner."""
        return self.account_owner_id or self.id


@dataclass(frozen=True)
class RegistryProject:
    """Project as enumerated by a cluster's project registry."""
    id: int
    name: str
    owner: str


@dataclass(frozen=True)
class NamespaceAllocation:
    """One trailing-hour cost allocation for a namespace."""
    namespace: str
    cpu_core_hours: float = 0.0
    ram_byte_hours: float = 0.0
    gpu_hours: float = 0.0
    total_cost: float = 0.0
    cpu_efficiency: float = 0.0
    ram_efficiency: float = 0.0


@dataclass
class StorageSnapshot:
    """Instantaneous occupied bytes per project for one storage class."""
    storage_class: StorageClass
    bytes_by_project: Dict[str, float] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.bytes_by_project)

    def by_namespace(self) -> Dict[str, float]:
        """Re-key the snapshot by the namespace each project runs in."""
        result: Dict[str, float] = {}
        for project_name, occupied in self.bytes_by_project.items():
            key = namespace_for_project(project_name)
            result[key] = result.get(key, 0.0) + float(occupied)
        return result


@dataclass
class OwnershipMapping:
    """Persisted namespace → billable owner association."""
    namespace: str
    user_id: str
    project_id: Optional[int]
    project_name: str
    cluster_id: Optional[str]
    billable_user_id: Optional[str] = None
    status: MappingStatus = MappingStatus.ACTIVE
    last_seen_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == MappingStatus.ACTIVE

    @property
    def bill_to(self) -> str:
        return self.billable_user_id or self.user_id


@dataclass(frozen=True)
class Contribution:
    """The exact increment applied for one namespace in one processing cycle."""
    cpu_hours: float = 0.0
    gpu_hours: float = 0.0
    ram_gb_hours: float = 0.0
    online_storage_gb: float = 0.0
    offline_storage_gb: float = 0.0
    credits: float = 0.0
    hourly_cost: float = 0.0
    processed_at: Optional[datetime] = None

    @property
    def storage_gb(self) -> float:
        return self.online_storage_gb + self.offline_storage_gb

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpuHours": self.cpu_hours,
            "gpuHours": self.gpu_hours,
            "ramGbHours": self.ram_gb_hours,
            "storageGB": self.storage_gb,
            "onlineStorageGB": self.online_storage_gb,
            "offlineStorageGB": self.offline_storage_gb,
            "credits": self.credits,
            "hourlyCost": self.hourly_cost,
            "processedAt": format_timestamp(self.processed_at) if self.processed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Contribution"]:
        if not data:
            return None
        return cls(
            cpu_hours=float(data.get("cpuHours") or 0),
            gpu_hours=float(data.get("gpuHours") or 0),
            ram_gb_hours=float(data.get("ramGbHours") or 0),
            online_storage_gb=float(data.get("onlineStorageGB") or 0),
            offline_storage_gb=float(data.get("offlineStorageGB") or 0),
            credits=float(data.get("credits") or 0),
            hourly_cost=float(data.get("hourlyCost") or 0),
            processed_at=parse_timestamp(data.get("processedAt")),
        )


@dataclass
class ProjectBreakdownEntry:
    """Per-namespace cumulative usage nested in a user's daily row."""
    name: str
    cpu_hours: float = 0.0
    gpu_hours: float = 0.0
    ram_gb_hours: float = 0.0
    online_storage_gb: float = 0.0
    offline_storage_gb: float = 0.0
    cpu_efficiency: float = 0.0
    ram_efficiency: float = 0.0
    total_credits: float = 0.0
    total_cost: float = 0.0
    last_contribution: Optional[Contribution] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cpuHours": self.cpu_hours,
            "gpuHours": self.gpu_hours,
            "ramGbHours": self.ram_gb_hours,
            "onlineStorageGB": self.online_storage_gb,
            "offlineStorageGB": self.offline_storage_gb,
            "cpuEfficiency": self.cpu_efficiency,
            "ramEfficiency": self.ram_efficiency,
            "totalCredits": self.total_credits,
            "totalCost": self.total_cost,
            "lastContribution": self.last_contribution.to_dict() if self.last_contribution else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_name: str = "") -> "ProjectBreakdownEntry":
        return cls(
            name=data.get("name") or default_name,
            cpu_hours=float(data.get("cpuHours") or 0),
            gpu_hours=float(data.get("gpuHours") or 0),
            ram_gb_hours=float(data.get("ramGbHours") or 0),
            online_storage_gb=float(data.get("onlineStorageGB") or 0),
            offline_storage_gb=float(data.get("offlineStorageGB") or 0),
            cpu_efficiency=float(data.get("cpuEfficiency") or 0),
            ram_efficiency=float(data.get("ramEfficiency") or 0),
            total_credits=float(data.get("totalCredits") or 0),
            total_cost=float(data.get("totalCost") or 0),
            last_contribution=Contribution.from_dict(data.get("lastContribution")),
        )


@dataclass
class DailyUsageAggregate:
    """Running per-user daily totals, keyed by (user_id, usage_date)."""
    user_id: str
    usage_date: date
    cpu_hours: float = 0.0
    gpu_hours: float = 0.0
    ram_gb_hours: float = 0.0
    online_storage_gb: float = 0.0
    offline_storage_gb: float = 0.0
    total_credits: float = 0.0
    total_cost: float = 0.0
    project_breakdown: Dict[str, ProjectBreakdownEntry] = field(default_factory=dict)
    reported: bool = False
    cluster_id: Optional[str] = None
    version: int = 0

    def breakdown_to_json(self) -> Dict[str, Any]:
        return {namespace: entry.to_dict() for namespace, entry in self.project_breakdown.items()}

    @staticmethod
    def breakdown_from_json(data: Optional[Dict[str, Any]]) -> Dict[str, ProjectBreakdownEntry]:
        return {
            namespace: ProjectBreakdownEntry.from_dict(entry or {}, default_name=namespace)
            for namespace, entry in (data or {}).items()
        }


@dataclass
class NamespaceResult:
    """Outcome of processing one namespace in one run."""
    cluster: str
    namespace: str
    status: str
    pass_name: str = "compute"
    project_name: Optional[str] = None
    user_id: Optional[str] = None
    hourly_cost: float = 0.0
    error: Optional[str] = None
    anomalies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster,
            "namespace": self.namespace,
            "projectName": self.project_name,
            "userId": self.user_id,
            "pass": self.pass_name,
            "status": self.status,
            "hourlyCost": round(self.hourly_cost, 6),
            "error": self.error,
        }


@dataclass
class RunReport:
    """Structured success/failure tally returned by every run."""
    timestamp: datetime
    clusters_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: bool = False
    total_cost: float = 0.0
    errors: List[str] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)
    namespaces: List[NamespaceResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "clustersProcessed": self.clusters_processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "totalCost": round(self.total_cost, 6),
            "errors": list(self.errors),
            "anomalies": list(self.anomalies),
            "namespaces": [result.to_dict() for result in self.namespaces],
        }
