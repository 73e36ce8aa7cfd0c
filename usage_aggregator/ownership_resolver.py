"""
Ownership Resolver

Maps a namespace to the user it is billed to, backed by the persisted
namespace_ownership table:

1. Active cached mapping whose user is still assigned to the cluster → hit
2. Otherwise enumerate the cluster's project registry (once per run per
   cluster) and match the namespace against project names
3. Find the local user owning the project on that cluster and persist the mapping
4. Anything else is unresolved; the resolver never invents a mapping

System projects are unbillable and skipped silently.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .db_writer import UsageStore
from .errors import RegistryError
from .models import Cluster, OwnershipMapping, RegistryProject
from .project_matcher import ProjectMatcher, is_system_project
from .utils import get_logger, utc_now


class Resolution(str, Enum):
    RESOLVED = "resolved"
    UNBILLABLE = "unbillable"
    UNRESOLVED = "unresolved"


@dataclass
class ResolveResult:
    """Outcome of resolving one namespace."""
    resolution: Resolution
    mapping: Optional[OwnershipMapping] = None
    reason: Optional[str] = None
    cache_hit: bool = False

    @property
    def resolved(self) -> bool:
        return self.resolution == Resolution.RESOLVED

    @classmethod
    def unresolved(cls, reason: str) -> "ResolveResult":
        return cls(Resolution.UNRESOLVED, reason=reason)

    @classmethod
    def unbillable(cls) -> "ResolveResult":
        return cls(Resolution.UNBILLABLE)


class OwnershipResolver:
    """Resolve namespaces to billable owners with a persisted cache."""

    def __init__(
        self,
        store: UsageStore,
        registry_factory: Callable[[Cluster], object],
        clock: Callable[[], datetime] = utc_now,
        matcher: Optional[ProjectMatcher] = None,
    ):
        """
        Initialize ownership resolver.

        Args:
            store: Mapping and user persistence
            registry_factory: Builds a registry client (with list_projects()) for a cluster
            clock: Returns the current UTC time
            matcher: Namespace/project name matcher
        """
        self.store = store
        self.registry_factory = registry_factory
        self.clock = clock
        self.matcher = matcher or ProjectMatcher()
        self.logger = get_logger("ownership_resolver")

        # Per-run registry snapshots: cluster id → projects, or the error that prevented listing
        self._projects: Dict[str, Union[List[RegistryProject], RegistryError]] = {}
        self.registry_calls = 0

    def reset(self):
        """Forget registry snapshots from a previous run."""
        self._projects.clear()
        self.registry_calls = 0

    def resolve(self, namespace: str, cluster: Cluster) -> ResolveResult:
        """
        Resolve a namespace of a cluster to its billable owner.

        Args:
            namespace: Kubernetes namespace
            cluster: Cluster being processed

        Returns:
            ResolveResult (resolved with a mapping, unbillable, or unresolved with a reason)

        Raises:
            PersistenceError: If the mapping table cannot be read or written
        """
        if is_system_project(namespace):
            return ResolveResult.unbillable()

        now = self.clock()

        cached = self._from_cache(namespace, cluster, now)
        if cached is not None:
            return cached

        try:
            projects = self._list_projects(cluster)
        except RegistryError as e:
            return ResolveResult.unresolved(f"Project registry unavailable: {e}")

        project = self.matcher.find(namespace, projects)
        if project is None:
            return ResolveResult.unresolved(f"No registry project matches namespace {namespace}")
        if is_system_project(project.name):
            return ResolveResult.unbillable()

        user = self.store.find_user_by_owner(project.owner, cluster.id)
        if user is None:
            return ResolveResult.unresolved(
                f"No user for project owner {project.owner} is assigned to cluster {cluster.name}"
            )

        mapping = OwnershipMapping(
            namespace=namespace,
            user_id=user.id,
            project_id=project.id,
            project_name=project.name,
            cluster_id=cluster.id,
            billable_user_id=user.billable_id,
            last_seen_at=now,
        )
        self.store.save_mapping(mapping)
        self.logger.info(
            "✓ Mapped namespace to owner",
            namespace=namespace,
            project=project.name,
            user_id=user.id,
            cluster=cluster.name,
        )
        return ResolveResult(Resolution.RESOLVED, mapping=mapping)

    def invalidate_user(self, user_id: str) -> int:
        """
        Deactivate every mapping of a user.

        Called when a cached lookup finds the user gone or assigned to another cluster.

        Returns:
            Number of mappings deactivated
        """
        count = self.store.deactivate_user_mappings(user_id)
        self.logger.info("Invalidated user mappings", user_id=user_id, count=count)
        return count

    def _from_cache(self, namespace: str, cluster: Cluster, now: datetime) -> Optional[ResolveResult]:
        mapping = self.store.get_mapping(namespace)
        if mapping is None or not mapping.is_active:
            return None

        user = self.store.get_user(mapping.user_id)
        if user is None:
            self.logger.info("Mapped user no longer exists, invalidating", namespace=namespace, user_id=mapping.user_id)
            self.invalidate_user(mapping.user_id)
            return None

        if user.cluster_id != cluster.id:
            self.logger.info(
                "Owner assigned to another cluster, invalidating",
                namespace=namespace,
                user_id=user.id,
                assigned_cluster=user.cluster_id,
                cluster=cluster.name,
            )
            # A reassignment stales every mapping of the user, not only this namespace
            self.invalidate_user(user.id)
            return None

        self.store.touch_mapping(namespace, now)
        mapping = replace(mapping, billable_user_id=user.billable_id, last_seen_at=now)
        return ResolveResult(Resolution.RESOLVED, mapping=mapping, cache_hit=True)

    def _list_projects(self, cluster: Cluster) -> List[RegistryProject]:
        cached = self._projects.get(cluster.id)
        if isinstance(cached, RegistryError):
            raise cached
        if cached is not None:
            return cached

        self.registry_calls += 1
        client = self.registry_factory(cluster)
        try:
            projects = client.list_projects()
        except RegistryError as e:
            self.logger.warning("Project registry enumeration failed", cluster=cluster.name, error=str(e))
            self._projects[cluster.id] = e
            raise
        finally:
            close = getattr(client, "close", None)
            if close:
                close()

        self._projects[cluster.id] = projects
        return projects
