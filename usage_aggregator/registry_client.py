"""Project registry client: enumerates the projects of one cluster."""

from typing import Any, Dict, List, Optional

import httpx

from .errors import RegistryError
from .http_client import BaseHTTPClient, HTTPClientError
from .models import Cluster, RegistryProject
from .utils import get_logger

REGISTRY_API_BASE = "/hopsworks-api/api"


class RegistryClient:
    """Read-only access to a cluster's project registry."""

    def __init__(
        self,
        cluster: Cluster,
        config: Optional[Dict] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize registry client.

        Args:
            cluster: Cluster whose registry is queried
            config: Configuration dictionary (collection.http_timeout_seconds)
            transport: Optional httpx transport, used by tests
        """
        config = config or {}
        self.cluster = cluster
        self.logger = get_logger("registry_client").bind(cluster=cluster.name)
        timeout = float(config.get("collection", {}).get("http_timeout_seconds", 30))
        self._http = BaseHTTPClient(
            cluster.api_url,
            headers={"Authorization": f"ApiKey {cluster.api_key}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._http.close()

    def list_projects(self) -> List[RegistryProject]:
        """
        Enumerate every project known to the cluster.

        Returns:
            List of RegistryProject (id, name, owner)

        Raises:
            RegistryError: If the registry cannot be reached or returns an unexpected payload
        """
        try:
            payload = self._http.get_json(f"{REGISTRY_API_BASE}/admin/projects")
        except HTTPClientError as e:
            raise RegistryError(f"Project registry unavailable for cluster {self.cluster.name}: {e}", e) from e

        if isinstance(payload, dict):
            payload = payload.get("items", [])
        if not isinstance(payload, list):
            raise RegistryError(f"Unexpected project registry payload for cluster {self.cluster.name}")

        projects = [project for project in (self._parse_project(item) for item in payload) if project]
        self.logger.info("Enumerated registry projects", count=len(projects))
        return projects

    @staticmethod
    def _parse_project(item: Any) -> Optional[RegistryProject]:
        if not isinstance(item, dict) or not item.get("name"):
            return None

        owner = item.get("owner")
        if isinstance(owner, dict):
            owner = owner.get("username") or owner.get("email")
        if not owner:
            return None

        return RegistryProject(id=item.get("id"), name=str(item["name"]), owner=str(owner))
