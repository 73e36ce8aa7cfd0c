"""
Project Name Matcher

Matches Kubernetes namespaces to registry project names.

A namespace is derived from a project name by a lossy transliteration
(lowercased, underscores become hyphens), so exact string equality is not
enough. Matching tries each name variant in order:

1. **Exact**: `fraud_detection` == `fraud_detection`
2. **Case-insensitive**: `Fraud_Detection` == `fraud_detection`
3. **Separator-insensitive**: `fraud-detection` == `Fraud_Detection`

The first variant that yields a match wins. System projects (platform
internals) are never billable.
"""

from typing import Iterable, List, Optional, Sequence, TypeVar

from .utils import get_logger

T = TypeVar("T")

# Platform-internal projects, compared case-insensitively
SYSTEM_PROJECTS = frozenset({
    "airflow",
    "glassfish_timers",
    "ycsb",
    "hopsworks",
    "metastore",
    "mysql",
    "heartbeat",
    "hops",
    "information_schema",
    "performance_schema",
})

# Databases that never count towards online storage
SYSTEM_DATABASES = frozenset({
    "NULL",
    "mysql",
    "heartbeat",
    "hops",
    "hopsworks",
    "metastore",
    "information_schema",
    "performance_schema",
})


def namespace_for_project(project_name: str) -> str:
    """Derive the namespace a project runs in.

    Args:
        project_name: Registry project name (e.g. 'Fraud_Detection')

    Returns:
        Namespace name (e.g. 'fraud-detection')
    """
    return (project_name or "").strip().lower().replace("_", "-")


def is_system_project(name: str) -> bool:
    """Check whether a project or namespace name is a platform-internal one."""
    if not name:
        return False
    lowered = name.strip().lower()
    return lowered in SYSTEM_PROJECTS or lowered.replace("-", "_") in SYSTEM_PROJECTS


def is_system_database(name: str) -> bool:
    """Check whether an online-storage database belongs to the platform."""
    if name is None:
        return True
    return name in SYSTEM_DATABASES or name.lower() in SYSTEM_DATABASES


class NameVariant:
    """One way of comparing a namespace with a project name."""

    name = "base"

    def normalize(self, value: str) -> str:
        raise NotImplementedError

    def matches(self, namespace: str, project_name: str) -> bool:
        return self.normalize(namespace) == self.normalize(project_name)


class ExactVariant(NameVariant):
    name = "exact"

    def normalize(self, value: str) -> str:
        return value


class CaseInsensitiveVariant(NameVariant):
    name = "case_insensitive"

    def normalize(self, value: str) -> str:
        return value.lower()


class SeparatorInsensitiveVariant(NameVariant):
    name = "separator_insensitive"

    def normalize(self, value: str) -> str:
        return value.lower().replace("_", "-")


DEFAULT_VARIANTS: Sequence[NameVariant] = (
    ExactVariant(),
    CaseInsensitiveVariant(),
    SeparatorInsensitiveVariant(),
)


class ProjectMatcher:
    """
    Match namespaces to registry projects.

    Variants are tried from strictest to loosest so a project whose name
    matches exactly is preferred over one that only matches after
    normalization.
    """

    def __init__(self, variants: Optional[Sequence[NameVariant]] = None):
        """
        Initialize project matcher.

        Args:
            variants: Ordered name variants (defaults to exact, case, separator)
        """
        self.variants: List[NameVariant] = list(variants or DEFAULT_VARIANTS)
        self.logger = get_logger("project_matcher")

    def names_match(self, namespace: str, project_name: str) -> bool:
        """Check whether any variant considers the two names equal."""
        if not namespace or not project_name:
            return False
        return any(variant.matches(namespace, project_name) for variant in self.variants)

    def find(self, namespace: str, projects: Iterable[T], key=lambda p: p.name) -> Optional[T]:
        """
        Find the project a namespace belongs to.

        Args:
            namespace: Kubernetes namespace
            projects: Candidate projects
            key: Function returning a project's name

        Returns:
            Matching project or None
        """
        candidates = list(projects)
        for variant in self.variants:
            for project in candidates:
                project_name = key(project)
                if project_name and variant.matches(namespace, project_name):
                    self.logger.debug(
                        "Matched namespace to project",
                        namespace=namespace,
                        project=project_name,
                        variant=variant.name,
                    )
                    return project
        return None
