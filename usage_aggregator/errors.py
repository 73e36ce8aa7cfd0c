"""Exceptions raised by the usage aggregator.

Cluster-level errors abort one cluster, namespace-level errors skip one
namespace. The orchestrator catches both at its boundaries and records them in
the run report.
"""


class UsageAggregatorError(Exception):
    """Base class for all usage aggregator errors."""

    def __init__(self, message: str, original_exception: Exception = None):
        super().__init__(message)
        self.original_exception = original_exception


class ConfigurationError(UsageAggregatorError):
    """Missing or invalid configuration."""


class SourceUnavailableError(UsageAggregatorError):
    """The cost or storage source of a cluster could not be read."""


class RegistryError(UsageAggregatorError):
    """The project registry of a cluster could not be enumerated."""


class PersistenceError(UsageAggregatorError):
    """A read or write against the usage database failed."""


class ConcurrentUpdateError(PersistenceError):
    """A daily usage row changed between read and write (version mismatch)."""

    def __init__(self, user_id: str, usage_date, expected_version: int):
        super().__init__(
            f"Daily usage for user {user_id} on {usage_date} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.user_id = user_id
        self.usage_date = usage_date
        self.expected_version = expected_version


class AlreadyReportedError(UsageAggregatorError):
    """The daily usage row was already handed to billing and is frozen."""

    def __init__(self, user_id: str, usage_date):
        super().__init__(f"Daily usage for user {user_id} on {usage_date} is already reported")
        self.user_id = user_id
        self.usage_date = usage_date


class ClusterDeadlineExceeded(UsageAggregatorError):
    """The per-cluster deadline passed before processing finished."""


class BillingProviderError(UsageAggregatorError):
    """The downstream billing provider rejected or failed a meter event."""


class StaleMeasurementError(UsageAggregatorError):
    """A measurement is older than the namespace's last applied contribution."""

    def __init__(self, namespace: str, processed_at, last_processed_at):
        super().__init__(
            f"Measurement for namespace {namespace} at {processed_at.isoformat()} is older than "
            f"the last applied contribution at {last_processed_at.isoformat()}"
        )
        self.namespace = namespace
        self.processed_at = processed_at
        self.last_processed_at = last_processed_at
