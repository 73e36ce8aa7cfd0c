"""
Billing sync: hands finalized daily usage to the billing provider.

Reads unreported daily rows of metered (postpaid) users, emits one meter event
per non-zero metric, and marks the row reported. Every event carries an
idempotency key derived from (user, date, metric), so a retried sync never
double-reports. A row is only marked reported after all its events went out;
a provider failure leaves it for the next sync.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

import httpx

from .config_loader import lookup
from .db_writer import UsageStore
from .errors import BillingProviderError, ConfigurationError, PersistenceError
from .http_client import BaseHTTPClient, HTTPClientError
from .models import DailyUsageAggregate
from .utils import format_timestamp, get_logger, utc_now


def usage_metrics(row: DailyUsageAggregate) -> Dict[str, float]:
    """Metric name → quantity reported for a daily row."""
    return {
        "cpu_hours": row.cpu_hours,
        "gpu_hours": row.gpu_hours,
        "ram_gb_hours": row.ram_gb_hours,
        "storage_online_gb": row.online_storage_gb,
        "storage_offline_gb": row.offline_storage_gb,
        "total_cost_cents": round(row.total_cost * 100),
    }


def idempotency_key(user_id: str, usage_date: date, metric: str) -> str:
    """Deterministic key for one metric of one daily row."""
    return hashlib.sha256(f"{user_id}:{usage_date.isoformat()}:{metric}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MeterEvent:
    """One metered-usage event for the billing provider."""
    event_name: str
    customer_id: str
    value: float
    timestamp: datetime
    idempotency_key: str

    def to_dict(self) -> Dict:
        return {
            "event_name": self.event_name,
            "payload": {"stripe_customer_id": self.customer_id, "value": str(self.value)},
            "timestamp": int(self.timestamp.timestamp()),
        }


class BillingProvider(ABC):
    """Destination of meter events."""

    @abstractmethod
    def send(self, event: MeterEvent) -> None:
        """Deliver one event; raises BillingProviderError on failure."""


class HttpMeterProvider(BillingProvider):
    """Posts meter events to an HTTP endpoint with an Idempotency-Key header."""

    DEFAULT_METER_PATH = "/v1/billing/meter_events"

    def __init__(self, config: Dict, transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize meter provider.

        Args:
            config: Configuration dictionary (billing section)
            transport: Optional httpx transport, used by tests

        Raises:
            ConfigurationError: If billing.meter_url is not set
        """
        meter_url = lookup(config, "billing.meter_url")
        if not meter_url:
            raise ConfigurationError("billing.meter_url is not configured")

        api_key = lookup(config, "billing.api_key")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.meter_path = lookup(config, "billing.meter_path", self.DEFAULT_METER_PATH)
        self._http = BaseHTTPClient(
            meter_url,
            headers=headers,
            timeout=float(lookup(config, "billing.timeout_seconds", 30)),
            transport=transport,
        )

    def send(self, event: MeterEvent) -> None:
        try:
            self._http.post(
                self.meter_path,
                json=event.to_dict(),
                headers={"Idempotency-Key": event.idempotency_key},
            )
        except HTTPClientError as e:
            raise BillingProviderError(f"Meter event {event.event_name} rejected: {e}", e) from e

    def close(self):
        self._http.close()


@dataclass
class SyncReport:
    """Outcome of one billing sync."""
    usage_date: date
    rows_reported: int = 0
    events_sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "usageDate": self.usage_date.isoformat(),
            "rowsReported": self.rows_reported,
            "eventsSent": self.events_sent,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class UsageReporter:
    """Report unreported daily usage rows to the billing provider."""

    def __init__(self, store: UsageStore, provider: BillingProvider, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.provider = provider
        self.clock = clock
        self.logger = get_logger("billing_sync")

    def sync(self, usage_date: date) -> SyncReport:
        """
        Report every unreported row of a date.

        Args:
            usage_date: Day to report

        Returns:
            SyncReport
        """
        report = SyncReport(usage_date=usage_date)
        rows = self.store.list_unreported_usage(usage_date)
        self.logger.info("Starting billing sync", usage_date=str(usage_date), rows=len(rows))

        for row, customer_id in rows:
            try:
                report.events_sent += self._report_row(row, customer_id)
                self.store.mark_reported(row.user_id, row.usage_date, row.version)
                report.rows_reported += 1
            except (BillingProviderError, PersistenceError) as e:
                report.failed += 1
                report.errors.append(f"User {row.user_id}: {e}")
                self.logger.error("Failed to report usage", user_id=row.user_id, error=str(e))

        self.logger.info(
            "✓ Billing sync complete",
            usage_date=str(usage_date),
            reported=report.rows_reported,
            events=report.events_sent,
            failed=report.failed,
        )
        return report

    def _report_row(self, row: DailyUsageAggregate, customer_id: str) -> int:
        sent = 0
        timestamp = self.clock()
        for metric, value in usage_metrics(row).items():
            if not value or value <= 0:
                continue
            event = MeterEvent(
                event_name=metric,
                customer_id=customer_id,
                value=value,
                timestamp=timestamp,
                idempotency_key=idempotency_key(row.user_id, row.usage_date, metric),
            )
            self.provider.send(event)
            sent += 1
            self.logger.debug(
                "Sent meter event",
                user_id=row.user_id,
                metric=metric,
                value=value,
                at=format_timestamp(timestamp),
            )
        return sent
