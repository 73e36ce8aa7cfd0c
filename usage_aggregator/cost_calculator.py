"""
Cost Calculator

Converts resource usage into credits, and credits into dollars.

    credits = cpu_hours × cpu_rate
            + gpu_hours × gpu_rate
            + ram_gb_hours × ram_rate
            + online_gb_months × online_rate
            + offline_gb_months × offline_rate

    dollars = credits × credit_value

Storage is billed per GB-month. A snapshot is converted to a fraction of a
GB-month by dividing by a fixed HOURS_PER_MONTH (730), so the same snapshot
held for a month of hourly cycles recovers one month of storage cost. This is
a deliberate approximation: it does not look at the actual time elapsed since
the previous snapshot.

All functions are pure so that a reversal and the new contribution computed
from identical inputs are bit-for-bit identical.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from .utils import get_logger


@dataclass(frozen=True)
class RateTable:
    """Credits per unit of each billable resource."""
    cpu_hour: float = 0.5
    gpu_hour: float = 10.0
    ram_gb_hour: float = 0.05
    online_storage_gb_month: float = 2.0
    offline_storage_gb_month: float = 0.12
    credit_value: float = 0.25

    @classmethod
    def from_config(cls, config: Optional[Dict]) -> "RateTable":
        """Build a rate table from the `rates` section of the configuration."""
        rates = (config or {}).get("rates", {}) or {}
        defaults = cls()
        return cls(
            cpu_hour=float(rates.get("cpu_hour_credits", defaults.cpu_hour)),
            gpu_hour=float(rates.get("gpu_hour_credits", defaults.gpu_hour)),
            ram_gb_hour=float(rates.get("ram_gb_hour_credits", defaults.ram_gb_hour)),
            online_storage_gb_month=float(
                rates.get("online_storage_gb_month_credits", defaults.online_storage_gb_month)
            ),
            offline_storage_gb_month=float(
                rates.get("offline_storage_gb_month_credits", defaults.offline_storage_gb_month)
            ),
            credit_value=float(rates.get("credit_value", defaults.credit_value)),
        )


class CostCalculator:
    """Pure credit and dollar calculation driven by a fixed rate table."""

    DEFAULT_HOURS_PER_MONTH = 730

    def __init__(self, config: Optional[Dict] = None, rates: Optional[RateTable] = None):
        """
        Initialize cost calculator.

        Args:
            config: Configuration dictionary (reads `rates` and `storage.hours_per_month`)
            rates: Explicit rate table, overrides the configuration
        """
        config = config or {}
        self.rates = rates or RateTable.from_config(config)
        self.hours_per_month = float(
            config.get("storage", {}).get("hours_per_month", self.DEFAULT_HOURS_PER_MONTH)
        )
        if self.hours_per_month <= 0:
            raise ValueError("storage.hours_per_month must be > 0")

        self.logger = get_logger("cost_calculator")
        self.logger.debug(
            "Initialized cost calculator",
            credit_value=self.rates.credit_value,
            hours_per_month=self.hours_per_month,
        )

    def storage_gb_months(self, storage_gb: float) -> float:
        """Pro-rate a storage snapshot into the GB-months of one hourly cycle."""
        return (storage_gb or 0.0) / self.hours_per_month

    def credits(
        self,
        cpu_hours: float = 0.0,
        gpu_hours: float = 0.0,
        ram_gb_hours: float = 0.0,
        online_storage_gb_months: float = 0.0,
        offline_storage_gb_months: float = 0.0,
    ) -> float:
        """Credits consumed by the given usage.

        Args:
            cpu_hours: CPU core-hours
            gpu_hours: GPU hours
            ram_gb_hours: RAM gigabyte-hours
            online_storage_gb_months: Online (feature store) storage, in GB-months
            offline_storage_gb_months: Offline (dataset) storage, in GB-months

        Returns:
            Credits
        """
        return (
            (cpu_hours or 0.0) * self.rates.cpu_hour
            + (gpu_hours or 0.0) * self.rates.gpu_hour
            + (ram_gb_hours or 0.0) * self.rates.ram_gb_hour
            + (online_storage_gb_months or 0.0) * self.rates.online_storage_gb_month
            + (offline_storage_gb_months or 0.0) * self.rates.offline_storage_gb_month
        )

    def dollars(self, credits: float) -> float:
        """Dollar amount for a number of credits."""
        return (credits or 0.0) * self.rates.credit_value

    def hourly_credits(
        self,
        cpu_hours: float,
        gpu_hours: float,
        ram_gb_hours: float,
        online_storage_gb: float,
        offline_storage_gb: float,
    ) -> float:
        """Credits of one hourly cycle, with storage snapshots pro-rated to GB-months."""
        return self.credits(
            cpu_hours=cpu_hours,
            gpu_hours=gpu_hours,
            ram_gb_hours=ram_gb_hours,
            online_storage_gb_months=self.storage_gb_months(online_storage_gb),
            offline_storage_gb_months=self.storage_gb_months(offline_storage_gb),
        )
