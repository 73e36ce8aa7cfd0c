"""
Unit tests for the Cost Calculator.

Rates: CPU 0.5, GPU 10, RAM 0.05 credits/hour, online 2 and offline 0.12
credits per GB-month, 1 credit = $0.25, 730 hours per month.
"""

import pytest

from usage_aggregator.cost_calculator import CostCalculator, RateTable


@pytest.fixture
def calculator(config):
    return CostCalculator(config)


class TestRateTable:
    """Rate table defaults and overrides."""

    def test_defaults(self):
        rates = RateTable()
        assert rates.cpu_hour == 0.5
        assert rates.gpu_hour == 10.0
        assert rates.ram_gb_hour == 0.05
        assert rates.online_storage_gb_month == 2.0
        assert rates.offline_storage_gb_month == 0.12
        assert rates.credit_value == 0.25

    def test_from_config_overrides(self):
        rates = RateTable.from_config({"rates": {"cpu_hour_credits": "1.5", "credit_value": 0.1}})
        assert rates.cpu_hour == 1.5
        assert rates.credit_value == 0.1
        assert rates.gpu_hour == 10.0

    def test_from_empty_config(self):
        assert RateTable.from_config(None) == RateTable()


class TestCostCalculator:
    """Credits and dollars."""

    def test_cpu_credits(self, calculator):
        assert calculator.credits(cpu_hours=2) == pytest.approx(1.0)

    def test_all_resources(self, calculator):
        credits = calculator.credits(
            cpu_hours=1,
            gpu_hours=1,
            ram_gb_hours=10,
            online_storage_gb_months=1,
            offline_storage_gb_months=1,
        )
        assert credits == pytest.approx(0.5 + 10 + 0.5 + 2 + 0.12)

    def test_dollars(self, calculator):
        assert calculator.dollars(4) == pytest.approx(1.0)

    def test_zero_usage_is_free(self, calculator):
        assert calculator.credits() == 0.0
        assert calculator.dollars(0) == 0.0

    def test_storage_pro_rated_to_gb_months(self, calculator):
        assert calculator.storage_gb_months(730) == pytest.approx(1.0)

    def test_month_of_snapshots_recovers_monthly_storage_cost(self, calculator):
        """The same 100 GB snapshot over 730 hourly cycles costs one GB-month each."""
        hourly = calculator.hourly_credits(0, 0, 0, online_storage_gb=100, offline_storage_gb=0)
        assert hourly * 730 == pytest.approx(200.0)

    def test_hours_per_month_configurable(self):
        calculator = CostCalculator({"storage": {"hours_per_month": 720}})
        assert calculator.storage_gb_months(720) == pytest.approx(1.0)

    def test_invalid_hours_per_month(self):
        with pytest.raises(ValueError):
            CostCalculator({"storage": {"hours_per_month": 0}})

    def test_pure_and_reproducible(self, calculator):
        args = dict(cpu_hours=1.3, gpu_hours=0.2, ram_gb_hours=7.1, online_storage_gb=3.3, offline_storage_gb=9.9)
        assert calculator.hourly_credits(**args) == calculator.hourly_credits(**args)
