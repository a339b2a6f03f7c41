"""Rate lookups for accumulation and retroactive allocation."""

from metering.billing.fields import MeteredField
from metering.config import Settings, get_settings


def unit_rate(field: MeteredField, settings: Settings | None = None) -> float:
    """Dollars per unit for ``field`` as currently configured."""
    settings = settings or get_settings()
    return float(settings.USAGE_RATES.get(field.value, 0.0))


def snapshot_unit_rates(settings: Settings | None = None) -> dict[MeteredField, float]:
    settings = settings or get_settings()
    return {field: unit_rate(field, settings) for field in MeteredField}


def platform_cost(field: MeteredField, period: str, settings: Settings | None = None) -> float:
    """Whole-platform cost of ``field`` for ``period``, per-period override first."""
    settings = settings or get_settings()
    override = settings.PLATFORM_PERIOD_COSTS.get(period, {})
    if field.value in override:
        return float(override[field.value])
    return float(settings.PLATFORM_COSTS.get(field.value, 0.0))
