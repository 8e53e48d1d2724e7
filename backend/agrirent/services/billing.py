import math
from datetime import datetime
from decimal import Decimal

from agrirent.config import settings
from agrirent.models.enums import BillingScheme

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440

# "hourly" is what older machine listings stored for time-based pricing
_SCHEME_ALIASES = {"hourly": BillingScheme.TIME.value}


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def billed_minutes(started_at: datetime, stopped_at: datetime) -> int:
    """Whole minutes between timer start and stop, never less than 1."""
    elapsed_ms = (stopped_at - started_at).total_seconds() * 1000
    return max(1, math.ceil(elapsed_ms / 60000))


def compute_bill(
    scheme: str,
    rate,
    duration_minutes: int | float | None = None,
    area_units=None,
) -> int:
    """Amount owed for a finished job, in whole currency units.

    - area: rate per unit of land, 1 unit when none was recorded
    - time: hourly rate prorated per started minute
    - daily: rate per started 24h block

    An unrecognised scheme contributes nothing, so the minimum charge applies.
    """
    scheme = _SCHEME_ALIASES.get(scheme, scheme)
    rate = _to_decimal(rate)
    minutes = math.ceil(duration_minutes or 0)

    if scheme == BillingScheme.AREA.value:
        units = _to_decimal(area_units) or Decimal("1")
        amount = rate * units
    elif scheme == BillingScheme.TIME.value:
        amount = Decimal(minutes) * rate / MINUTES_PER_HOUR
    elif scheme == BillingScheme.DAILY.value:
        amount = Decimal(math.ceil(minutes / MINUTES_PER_DAY)) * rate
    else:
        amount = Decimal("0")

    return max(settings.MINIMUM_CHARGE, math.ceil(amount))
