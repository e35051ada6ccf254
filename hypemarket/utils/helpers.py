from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_percentage(value: int, percentage) -> int:
    """Percentage of an amount in minor units, rounded half-up to a whole unit."""
    result = (Decimal(value) * Decimal(percentage)) / Decimal(100)
    return int(result.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_platform_fee(amount: int, fee_percent) -> int:
    return calculate_percentage(amount, fee_percent)
