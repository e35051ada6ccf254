from typing import Iterable, List, Optional, Tuple
from uuid import UUID
from hypemarket.core.exceptions import BadRequestException


def is_valid_identifier(value) -> bool:
    if isinstance(value, UUID):
        return True
    try:
        UUID(str(value))
        return True
    except (ValueError, TypeError, AttributeError):
        return False


def parse_identifier(value, field: str = "id") -> UUID:
    if value is None or value == "":
        raise BadRequestException(f"{field} is required")
    if isinstance(value, UUID):
        return value
    if not is_valid_identifier(value):
        raise BadRequestException(f"Invalid {field} format")
    return UUID(str(value))


def split_identifiers(values: Iterable) -> Tuple[List[UUID], List[str]]:
    """Separate well-formed ids from malformed ones, keeping input order."""
    valid, invalid = [], []
    for value in values:
        if is_valid_identifier(value):
            valid.append(value if isinstance(value, UUID) else UUID(str(value)))
        else:
            invalid.append(str(value))
    return valid, invalid


def validate_delivery_files(files: Optional[List[str]]) -> List[str]:
    cleaned = [f.strip() for f in (files or []) if f and f.strip()]
    if not cleaned:
        raise BadRequestException("At least one delivery file is required")
    return cleaned


def validate_currency(currency: str) -> bool:
    valid_currencies = ["usd", "eur", "gbp", "cad", "aud", "pkr"]
    return currency.lower() in valid_currencies
