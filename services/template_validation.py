"""
Mystery box template validation.

Every rule is checked and every violation reported, so a merchant fixing a
form sees all problems at once.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from schemas import to_money
from services.errors import InvalidTemplate
from utils import sanitize_string

logger = logging.getLogger(__name__)

FILTER_FIELDS = ("include_tags", "exclude_tags", "include_types", "exclude_types")


def _parse_money(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return to_money(value)
    except ValueError:
        return None


def _parse_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def _clean_filter(values: Optional[Iterable[Any]]) -> List[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    cleaned = (sanitize_string(v, max_length=255) for v in values)
    return sorted({v for v in cleaned if v})


def validate_template_config(config: Dict[str, Any]) -> List[str]:
    """Return the list of violated rules; empty when the config is valid."""
    errors: List[str] = []

    if not sanitize_string(config.get("name")):
        errors.append("Name is required")

    min_value = _parse_money(config.get("min_value"))
    max_value = _parse_money(config.get("max_value"))
    min_items = _parse_count(config.get("min_items"))
    max_items = _parse_count(config.get("max_items"))

    if min_value is None or min_value < 0:
        errors.append("Minimum value must be 0 or greater")
    if max_value is None or max_value <= 0:
        errors.append("Maximum value must be greater than 0")
    if min_value is not None and max_value is not None and min_value > max_value:
        errors.append("Minimum value cannot be greater than maximum value")

    if min_items is None or min_items < 1:
        errors.append("Minimum items must be 1 or greater")
    if max_items is None or max_items < 1:
        errors.append("Maximum items must be 1 or greater")
    if min_items is not None and max_items is not None and min_items > max_items:
        errors.append("Minimum items cannot be greater than maximum items")

    return errors


def build_template_values(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a full template config and return column values ready for storage.

    Raises:
        InvalidTemplate: one or more rules are violated; nothing is persisted.
    """
    errors = validate_template_config(config)
    if errors:
        logger.info("Rejected mystery box config: %s", errors)
        raise InvalidTemplate(errors)

    return {
        "name": sanitize_string(config.get("name"), max_length=255),
        "description": sanitize_string(config.get("description"), max_length=2000) or None,
        "min_value": to_money(config["min_value"]),
        "max_value": to_money(config["max_value"]),
        "min_items": _parse_count(config["min_items"]),
        "max_items": _parse_count(config["max_items"]),
        "is_active": config.get("is_active") is not False,
        **{name: _clean_filter(config.get(name)) for name in FILTER_FIELDS},
    }
