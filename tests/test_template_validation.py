from decimal import Decimal

import pytest

from services.errors import InvalidTemplate
from services.template_validation import build_template_values, validate_template_config


def test_valid_config_has_no_errors():
    config = {"name": "Box", "min_value": "10", "max_value": "60", "min_items": 2, "max_items": 4}
    assert validate_template_config(config) == []


def test_every_violated_rule_is_reported():
    errors = validate_template_config(
        {"name": "  ", "min_value": 80, "max_value": 60, "min_items": 5, "max_items": 3}
    )

    assert errors == [
        "Name is required",
        "Minimum value cannot be greater than maximum value",
        "Minimum items cannot be greater than maximum items",
    ]


def test_missing_and_out_of_range_values():
    errors = validate_template_config({"min_value": -1, "max_value": 0, "min_items": 0})

    assert "Name is required" in errors
    assert "Minimum value must be 0 or greater" in errors
    assert "Maximum value must be greater than 0" in errors
    assert "Minimum items must be 1 or greater" in errors
    assert "Maximum items must be 1 or greater" in errors


def test_non_numeric_and_fractional_counts_are_rejected():
    errors = validate_template_config(
        {"name": "Box", "min_value": "ten", "max_value": 60, "min_items": 1.5, "max_items": True}
    )

    assert "Minimum value must be 0 or greater" in errors
    assert "Minimum items must be 1 or greater" in errors
    assert "Maximum items must be 1 or greater" in errors


def test_build_values_raises_with_full_error_list():
    with pytest.raises(InvalidTemplate) as excinfo:
        build_template_values({"name": "", "min_value": 5, "max_value": 1, "min_items": 1, "max_items": 1})

    assert excinfo.value.errors == [
        "Name is required",
        "Minimum value cannot be greater than maximum value",
    ]
    assert excinfo.value.status_code == 400


def test_build_values_normalizes_money_and_filters():
    values = build_template_values(
        {
            "name": " Gift box ",
            "min_value": 10,
            "max_value": "59.999",
            "min_items": "2",
            "max_items": 4,
            "include_tags": ["gift", " gift ", ""],
            "exclude_types": "Shoes, Hats",
        }
    )

    assert values["name"] == "Gift box"
    assert values["min_value"] == Decimal("10.00")
    assert values["max_value"] == Decimal("60.00")
    assert values["min_items"] == 2
    assert values["include_tags"] == ["gift"]
    assert values["exclude_types"] == ["Hats", "Shoes"]
    assert values["include_types"] == []
    assert values["is_active"] is True
