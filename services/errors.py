"""
Error taxonomy for the mystery box core.

Every domain error carries an HTTP status code and a JSON-ready payload so the
application-level exception handler can render it without knowing the type.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional


class MysteryBoxError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "mystery_box_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = {
                k: float(v) if isinstance(v, Decimal) else v for k, v in self.details.items()
            }
        return payload


class FetchFailure(MysteryBoxError):
    """Network or auth failure while reaching the external catalog API."""

    status_code = 502
    code = "fetch_failure"

    def __init__(self, message: str, status: Optional[int] = None, **details: Any) -> None:
        super().__init__(message, status=status, **details)
        self.status = status


class ItemUpsertError(MysteryBoxError):
    """Malformed upstream item or storage write failure for a single item."""

    status_code = 422
    code = "item_upsert_error"

    def __init__(self, message: str, external_id: Optional[str] = None) -> None:
        super().__init__(message, external_id=external_id)
        self.external_id = external_id


class NoEligibleItems(MysteryBoxError):
    """The template's filters match zero catalog items."""

    status_code = 422
    code = "no_eligible_items"

    def __init__(self, message: str = "No products match the mystery box criteria", **details: Any) -> None:
        super().__init__(message, **details)


class ConstraintUnsatisfiable(MysteryBoxError):
    """Eligible items exist but no selection meets the minimum value/items."""

    status_code = 422
    code = "constraint_unsatisfiable"

    def __init__(
        self,
        eligible_count: int,
        cheapest_price: Decimal,
        most_expensive_price: Decimal,
        min_value: Decimal,
        max_value: Decimal,
        min_items: int,
        max_items: int,
    ) -> None:
        super().__init__(
            "Eligible products cannot satisfy the mystery box value/item constraints",
            eligible_count=eligible_count,
            cheapest_price=cheapest_price,
            most_expensive_price=most_expensive_price,
            min_value=min_value,
            max_value=max_value,
            min_items=min_items,
            max_items=max_items,
        )
        self.eligible_count = eligible_count
        self.cheapest_price = cheapest_price
        self.most_expensive_price = most_expensive_price


class InvalidTemplate(MysteryBoxError):
    """Template failed validation; ``errors`` lists every violated rule."""

    status_code = 400
    code = "invalid_template"

    def __init__(self, errors: List[str]) -> None:
        super().__init__("Invalid mystery box configuration", errors=list(errors))
        self.errors = list(errors)


class TemplateNotFound(MysteryBoxError):
    status_code = 404
    code = "template_not_found"

    def __init__(self, template_id: str) -> None:
        super().__init__("Mystery box not found", template_id=template_id)


class TemplateInactive(MysteryBoxError):
    status_code = 409
    code = "template_inactive"

    def __init__(self, template_id: str) -> None:
        super().__init__("Mystery box is not active", template_id=template_id)


class InstanceNotFound(MysteryBoxError):
    status_code = 404
    code = "instance_not_found"

    def __init__(self, instance_id: str) -> None:
        super().__init__("Mystery box instance not found", instance_id=instance_id)


class InvalidStatusTransition(MysteryBoxError):
    status_code = 409
    code = "invalid_status_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move instance from {current} to {requested}",
            current=current,
            requested=requested,
        )


class ShopNotConnected(MysteryBoxError):
    status_code = 404
    code = "shop_not_connected"

    def __init__(self, shop_id: str) -> None:
        super().__init__("Shop not found or not connected", shop_id=shop_id)


class SyncInProgress(MysteryBoxError):
    status_code = 409
    code = "sync_in_progress"

    def __init__(self, shop_id: str) -> None:
        super().__init__("A catalog sync is already running for this shop", shop_id=shop_id)


class InvalidOAuthState(MysteryBoxError):
    status_code = 400
    code = "invalid_oauth_state"

    def __init__(self) -> None:
        super().__init__("OAuth state is unknown, expired or already used")
