"""
Bundle Selector
Randomized, constraint-bounded selection of catalog items for one mystery box.

Primary pass: draw a target value and item count inside the template bounds
and greedily fill towards them. Fallback pass: deterministic descending-price
greedy, tried from successive starting points. The selector is pure; it reads
a catalog snapshot and returns a ``BundleDraft`` without touching storage.
"""
from __future__ import annotations

import logging
import random
from decimal import Decimal
from typing import List, Optional, Sequence

from schemas import BundleDraft, BundleTemplateData, CatalogItemData, SelectedItem, VariantRef
from schemas.mystery_box_schemas import CENT, ZERO
from services.errors import ConstraintUnsatisfiable, NoEligibleItems
from settings import SELECTION_MAX_ATTEMPTS

logger = logging.getLogger(__name__)

MIN_ITEM_PRICE = Decimal("0.01")
# Below min_items, picks come from this many cheapest candidates to keep budget for later picks
CHEAP_POOL_SIZE = 3
TARGET_VALUE_RATIO = Decimal("0.9")


def _norm(value: str) -> str:
    return value.strip().lower()


def _tags_match(item_tags: Sequence[str], wanted: Sequence[str]) -> bool:
    """True when some item tag contains some wanted tag (case-insensitive)."""
    return any(w in tag for tag in item_tags for w in wanted)


class BundleSelector:
    def __init__(self, rng: Optional[random.Random] = None, max_attempts: int = SELECTION_MAX_ATTEMPTS) -> None:
        self.rng = rng or random.Random()
        self.max_attempts = max_attempts

    def eligible_items(
        self, template: BundleTemplateData, snapshot: Sequence[CatalogItemData]
    ) -> List[CatalogItemData]:
        """Items passing availability, type and tag filters, cheapest first."""
        include_types = {_norm(t) for t in template.include_types if _norm(t)}
        exclude_types = {_norm(t) for t in template.exclude_types if _norm(t)}
        include_tags = [_norm(t) for t in template.include_tags if _norm(t)]
        exclude_tags = [_norm(t) for t in template.exclude_tags if _norm(t)]

        eligible = []
        for item in snapshot:
            if not item.is_active or item.stock_quantity <= 0 or item.price < MIN_ITEM_PRICE:
                continue
            product_type = _norm(item.product_type or "")
            if include_types and product_type not in include_types:
                continue
            if product_type and product_type in exclude_types:
                continue
            item_tags = [_norm(t) for t in item.tags]
            if include_tags and not _tags_match(item_tags, include_tags):
                continue
            if exclude_tags and _tags_match(item_tags, exclude_tags):
                continue
            eligible.append(item)

        eligible.sort(key=lambda i: (i.price, i.external_id))
        return eligible

    def generate(self, template: BundleTemplateData, snapshot: Sequence[CatalogItemData]) -> BundleDraft:
        """
        Select items for one mystery box instance.

        Raises:
            NoEligibleItems: the filters leave nothing to choose from.
            ConstraintUnsatisfiable: neither pass meets min_value and min_items.
        """
        eligible = self.eligible_items(template, snapshot)
        if not eligible:
            raise NoEligibleItems(template_id=template.id, catalog_size=len(snapshot))

        strategy = "primary"
        chosen = self._primary(template, eligible)
        if chosen is None:
            logger.info(
                "[selector] primary pass missed bounds template=%s eligible=%d, running fallback",
                template.id, len(eligible),
            )
            strategy = "fallback"
            chosen = self._fallback(template, eligible)
        if chosen is None:
            raise ConstraintUnsatisfiable(
                eligible_count=len(eligible),
                cheapest_price=eligible[0].price,
                most_expensive_price=eligible[-1].price,
                min_value=template.min_value,
                max_value=template.max_value,
                min_items=template.min_items,
                max_items=template.max_items,
            )

        selected = tuple(
            SelectedItem(
                external_id=item.external_id,
                title=item.title,
                price_at_selection=item.price,
                variant=self._choose_variant(item),
                compare_at_price=item.compare_at_price,
            )
            for item in chosen
        )
        total_value = sum((s.price_at_selection for s in selected), ZERO)
        retail_value = sum((s.compare_at_price or s.price_at_selection for s in selected), ZERO)
        return BundleDraft(
            template_id=template.id,
            shop_id=template.shop_id,
            selected_items=selected,
            total_value=total_value,
            item_count=len(selected),
            savings=max(ZERO, retail_value - total_value),
            strategy=strategy,
        )

    def _primary(
        self, template: BundleTemplateData, eligible: List[CatalogItemData]
    ) -> Optional[List[CatalogItemData]]:
        spread = template.max_value - template.min_value
        target_value = (template.min_value + spread * Decimal(str(self.rng.random()))).quantize(CENT)
        target_items = self.rng.randint(template.min_items, template.max_items)

        remaining = list(eligible)
        chosen: List[CatalogItemData] = []
        current = ZERO
        for _ in range(self.max_attempts):
            if len(chosen) >= target_items:
                break
            budget = target_value - current
            candidates = [i for i in remaining if i.price <= budget]
            if not candidates:
                break
            pool = candidates[:CHEAP_POOL_SIZE] if len(chosen) < template.min_items else candidates
            pick = self.rng.choice(pool)
            remaining = [i for i in remaining if i is not pick]
            chosen.append(pick)
            current += pick.price
            if (
                current >= template.min_value
                and len(chosen) >= template.min_items
                and (current >= target_value * TARGET_VALUE_RATIO or len(chosen) >= target_items)
            ):
                break

        if current >= template.min_value and len(chosen) >= template.min_items:
            return chosen
        return None

    def _fallback(
        self, template: BundleTemplateData, eligible: List[CatalogItemData]
    ) -> Optional[List[CatalogItemData]]:
        descending = sorted(eligible, key=lambda i: (-i.price, i.external_id))
        for start in range(len(descending)):
            chosen = self._fallback_from(template, descending, start)
            if chosen is not None:
                return chosen
        return None

    def _fallback_from(
        self, template: BundleTemplateData, descending: List[CatalogItemData], start: int
    ) -> Optional[List[CatalogItemData]]:
        chosen: List[CatalogItemData] = []
        current = ZERO

        def satisfied() -> bool:
            return current >= template.min_value and len(chosen) >= template.min_items

        for item in descending[start:]:
            if len(chosen) >= template.max_items:
                break
            if current + item.price <= template.max_value:
                chosen.append(item)
                current += item.price
                if satisfied():
                    return chosen

        # Top up with the cheapest leftovers to reach min_items
        taken = {id(i) for i in chosen}
        for item in reversed(descending):
            if len(chosen) >= template.min_items or len(chosen) >= template.max_items:
                break
            if id(item) in taken or current + item.price > template.max_value:
                continue
            chosen.append(item)
            taken.add(id(item))
            current += item.price

        return chosen if satisfied() else None

    def _choose_variant(self, item: CatalogItemData) -> Optional[VariantRef]:
        in_stock = [v for v in item.variants if v.in_stock]
        if in_stock:
            return self.rng.choice(in_stock)
        return item.variants[0] if item.variants else None
