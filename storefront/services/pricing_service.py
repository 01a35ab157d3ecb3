from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, and_
from sqlalchemy.orm import Session

from storefront.errors import NotFoundError, ValidationError
from storefront.models import (
    Brand,
    Category,
    MarkupType,
    PricingRule,
    PricingRuleType,
    Product,
)
from storefront.money import money_to_float, round_money, to_decimal
from storefront.observability import record_event

# Most specific scope first
_SCOPE_RANK = {
    PricingRuleType.PRODUCT: 3,
    PricingRuleType.CATEGORY: 2,
    PricingRuleType.BRAND: 1,
    PricingRuleType.GLOBAL: 0,
}

# Priorities given to rules created through the admin API
CATEGORY_RULE_PRIORITY = 10
BRAND_RULE_PRIORITY = 5


@dataclass(frozen=True)
class Markup:
    markup_type: MarkupType
    value: Decimal
    rule_id: Optional[int] = None

    def apply(self, base_price: Decimal) -> Decimal:
        base_price = round_money(base_price)
        if self.markup_type == MarkupType.FIXED:
            return round_money(base_price + self.value)
        return round_money(base_price * (Decimal("1") + self.value / Decimal("100")))


NO_MARKUP = Markup(MarkupType.PERCENTAGE, Decimal("0"))


class PricingService:
    """Resolves sell prices from base prices and the active markup rules."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def get_applicable_markup(
        self,
        category_id: Optional[int] = None,
        brand_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ) -> Markup:
        scopes = [PricingRule.rule_type == PricingRuleType.GLOBAL]
        if product_id is not None:
            scopes.append(and_(PricingRule.rule_type == PricingRuleType.PRODUCT, PricingRule.entity_id == product_id))
        if category_id is not None:
            scopes.append(and_(PricingRule.rule_type == PricingRuleType.CATEGORY, PricingRule.entity_id == category_id))
        if brand_id is not None:
            scopes.append(and_(PricingRule.rule_type == PricingRuleType.BRAND, PricingRule.entity_id == brand_id))

        candidates = (
            self.db.query(PricingRule)
            .filter(PricingRule.is_active.is_(True))
            .filter(or_(*scopes))
            .all()
        )
        if not candidates:
            return NO_MARKUP

        rule = max(
            candidates,
            key=lambda r: (_SCOPE_RANK[PricingRuleType(r.rule_type)], r.priority or 0, r.pricingRuleID),
        )
        return Markup(MarkupType(rule.markup_type), to_decimal(rule.markup_value), rule.pricingRuleID)

    def calculate_price(
        self,
        base_price: Any,
        category_id: Optional[int] = None,
        brand_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ) -> Decimal:
        markup = self.get_applicable_markup(category_id, brand_id, product_id)
        return markup.apply(to_decimal(base_price))

    def price_for_product(self, product: Product) -> Decimal:
        return self.calculate_price(
            product.base_price,
            category_id=product.categoryID,
            brand_id=product.brandID,
            product_id=product.productID,
        )

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------
    def get_all_rules(self) -> List[Dict[str, Any]]:
        rules = self.db.query(PricingRule).all()
        rules.sort(key=lambda r: (-(r.priority or 0), PricingRuleType(r.rule_type).value, r.pricingRuleID))
        return [self._serialize_rule(rule) for rule in rules]

    def get_global_rule(self) -> Optional[PricingRule]:
        return (
            self.db.query(PricingRule)
            .filter(PricingRule.rule_type == PricingRuleType.GLOBAL)
            .filter(PricingRule.is_active.is_(True))
            .order_by(PricingRule.priority.desc(), PricingRule.pricingRuleID.desc())
            .first()
        )

    def update_global_markup(self, markup_value: Any) -> Dict[str, Any]:
        value = self._validate_markup_value(markup_value)
        rule = self.get_global_rule()
        if rule is None:
            rule = PricingRule(
                rule_type=PricingRuleType.GLOBAL,
                entity_id=None,
                markup_type=MarkupType.PERCENTAGE,
                priority=0,
                is_active=True,
            )
            self.db.add(rule)
        rule.markup_value = value
        return self._commit_rule_change(rule, "global")

    def set_category_markup(self, category_id: int, markup_value: Any, markup_type: Any = MarkupType.PERCENTAGE) -> Dict[str, Any]:
        if self.db.get(Category, category_id) is None:
            raise NotFoundError("Category not found")
        return self._upsert_scoped_rule(
            PricingRuleType.CATEGORY, category_id, markup_value, markup_type, CATEGORY_RULE_PRIORITY
        )

    def set_brand_markup(self, brand_id: int, markup_value: Any, markup_type: Any = MarkupType.PERCENTAGE) -> Dict[str, Any]:
        if self.db.get(Brand, brand_id) is None:
            raise NotFoundError("Brand not found")
        return self._upsert_scoped_rule(
            PricingRuleType.BRAND, brand_id, markup_value, markup_type, BRAND_RULE_PRIORITY
        )

    def delete_rule(self, rule_id: int) -> int:
        rule = self.db.get(PricingRule, rule_id)
        if rule is None:
            raise NotFoundError("Pricing rule not found")
        if PricingRuleType(rule.rule_type) == PricingRuleType.GLOBAL:
            raise ValidationError("The global pricing rule cannot be deleted")
        try:
            self.db.delete(rule)
            self.db.flush()
            updated = self._recalculate(commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.logger.info("Pricing rule %s deleted", rule_id, extra={"products_repriced": updated})
        return updated

    def recalculate_all_prices(self) -> int:
        """Reprice every live product; returns how many rows changed."""
        try:
            updated = self._recalculate(commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def get_markup_percentage(base_price: Any, sell_price: Any) -> float:
        base = to_decimal(base_price)
        if base == 0:
            return 0.0
        return float(round_money((to_decimal(sell_price) - base) / base * 100))

    @staticmethod
    def get_profit_margin(base_price: Any, sell_price: Any) -> float:
        sell = to_decimal(sell_price)
        if sell == 0:
            return 0.0
        return float(round_money((sell - to_decimal(base_price)) / sell * 100))

    def _upsert_scoped_rule(
        self,
        rule_type: PricingRuleType,
        entity_id: int,
        markup_value: Any,
        markup_type: Any,
        priority: int,
    ) -> Dict[str, Any]:
        value = self._validate_markup_value(markup_value)
        try:
            markup_type = MarkupType(markup_type)
        except ValueError as exc:
            raise ValidationError(
                "Invalid markup type",
                errors={"markup_type": "Must be 'percentage' or 'fixed'"},
            ) from exc

        rule = (
            self.db.query(PricingRule)
            .filter(PricingRule.rule_type == rule_type)
            .filter(PricingRule.entity_id == entity_id)
            .first()
        )
        if rule is None:
            rule = PricingRule(
                rule_type=rule_type,
                entity_id=entity_id,
                priority=priority,
                is_active=True,
            )
            self.db.add(rule)
        rule.markup_value = value
        rule.markup_type = markup_type
        return self._commit_rule_change(rule, rule_type.value)

    def _commit_rule_change(self, rule: PricingRule, scope: str) -> Dict[str, Any]:
        # Live prices must always reflect the current rules
        try:
            self.db.flush()
            updated = self._recalculate(commit=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(rule)
        record_event(
            "pricing_rule_updated",
            {"rule_id": rule.pricingRuleID, "scope": scope, "products_repriced": updated},
        )
        self.logger.info(
            "Pricing rule %s (%s) saved",
            rule.pricingRuleID,
            scope,
            extra={"markup_value": str(rule.markup_value), "products_repriced": updated},
        )
        payload = self._serialize_rule(rule)
        payload["products_repriced"] = updated
        return payload

    def _recalculate(self, commit: bool = True) -> int:
        updated = 0
        for product in self.db.query(Product).all():
            new_price = self.price_for_product(product)
            if product.price is None or round_money(product.price) != new_price:
                product.price = new_price
                updated += 1
        if commit:
            self.db.commit()
        return updated

    @staticmethod
    def _validate_markup_value(markup_value: Any) -> Decimal:
        try:
            value = round_money(markup_value)
        except (ArithmeticError, ValueError, TypeError) as exc:
            raise ValidationError(
                "Invalid markup value",
                errors={"markup_value": "Must be a number"},
            ) from exc
        if value < 0:
            raise ValidationError(
                "Invalid markup value",
                errors={"markup_value": "Markup cannot be negative"},
            )
        return value

    def _entity_name(self, rule: PricingRule) -> str:
        rule_type = PricingRuleType(rule.rule_type)
        model = {
            PricingRuleType.CATEGORY: Category,
            PricingRuleType.BRAND: Brand,
            PricingRuleType.PRODUCT: Product,
        }.get(rule_type)
        if model is None:
            return "Global"
        entity = self.db.get(model, rule.entity_id) if rule.entity_id is not None else None
        return entity.name if entity else "Unknown"

    def _serialize_rule(self, rule: PricingRule) -> Dict[str, Any]:
        return {
            "id": rule.pricingRuleID,
            "rule_type": PricingRuleType(rule.rule_type).value,
            "entity_id": rule.entity_id,
            "entity_name": self._entity_name(rule),
            "markup_type": MarkupType(rule.markup_type).value,
            "markup_value": money_to_float(rule.markup_value),
            "priority": rule.priority,
            "is_active": bool(rule.is_active),
        }
