from decimal import Decimal

import pytest

from conftest import make_product
from storefront.errors import NotFoundError, ValidationError
from storefront.models import MarkupType, PricingRule, PricingRuleType
from storefront.services.pricing_service import NO_MARKUP, PricingService


def _rule(db_session, rule_type, value, entity_id=None, priority=0, markup_type=MarkupType.PERCENTAGE, active=True):
    rule = PricingRule(
        rule_type=rule_type,
        entity_id=entity_id,
        markup_type=markup_type,
        markup_value=Decimal(str(value)),
        priority=priority,
        is_active=active,
    )
    db_session.add(rule)
    db_session.commit()
    return rule


def test_no_rules_means_no_markup(db_session):
    service = PricingService(db_session)
    assert service.get_applicable_markup() == NO_MARKUP
    assert service.calculate_price("199.99") == Decimal("199.99")


def test_global_markup_applies_to_everything(db_session, global_rule):
    service = PricingService(db_session)
    assert service.calculate_price("900") == Decimal("1035.00")


def test_category_rule_beats_global(db_session, global_rule, category):
    _rule(db_session, PricingRuleType.CATEGORY, "20", entity_id=category.categoryID, priority=10)
    service = PricingService(db_session)

    assert service.calculate_price("900", category_id=category.categoryID) == Decimal("1080.00")
    # Another category still falls back to the global rule
    assert service.calculate_price("900", category_id=category.categoryID + 1) == Decimal("1035.00")


def test_specificity_order_product_category_brand(db_session, global_rule, category, brand):
    _rule(db_session, PricingRuleType.BRAND, "5", entity_id=brand.brandID, priority=50)
    service = PricingService(db_session)
    assert service.calculate_price("100", category_id=category.categoryID, brand_id=brand.brandID) == Decimal("105.00")

    _rule(db_session, PricingRuleType.CATEGORY, "10", entity_id=category.categoryID, priority=1)
    assert service.calculate_price("100", category_id=category.categoryID, brand_id=brand.brandID) == Decimal("110.00")

    _rule(db_session, PricingRuleType.PRODUCT, "7.50", entity_id=42, markup_type=MarkupType.FIXED)
    assert service.calculate_price(
        "100", category_id=category.categoryID, brand_id=brand.brandID, product_id=42
    ) == Decimal("107.50")


def test_higher_priority_then_newest_rule_wins_within_scope(db_session, category):
    _rule(db_session, PricingRuleType.CATEGORY, "10", entity_id=category.categoryID, priority=1)
    _rule(db_session, PricingRuleType.CATEGORY, "30", entity_id=category.categoryID, priority=5)
    service = PricingService(db_session)
    assert service.calculate_price("100", category_id=category.categoryID) == Decimal("130.00")

    _rule(db_session, PricingRuleType.CATEGORY, "40", entity_id=category.categoryID, priority=5)
    assert service.calculate_price("100", category_id=category.categoryID) == Decimal("140.00")


def test_inactive_rules_are_ignored(db_session, global_rule, category):
    _rule(db_session, PricingRuleType.CATEGORY, "50", entity_id=category.categoryID, active=False)
    service = PricingService(db_session)
    assert service.calculate_price("100", category_id=category.categoryID) == Decimal("115.00")


def test_prices_round_half_up(db_session):
    _rule(db_session, PricingRuleType.GLOBAL, "10")
    service = PricingService(db_session)
    # 0.45 * 1.10 = 0.495
    assert service.calculate_price("0.45") == Decimal("0.50")


def test_update_global_markup_creates_rule_and_reprices(db_session, products):
    phone, case = products
    service = PricingService(db_session)

    result = service.update_global_markup(10)

    assert result["rule_type"] == "global"
    assert result["markup_value"] == 10.0
    assert result["products_repriced"] == 2
    db_session.refresh(phone)
    db_session.refresh(case)
    assert phone.price == Decimal("49.50")
    assert case.price == Decimal("13.75")
    assert service.get_global_rule().pricingRuleID == result["id"]


def test_update_global_markup_rejects_negative_values(db_session):
    with pytest.raises(ValidationError) as exc_info:
        PricingService(db_session).update_global_markup(-5)
    assert "markup_value" in exc_info.value.errors


def test_set_category_markup_upserts(db_session, category, products):
    service = PricingService(db_session)
    first = service.set_category_markup(category.categoryID, 20)
    second = service.set_category_markup(category.categoryID, 25)

    assert first["id"] == second["id"]
    assert second["entity_name"] == "Smartphones"
    assert db_session.query(PricingRule).count() == 1
    db_session.refresh(products[0])
    assert products[0].price == Decimal("56.25")


def test_set_brand_markup_for_unknown_brand(db_session):
    with pytest.raises(NotFoundError):
        PricingService(db_session).set_brand_markup(999, 10)


def test_set_category_markup_rejects_unknown_type(db_session, category):
    with pytest.raises(ValidationError):
        PricingService(db_session).set_category_markup(category.categoryID, 10, "bogus")


def test_delete_rule_reprices_and_protects_global(db_session, category, global_rule, products):
    service = PricingService(db_session)
    rule = service.set_category_markup(category.categoryID, 50)

    service.delete_rule(rule["id"])

    db_session.refresh(products[0])
    assert products[0].price == Decimal("51.75")
    with pytest.raises(ValidationError):
        service.delete_rule(global_rule.pricingRuleID)
    with pytest.raises(NotFoundError):
        service.delete_rule(12345)


def test_recalculate_all_prices_counts_changed_rows(db_session, category, brand):
    make_product(db_session, "P-1", "100.00", category=category)
    make_product(db_session, "P-2", "200.00", brand=brand)
    service = PricingService(db_session)

    assert service.recalculate_all_prices() == 0
    _rule(db_session, PricingRuleType.BRAND, "10", entity_id=brand.brandID)
    assert service.recalculate_all_prices() == 1


def test_get_all_rules_lists_entity_names(db_session, global_rule, category, brand):
    service = PricingService(db_session)
    service.set_category_markup(category.categoryID, 20)
    service.set_brand_markup(brand.brandID, 5, "fixed")

    names = {rule["rule_type"]: rule["entity_name"] for rule in service.get_all_rules()}
    assert names == {"global": "Global", "category": "Smartphones", "brand": "Apple"}


def test_markup_and_margin_helpers():
    assert PricingService.get_markup_percentage(100, 120) == 20.0
    assert PricingService.get_profit_margin(100, 125) == 20.0
    assert PricingService.get_markup_percentage(0, 10) == 0.0
    assert PricingService.get_profit_margin(10, 0) == 0.0
