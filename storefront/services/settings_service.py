from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import ValidationError
from storefront.models import Setting
from storefront.money import round_money, to_decimal

TAX_RATE_KEY = "tax_rate"
FREE_SHIPPING_THRESHOLD_KEY = "free_shipping_threshold"
SHIPPING_COST_KEY = "shipping_cost"
CURRENCY_KEY = "currency"

# Keys an admin may write and whether the storefront may read them
EDITABLE_SETTINGS: Dict[str, Dict[str, Any]] = {
    TAX_RATE_KEY: {"type": "float", "public": True},
    FREE_SHIPPING_THRESHOLD_KEY: {"type": "float", "public": True},
    SHIPPING_COST_KEY: {"type": "float", "public": True},
    CURRENCY_KEY: {"type": "string", "public": True},
    "site_name": {"type": "string", "public": True},
    "contact_email": {"type": "string", "public": True},
    "maintenance_mode": {"type": "bool", "public": True},
    "order_notification_email": {"type": "string", "public": False},
}


@dataclass(frozen=True)
class OrderSettings:
    """Checkout knobs handed to the order service."""

    tax_rate_percent: Decimal
    free_shipping_threshold: Decimal
    shipping_cost: Decimal
    currency: str = "EUR"

    @property
    def tax_rate(self) -> Decimal:
        return self.tax_rate_percent / Decimal("100")

    @classmethod
    def from_config(cls, config: type[Config] = Config) -> "OrderSettings":
        return cls(
            tax_rate_percent=to_decimal(config.TAX_RATE_PERCENT),
            free_shipping_threshold=round_money(config.FREE_SHIPPING_THRESHOLD),
            shipping_cost=round_money(config.SHIPPING_COST),
            currency=config.CURRENCY,
        )


def _cast(value: Optional[str], value_type: str) -> Any:
    if value is None:
        return None
    if value_type == "int":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "bool":
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if value_type == "json":
        return json.loads(value)
    return value


def _stringify(value: Any, value_type: str) -> str:
    if value_type == "bool":
        return "true" if value in (True, 1, "1", "true", "yes", "on") else "false"
    if value_type == "json":
        return json.dumps(value)
    return str(value)


class SettingsService:
    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def get(self, key: str, default: Any = None) -> Any:
        row = self.db.query(Setting).filter_by(key=key).first()
        if row is None:
            return default
        return _cast(row.value, row.value_type)

    def get_all(self) -> Dict[str, Any]:
        return {row.key: _cast(row.value, row.value_type) for row in self.db.query(Setting).all()}

    def get_public(self) -> Dict[str, Any]:
        settings = {
            TAX_RATE_KEY: float(self.config.TAX_RATE_PERCENT),
            FREE_SHIPPING_THRESHOLD_KEY: float(self.config.FREE_SHIPPING_THRESHOLD),
            SHIPPING_COST_KEY: float(self.config.SHIPPING_COST),
            CURRENCY_KEY: self.config.CURRENCY,
        }
        for row in self.db.query(Setting).filter(Setting.is_public.is_(True)).all():
            settings[row.key] = _cast(row.value, row.value_type)
        return settings

    def set(self, key: str, value: Any, value_type: str = "string", is_public: bool = False) -> Setting:
        row = self.db.query(Setting).filter_by(key=key).first()
        if row is None:
            row = Setting(key=key)
            self.db.add(row)
        row.value = _stringify(value, value_type)
        row.value_type = value_type
        row.is_public = is_public
        return row

    def update_many(self, values: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(values, dict) or not values:
            raise ValidationError("No settings supplied")

        errors: Dict[str, str] = {}
        for key, value in values.items():
            definition = EDITABLE_SETTINGS.get(key)
            if definition is None:
                errors[key] = "Unknown setting"
                continue
            if definition["type"] == "float":
                try:
                    if float(value) < 0:
                        errors[key] = "Must not be negative"
                except (TypeError, ValueError):
                    errors[key] = "Must be a number"
        if errors:
            raise ValidationError("Invalid settings", errors=errors)

        try:
            for key, value in values.items():
                definition = EDITABLE_SETTINGS[key]
                self.set(key, value, definition["type"], definition["public"])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.logger.info("Settings updated", extra={"keys": sorted(values)})
        return self.get_all()

    def order_settings(self) -> OrderSettings:
        """Configuration defaults overridden by any stored shop settings."""
        defaults = OrderSettings.from_config(self.config)
        tax = self.get(TAX_RATE_KEY)
        threshold = self.get(FREE_SHIPPING_THRESHOLD_KEY)
        shipping = self.get(SHIPPING_COST_KEY)
        currency = self.get(CURRENCY_KEY)
        return OrderSettings(
            tax_rate_percent=to_decimal(tax) if tax is not None else defaults.tax_rate_percent,
            free_shipping_threshold=round_money(threshold) if threshold is not None else defaults.free_shipping_threshold,
            shipping_cost=round_money(shipping) if shipping is not None else defaults.shipping_cost,
            currency=currency or defaults.currency,
        )
