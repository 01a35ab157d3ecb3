"""
Typed input records for the storefront and admin APIs.

Payloads are validated and sanitised here, at the HTTP boundary, so the
services only ever see well-formed values.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import bleach

from storefront.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ADDRESS_REQUIRED_FIELDS = (
    "first_name",
    "last_name",
    "address_line1",
    "city",
    "postal_code",
    "country",
    "phone",
)
ADDRESS_OPTIONAL_FIELDS = ("company", "address_line2", "state")


def sanitize_text(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Strip markup and surrounding whitespace; empty strings become None."""
    if value is None:
        return None
    cleaned = bleach.clean(str(value), tags=[], strip=True).strip()
    if max_length is not None:
        cleaned = cleaned[:max_length]
    return cleaned or None


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    return number if number > 0 else None


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int

    @classmethod
    def list_from_payload(cls, payload: Any) -> List["CartLine"]:
        if not isinstance(payload, list) or not payload:
            raise ValidationError(
                "Cart is empty",
                errors={"cart_items": "At least one cart item is required"},
            )

        lines: List[CartLine] = []
        errors: Dict[str, str] = {}
        for index, raw in enumerate(payload):
            if not isinstance(raw, dict):
                errors[f"cart_items.{index}"] = "Cart item must be an object"
                continue
            product_id = _positive_int(raw.get("product_id"))
            quantity = _positive_int(raw.get("quantity"))
            if product_id is None:
                errors[f"cart_items.{index}.product_id"] = "A valid product id is required"
            if quantity is None:
                errors[f"cart_items.{index}.quantity"] = "Quantity must be a positive integer"
            if product_id is not None and quantity is not None:
                lines.append(cls(product_id=product_id, quantity=quantity))

        if errors:
            raise ValidationError("Invalid cart items", errors=errors)
        return lines


@dataclass(frozen=True)
class AddressInput:
    first_name: str
    last_name: str
    address_line1: str
    city: str
    postal_code: str
    country: str
    phone: str
    company: Optional[str] = None
    address_line2: Optional[str] = None
    state: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, field_name: str = "billing_address") -> "AddressInput":
        if not isinstance(payload, dict):
            raise ValidationError(
                "Address is required",
                errors={field_name: "Address must be an object"},
            )

        values: Dict[str, Optional[str]] = {}
        errors: Dict[str, str] = {}
        for name in ADDRESS_REQUIRED_FIELDS:
            value = sanitize_text(payload.get(name), max_length=255)
            if not value:
                errors[f"{field_name}.{name}"] = f"{name.replace('_', ' ').capitalize()} is required"
            values[name] = value
        for name in ADDRESS_OPTIONAL_FIELDS:
            values[name] = sanitize_text(payload.get(name), max_length=255)

        if errors:
            raise ValidationError("Invalid address", errors=errors)

        values["country"] = values["country"].upper()[:2]
        return cls(**values)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            name: getattr(self, name)
            for name in ADDRESS_REQUIRED_FIELDS + ADDRESS_OPTIONAL_FIELDS
        }


@dataclass(frozen=True)
class OrderInput:
    payment_method: str
    user_id: Optional[int] = None
    guest_email: Optional[str] = None
    notes: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything `POST /orders` needs, validated as one unit."""

    order: OrderInput
    cart_items: List[CartLine]
    billing_address: AddressInput
    shipping_address: Optional[AddressInput] = None

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "CheckoutRequest":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        errors: Dict[str, Any] = {}

        cart_items: List[CartLine] = []
        try:
            cart_items = CartLine.list_from_payload(payload.get("cart_items"))
        except ValidationError as exc:
            errors.update(exc.errors or {})

        billing = None
        try:
            billing = AddressInput.from_payload(payload.get("billing_address"), "billing_address")
        except ValidationError as exc:
            errors.update(exc.errors or {})

        shipping = None
        if payload.get("shipping_address"):
            try:
                shipping = AddressInput.from_payload(payload.get("shipping_address"), "shipping_address")
            except ValidationError as exc:
                errors.update(exc.errors or {})

        payment_method = sanitize_text(payload.get("payment_method"), max_length=50)
        if not payment_method:
            errors["payment_method"] = "Payment method is required"

        guest_email = sanitize_text(payload.get("guest_email"), max_length=255)
        if user_id is None:
            if not guest_email:
                errors["guest_email"] = "Email is required for guest checkout"
            elif not is_valid_email(guest_email):
                errors["guest_email"] = "Invalid email address"
        elif guest_email and not is_valid_email(guest_email):
            errors["guest_email"] = "Invalid email address"

        if errors:
            raise ValidationError("Validation failed", errors=errors)

        order = OrderInput(
            payment_method=payment_method,
            user_id=user_id,
            guest_email=guest_email.lower() if guest_email and user_id is None else None,
            notes=sanitize_text(payload.get("notes"), max_length=2000),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
        )
        return cls(
            order=order,
            cart_items=cart_items,
            billing_address=billing,
            shipping_address=shipping,
        )



# ---------------------------------------------
# Catalogue
# ---------------------------------------------
PRODUCT_SORT_FIELDS = ("price", "name", "created_at", "stock_quantity")
PRODUCT_TEXT_FIELDS = {
    "name": 255,
    "sku": 100,
    "ean": 50,
    "description": 10000,
    "color": 100,
    "storage": 100,
    "ram": 100,
}
PRODUCT_FLAG_FIELDS = ("is_available", "is_featured")
PRODUCT_ID_FIELDS = ("category_id", "brand_id")


def _flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value in (0, 1) and not isinstance(value, float):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on", "0", "false", "no", "off"}:
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return None


def _money(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def _non_negative_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if value == 0 or value == "0":
        return 0
    return _positive_int(value)


@dataclass(frozen=True)
class ProductFilters:
    """Query-string filters for product listings."""

    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    color: Optional[str] = None
    storage: Optional[str] = None
    ram: Optional[str] = None
    search: Optional[str] = None
    is_available: Optional[bool] = None
    is_featured: bool = False
    sort: str = "created_at"
    descending: bool = True

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "ProductFilters":
        errors: Dict[str, str] = {}
        values: Dict[str, Any] = {}

        for name in PRODUCT_ID_FIELDS:
            if args.get(name):
                values[name] = _positive_int(args.get(name))
                if values[name] is None:
                    errors[name] = "Must be a positive integer"
        for name in ("min_price", "max_price"):
            if args.get(name):
                values[name] = _money(args.get(name))
                if values[name] is None:
                    errors[name] = "Must be a non-negative amount"
        for name in ("color", "storage", "ram", "search"):
            values[name] = sanitize_text(args.get(name), max_length=100)

        if args.get("is_available") not in (None, ""):
            values["is_available"] = _flag(args.get("is_available"))
            if values["is_available"] is None:
                errors["is_available"] = "Must be 0 or 1"
        values["is_featured"] = bool(_flag(args.get("is_featured")))

        # Unknown sort keys fall back to newest first
        sort = (args.get("sort") or "").strip()
        values["sort"] = sort if sort in PRODUCT_SORT_FIELDS else "created_at"
        values["descending"] = (args.get("order") or "desc").strip().lower() != "asc"

        if errors:
            raise ValidationError("Invalid product filters", errors=errors)
        return cls(**values)


@dataclass(frozen=True)
class ProductInput:
    """
    Admin product create/update payload.

    Only the keys present in the payload are recorded in ``provided``, so an
    update touches exactly the fields the admin sent.
    """

    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def provided(self) -> FrozenSet[str]:
        return frozenset(self.values)

    @classmethod
    def from_payload(cls, payload: Any, partial: bool = False) -> "ProductInput":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        values: Dict[str, Any] = {}
        errors: Dict[str, str] = {}

        for name, max_length in PRODUCT_TEXT_FIELDS.items():
            if name in payload:
                values[name] = sanitize_text(payload[name], max_length=max_length)
        if "base_price" in payload:
            values["base_price"] = _money(payload["base_price"])
            if values["base_price"] is None:
                errors["base_price"] = "Must be a non-negative amount"
        if "stock_quantity" in payload:
            values["stock_quantity"] = _non_negative_int(payload["stock_quantity"])
            if values["stock_quantity"] is None:
                errors["stock_quantity"] = "Must be a non-negative integer"
        for name in PRODUCT_ID_FIELDS:
            if name in payload:
                values[name] = None if payload[name] is None else _positive_int(payload[name])
                if payload[name] is not None and values[name] is None:
                    errors[name] = "Must be a positive integer"
        for name in PRODUCT_FLAG_FIELDS:
            if name in payload:
                values[name] = _flag(payload[name])
                if values[name] is None:
                    errors[name] = "Must be true or false"
        if "specifications" in payload:
            specifications = payload["specifications"]
            if specifications is not None and not isinstance(specifications, (dict, list)):
                errors["specifications"] = "Must be an object or a list"
            values["specifications"] = specifications

        for name in ("name", "sku", "base_price"):
            if name not in errors and (not partial or name in payload) and values.get(name) is None:
                errors[name] = "Required"
        if partial and not values and not errors:
            raise ValidationError("No valid fields to update")
        if errors:
            raise ValidationError("Invalid product", errors=errors)
        return cls(values=values)


@dataclass(frozen=True)
class TaxonomyInput:
    """Category or brand create/update payload."""

    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any, partial: bool = False) -> "TaxonomyInput":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        values: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for name, max_length in (("name", 255), ("slug", 255), ("description", 10000), ("logo_url", 512)):
            if name in payload:
                values[name] = sanitize_text(payload[name], max_length=max_length)
        if "is_active" in payload:
            values["is_active"] = _flag(payload["is_active"])
            if values["is_active"] is None:
                errors["is_active"] = "Must be true or false"
        if "sort_order" in payload:
            values["sort_order"] = _non_negative_int(payload["sort_order"])
            if values["sort_order"] is None:
                errors["sort_order"] = "Must be a non-negative integer"

        if ("name" in payload or not partial) and not values.get("name"):
            errors["name"] = "Required"
        if partial and not values and not errors:
            raise ValidationError("No valid fields to update")
        if errors:
            raise ValidationError("Validation failed", errors=errors)
        return cls(values=values)


__all__ = [
    "CartLine",
    "AddressInput",
    "OrderInput",
    "CheckoutRequest",
    "ProductFilters",
    "ProductInput",
    "TaxonomyInput",
    "sanitize_text",
    "is_valid_email",
]
