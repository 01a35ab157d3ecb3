from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from flask import current_app, request

from storefront.errors import ValidationError
from storefront.services.rate_limiter import RateLimiter
from storefront.services.shipping_service import UpsTrackingClient
from storefront.services.vendor_client import VendorApiClient


def get_vendor_client() -> VendorApiClient:
    return current_app.extensions["vendor_client"]


def get_rate_limiter() -> RateLimiter:
    return current_app.extensions["rate_limiter"]


def get_carrier_client() -> UpsTrackingClient:
    return current_app.extensions["carrier_client"]


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def page_args(default_size: Optional[int] = None) -> Tuple[int, Optional[int]]:
    """``page`` and ``page_size`` (or its ``limit`` alias) from the query string."""
    raw_size = request.args.get("page_size") or request.args.get("limit")
    try:
        page = int(request.args.get("page", 1))
        page_size = int(raw_size) if raw_size else default_size
    except (TypeError, ValueError) as exc:
        raise ValidationError("page and page_size must be integers") from exc
    return page, page_size
