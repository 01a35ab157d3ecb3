from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_vendor_health(vendor_client) -> Dict[str, str]:
    """Reachability of the vendor API; informational, never fails the request."""
    if vendor_client is None:
        return {"status": "UNKNOWN"}
    return {"status": "UP" if vendor_client.check_health() else "DOWN"}
