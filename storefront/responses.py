"""JSON envelope shared by every endpoint: {success, message, data?, errors?}."""
from __future__ import annotations

from typing import Any, Optional

from flask import jsonify


def success_response(data: Any = None, message: str = "OK", status_code: int = 200):
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return jsonify(body), status_code


def error_response(message: str, status_code: int = 400, errors: Optional[Any] = None):
    body = {"success": False, "message": message}
    if errors is not None:
        body["errors"] = errors
    return jsonify(body), status_code
