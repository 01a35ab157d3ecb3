"""
Client for the vendor's B2B inventory API.

The vendor exposes one endpoint per operation under a common base URL
(``<base>/ReserveArticle/`` and so on). Requests are form-encoded POSTs
authenticated with the raw API key in the ``Authorization`` header;
responses are JSON objects shaped like ``{"status": "ok", "ReturnVal": ...}``
or ``{"error": 1, "error_msg": "..."}``.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import ValidationError, VendorApiError
from storefront.models import VendorApiLog
from storefront.observability import increment_counter

VendorResponse = Union[Dict[str, Any], List[Any], str]

PAY_WITH_OPTIONS = ("Wire", "OnDelivery")
INSURANCE_OPTIONS = ("yes", "no")
STOCK_RESULT_TYPES = ("XML", "Array", "CSV")
LIST_RESULT_TYPES = ("XML", "Array")
MAX_ORDER_ID = 99999999
MAX_DEVICE_ID = 99999

# Longest payload text stored per VendorApiLog row
_LOG_PAYLOAD_LIMIT = 20000


def is_success(response: VendorResponse) -> bool:
    if not isinstance(response, dict):
        return False
    if response.get("status") == "ok":
        return True
    if "error" in response and response.get("error") in (0, "0"):
        return True
    return response.get("success") is True


def error_message(response: VendorResponse, default: str = "Vendor request failed") -> str:
    if isinstance(response, dict):
        for key in ("error_msg", "message", "error_message"):
            if response.get(key):
                return str(response[key])
    elif isinstance(response, str) and response.strip():
        return response.strip()[:500]
    return default


def extract_return_value(response: VendorResponse, *fallback_keys: str) -> Any:
    if not isinstance(response, dict):
        return None
    for key in ("ReturnVal",) + fallback_keys:
        if response.get(key) not in (None, ""):
            return response[key]
    return None


class VendorApiClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 60,
        connect_timeout: float = 10,
        http_session: Optional[requests.Session] = None,
        log_session_factory: Optional[Callable[[], Session]] = None,
        logging_enabled: bool = True,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = (connect_timeout, timeout)
        self.http = http_session or requests.Session()
        self.http.headers.update({"Authorization": api_key, "Accept": "application/json"})
        self.log_session_factory = log_session_factory
        self.logging_enabled = logging_enabled and log_session_factory is not None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: type[Config] = Config,
        http_session: Optional[requests.Session] = None,
        log_session_factory: Optional[Callable[[], Session]] = None,
    ) -> "VendorApiClient":
        if log_session_factory is None:
            from storefront.database import SessionLocal

            log_session_factory = SessionLocal
        return cls(
            base_url=config.VENDOR_API_BASE_URL,
            api_key=config.VENDOR_API_KEY,
            timeout=config.VENDOR_API_TIMEOUT,
            connect_timeout=config.VENDOR_API_CONNECT_TIMEOUT,
            http_session=http_session,
            log_session_factory=log_session_factory,
            logging_enabled=config.VENDOR_API_LOGGING_ENABLED,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def get_current_stock(self, selected_type: str = "Array") -> VendorResponse:
        self._check_choice("SelectedType", selected_type, STOCK_RESULT_TYPES)
        return self._post("GetCurrentStock", {"SelectedType": selected_type})

    def reserve_article(self, gensoft_id: Any, warehouse: Any, amount: Any) -> VendorResponse:
        params = {"gensoft_id": gensoft_id, "warehouse": warehouse, "amount": amount}
        missing = [name for name, value in params.items() if value is None or str(value).strip() == ""]
        if missing:
            raise ValidationError(
                "No device parameters defined",
                errors={name: "Required" for name in missing},
            )
        return self._post("ReserveArticle", params)

    def remove_reserved_article(self, reservation_id: Any) -> VendorResponse:
        if reservation_id is None or str(reservation_id).strip() == "":
            raise ValidationError(
                "No reservation id defined",
                errors={"reservation_id": "Required"},
            )
        return self._post("RemoveReservedArticle", {"reservation_id": reservation_id})

    def get_reserved_articles(self, selected_type: str = "Array") -> VendorResponse:
        self._check_choice("SelectedType", selected_type, LIST_RESULT_TYPES)
        return self._post("GetReservedArticles", {"SelectedType": selected_type})

    def create_sales_order(
        self,
        reservations: Iterable[Any],
        pay_with: str = "Wire",
        insurance: str = "no",
    ) -> VendorResponse:
        self._check_choice("payWith", pay_with, PAY_WITH_OPTIONS)
        self._check_choice("insurance", insurance, INSURANCE_OPTIONS)
        params = {
            "reservations": json.dumps(list(reservations)),
            "payWith": pay_with,
            "insurance": insurance,
        }
        return self._post("CreateSalesOrder", params)

    def get_order_imei_numbers(self, order_id: Any, selected_type: str = "Array") -> VendorResponse:
        self._check_choice("SelectedType", selected_type, LIST_RESULT_TYPES)
        self._check_range("order_id", order_id, 1, MAX_ORDER_ID)
        return self._post(
            "GetOrderImeiNumbers",
            {"SelectedType": selected_type, "order_id": int(order_id)},
        )

    def get_device_specifications(self, device_id: Any) -> VendorResponse:
        self._check_range("device_id", device_id, 1, MAX_DEVICE_ID)
        return self._post("GetDeviceSpecifications", {"device_id": int(device_id)})

    def check_health(self) -> bool:
        try:
            self._request("GET", "health", None)
        except VendorApiError as exc:
            self.logger.warning("Vendor API health check failed: %s", exc.message)
            return False
        return True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _post(self, operation: str, params: Dict[str, Any]) -> VendorResponse:
        return self._request("POST", operation, params)

    def _request(self, method: str, operation: str, params: Optional[Dict[str, Any]]) -> VendorResponse:
        url = f"{self.base_url}{operation}/"
        started = time.perf_counter()
        try:
            if method == "POST":
                response = self.http.post(url, data=params, timeout=self.timeout)
            else:
                response = self.http.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            self._record(operation, method, params, None, None, started, str(exc))
            self.logger.error("Vendor API %s transport error: %s", operation, exc)
            raise VendorApiError(f"Vendor API error: {exc}") from exc

        status_code = response.status_code
        body = self._decode(response)

        if status_code >= 400:
            message = error_message(body, default="Unknown error")
            self._record(operation, method, params, body, status_code, started, message)
            self.logger.error(
                "Vendor API %s returned HTTP %s",
                operation,
                status_code,
                extra={"vendor_message": message},
            )
            raise VendorApiError(f"Vendor API error (HTTP {status_code}): {message}", http_status=status_code)

        self._record(operation, method, params, body, status_code, started, None)
        return body

    @staticmethod
    def _decode(response: requests.Response) -> VendorResponse:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _record(
        self,
        operation: str,
        method: str,
        params: Optional[Dict[str, Any]],
        body: Optional[VendorResponse],
        status_code: Optional[int],
        started: float,
        error: Optional[str],
    ) -> None:
        duration_ms = int(round((time.perf_counter() - started) * 1000))
        outcome = "error" if error else ("ok" if is_success(body) else "rejected")
        increment_counter("vendor_api_calls_total", labels={"operation": operation, "outcome": outcome})

        if not self.logging_enabled:
            return

        db = self.log_session_factory()
        try:
            db.add(
                VendorApiLog(
                    operation=operation,
                    method=method,
                    request_payload=json.dumps(params, default=str)[:_LOG_PAYLOAD_LIMIT] if params else None,
                    response_payload=json.dumps(body, default=str)[:_LOG_PAYLOAD_LIMIT] if body is not None else None,
                    status_code=status_code,
                    duration_ms=duration_ms,
                    error_message=error,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            # The call itself already happened; a lost audit row must not fail it
            self.logger.warning("Failed to log vendor API call %s: %s", operation, exc)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Parameter checks
    # ------------------------------------------------------------------
    @staticmethod
    def _check_choice(name: str, value: Any, allowed: Iterable[str]) -> None:
        allowed = tuple(allowed)
        if value not in allowed:
            raise ValidationError(
                f"Invalid parameter {name}",
                errors={name: f"Must be one of: {', '.join(allowed)}"},
            )

    @staticmethod
    def _check_range(name: str, value: Any, low: int, high: int) -> None:
        try:
            number = int(value)
        except (TypeError, ValueError):
            number = None
        if number is None or isinstance(value, bool) or not low <= number <= high:
            raise ValidationError(
                f"Invalid parameter {name}",
                errors={name: f"Must be between {low} and {high}"},
            )
