from .auth_service import AuthService
from .inventory_service import InventoryService
from .order_history_service import OrderHistoryService
from .order_service import OrderService
from .pricing_service import PricingService
from .product_sync_service import ProductSyncService
from .rate_limiter import RateLimiter
from .reservation_service import ReservationService
from .settings_service import SettingsService
from .vendor_client import VendorApiClient

__all__ = [
    "AuthService",
    "InventoryService",
    "OrderHistoryService",
    "OrderService",
    "PricingService",
    "ProductSyncService",
    "RateLimiter",
    "ReservationService",
    "SettingsService",
    "VendorApiClient",
]
