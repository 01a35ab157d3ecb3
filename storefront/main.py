import logging
import sys
import time

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from storefront.blueprints.admin import admin_bp
from storefront.blueprints.catalog import catalog_bp
from storefront.blueprints.orders import orders_bp
from storefront.config import Config
from storefront.database import close_db, init_db, session_scope
from storefront.errors import GENERIC_ERROR_MESSAGE, StorefrontError, TooManyAttempts
from storefront.observability import (
    check_database_health,
    check_vendor_health,
    configure_logging,
    ensure_request_id,
    increment_counter,
    observe_latency,
)
from storefront.responses import error_response
from storefront.services.auth_service import AuthService
from storefront.services.order_service import OrderService
from storefront.services.product_sync_service import ProductSyncService
from storefront.services.rate_limiter import RateLimiter
from storefront.services.settings_service import SettingsService
from storefront.services.shipping_service import UpsTrackingClient
from storefront.services.vendor_client import VendorApiClient

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(catalog_bp)
app.register_blueprint(orders_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)

app.extensions["vendor_client"] = VendorApiClient.from_config(Config)
app.extensions["rate_limiter"] = RateLimiter(Config.RATE_LIMIT_STORE_PATH)
app.extensions["carrier_client"] = UpsTrackingClient.from_config(Config)


def init_database():
    """Create tables on startup; the app still boots if the database is down."""
    try:
        init_db()
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, "request_started_at", None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})

    request_id = getattr(g, "request_id", None)
    if request_id:
        response.headers[Config.REQUEST_ID_HEADER] = request_id
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


# ---------------------------------------------
# Error handling
# ---------------------------------------------
@app.errorhandler(StorefrontError)
def handle_storefront_error(exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message, extra={"status_code": exc.status_code})
    else:
        logger.warning("%s: %s", type(exc).__name__, exc.message, extra={"status_code": exc.status_code})

    response = jsonify(exc.to_dict(debug=app.debug))
    response.status_code = exc.status_code
    if isinstance(exc, TooManyAttempts):
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException):
    return error_response(exc.name, exc.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    message = str(exc) if app.debug else GENERIC_ERROR_MESSAGE
    return error_response(message, 500)


# ---------------------------------------------
# Health
# ---------------------------------------------
@app.route("/health", methods=["GET"])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    components = {"database": db_status}
    # Vendor reachability costs a network round trip, so only on request
    if request.args.get("vendor"):
        components["vendor_api"] = check_vendor_health(app.extensions.get("vendor_client"))
    return jsonify({"status": overall, "components": components}), status_code


# ---------------------------------------------
# CLI commands
# ---------------------------------------------
@app.cli.command("create-admin")
@click.argument("username")
@click.option("--email", default=None, help="Contact address for the admin user.")
@click.password_option()
def create_admin_command(username, email, password):
    """Create an admin user."""
    with session_scope() as db:
        try:
            admin = AuthService(db).create_admin(username, password, email=email)
        except StorefrontError as exc:
            raise click.ClickException(f"{exc.message}: {exc.errors}" if exc.errors else exc.message)
        click.echo(f"Admin user '{admin.username}' created (id {admin.adminUserID}).")


@app.cli.command("sync-products")
def sync_products_command():
    """Pull the vendor stock list into the local catalogue."""
    with session_scope() as db:
        try:
            stats = ProductSyncService(db, app.extensions["vendor_client"]).sync_products()
        except StorefrontError as exc:
            raise click.ClickException(exc.message)
    click.echo(
        "Synced {synced} products ({added} added, {updated} updated, "
        "{disabled} disabled, {skipped} skipped).".format(**stats)
    )


@app.cli.command("create-vendor-orders")
def create_vendor_orders_command():
    """Submit fully reserved orders to the vendor as sales orders."""
    with session_scope() as db:
        service = OrderService(
            db,
            app.extensions["vendor_client"],
            settings=SettingsService(db).order_settings(),
        )
        result = service.create_vendor_sales_order()

    click.echo(f"Processed {result.orders_processed} orders.")
    for error in result.errors:
        click.echo(f"  {error['order_number']}: {error['error']}", err=True)
    if not result.success:
        sys.exit(1)
