"""HTTP server adapter for the group-buy REST endpoints.

Serves JSON POST endpoints for client applications and payment gateway
callbacks from a threaded http.server. Each request's receiver coroutine
is handed to the application's event loop, so all group operations still
run on one loop and share its per-group locks.

Domain errors become JSON error bodies with a status taken from
ERROR_STATUS. Endpoints other than /health can be protected by an API
key sent as ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``.
"""

import asyncio
import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from groupbuy.adapters.webhook.receiver import WebhookReceiver
from groupbuy.core.errors import GroupBuyError

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024
REQUEST_TIMEOUT_SECONDS = 30

# Domain error code -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "permission_denied": 403,
    "invalid_request": 400,
    "voucher_invalid": 422,
    "invalid_state": 409,
    "already_paid": 409,
    "capacity_exceeded": 409,
    "stock_insufficient": 409,
    "payment_rejected": 402,
    "settlement_failed": 502,
    "persistence_failed": 503,
    "service_unavailable": 503,
}

Route = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def build_routes(receiver: WebhookReceiver) -> dict[str, Route]:
    """POST path -> receiver handler."""
    return {
        "/api/sweep": receiver.handle_sweep_trigger,
        "/api/payments/callback": receiver.handle_payment_callback,
        "/api/groups/create": receiver.handle_create_group,
        "/api/groups/update": receiver.handle_update_group,
        "/api/groups/delete": receiver.handle_delete_group,
        "/api/groups/get": receiver.handle_get_group,
        "/api/groups/list": receiver.handle_list_groups,
        "/api/groups/lock": receiver.handle_lock,
        "/api/groups/unlock": receiver.handle_unlock,
        "/api/groups/expire": receiver.handle_expire_request,
        "/api/groups/join": receiver.handle_join,
        "/api/groups/leave": receiver.handle_leave,
        "/api/groups/address": receiver.handle_assign_address,
        "/api/groups/items/add": receiver.handle_add_item,
        "/api/groups/items/update": receiver.handle_update_item,
        "/api/groups/items/remove": receiver.handle_remove_item,
        "/api/groups/voucher": receiver.handle_apply_voucher,
        "/api/groups/checkout": receiver.handle_checkout,
        "/api/groups/orders": receiver.handle_list_orders,
        "/api/groups/order-status": receiver.handle_order_status,
    }


def is_authorized(headers: Mapping[str, str], api_key: str | None, require_auth: bool) -> bool:
    """Check the request's bearer token or X-API-Key against ``api_key``."""
    if not require_auth:
        return True
    if not api_key:
        return False

    authorization = headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        return hmac.compare_digest(authorization.removeprefix("Bearer "), api_key)
    provided = headers.get("X-API-Key", "")
    return bool(provided) and hmac.compare_digest(provided, api_key)


def error_body(error: GroupBuyError) -> tuple[int, dict[str, Any]]:
    """HTTP status and JSON body for a domain error."""
    return ERROR_STATUS.get(error.code, 400), {"status": "error", **error.to_dict()}


def make_webhook_handler(
    routes: Mapping[str, Route],
    event_loop: asyncio.AbstractEventLoop,
    api_key: str | None,
    require_auth: bool,
) -> type[BaseHTTPRequestHandler]:
    """Build a request handler class bound to ``routes`` and ``event_loop``.

    The dependencies are captured in a closure because http.server
    instantiates the handler class itself for every request.
    """

    class WebhookHTTPHandler(BaseHTTPRequestHandler):
        """Dispatches JSON POST bodies to receiver coroutines."""

        def do_GET(self) -> None:
            if self.path == "/health":
                self._reply(200, {"status": "healthy"})
            else:
                self.send_error(404, "Not found")

        def do_POST(self) -> None:
            if self.path == "/health":
                self._reply(200, {"status": "healthy"})
                return
            if not is_authorized(self.headers, api_key, require_auth):
                self.send_error(401, "Unauthorized: invalid or missing API key")
                return

            route = routes.get(self.path)
            if route is None:
                self.send_error(404, "Not found")
                return

            data = self._read_json()
            if data is None:
                return

            status, body = self._call(route, data)
            if body is None:
                self.send_error(status, "Internal server error")
            else:
                self._reply(status, body)

        def _read_json(self) -> dict[str, Any] | None:
            """Decode the request body, answering with 4xx and returning None on failure."""
            length = int(self.headers.get("Content-Length", 0))
            if length > MAX_BODY_SIZE:
                self.send_error(413, "Request body too large")
                return None
            raw = self.rfile.read(length) if length > 0 else b""
            try:
                data = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                self.send_error(400, "Invalid JSON body")
                return None
            if not isinstance(data, dict):
                self.send_error(400, "JSON body must be an object")
                return None
            return data

        def _call(self, route: Route, data: dict[str, Any]) -> tuple[int, dict[str, Any] | None]:
            future = asyncio.run_coroutine_threadsafe(route(data), event_loop)
            try:
                return 200, future.result(timeout=REQUEST_TIMEOUT_SECONDS)
            except GroupBuyError as e:
                status, body = error_body(e)
                logger.info(
                    f"Request {self.path} rejected: {e.reason}",
                    extra={"path": self.path, "code": e.code, "http_status": status},
                )
                return status, body
            except Exception as e:
                # Details stay in the server log
                logger.error(f"Error handling {self.path}: {e}", exc_info=True)
                return 500, None

        def _reply(self, status: int, body: dict[str, Any]) -> None:
            payload = json.dumps(body).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(f"HTTP {self.client_address[0]}: {format % args}")

    return WebhookHTTPHandler


class WebhookHTTPServer:
    """Threaded HTTP server bridging REST requests onto the event loop."""

    def __init__(
        self,
        webhook_receiver: WebhookReceiver,
        host: str = "0.0.0.0",
        port: int = 8080,
        api_key: str | None = None,
        require_auth: bool = False,
    ):
        """Initialize the HTTP server.

        Args:
            webhook_receiver: Receiver whose handlers back the routes.
            host: Interface to bind.
            port: Port to bind; 0 picks a free one.
            api_key: Key clients must present when require_auth is set.
            require_auth: Whether POST endpoints need the API key.

        Raises:
            ValueError: If require_auth is True but no api_key is given.
        """
        if require_auth and not api_key:
            raise ValueError(
                "Webhook server configured with require_auth=True "
                "but no API key provided"
            )

        self.webhook_receiver = webhook_receiver
        self.host = host
        self.port = port
        self.api_key = api_key
        self.require_auth = require_auth
        self.server: ThreadingHTTPServer | None = None
        self._serve_task: asyncio.Task[None] | None = None

    @property
    def address(self) -> tuple[str, int]:
        """Bound host and port once started."""
        if self.server is None:
            return self.host, self.port
        host, port = self.server.server_address[:2]
        return str(host), int(port)

    async def start(self) -> None:
        handler_class = make_webhook_handler(
            build_routes(self.webhook_receiver),
            asyncio.get_running_loop(),
            self.api_key,
            self.require_auth,
        )
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        # serve_forever blocks, so it gets a worker thread
        self._serve_task = asyncio.create_task(asyncio.to_thread(self.server.serve_forever))

        host, port = self.address
        logger.info(
            f"Webhook HTTP server listening on {host}:{port}"
            + (" (API key required)" if self.require_auth else ""),
            extra={"host": host, "port": port},
        )

    async def stop(self) -> None:
        if self.server is not None:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
            self.server = None
        if self._serve_task is not None:
            try:
                await self._serve_task
            except Exception as e:
                logger.error(f"Webhook HTTP server error: {e}", exc_info=True)
            self._serve_task = None
        logger.info("Webhook HTTP server stopped")
