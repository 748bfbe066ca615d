from __future__ import annotations

import datetime as dt
import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Protocol
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from radius_portal.api.schemas import AuthRequestBody, AuthResponseBody, Validation
from radius_portal.config.schema import PortalConfig
from radius_portal.radius.codec import EncodeError
from radius_portal.radius.policy import FilterIdPolicy
from radius_portal.udp.exchange import AuthOutcome, AuthResult, RadiusExchange

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; script-src 'self' 'unsafe-inline'; "
    "style-src 'self' 'unsafe-inline' https://stackpath.bootstrapcdn.com; "
    "img-src 'self' data: http: https:; font-src 'self'; connect-src 'self'"
)
SLOW_REQUEST_MS = 1000.0

MISSING_CREDENTIALS_MESSAGE = "Username and password are required"
INVALID_CREDENTIALS_MESSAGE = "Username or password is too long"
AUTH_FAILED_MESSAGE = "Authentication failed. Please check your credentials."
TIMEOUT_MESSAGE = "Authentication server timed out"
SERVER_ERROR_MESSAGE = "Server error during authentication"
AUTH_SUCCESS_MESSAGE = "Authentication successful"


class Authenticator(Protocol):
    async def authenticate(self, username: str, password: str) -> AuthResult: ...


def build_grant_url(base_grant_url: str, continue_url: str | None) -> str:
    """Append continue_url to the Meraki grant URL, keeping any existing query."""
    if not continue_url:
        return base_grant_url

    parts = urlsplit(base_grant_url)
    extra = urlencode({"continue_url": continue_url}, quote_via=quote)
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config: PortalConfig = app.state.config
    logger.info(
        "RADIUS portal v%s ready (RADIUS %s:%s, allowed Filter-Id %r, timeout %.1fs)",
        APP_VERSION,
        config.radius.host,
        config.radius.port,
        config.access_policy.allowed_filter_id,
        config.radius.timeout_seconds,
    )
    try:
        yield
    finally:
        logger.info("Shutdown complete")


def create_app(config: PortalConfig, *, exchange: Authenticator | None = None) -> FastAPI:
    app = FastAPI(title="radius-portal", version=APP_VERSION, lifespan=lifespan)

    app.state.config = config
    app.state.exchange = exchange if exchange is not None else RadiusExchange(config.radius)
    app.state.policy = FilterIdPolicy.from_config(config.access_policy)

    @app.middleware("http")
    async def security_headers(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        response = await call_next(request)
        response.headers["Content-Security-Policy"] = CONTENT_SECURITY_POLICY
        return response

    @app.middleware("http")
    async def log_failed_or_slow(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000.0
        if response.status_code >= 400 or duration_ms > SLOW_REQUEST_MS:
            logger.info("%s %s - %s (%.0fms)", request.method, request.url.path, response.status_code, duration_ms)
        return response

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/api/health")
    async def api_health() -> dict[str, object]:
        return {
            "status": "ok",
            "version": APP_VERSION,
            "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
            "radius": {"host": config.radius.host, "port": config.radius.port},
            "accessControl": {"allowedFilterId": config.access_policy.allowed_filter_id},
            "container": {"hostname": socket.gethostname()},
        }

    @app.post("/auth/radius")
    async def auth_radius(body: AuthRequestBody) -> JSONResponse:
        logger.info(
            "Authentication request for user=%r client_mac=%s client_ip=%s node_mac=%s",
            body.username,
            body.client_mac,
            body.client_ip,
            body.node_mac,
        )
        try:
            return await _authenticate(app, body)
        except Exception:
            logger.exception("Authentication error for user=%r", body.username)
            return _respond(500, AuthResponseBody(success=False, message=SERVER_ERROR_MESSAGE))

    return app


async def _authenticate(app: FastAPI, body: AuthRequestBody) -> JSONResponse:
    if not body.username or not body.password:
        logger.info("Missing credentials in request")
        return _respond(400, AuthResponseBody(success=False, message=MISSING_CREDENTIALS_MESSAGE))

    exchange: Authenticator = app.state.exchange
    policy: FilterIdPolicy = app.state.policy

    try:
        result = await exchange.authenticate(body.username, body.password)
    except EncodeError as exc:
        logger.info("Rejecting credentials for user=%r: %s", body.username, exc)
        return _respond(400, AuthResponseBody(success=False, message=INVALID_CREDENTIALS_MESSAGE))

    if not result.accepted:
        logger.info(
            "Authentication failed for user=%r: %s%s",
            body.username,
            result.outcome.value,
            f" ({result.reason})" if result.reason else "",
        )
        message = TIMEOUT_MESSAGE if result.outcome is AuthOutcome.TIMED_OUT else AUTH_FAILED_MESSAGE
        return _respond(401, AuthResponseBody(success=False, message=message))

    decision = policy.authorize(result.attributes)
    logger.info(
        "Authentication successful for user=%r, Filter-Id: %s", body.username, decision.filter_id or "none"
    )

    if not decision.allowed:
        logger.info("User %r does not have Filter-Id %r - access denied", body.username, policy.expected_value)
        return _respond(
            403,
            AuthResponseBody(
                success=False,
                message=decision.message,
                filter_id=decision.filter_id,
                validation=Validation(status="error", message=f"Access denied - {decision.message}"),
            ),
        )

    redirect_url = None
    if body.base_grant_url:
        redirect_url = build_grant_url(body.base_grant_url, body.user_continue_url)

    return _respond(
        200,
        AuthResponseBody(
            success=True,
            message=AUTH_SUCCESS_MESSAGE,
            filter_id=decision.filter_id,
            validation=Validation(status="success", message=decision.message),
            redirect_url=redirect_url,
        ),
    )


def _respond(status_code: int, body: AuthResponseBody) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.to_payload())
