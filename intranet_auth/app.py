from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from intranet_auth.api.error_handling import (
    register_exception_handlers,
    storage_unavailable_response,
)
from intranet_auth.api.routes import SESSION_COOKIE, router
from intranet_auth.config import Settings
from intranet_auth.logging import get_logger, set_correlation_id
from intranet_auth.service.sessions import SessionManager
from intranet_auth.storage.errors import StorageUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from intranet_auth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Intranet Auth", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
# Login mints a fresh session, so a stale cookie must not block it; the
# Origin/Referer check guards it instead
_CSRF_EXEMPT_PATHS = {"/v1/auth/login"}


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.app_base_url]


def _origin_of(value: Optional[str]) -> str:
    parsed = urlsplit(value or "")
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _login_origin_allowed(request: Request) -> bool:
    source = request.headers.get("origin") or request.headers.get("referer")
    if source is None:
        return True
    origin = _origin_of(source)
    if not origin:
        return False
    allowed = {_origin_of(entry) for entry in _allowed_origins()}
    allowed.add(_origin_of(str(request.base_url)))
    return origin in allowed


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "session_id",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


def _forbidden(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={
            "status": "error",
            "error": {"code": "forbidden", "message": message},
        },
    )


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    # Only state-changing requests that carry a session cookie are checked
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        if not _login_origin_allowed(request):
            logger.warning(
                "login_origin_rejected",
                path=request.url.path,
                origin=request.headers.get("origin"),
                referer=request.headers.get("referer"),
            )
            return _forbidden("cross-site login rejected")
        return await call_next(request)
    session_cookie = request.cookies.get(SESSION_COOKIE)
    if not session_cookie:
        return await call_next(request)

    from intranet_auth.service.runtime import get_runtime

    try:
        session = await get_runtime().session_store.get(session_cookie)
    except StorageUnavailable as exc:
        logger.error("csrf_session_lookup_failed", backend=exc.backend)
        return storage_unavailable_response()
    if session is None:
        # Unknown or expired sessions are rejected by the session dependency
        return await call_next(request)
    if not SessionManager.verify_csrf(session, request.headers.get("X-CSRF-Token")):
        logger.warning(
            "csrf_token_mismatch",
            path=request.url.path,
            method=request.method,
            user_id=session.user_id,
        )
        return _forbidden("missing or invalid CSRF token")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id for log tracing.

    Taken from the X-Request-ID header when the client sends one, otherwise a
    new UUID. Registered last so it wraps the other middlewares and their log
    lines carry the id too.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report reachability of the identity and content databases and the session store."""
    from intranet_auth.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    for label, component in (
        ("identity_database", runtime.identity),
        ("content_database", runtime.content),
        ("session_store", runtime.session_store),
    ):
        probe = getattr(component, "verify_connection", None)
        if probe is None:
            checks[label] = {"status": "healthy", "type": "memory"}
            continue
        ok = await _run_bounded(label, probe)
        checks[label] = {"status": "healthy" if ok else "unhealthy"}
        overall_healthy = overall_healthy and ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
