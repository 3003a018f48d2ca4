"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from claude_max_proxy.clients.anthropic_messages import AnthropicMessagesClient
from claude_max_proxy.config import VERSION, Settings, get_settings
from claude_max_proxy.credentials import CredentialStore, build_credential_store
from claude_max_proxy.errors import APIError, install_error_handlers
from claude_max_proxy.relay import RelayEngine
from claude_max_proxy.routes.chat_completions import router as chat_router
from claude_max_proxy.routes.models import router as models_router

logger = logging.getLogger(__name__)

FEATURES = ["oauth", "tools", "empty-msg-fix"]


def create_app(
    *,
    settings: Optional[Settings] = None,
    injected_upstream_client: Optional[AnthropicMessagesClient] = None,
    injected_credential_store: Optional[CredentialStore] = None,
) -> FastAPI:
    cfg = settings or get_settings()
    _configure_logging(cfg.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = cfg
        app.state.http_client = None
        app.state._owns_http_client = False

        if injected_upstream_client is None or injected_credential_store is None:
            timeout = httpx.Timeout(connect=10.0, read=None, write=60.0, pool=60.0)
            app.state.http_client = httpx.AsyncClient(timeout=timeout)
            app.state._owns_http_client = True

        if injected_upstream_client is not None:
            app.state.upstream_client = injected_upstream_client
        else:
            app.state.upstream_client = AnthropicMessagesClient(
                app.state.http_client,
                api_url=cfg.anthropic_api_url,
                anthropic_version=cfg.anthropic_version,
                anthropic_beta=cfg.anthropic_beta,
                first_byte_timeout_seconds=cfg.upstream_first_byte_timeout_seconds,
                stream_read_timeout_seconds=cfg.upstream_stream_read_timeout_seconds,
            )

        if injected_credential_store is not None:
            app.state.credential_store = injected_credential_store
        else:
            app.state.credential_store = build_credential_store(cfg, app.state.http_client)

        app.state.relay_engine = RelayEngine(app.state.upstream_client, app.state.credential_store)
        await _log_token_status(app.state.credential_store)

        try:
            yield
        finally:
            if app.state._owns_http_client and app.state.http_client is not None:
                await app.state.http_client.aclose()
                app.state.http_client = None

    app = FastAPI(title="Claude Max Proxy", version=VERSION, lifespan=lifespan)

    if cfg.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allowed_origins),
            allow_credentials="*" not in cfg.cors_allowed_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )

    @app.middleware("http")
    async def request_observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex}"
        request.state.request_id = request_id
        started = time.time()

        body_preview = "<redacted>"
        if not cfg.log_redact_body:
            body_bytes = await request.body()
            body_text = body_bytes.decode("utf-8", errors="ignore")
            body_preview = body_text[: cfg.request_body_log_max_chars]

            async def receive() -> dict[str, Any]:
                return {"type": "http.request", "body": body_bytes, "more_body": False}

            request = Request(request.scope, receive)

        logging.getLogger("claude_max_proxy.request").info(
            "request_id=%s method=%s path=%s body=%s",
            request_id,
            request.method,
            request.url.path,
            body_preview,
        )

        response = await call_next(request)
        duration_ms = int((time.time() - started) * 1000)
        response.headers["x-request-id"] = request_id
        logging.getLogger("claude_max_proxy.request").info(
            "request_id=%s status=%s duration_ms=%s",
            request_id,
            response.status_code,
            duration_ms,
        )
        return response

    async def health(request: Request) -> JSONResponse:
        store: CredentialStore = request.app.state.credential_store
        try:
            credential = await store.resolve()
        except APIError as exc:
            return JSONResponse({"status": "error", "version": VERSION, "error": exc.message})
        return JSONResponse(
            {
                "status": "ok",
                "version": VERSION,
                "mode": "xml-filtered",
                "features": FEATURES,
                "subscription": credential.subscription_label,
            }
        )

    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/healthz", health, methods=["GET"])

    @app.get("/")
    async def root() -> JSONResponse:
        return JSONResponse(
            {
                "name": "claude-max-proxy",
                "message": "OpenAI-compatible chat completions proxy for Claude subscription OAuth",
                "endpoints": ["/v1/chat/completions", "/v1/models", "/health"],
            }
        )

    app.include_router(models_router)
    app.include_router(chat_router)
    install_error_handlers(app)
    return app


async def _log_token_status(store: CredentialStore) -> None:
    try:
        await store.resolve()
        status = "valid"
    except APIError as exc:
        status = exc.message
    logger.info("Claude Max Proxy v%s ready. token=%s", VERSION, status)


def _configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


app = create_app()
