"""
Flags Gateway Server

FastAPI service answering flag evaluations for embedded SDK agents and
dashboard users.

Surfaces:
- GET  /flags                           legacy agent protocol
- POST /ofrep/v1/evaluate/flags/{key}   OFREP-style single evaluation
- POST /ofrep/v1/evaluate/flags         OFREP-style bulk evaluation
- POST /api-key/generate                capability token issuance (dashboard users)
- GET  /health                          liveness
- GET  /metrics                         Prometheus exposition (optional)

Properties:
- Every evaluation reads through to the store; nothing is cached in-process
- A canceled or timed-out store query answers as "no flags", not as an error
- Store and identity-provider failures are logged with detail and answered
  with a generic message (legacy polling gets the 600-second backoff)
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import anyio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry
from pydantic import BaseModel, ValidationError

from .auth_gate import HEADER_TIMESTAMP, AuthGate, install_auth_gate
from .config import GatewayConfig
from .credentials import CredentialResolver, UserCredentials
from .errors import (
    FLAGS_E_AUTH_REQUIRED,
    FLAGS_E_SCOPE_REQUIRED,
    FlagsError,
    NoDefaultEnvironmentError,
    NotFoundError,
    RequestShapeError,
    UpstreamError,
    flags_error,
)
from .evaluator import FlagEvaluator
from .identity import IdentityProvider, build_identity_provider
from .models import LookupStatus, Scope
from .responses import (
    ErrorCode,
    EvaluationRequest,
    legacy_response,
    ofrep_bulk,
    ofrep_bulk_error,
    ofrep_error,
    ofrep_single,
)
from .stats import NullStatsSink, PrometheusStatsSink, StatsSink, instrument_fastapi
from .store import FlagStore, QueryCanceled, QueryContext
from .tokens import CapabilityTokenService, IssuedToken

logger = logging.getLogger("flags_gateway.server")

Payload = Tuple[int, Dict[str, Any]]


class ApiKeyRequest(BaseModel):
    project_id: str
    agent_id: str
    environment_id: str = ""


class ApiKeyResponse(BaseModel):
    api_key: str
    expires_at: str


class BodyError(Exception):
    """The request body is not a usable evaluation request."""

    def __init__(self, code: ErrorCode, details: str):
        super().__init__(details)
        self.code = code
        self.details = details


def parse_evaluation_body(raw: bytes) -> EvaluationRequest:
    """An empty body is an empty context. Anything else must be a JSON object."""
    if not raw or not raw.strip():
        return EvaluationRequest()
    try:
        parsed = json.loads(raw)
    except ValueError:
        raise BodyError(ErrorCode.PARSE_ERROR, "request body is not valid JSON") from None
    if not isinstance(parsed, dict):
        raise BodyError(ErrorCode.PARSE_ERROR, "request body must be a JSON object")
    try:
        return EvaluationRequest.model_validate(parsed)
    except ValidationError:
        raise BodyError(ErrorCode.INVALID_CONTEXT, "malformed evaluation context") from None


class FlagsGateway:
    """
    Composition root for one gateway process.

    Holds only read-only collaborators, so a single instance serves every
    request concurrently.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        store: Optional[FlagStore] = None,
        tokens: Optional[CapabilityTokenService] = None,
        identity: Optional[IdentityProvider] = None,
        stats: Optional[StatsSink] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config if config is not None else GatewayConfig.from_env()
        cfg = self.config
        self.registry = registry if registry is not None else CollectorRegistry()
        self.store = store if store is not None else FlagStore(cfg.db_path, cfg.db_connect_timeout_seconds)
        self.tokens = tokens if tokens is not None else CapabilityTokenService.from_config(cfg)
        self.identity = identity if identity is not None else build_identity_provider(cfg.identity)
        if stats is None:
            stats = PrometheusStatsSink(self.registry) if cfg.metrics_enabled else NullStatsSink()
        self.stats = stats
        self.resolver = CredentialResolver.default(
            self.tokens,
            strict=cfg.strict_api_keys,
            development=cfg.development,
            dev_user_subject=cfg.dev_user_subject,
        )
        self.evaluator = FlagEvaluator(self.store, self.stats)
        self.gate = AuthGate(
            self.resolver,
            self.store,
            self.identity,
            development=cfg.development,
            query_timeout_seconds=cfg.query_timeout_seconds,
        )

    def query_context(self) -> QueryContext:
        return QueryContext.with_timeout(self.config.query_timeout_seconds)

    # ---------------------------
    # Legacy protocol
    # ---------------------------

    def _agent_interval(self, scope: Scope, ctx: QueryContext) -> int:
        try:
            interval = self.store.agent_interval(scope.project_id, scope.agent_id, ctx)
        except QueryCanceled:
            interval = None
        return interval or self.config.default_interval_seconds

    def legacy_flags(self, headers: Mapping[str, str], ctx: Optional[QueryContext] = None) -> Payload:
        scope = self.resolver.resolve(headers)
        if not scope.is_complete():
            return 200, legacy_response(None, self.config.unscoped_interval_seconds)

        ctx = ctx if ctx is not None else self.query_context()
        interval = self.config.default_interval_seconds
        try:
            interval = self._agent_interval(scope, ctx)
            result = self.evaluator.evaluate_all(scope, ctx)
            menu = None
            if result.status is LookupStatus.FOUND:
                try:
                    menu = self.store.secret_menu(result.scope.environment_id, ctx)
                except QueryCanceled:
                    menu = None
        except NoDefaultEnvironmentError:
            logger.info("agent %s/%s has no environments", scope.project_id, scope.agent_id)
            return 200, legacy_response(None, interval)
        except UpstreamError as e:
            logger.error("legacy evaluation failed for %s/%s: %s", scope.project_id, scope.agent_id, e.cause)
            return 200, legacy_response(None, self.config.unscoped_interval_seconds)
        return 200, legacy_response(result, interval, menu)

    # ---------------------------
    # OFREP-style protocol
    # ---------------------------

    def ofrep_single(self, key: str, headers: Mapping[str, str], ctx: Optional[QueryContext] = None) -> Payload:
        scope = self.resolver.resolve(headers)
        try:
            result = self.evaluator.evaluate(scope, key, ctx if ctx is not None else self.query_context())
        except RequestShapeError as e:
            return 400, ofrep_error(key, ErrorCode.INVALID_CONTEXT, e.message)
        except NoDefaultEnvironmentError as e:
            return 404, ofrep_error(key, ErrorCode.FLAG_NOT_FOUND, e.message)
        except UpstreamError as e:
            logger.error("evaluation of %r failed: %s", key, e.cause)
            return 500, ofrep_error(key, ErrorCode.GENERAL, e.message)
        return ofrep_single(key, result)

    def ofrep_bulk(self, headers: Mapping[str, str], ctx: Optional[QueryContext] = None) -> Payload:
        scope = self.resolver.resolve(headers)
        try:
            result = self.evaluator.evaluate_all(scope, ctx if ctx is not None else self.query_context())
        except RequestShapeError as e:
            return 400, ofrep_bulk_error(ErrorCode.INVALID_CONTEXT, e.message)
        except NoDefaultEnvironmentError:
            return 200, ofrep_bulk(None)
        except UpstreamError as e:
            logger.error("bulk evaluation failed: %s", e.cause)
            return 500, ofrep_bulk_error(ErrorCode.GENERAL, e.message)
        return 200, ofrep_bulk(result)

    # ---------------------------
    # API keys
    # ---------------------------

    def generate_api_key(self, user: UserCredentials, request: ApiKeyRequest) -> IssuedToken:
        scope = Scope(request.project_id.strip(), request.agent_id.strip(), request.environment_id.strip())
        if not scope.is_complete():
            raise RequestShapeError("project_id and agent_id are required", code=FLAGS_E_SCOPE_REQUIRED)
        try:
            exists = self.store.agent_exists(scope.project_id, scope.agent_id, scope.environment_id, self.query_context())
        except QueryCanceled:
            exists = False
        if not exists:
            raise NotFoundError("agent not found", project_id=scope.project_id, agent_id=scope.agent_id)
        issued = self.tokens.issue(scope)
        logger.info("issued API key for %s/%s to %s", scope.project_id, scope.agent_id, user.subject)
        return issued


DISCONNECT_POLL_SECONDS = 0.05


async def run_until_disconnect(request, ctx: QueryContext, fn: Callable[..., Payload], *args: Any) -> Payload:
    """Run a blocking evaluation in a worker thread, canceling its store calls if the client goes away."""
    async def _watch_disconnect() -> None:
        while not ctx.done():
            if await request.is_disconnected():
                logger.debug("client disconnected from %s, canceling store query", request.url.path)
                ctx.cancel()
                return
            await anyio.sleep(DISCONNECT_POLL_SECONDS)

    async with anyio.create_task_group() as tg:
        tg.start_soon(_watch_disconnect)
        payload = await anyio.to_thread.run_sync(fn, *args)
        tg.cancel_scope.cancel()
    return payload


def _timestamped(status_code: int, content: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers={HEADER_TIMESTAMP: str(int(time.time()))})


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[FlagsGateway] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as flags_version

    if gateway is None:
        gateway = FlagsGateway(GatewayConfig.from_env())
    cfg = gateway.config

    app = FastAPI(
        title="Flags Gateway",
        description="Feature flag evaluation for agents and dashboard users",
        version=flags_version,
    )
    app.state.gateway = gateway

    @app.exception_handler(FlagsError)
    async def _flags_error_handler(request: Request, exc: FlagsError):
        if isinstance(exc, UpstreamError):
            logger.error("%s %s: upstream failure: %s", request.method, request.url.path, exc.cause)
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    install_auth_gate(app, gateway.gate, cfg.degraded_interval_seconds)

    if cfg.metrics_enabled:
        metrics_token = cfg.metrics_token

        def _authorize_metrics(req: Request) -> bool:
            # Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
            if not metrics_token:
                return True
            authz = (req.headers.get("Authorization") or "").strip()
            if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
                return True
            return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

        instrument_fastapi(app, gateway.registry, authorize=_authorize_metrics)

    @app.get("/flags")
    async def legacy_flags(request: Request):
        """Legacy agent protocol: every flag in scope plus polling interval."""
        ctx = gateway.query_context()
        status, body = await run_until_disconnect(request, ctx, gateway.legacy_flags, request.headers, ctx)
        return _timestamped(status, body)

    @app.post("/ofrep/v1/evaluate/flags/{key}")
    async def ofrep_evaluate_flag(key: str, request: Request):
        try:
            parse_evaluation_body(await request.body())
        except BodyError as e:
            return _timestamped(400, ofrep_error(key, e.code, e.details))
        ctx = gateway.query_context()
        status, body = await run_until_disconnect(request, ctx, gateway.ofrep_single, key, request.headers, ctx)
        return _timestamped(status, body)

    @app.post("/ofrep/v1/evaluate/flags")
    async def ofrep_evaluate_flags(request: Request):
        try:
            parse_evaluation_body(await request.body())
        except BodyError as e:
            return _timestamped(400, ofrep_bulk_error(e.code, e.details))
        ctx = gateway.query_context()
        status, body = await run_until_disconnect(request, ctx, gateway.ofrep_bulk, request.headers, ctx)
        return _timestamped(status, body)

    @app.post("/api-key/generate", response_model=ApiKeyResponse)
    async def generate_api_key(body: ApiKeyRequest, request: Request):
        """Mint a capability token for an agent. Requires a dashboard user."""
        user = await anyio.to_thread.run_sync(gateway.gate.check_user, request.headers)
        if user is None:
            raise flags_error(FLAGS_E_AUTH_REQUIRED, "user authentication required", http_status=401)
        issued = await anyio.to_thread.run_sync(gateway.generate_api_key, user, body)
        return ApiKeyResponse(api_key=issued.token, expires_at=issued.expires_at.isoformat())

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": flags_version,
            "development": cfg.development,
            "placeholder_signing_key": gateway.tokens.using_placeholder_key,
        }

    return app


def main():
    """
    Main entry point for flags-gateway CLI.

    Usage:
        flags-gateway                    # Start on default port 8080
        flags-gateway --port 9000        # Start on custom port
        flags-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse
    import os

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Flags Gateway - feature flag evaluation service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    flags-gateway                         Start gateway on 0.0.0.0:8080
    flags-gateway --port 9000             Start on custom port
    flags-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    FLAGS_DB_PATH            Path to SQLite database (default: flags_gateway.db)
    FLAGS_JWT_SIGNING_KEY    Capability token signing key
    FLAGS_DEVELOPMENT        If set (1/true), bypass the auth gate
    FLAGS_PROXY_HEADERS      If set (1/true), trust X-Forwarded-* headers (reverse proxy)
    FLAGS_FORWARDED_ALLOW_IPS  Comma-separated IPs allowed to set X-Forwarded-* (default: uvicorn)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Port to bind (default: 8080)")
    parser.add_argument("--log-level", default=None, help="Log level (default: env FLAGS_LOG_LEVEL or INFO)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--forwarded-allow-ips", default=None, help="Comma-separated IPs allowed to set X-Forwarded-* (default: env FLAGS_FORWARDED_ALLOW_IPS or uvicorn default)")

    args = parser.parse_args()

    config = GatewayConfig.from_env()
    log_level = (args.log_level or config.log_level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        app = create_app(FlagsGateway(config))
    except FlagsError as e:
        logger.error("startup refused: %s", e)
        return 1

    logger.info("Starting Flags Gateway on %s:%s (env=%s, development=%s)", args.host, args.port, config.env, config.development)

    env_proxy = os.environ.get("FLAGS_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or (env_proxy in ("1", "true", "yes"))
    forwarded_allow_ips = args.forwarded_allow_ips or os.environ.get("FLAGS_FORWARDED_ALLOW_IPS")

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=log_level.lower(),
        proxy_headers=proxy_headers,
        forwarded_allow_ips=forwarded_allow_ips,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
