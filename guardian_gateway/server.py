"""HTTP surface for the gate (sidecar deployment).

Endpoints:
    POST /v1/tool-call   gate invocation; ``{}`` (allow) or the denial payload
    POST /v1/approve     approval operation
    GET  /v1/health      liveness
    GET  /v1/stats       in-process counters
    GET  /metrics        Prometheus exposition

Env:
- GA_API_KEYS_JSON / GA_API_KEYS_FILE: enable X-Api-Key auth (see auth.py)
- GA_RATE_LIMIT_APPROVE: token-bucket limit on /v1/approve (default: 30/m, "off" disables)
- GA_MAX_REQUEST_BYTES: request body limit (default: 1048576)
- GA_METRICS_TOKEN: if set, /metrics requires ``Authorization: Bearer <token>``
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .approval import approve_escalation
from .auth import ApiKeyAuth, AuthContext
from .config import GuardConfig
from .diagnostics import run_startup_diagnostics
from .errors import GA_E_AUTH_REQUIRED, GA_E_RATE_LIMITED, GuardianError
from .gate import GuardianGate
from .metrics import instrument_fastapi
from .ops_stats import OPS_STATS
from .ratelimit import RateLimiter, parse_rate_limit

logger = logging.getLogger("guardian_gateway.server")

DEFAULT_MAX_REQUEST_BYTES = 1_048_576
APPROVAL_FAILURE_STATUS = {"NotFound": 404, "Expired": 410}


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False) -> HTTPException:
    """HTTPException with the stable error envelope in ``detail``."""
    return HTTPException(status, {"code": code, "message": message, "retryable": bool(retryable)})


class ToolCallRequest(BaseModel):
    tool_name: str = Field(..., alias="toolName", min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)


class ApproveRequest(BaseModel):
    nonce: str
    reason: Optional[str] = None


def _build_limiter(env_name: str, default_spec: str) -> Optional[RateLimiter]:
    spec = (os.getenv(env_name) or default_spec).strip()
    if spec.lower() in ("", "0", "off", "disabled", "false"):
        return None
    try:
        capacity, refill = parse_rate_limit(spec)
    except ValueError as e:
        logger.warning("[GA] invalid rate limit %s=%r: %s (using %s)", env_name, spec, e, default_spec)
        capacity, refill = parse_rate_limit(default_spec)
    return RateLimiter(capacity=capacity, refill_rate_per_sec=refill)


def _max_request_bytes() -> int:
    try:
        value = int(os.getenv("GA_MAX_REQUEST_BYTES", "") or DEFAULT_MAX_REQUEST_BYTES)
    except ValueError:
        return DEFAULT_MAX_REQUEST_BYTES
    return value if value > 0 else DEFAULT_MAX_REQUEST_BYTES


def create_app(gate: Optional[GuardianGate] = None) -> FastAPI:
    """Create the FastAPI app. Without a gate, one is built from GA_* env vars."""
    if gate is None:
        config = GuardConfig.from_env()
        run_startup_diagnostics(config)
        gate = GuardianGate(config)

    app = FastAPI(
        title="Guardian Gateway",
        description="Authorization gate for agent tool calls",
        version=__version__,
    )
    app.state.gate = gate

    @app.exception_handler(GuardianError)
    async def _guardian_error_handler(request: Request, exc: GuardianError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    api_auth = ApiKeyAuth.load_from_env()

    def require_auth(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")) -> AuthContext:
        ctx = api_auth.resolve(x_api_key)
        if ctx.error:
            raise _http_exc(401, GA_E_AUTH_REQUIRED, ctx.error)
        return ctx

    metrics_token = (os.getenv("GA_METRICS_TOKEN") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        return authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    max_request_bytes = _max_request_bytes()

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            if not cl.strip().isdigit():
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if int(cl) > max_request_bytes:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    approve_limiter = _build_limiter("GA_RATE_LIMIT_APPROVE", "30/m")

    def _rl_key(req: Request, ctx: AuthContext) -> str:
        if ctx.authenticated and ctx.caller:
            return f"c:{ctx.caller}"
        if req.client and req.client.host:
            return f"ip:{req.client.host}"
        return "_anon"

    @app.post("/v1/tool-call")
    def tool_call(request: ToolCallRequest, ctx: AuthContext = Depends(require_auth)):
        """Run the gate; an empty object means the call may proceed."""
        result = gate.before_tool_call({"toolName": request.tool_name, "params": request.params})
        return result or {}

    @app.post("/v1/approve")
    def approve(http_request: Request, request: ApproveRequest, ctx: AuthContext = Depends(require_auth)):
        if approve_limiter is not None and not approve_limiter.allow(_rl_key(http_request, ctx)):
            OPS_STATS.record_rate_limited()
            raise _http_exc(429, GA_E_RATE_LIMITED, "RATE_LIMITED", retryable=True)

        reason = request.reason
        if ctx.caller:
            reason = f"{reason} (by {ctx.caller})" if reason else f"by {ctx.caller}"
        result = approve_escalation(gate.store, request.nonce, reason)
        if not result.ok:
            return JSONResponse(status_code=APPROVAL_FAILURE_STATUS.get(result.error or "", 400), content=result.to_dict())
        return result.to_dict()

    @app.get("/v1/stats")
    def stats(ctx: AuthContext = Depends(require_auth)):
        circuit = getattr(gate.store, "circuit", None)
        return OPS_STATS.snapshot(
            extra={
                "store_backend": gate.config.store_backend,
                "lockdown_active": bool(circuit is not None and circuit.is_lockdown_active()),
            }
        )

    @app.get("/v1/health")
    def health_check():
        return {"status": "healthy", "version": __version__, "enabled": gate.config.enabled}

    return app


def main():
    """Run the gate as an HTTP sidecar under uvicorn.

    Usage:
        guardian-gateway                   # 127.0.0.1:8000
        guardian-gateway --port 9000
    """
    parser = argparse.ArgumentParser(
        description="Guardian Gateway - tool-call authorization gate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    GA_STORE_PATH          Escalation state file (default: .ga-state.json)
    GA_STORE_BACKEND       json | sqlite
    GA_API_KEYS_JSON       Enable API-key auth (JSON object key -> caller)
    GA_RATE_LIMIT_APPROVE  Rate limit for /v1/approve (default: 30/m)
        """,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    import uvicorn

    app = create_app()
    logger.info("[GA] Starting Guardian Gateway on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
