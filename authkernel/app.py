from __future__ import annotations

import asyncio
import json
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authkernel.api.error_handling import INVALID_REQUEST_MESSAGE, failure, register_exception_handlers
from authkernel.api.router import handle_request
from authkernel.logging import get_logger, set_correlation_id
from authkernel.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authkernel", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Take the correlation ID from X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.post("/v1/auth", tags=["auth"])
async def auth_action(request: Request):
    """Every action answers 200; the envelope's ``success`` carries the outcome."""
    try:
        body = await request.json()
    except ValueError:
        logger.warning("request_rejected", reason="body_not_json")
        return JSONResponse(content=failure(INVALID_REQUEST_MESSAGE).to_dict())
    result = await handle_request(body, get_runtime().authenticator)
    return JSONResponse(content=result)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "version": __version__}


# One loop for the life of a warm serverless container: the Redis client
# binds its connections to the loop that first used them.
_lambda_loop: asyncio.AbstractEventLoop | None = None
_lambda_loop_lock = threading.Lock()


def _get_lambda_loop() -> asyncio.AbstractEventLoop:
    global _lambda_loop
    with _lambda_loop_lock:
        if _lambda_loop is None or _lambda_loop.is_closed():
            _lambda_loop = asyncio.new_event_loop()
        return _lambda_loop


def _unwrap_event(event: Any) -> Any:
    """Accept either a bare action envelope or an HTTP proxy event carrying one in ``body``."""
    if isinstance(event, dict) and "action" not in event and "body" in event:
        body = event["body"]
        if isinstance(body, str):
            try:
                return json.loads(body)
            except ValueError:
                return None
        return body
    return event


def lambda_handler(event: Any, context: Any) -> Dict[str, Any]:
    """Serverless entry point: one action envelope in, one response envelope out."""
    correlation_id = getattr(context, "aws_request_id", None)
    authenticator = get_runtime().authenticator
    return _get_lambda_loop().run_until_complete(
        handle_request(_unwrap_event(event), authenticator, correlation_id=correlation_id)
    )
