"""
FastAPI surface for the facilitator.

    POST /verify        validate and cache a payment transaction
    POST /settle        broadcast a verified transaction
    GET  /supported     facilitator capabilities
    GET  /status/{id}   cached transaction status
    GET  /health        liveness
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.errors import ErrorCategory, MalformedTransaction, NotFound, X402Error
from .core.facilitator import Facilitator

__all__ = ["create_app"]


class VerifyRequest(BaseModel):
    transaction: str
    network: Optional[str] = None


class SettleRequest(BaseModel):
    id: str


router = APIRouter()


def get_facilitator(request: Request) -> Facilitator:
    return request.app.state.facilitator


def _decode_body_transaction(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTransaction("Invalid transaction format") from exc


@router.post("/verify", status_code=status.HTTP_201_CREATED)
def verify(
    body: VerifyRequest, facilitator: Facilitator = Depends(get_facilitator)
) -> Dict[str, Any]:
    raw = _decode_body_transaction(body.transaction)
    return facilitator.verify(raw, network=body.network).to_dict()


@router.post("/settle")
def settle(
    body: SettleRequest, facilitator: Facilitator = Depends(get_facilitator)
) -> Dict[str, Any]:
    try:
        return facilitator.settle(body.id).to_dict()
    except NotFound as exc:
        # /settle answers 200, 400 or 409; only /status reports 404.
        exc.http_status = status.HTTP_400_BAD_REQUEST
        raise


@router.get("/supported")
def supported(facilitator: Facilitator = Depends(get_facilitator)) -> Dict[str, Any]:
    logging.info("[x402] Capabilities requested")
    return facilitator.capabilities().to_dict()


@router.get("/status/{entry_id}")
def entry_status(
    entry_id: str, facilitator: Facilitator = Depends(get_facilitator)
) -> Dict[str, Any]:
    return facilitator.status(entry_id).to_dict()


@router.get("/health")
def health(facilitator: Facilitator = Depends(get_facilitator)) -> Dict[str, Any]:
    return facilitator.health()


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(X402Error)
    async def x402_error_handler(request: Request, exc: X402Error) -> JSONResponse:
        log = logging.error if exc.category is ErrorCategory.INFRASTRUCTURE else logging.warning
        log("[x402] %s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logging.warning("[x402] Invalid request on %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid request data",
                "code": "VALIDATION_ERROR",
                "category": ErrorCategory.STRUCTURAL.value,
                "retryable": False,
                "details": _validation_details(exc),
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logging.error(
            "[x402] Unhandled error on %s: %s", request.url.path, exc, exc_info=True
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )


def _sweep_loop(facilitator: Facilitator, stop: threading.Event) -> None:
    while not stop.wait(facilitator.config.sweep_interval_seconds):
        try:
            facilitator.sweep()
        except Exception:  # noqa: BLE001
            logging.exception("[x402] Cache sweep failed")


def create_app(facilitator: Facilitator, *, sweep: bool = True) -> FastAPI:
    """
    Build the FastAPI application serving ``facilitator``.

    With ``sweep`` enabled a daemon thread evicts expired cache entries every
    ``sweep_interval_seconds`` for as long as the app is running.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = threading.Event()
        sweeper: Optional[threading.Thread] = None
        if sweep:
            sweeper = threading.Thread(
                target=_sweep_loop,
                args=(facilitator, stop),
                name="x402-cache-sweeper",
                daemon=True,
            )
            sweeper.start()
        config = facilitator.config
        logging.info(
            "[x402] Facilitator started on %s (rpc=%s, scheme=%s)",
            config.network,
            config.rpc_url,
            config.scheme,
        )
        yield
        stop.set()
        if sweeper is not None:
            sweeper.join(timeout=5)
        logging.info("[x402] Facilitator shutting down")

    app = FastAPI(
        title="x402 Facilitator",
        version=facilitator.config.version,
        lifespan=lifespan,
    )
    app.state.facilitator = facilitator
    register_error_handlers(app)
    app.include_router(router)
    return app
