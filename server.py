#!/usr/bin/env python3
"""
xswap Server
HTLC swap coordination between EVM escrows and XRP Ledger escrows.

Endpoints:
  GET  /api/status                    - Health check
  POST /api/swaps                     - Initiate swap (locks both legs)
  GET  /api/swaps                     - List swaps
  GET  /api/swaps/{id}                - Get swap (with history)
  GET  /api/swaps/{id}/monitors       - Per-leg escrow monitors
  POST /api/swaps/{id}/claim          - Claim one leg
  POST /api/swaps/{id}/refund         - Refund one leg
  POST /api/swaps/{id}/reconcile      - Re-derive swap status from monitors
"""

import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from xswap import (
    SwapCoordinator,
    SwapConfig,
    SwapRequest,
    SwapStatus,
    EscrowWatcher,
    WatcherConfig,
    EVMClient,
    EVMConfig,
    XRPLClient,
    XRPLConfig,
    __version__,
)
from xswap.core import parse_chain_type
from xswap.errors import (
    SwapError,
    ValidationError,
    PreconditionError,
    StateTransitionError,
    ChainSubmissionError,
    ConfirmationTimeout,
    ChainRevertError,
    EncodingMismatchError,
    PersistenceError,
    RecordNotFound,
)
from xswap.store import SwapRepository, StoreConfig, open_store

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (RecordNotFound, 404),
    (ConfirmationTimeout, 504),
    (ValidationError, 400),
    (PreconditionError, 409),
    (StateTransitionError, 409),
    (ChainRevertError, 422),
    (EncodingMismatchError, 500),
    (ChainSubmissionError, 502),
    (PersistenceError, 503),
]


def status_for(error: SwapError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(error, cls):
            return code
    return 500


# =============================================================================
# MODELS
# =============================================================================

class SwapCreateRequest(BaseModel):
    maker_evm_address: str
    taker_evm_address: str
    maker_xrpl_address: str
    taker_xrpl_address: str
    evm_token: str = Field(..., description="ERC20 address, or the zero address for native")
    evm_amount: int = Field(..., gt=0)
    xrpl_amount: int = Field(..., gt=0, description="Drops")
    safety_deposit: int = Field(0, ge=0)
    timeout: Optional[float] = Field(None, gt=0)


class ActionRequest(BaseModel):
    chain_type: str = Field(..., description="EVM or XRPL")
    caller: Optional[str] = None
    secret: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0)


def _swap_view(swap) -> dict:
    # The secret is public once a claim revealed it
    return swap.to_dict(include_secret=swap.secret is not None)


# =============================================================================
# APP SETUP
# =============================================================================

def create_app(coordinator: SwapCoordinator, watcher: Optional[EscrowWatcher] = None) -> FastAPI:
    """Build the API around an injected coordinator (and optional watcher)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if watcher:
            watcher.start()
        yield
        if watcher:
            watcher.stop()
        coordinator.close()
        log.info("xswap stopped")

    app = FastAPI(
        title="xswap",
        description="HTLC swap coordination: EVM escrows <-> XRP Ledger escrows",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SwapError)
    async def swap_error_handler(request: Request, exc: SwapError):
        return JSONResponse(status_code=status_for(exc),
                            content={"success": False, "error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Invalid request", errors=[
            {"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()
        ])
        return JSONResponse(status_code=400, content={"success": False, "error": error.to_dict()})

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/api/status")
    def get_status():
        """Health check."""
        swaps = coordinator.list_swaps()
        active = [s for s in swaps if s.status != SwapStatus.COMPLETED]
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "swaps_active": len(active),
            "swaps_total": len(swaps),
            "evm_address": coordinator.evm_client.address,
            "xrpl_address": coordinator.ledger_client.address,
            "watcher_running": bool(watcher and watcher.running),
        }

    @app.post("/api/swaps")
    def create_swap(req: SwapCreateRequest):
        """Initiate a swap. The response carries the secret for the maker."""
        request = SwapRequest(
            maker_evm_address=req.maker_evm_address,
            taker_evm_address=req.taker_evm_address,
            maker_xrpl_address=req.maker_xrpl_address,
            taker_xrpl_address=req.taker_xrpl_address,
            evm_token=req.evm_token,
            evm_amount=req.evm_amount,
            xrpl_amount=req.xrpl_amount,
            safety_deposit=req.safety_deposit,
        )
        result = coordinator.initiate(request, timeout=req.timeout)
        return {"success": True, **result.to_dict()}

    @app.get("/api/swaps")
    def list_swaps(status: Optional[str] = None):
        """List swaps, optionally by status."""
        status_filter = None
        if status:
            try:
                status_filter = SwapStatus(status.upper())
            except ValueError:
                raise HTTPException(400, f"Unknown status: {status}")
        swaps = coordinator.list_swaps(status_filter)
        return {"swaps": [_swap_view(s) for s in swaps], "count": len(swaps)}

    @app.get("/api/swaps/{swap_id}")
    def get_swap(swap_id: str):
        return _swap_view(coordinator.get_swap(swap_id))

    @app.get("/api/swaps/{swap_id}/monitors")
    def get_monitors(swap_id: str):
        monitors = coordinator.get_monitors(swap_id)
        return {"swap_id": swap_id, "monitors": [m.to_dict() for m in monitors]}

    @app.post("/api/swaps/{swap_id}/claim")
    def claim(swap_id: str, req: ActionRequest):
        """Claim one leg (taker, after its public withdrawal time)."""
        leg = parse_chain_type(req.chain_type)
        result = coordinator.claim(swap_id, leg, caller=req.caller, secret=req.secret,
                                   timeout=req.timeout)
        return result.to_dict()

    @app.post("/api/swaps/{swap_id}/refund")
    def refund(swap_id: str, req: ActionRequest):
        """Refund one leg (maker, after its cancellation time)."""
        leg = parse_chain_type(req.chain_type)
        result = coordinator.refund(swap_id, leg, caller=req.caller, timeout=req.timeout)
        return result.to_dict()

    @app.post("/api/swaps/{swap_id}/reconcile")
    def reconcile(swap_id: str):
        return _swap_view(coordinator.reconcile(swap_id))

    return app


def build_coordinator() -> SwapCoordinator:
    """Wire clients, store and coordinator from environment variables."""
    evm = EVMClient(EVMConfig.from_env()).connect()
    ledger = XRPLClient(XRPLConfig.from_env()).connect()

    # Claims are signed with the taker's keys, when this node holds them
    evm_taker_config = EVMConfig.from_env(role="taker")
    ledger_taker_config = XRPLConfig.from_env(role="taker")
    evm_taker = EVMClient(evm_taker_config).connect() if evm_taker_config.private_key else None
    ledger_taker = XRPLClient(ledger_taker_config).connect() if ledger_taker_config.account else None

    store_config = StoreConfig.from_env()
    repository = SwapRepository(open_store(store_config), store_config)
    return SwapCoordinator(evm, ledger, repository, SwapConfig.from_env(),
                           evm_taker_client=evm_taker, ledger_taker_client=ledger_taker)


# =============================================================================
# MAIN
# =============================================================================

def main():
    import uvicorn

    coordinator = build_coordinator()
    watcher = None
    if os.environ.get("XSWAP_WATCH", "1").lower() in ("1", "true", "yes"):
        watcher = EscrowWatcher(coordinator, WatcherConfig.from_env())

    app = create_app(coordinator, watcher)
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting xswap on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
