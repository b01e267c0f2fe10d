"""
FastAPI REST API Module

Exposes minting, custody funding, deposits, settlement, claims, transfers and
intermediary bookkeeping over HTTP. The acting account is taken from the X-Caller
header; authorization decisions stay with the token's access control.
Amounts are returned as strings to keep large integers exact.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import get_config
from .deposits import DepositRecord
from .errors import (
    AccountingUnderflowError, PreconditionError, TransferFailedError,
    UnauthorizedError, YieldLedgerError
)
from .holders import HolderState
from .logging_config import setup_logging
from .token import YieldBearingToken


class DepositRequest(BaseModel):
    amount: int = Field(..., ge=0, description="Yield units to deposit")


class TransferRequest(BaseModel):
    recipient: str
    amount: int = Field(..., ge=0)


class MintRequest(BaseModel):
    recipient: str
    amount: int = Field(..., ge=0)


class FundRequest(BaseModel):
    account: str
    amount: int = Field(..., ge=0, description="Yield-asset units credited to the account")


class IntermediaryRequest(BaseModel):
    account: str


class PendingOrderRequest(BaseModel):
    beneficiary: str
    amount: int = Field(..., ge=0)


def holder_to_dict(state: HolderState) -> Dict[str, Any]:
    return {
        "holder": state.holder,
        "balance": str(state.balance),
        "balance_seconds": str(state.balance_seconds),
        "yield_accrued": str(state.yield_accrued),
        "yield_withdrawn": str(state.yield_withdrawn),
        "last_balance_timestamp": state.last_balance_timestamp,
        "last_settled_balance_seconds": str(state.last_settled_balance_seconds)
    }


def deposit_to_dict(record: DepositRecord) -> Dict[str, Any]:
    return {
        "timestamp": record.timestamp,
        "amount": str(record.amount),
        "total_balance_seconds_snapshot": str(record.total_balance_seconds_snapshot),
        "previous_timestamp": record.previous_timestamp
    }


_ERROR_STATUS = (
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (TransferFailedError, status.HTTP_402_PAYMENT_REQUIRED),
    (AccountingUnderflowError, status.HTTP_409_CONFLICT),
    (PreconditionError, status.HTTP_400_BAD_REQUEST),
)


def _status_for(error: YieldLedgerError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def require_caller(x_caller: Optional[str] = Header(None)) -> str:
    if not x_caller:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Caller header required")
    return x_caller


def build_router(token: YieldBearingToken) -> APIRouter:
    router = APIRouter()

    @router.get("/supply")
    async def get_supply():
        supply = token.supply_state()
        return {
            "total_supply": str(token.total_supply()),
            "total_balance_seconds": str(supply.total_balance_seconds),
            "last_supply_timestamp": supply.last_supply_timestamp,
            "last_deposit_timestamp": token.history.last_timestamp
        }

    @router.get("/deposits")
    async def list_deposits(limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return [deposit_to_dict(record) for record in token.deposit_history(limit=limit)]

    @router.get("/deposits/{timestamp}")
    async def get_deposit(timestamp: int):
        record = token.deposit_record(timestamp)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                                detail=f"No deposit at {timestamp}")
        return deposit_to_dict(record)

    @router.post("/deposits", status_code=status.HTTP_201_CREATED)
    async def record_deposit(request: DepositRequest, caller: str = Depends(require_caller)):
        record = token.record_deposit(caller, request.amount)
        return {"recorded": record is not None,
                "deposit": deposit_to_dict(record) if record else None}

    @router.get("/holders/{holder}")
    async def get_holder(holder: str):
        result = holder_to_dict(token.holder_state(holder))
        result["pending_yield"] = str(token.pending_yield(holder))
        result["held_by_intermediary"] = str(token.held_by_intermediary(holder))
        return result

    @router.post("/holders/{holder}/settle")
    async def settle(holder: str):
        settlement = token.settle(holder)
        return {
            "holder": holder,
            "accrued": str(settlement.accrued),
            "credited_to": settlement.credited_to,
            "deposits_processed": settlement.deposits_processed,
            "skipped": settlement.skipped
        }

    @router.post("/holders/{holder}/claim")
    async def claim(holder: str):
        paid = token.claim(holder)
        return {"holder": holder, "paid": str(paid)}

    @router.post("/transfers")
    async def transfer(request: TransferRequest, caller: str = Depends(require_caller)):
        token.transfer(caller, request.recipient, request.amount)
        return {
            "sender": caller,
            "recipient": request.recipient,
            "amount": str(request.amount)
        }

    @router.post("/mint", status_code=status.HTTP_201_CREATED)
    async def mint(request: MintRequest, caller: str = Depends(require_caller)):
        token.mint(caller, request.recipient, request.amount)
        return {
            "recipient": request.recipient,
            "amount": str(request.amount),
            "balance": str(token.balance_of(request.recipient)),
            "total_supply": str(token.total_supply())
        }

    @router.post("/custody/fund")
    async def fund_custody(request: FundRequest, caller: str = Depends(require_caller)):
        funds = token.fund_custody(caller, request.account, request.amount)
        return {"account": request.account, "funds": str(funds)}

    @router.post("/intermediaries", status_code=status.HTTP_201_CREATED)
    async def register_intermediary(request: IntermediaryRequest, caller: str = Depends(require_caller)):
        token.register_intermediary(caller, request.account)
        return {"account": request.account, "intermediary": True}

    @router.delete("/intermediaries/{account}")
    async def unregister_intermediary(account: str, caller: str = Depends(require_caller)):
        token.unregister_intermediary(caller, account)
        return {"account": account, "intermediary": False}

    @router.post("/intermediaries/{intermediary}/orders")
    async def register_pending_order(intermediary: str, request: PendingOrderRequest,
                                     caller: str = Depends(require_caller)):
        if caller != intermediary:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail="Orders can only be registered by the intermediary itself")
        held = token.register_pending_order(caller, request.beneficiary, request.amount)
        return {"beneficiary": request.beneficiary, "held": str(held)}

    @router.post("/intermediaries/{intermediary}/orders/release")
    async def release_pending_order(intermediary: str, request: PendingOrderRequest,
                                    caller: str = Depends(require_caller)):
        if caller != intermediary:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail="Orders can only be released by the intermediary itself")
        held = token.release_pending_order(caller, request.beneficiary, request.amount)
        return {"beneficiary": request.beneficiary, "held": str(held)}

    return router


def create_app(token: Optional[YieldBearingToken] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    token = token or YieldBearingToken()
    app = FastAPI(
        title="Yield Ledger API",
        description="Balance-seconds weighted yield accrual for token holders",
        version=__version__
    )
    app.state.token = token

    @app.exception_handler(YieldLedgerError)
    async def ledger_error_handler(request: Request, exc: YieldLedgerError):
        return JSONResponse(
            status_code=_status_for(exc),
            content={"detail": str(exc), "error": type(exc).__name__}
        )

    app.include_router(build_router(token))

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "yield_ledger_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API with uvicorn using configured defaults"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(create_app(), host=host or config.api_host, port=port or config.api_port)
