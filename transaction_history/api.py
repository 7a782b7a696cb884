"""
FastAPI REST API Module

Provides REST endpoints for crediting and debiting the account, reading the
balance and the transaction history, plus health, integrity verification and
Prometheus metrics. Runs on port 3000 by default.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from json import JSONDecodeError
from typing import List, Optional, Union
from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field, ValidationError
from starlette.routing import Match
import uvicorn

from .config import LedgerConfig, get_config
from .engine import BalanceEngine
from .ledger import (
    LedgerEntry, TransactionKind, CommitOutcome,
    LedgerRejection, StorageFailureError, LedgerIntegrityError
)
from .logging_config import setup_logging, get_logger
from .metrics import APIMetrics
from .storage import StoreError, create_store


logger = get_logger("txhistory.api")


# Pydantic models for API requests/responses
class AmountRequest(BaseModel):
    amount: Union[int, float, str] = Field(..., description="Amount as a number or decimal string")


class EntryModel(BaseModel):
    sequence: int
    kind: str
    amount: str = Field(..., description="Decimal amount as string")
    balance: str = Field(..., description="Balance after this entry as string")
    timestamp: str

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> 'EntryModel':
        return cls(**entry.to_dict())


class SubmissionResponse(EntryModel):
    message: str


class BalanceResponse(BaseModel):
    balance: str


# Dependencies
def get_engine(request: Request) -> BalanceEngine:
    return request.app.state.engine


def get_metrics(request: Request) -> Optional[APIMetrics]:
    return request.app.state.metrics


FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

AMOUNT_BODY_SCHEMA = {
    "requestBody": {
        "required": True,
        "content": {
            "application/json": {"schema": AmountRequest.model_json_schema()},
            FORM_CONTENT_TYPE: {"schema": AmountRequest.model_json_schema()},
        }
    }
}


async def read_amount(request: Request) -> AmountRequest:
    """
    Parse the submission body

    Accepts a JSON object or a URL-encoded form, so the HTML front-end can
    post directly. Malformed bodies fail with FastAPI's usual 422.
    """
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(FORM_CONTENT_TYPE):
            data = dict(await request.form())
        else:
            data = await request.json()
        return AmountRequest.model_validate(data)
    except JSONDecodeError as e:
        raise RequestValidationError([{
            "type": "json_invalid",
            "loc": ("body", e.pos),
            "msg": "JSON decode error",
            "input": {},
            "ctx": {"error": e.msg}
        }])
    except UnicodeDecodeError:
        raise RequestValidationError([{
            "type": "json_invalid",
            "loc": ("body",),
            "msg": "Body is not valid UTF-8",
            "input": {}
        }])
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False))


def route_label(request: Request) -> str:
    """Route template for metrics labels; unknown paths share one label"""
    partial = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", "") or "/"
        if match == Match.PARTIAL and partial is None:
            partial = getattr(route, "path", "") or "/"
    return partial or "unmatched"


def _submit(
    engine: BalanceEngine,
    metrics: Optional[APIMetrics],
    kind: TransactionKind,
    request: AmountRequest
) -> SubmissionResponse:
    """Run one submission and map rejections onto HTTP errors"""
    try:
        entry = engine.submit(kind, request.amount)
    except StorageFailureError as e:
        if metrics:
            metrics.record_submission(kind.value, e.outcome.value)
        if e.outcome == CommitOutcome.UNKNOWN:
            raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=e.to_dict())
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())
    except LedgerRejection as e:
        if metrics:
            metrics.record_submission(kind.value, "rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())

    if metrics:
        metrics.record_submission(kind.value, "committed")

    return SubmissionResponse(
        message=f"{kind.value} successful",
        **entry.to_dict()
    )


def create_app(engine: Optional[BalanceEngine] = None, config: Optional[LedgerConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        engine: Balance engine to serve; built from configuration when omitted
        config: Settings to use instead of the global configuration
    """
    config = config or get_config()
    owns_store = engine is None
    if engine is None:
        store = create_store(config.database_url, timeout=config.storage_timeout_seconds)
        engine = BalanceEngine(store, precision=config.amount_precision)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_store:
            engine.store.close()

    app = FastAPI(
        title="Transaction History API",
        description="Single-account credit/debit ledger with running balance",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.engine = engine
    app.state.metrics = APIMetrics() if config.enable_metrics else None

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if app.state.metrics:
        @app.middleware("http")
        async def count_requests(request: Request, call_next):
            request.app.state.metrics.record_request(request.method, route_label(request))
            return await call_next(request)

    # Ledger endpoints are sync so they run in the threadpool and serialize
    # on the engine's write lock rather than blocking the event loop
    @app.post("/credit", response_model=SubmissionResponse, openapi_extra=AMOUNT_BODY_SCHEMA)
    def credit(
        request: AmountRequest = Depends(read_amount),
        engine: BalanceEngine = Depends(get_engine),
        metrics: Optional[APIMetrics] = Depends(get_metrics)
    ):
        """Credit the account"""
        return _submit(engine, metrics, TransactionKind.CREDIT, request)

    @app.post("/debit", response_model=SubmissionResponse, openapi_extra=AMOUNT_BODY_SCHEMA)
    def debit(
        request: AmountRequest = Depends(read_amount),
        engine: BalanceEngine = Depends(get_engine),
        metrics: Optional[APIMetrics] = Depends(get_metrics)
    ):
        """Debit the account if the balance covers the amount"""
        return _submit(engine, metrics, TransactionKind.DEBIT, request)

    @app.get("/balance", response_model=BalanceResponse)
    def get_balance(engine: BalanceEngine = Depends(get_engine)):
        """Get the current balance"""
        try:
            return BalanceResponse(balance=str(engine.balance()))
        except StorageFailureError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    @app.get("/history", response_model=List[EntryModel])
    def get_history(engine: BalanceEngine = Depends(get_engine)):
        """Get all entries, most recent first"""
        try:
            return [EntryModel.from_entry(entry) for entry in engine.history()]
        except StorageFailureError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    @app.get("/verify")
    def verify_ledger(engine: BalanceEngine = Depends(get_engine)):
        """Replay the stored history and check every balance"""
        try:
            entries = engine.verify()
            balance = engine.balance()
        except StorageFailureError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())
        except LedgerIntegrityError as e:
            logger.error(f"Ledger integrity check failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"reason": "integrity_error", "message": str(e), "sequence": e.sequence}
            )
        return {"status": "consistent", "entries": entries, "balance": str(balance)}

    @app.get("/health")
    def health_check(engine: BalanceEngine = Depends(get_engine)):
        """Health check endpoint"""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            entries = engine.store.count()
        except StoreError as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "timestamp": timestamp}
            )
        return {"status": "healthy", "entries": entries, "timestamp": timestamp}

    if app.state.metrics:
        @app.get("/metrics")
        async def get_metrics_payload(request: Request):
            """Prometheus metrics endpoint"""
            payload, content_type = request.app.state.metrics.render()
            return Response(content=payload, media_type=content_type)

    if config.static_dir:
        # Static files (mount last - it's a catch-all sub-app)
        app.mount("/", StaticFiles(directory=config.static_dir, html=True), name="static")
    else:
        @app.get("/")
        async def get_api_info():
            """Get API information"""
            return {
                "name": "Transaction History API",
                "version": "1.0.0",
                "endpoints": {
                    "docs": "/docs",
                    "health": "/health",
                    "credit": "/credit",
                    "debit": "/debit",
                    "balance": "/balance",
                    "history": "/history",
                    "verify": "/verify",
                }
            }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, fmt=config.log_format)
    uvicorn.run(
        "transaction_history.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
