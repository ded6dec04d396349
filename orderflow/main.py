from time import perf_counter
from typing import List, Optional
from uuid import UUID
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from orderflow.auth import SIGNATURE_HEADER, SessionAuthenticator, verify_webhook_signature
from orderflow.config import settings
from orderflow.db import engine, SessionLocal, ping_db
from orderflow.errors import CheckoutError, NotFoundError
from orderflow.gateway import GatewayClient
from orderflow.log import configure_logging, get_logger
from orderflow.metrics import metrics_asgi_app
from orderflow.models import Base
from orderflow.schemas import (
    LedgerEntryOut, LedgerSummaryOut, OrderCreate, OrderDetail, PaymentWebhook, RefundRequest
)
from orderflow.services import orders, payments, refunds
from orderflow.services.ledger import LedgerGateway

configure_logging(settings.log_level)
logger = get_logger("api")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # runs once at startup
    Base.metadata.create_all(bind=engine)
    logger.info("startup", gateway=settings.gateway_base_url, webhook_signature=bool(settings.webhook_secret))
    yield

app = FastAPI(title="Orderflow Checkout", lifespan=lifespan)


app.mount("/metrics", metrics_asgi_app)


# ----- dependencies ----------------------------------------------------------

def get_ledger() -> LedgerGateway:
    return LedgerGateway(SessionLocal)

def get_authenticator() -> SessionAuthenticator:
    return SessionAuthenticator(SessionLocal)

def get_gateway():
    with GatewayClient.from_settings(settings) as gateway:
        yield gateway

def current_buyer(
    authorization: Optional[str] = Header(default=None),
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> str:
    return authenticator.buyer_for(authorization)

async def check_webhook_signature(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
) -> None:
    verify_webhook_signature(settings.webhook_secret, await request.body(), signature)


# ----- error mapping ---------------------------------------------------------

@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_failed", path=request.url.path, kind=exc.kind, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    missing, invalid = [], []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
        if err.get("type") == "json_invalid":
            return JSONResponse(status_code=400, content={"success": False, "error": "Malformed JSON body"})
        (missing if err.get("type") == "missing" else invalid).append(field)

    parts = []
    if missing:
        parts.append(f"missing required fields: {', '.join(missing)}")
    if invalid:
        parts.append(f"invalid fields: {', '.join(invalid)}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(parts), "missing": missing, "invalid": invalid},
    )

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("unhandled_error", method=request.method, path=request.url.path)
        response = JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})
    logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((perf_counter() - start) * 1000, 1),
    )
    return response

# Added last so it wraps everything, error responses included
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- routes ----------------------------------------------------------------

@app.get("/")
def root():
    return {"service": "orderflow", "docs": "/docs"}

@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except SQLAlchemyError:
        return {"ok": False, "db": "down"}

@app.post("/orders", tags=["orders"])
def create_order(
    payload: OrderCreate,
    buyer_id: str = Depends(current_buyer),
    ledger: LedgerGateway = Depends(get_ledger),
):
    status_code, body = orders.create_order(ledger, buyer_id, payload)
    return JSONResponse(status_code=status_code, content=body)

@app.post("/payments/confirm", tags=["payments"], dependencies=[Depends(check_webhook_signature)])
def confirm_payment(
    payload: PaymentWebhook,
    ledger: LedgerGateway = Depends(get_ledger),
    gateway: GatewayClient = Depends(get_gateway),
):
    # No buyer session here: the gateway lookup inside the service is what authenticates the call
    status_code, body = payments.confirm_payment(ledger, gateway, payload)
    return JSONResponse(status_code=status_code, content=body)

@app.post("/payments/refund", tags=["payments"])
def refund_payment(
    payload: RefundRequest,
    buyer_id: str = Depends(current_buyer),
    ledger: LedgerGateway = Depends(get_ledger),
    gateway: GatewayClient = Depends(get_gateway),
):
    status_code, body = refunds.refund_payment(ledger, gateway, buyer_id, payload)
    return JSONResponse(status_code=status_code, content=body)

@app.get("/orders/{order_id}", response_model=OrderDetail, tags=["orders"])
def get_order(
    order_id: UUID,
    buyer_id: str = Depends(current_buyer),
    ledger: LedgerGateway = Depends(get_ledger),
):
    order = ledger.order_detail(order_id, buyer_id)
    if not order:
        raise NotFoundError("Order not found")
    return order

@app.get("/orders/{order_id}/ledger", response_model=List[LedgerEntryOut], tags=["ledger"])
def get_order_ledger(
    order_id: UUID,
    buyer_id: str = Depends(current_buyer),
    ledger: LedgerGateway = Depends(get_ledger),
):
    # 404 if the order doesn't exist or isn't the caller's (nicer than returning empty)
    if not ledger.get_order_for_buyer(order_id, buyer_id):
        raise NotFoundError("Order not found")
    return ledger.journal(order_id)

@app.get("/orders/{order_id}/ledger/summary", response_model=LedgerSummaryOut, tags=["ledger"])
def get_order_ledger_summary(
    order_id: UUID,
    buyer_id: str = Depends(current_buyer),
    ledger: LedgerGateway = Depends(get_ledger),
):
    if not ledger.get_order_for_buyer(order_id, buyer_id):
        raise NotFoundError("Order not found")
    return ledger.journal_summary(order_id)
