import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Depends, Header, HTTPException, Request, Cookie
from fastapi.responses import PlainTextResponse, RedirectResponse

from common.circuit_breaker import get_all_circuit_breakers
from common.error_handling import add_error_handlers, SignatureMismatch, security_logger
from common.schemas import (
    BillRequest, RechargeRequest, OpenAccountRequest, CheckoutRequest, VerificationEmailRequest,
    LedgerEntryView, OrderView,
)
from common.security import verify_token
from common.settings import settings
from common.tracing import points_tracer, tracing_middleware
from points_service.billing import BillingService
from points_service.db import SessionLocal, engine
from points_service.ecpay import require_valid_signature
from points_service.ledger import LedgerStore
from points_service.mailer import VerificationMailer, build_verification_url
from points_service.migrations import migrate, current_version
from points_service.orders import GatewayResult, OrderStore, to_view
from points_service.recharge import CheckoutService
from points_service.recharge_queue import PaidNotification, ReconciliationQueue
from points_service.verification import ConsumeStatus, VerificationTokenStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

ledger = LedgerStore(SessionLocal)
billing = BillingService(SessionLocal)
orders = OrderStore(SessionLocal)
checkout = CheckoutService(orders)
reconciliation = ReconciliationQueue(SessionLocal, orders)
tokens = VerificationTokenStore(SessionLocal)
mailer = VerificationMailer()

@asynccontextmanager
async def lifespan(app: FastAPI):
    applied = migrate(engine)
    logger.info(f"Points service starting, schema version {current_version(engine)} (applied {applied})")
    yield
    await reconciliation.drain(timeout=settings.recharge_max_delay * settings.recharge_max_attempts)

app = FastAPI(title="Points Service", lifespan=lifespan)
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, points_tracer)

async def internal_auth(authorization: str = Header(default="")):
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        verify_token(token, audience=settings.internal_audience)
    except Exception as e:
        raise HTTPException(401, f"invalid internal token: {e}")

async def current_uid(uid: Optional[str] = Cookie(default=None)) -> str:
    if not uid:
        raise HTTPException(401, "UNAUTHENTICATED")
    return uid

async def form_payload(request: Request) -> dict:
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}

def ack(body: str, status_code: int = 200) -> PlainTextResponse:
    return PlainTextResponse(body, status_code=status_code)

@app.get("/health")
async def health():
    return {
        "ok": True,
        "service": "points",
        "schema_version": current_version(engine),
        "in_flight_reconciliations": len(reconciliation.in_flight),
        "circuit_breakers": get_all_circuit_breakers(),
    }

# Points

@app.post("/dl/bill")
async def bill(body: BillRequest):
    """Charge one download; repeats within the same minute come back as deduped."""
    result = billing.bill(body.account_id, body.link_id, body.platform)
    return result.to_response()

@app.post("/accounts", dependencies=[Depends(internal_auth)])
async def open_account(body: OpenAccountRequest):
    balance = ledger.open_account(body.account_id, body.user_id, body.initial_balance)
    return {"ok": True, "account_id": body.account_id, "balance": balance}

@app.post("/recharge", dependencies=[Depends(internal_auth)])
async def recharge(body: RechargeRequest):
    result = ledger.credit(body.account_id, body.amount, body.memo)
    return {"ok": True, "amount": body.amount, "balance": result.balance_after, "ledger_id": result.ledger_id}

@app.get("/accounts/{account_id}/balance", dependencies=[Depends(internal_auth)])
async def balance(account_id: str):
    return {"ok": True, "account_id": account_id, "balance": ledger.get_balance(account_id)}

@app.get("/accounts/{account_id}/ledger", dependencies=[Depends(internal_auth)])
async def ledger_history(account_id: str, limit: int = 50, offset: int = 0):
    limit = max(1, min(limit, 200))
    entries = ledger.list_entries(account_id, limit=limit, offset=max(0, offset))
    return {
        "ok": True,
        "account_id": account_id,
        "entries": [
            LedgerEntryView(
                id=e.id, delta=e.delta, reason=e.reason, link_id=e.link_id, platform=e.platform,
                bucket_minute=e.bucket_minute, balance_after=e.balance_after, created_at=e.created_at,
            ).model_dump()
            for e in entries
        ],
    }

@app.get("/accounts/{account_id}/audit", dependencies=[Depends(internal_auth)])
async def audit(account_id: str):
    result = ledger.audit(account_id)
    return {"ok": True, "account_id": account_id, "balance": result.balance,
            "ledger_sum": result.ledger_sum, "consistent": result.consistent}

# ECPay recharge

@app.post("/recharge/ecpay")
async def start_checkout(body: CheckoutRequest, uid: str = Depends(current_uid)):
    return checkout.start(uid, body).to_response()

@app.post("/recharge/ecpay/notify")
async def ecpay_notify(request: Request):
    """Server-to-server payment result. The gateway redelivers until it reads 1|OK."""
    payload = await form_payload(request)
    trade_no = payload.get("MerchantTradeNo")
    if not trade_no:
        return ack("0|MissingTradeNo", 400)

    try:
        try:
            require_valid_signature(payload)
        except SignatureMismatch:
            security_logger.warning(f"Notify for {trade_no} failed CheckMacValue verification")
            return ack("0|CheckMacValueError", 400)

        if orders.find(trade_no) is None:
            logger.warning(f"Notify for unknown order {trade_no}")
            return ack("1|OK")

        orders.record_raw_notify(trade_no, payload)
        gateway = GatewayResult.from_payload(payload)

        if gateway.rtn_code == "1":
            await reconciliation.process(PaidNotification(trade_no, gateway))
        else:
            orders.mark_failed(trade_no, gateway)
            logger.warning(f"Order {trade_no} failed at gateway: {gateway.rtn_code} {gateway.rtn_msg}")
        return ack("1|OK")
    except Exception:
        logger.exception(f"Notify handling failed for {trade_no}")
        return ack("0|Exception", 500)

@app.post("/recharge/ecpay/payment-info")
async def ecpay_payment_info(request: Request):
    """Non-terminal payment instructions (ATM virtual account, CVS code...)."""
    payload = await form_payload(request)
    trade_no = payload.get("MerchantTradeNo")
    if not trade_no:
        return ack("0|MissingTradeNo", 400)

    try:
        try:
            require_valid_signature(payload)
        except SignatureMismatch:
            security_logger.warning(f"Payment info for {trade_no} failed CheckMacValue verification")
            return ack("0|CheckMacValueError", 400)

        if not orders.record_payment_info(trade_no, GatewayResult.from_payload(payload), payload):
            logger.warning(f"Payment info for unknown order {trade_no}")
        return ack("1|OK")
    except Exception:
        logger.exception(f"Payment info handling failed for {trade_no}")
        return ack("0|Exception", 500)

def _record_order_result(payload: dict):
    trade_no = payload.get("MerchantTradeNo")
    if not trade_no:
        return
    try:
        orders.record_payment_info(trade_no, GatewayResult.from_payload(payload), payload)
    except Exception:
        logger.exception(f"Recording order result for {trade_no} failed")

def _complete_redirect(payload: dict) -> RedirectResponse:
    echoed = {k: v for k, v in payload.items() if v}
    target = f"{settings.public_base_url}/recharge/complete"
    if echoed:
        target = f"{target}?{urlencode(echoed)}"
    response = RedirectResponse(target, status_code=303)
    trade_no = payload.get("MerchantTradeNo")
    if trade_no:
        response.set_cookie("ecpay_last_trade", trade_no, max_age=600, path="/", samesite="lax", httponly=False)
    return response

@app.post("/recharge/ecpay/order-result")
async def ecpay_order_result(request: Request):
    """Browser return from the cashier page."""
    payload = await form_payload(request)
    try:
        require_valid_signature(payload)
    except SignatureMismatch:
        trade_no = payload.get("MerchantTradeNo")
        security_logger.warning(f"Order result for {trade_no or 'unknown'} failed CheckMacValue verification")
        query = {"merchantTradeNo": trade_no} if trade_no else {}
        query["error"] = "CheckMacValueError"
        return RedirectResponse(f"{settings.public_base_url}/recharge/error?{urlencode(query)}", status_code=303)

    _record_order_result(payload)
    return _complete_redirect(payload)

@app.get("/recharge/ecpay/order-result")
async def ecpay_order_result_get(request: Request):
    payload = dict(request.query_params)
    # Unsigned browser hops are only echoed, never stored
    if payload.get("CheckMacValue"):
        try:
            require_valid_signature(payload)
            _record_order_result(payload)
        except SignatureMismatch:
            security_logger.warning(f"Order result GET for {payload.get('MerchantTradeNo')} failed verification")
    return _complete_redirect(payload)

@app.get("/recharge/ecpay/orders/{trade_no}")
async def order_view(trade_no: str, uid: str = Depends(current_uid)):
    order = orders.find(trade_no)
    if order is None or order.account_id != uid:
        raise HTTPException(404, "ORDER_NOT_FOUND")
    return {"ok": True, "order": OrderView(**to_view(order)).model_dump()}

# Email verification

@app.post("/auth/verification-email", dependencies=[Depends(internal_auth)])
async def send_verification_email(body: VerificationEmailRequest):
    tokens.ensure_user(body.user_id, body.email)
    issued = tokens.issue(body.user_id, body.ttl_seconds)
    await mailer.send_verification(body.email, build_verification_url(issued.token))
    return {"ok": True, "expires_at": issued.expires_at}

def _verification_redirect(status: str) -> RedirectResponse:
    base = settings.app_base_url.rstrip("/")
    return RedirectResponse(f"{base}/email-verification?{urlencode({'status': status})}", status_code=302)

@app.get("/auth/verify-email")
async def verify_email(token: Optional[str] = None):
    token = (token or "").strip()
    if not token:
        return _verification_redirect(ConsumeStatus.INVALID.value)

    try:
        result = tokens.consume(token)
        if result.status is ConsumeStatus.SUCCESS:
            tokens.mark_verified(result.user_id)
            response = _verification_redirect(result.status.value)
            response.set_cookie("uid", result.user_id, max_age=60 * 60 * 24 * 7, path="/",
                                httponly=True, secure=True, samesite="lax")
            return response
        return _verification_redirect(result.status.value)
    except Exception:
        logger.exception("Email verification failed")
        return _verification_redirect("error")

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
