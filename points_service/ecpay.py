"""
ECPay AIO checkout: CheckMacValue signing/verification and checkout form building.

CheckMacValue is computed over every field except CheckMacValue itself:
  1. sort keys case-insensitively
  2. join as key=value with '&' and wrap as HashKey=<key>&...&HashIV=<iv>
  3. url-encode the whole string form-style (space -> '+', only "!()*-._" kept, "~" -> %7E), lowercase it
  4. SHA-256, hex digest, uppercase
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Mapping, Optional
from urllib.parse import quote_plus

from common.error_handling import GatewayNotConfigured, InvalidAmount, SignatureMismatch
from common.settings import settings

logger = logging.getLogger(__name__)

STAGE_CASHIER_URL = "https://payment-stage.ecpay.com.tw/Cashier/AioCheckOut/V5"
PROD_CASHIER_URL = "https://payment.ecpay.com.tw/Cashier/AioCheckOut/V5"

SIGNATURE_FIELD = "CheckMacValue"
SAFE_CHARS = "!()*-._"
TRADE_NO_PREFIX = "RG"

# The gateway stamps and expects merchant times in Taiwan time
GATEWAY_TZ = timezone(timedelta(hours=8))

@dataclass(frozen=True)
class EcpayCredentials:
    merchant_id: str
    hash_key: str
    hash_iv: str
    mode: str = "stage"

def get_credentials(config=settings) -> EcpayCredentials:
    merchant_id = (config.ecpay_merchant_id or "").strip()
    hash_key = (config.ecpay_hash_key or "").strip()
    hash_iv = (config.ecpay_hash_iv or "").strip()
    if not merchant_id or not hash_key or not hash_iv:
        raise GatewayNotConfigured(
            "ECPay credentials are not configured. Set ECPAY_MERCHANT_ID, ECPAY_HASH_KEY and ECPAY_HASH_IV."
        )
    return EcpayCredentials(merchant_id, hash_key, hash_iv, (config.ecpay_mode or "stage").strip().lower())

def cashier_url(mode: str) -> str:
    return PROD_CASHIER_URL if mode in ("prod", "production") else STAGE_CASHIER_URL

def encode_for_signature(raw: str) -> str:
    # quote_plus never escapes "~"; the gateway does
    return quote_plus(raw, safe=SAFE_CHARS).replace("~", "%7E").lower()

def compute_check_mac_value(params: Mapping, hash_key: str, hash_iv: str) -> str:
    keys = sorted((k for k in params if k != SIGNATURE_FIELD), key=str.lower)
    query = "&".join(f"{k}={'' if params[k] is None else params[k]}" for k in keys)
    raw = f"HashKey={hash_key}&{query}&HashIV={hash_iv}"
    return hashlib.sha256(encode_for_signature(raw).encode("utf-8")).hexdigest().upper()

def verify_check_mac_value(params: Mapping, hash_key: str, hash_iv: str) -> bool:
    provided = str(params.get(SIGNATURE_FIELD) or "").strip()
    if not provided:
        return False
    expected = compute_check_mac_value(params, hash_key, hash_iv)
    return hmac.compare_digest(expected.encode("ascii"), provided.upper().encode("ascii", "replace"))

def require_valid_signature(params: Mapping, credentials: EcpayCredentials = None):
    """Raise SignatureMismatch unless the payload was signed with our HashKey/HashIV."""
    credentials = credentials or get_credentials()
    if not verify_check_mac_value(params, credentials.hash_key, credentials.hash_iv):
        raise SignatureMismatch(params.get("MerchantTradeNo"))

def gateway_now() -> datetime:
    return datetime.now(GATEWAY_TZ)

def format_trade_date(moment: datetime) -> str:
    return moment.strftime("%Y/%m/%d %H:%M:%S")

def generate_trade_no(moment: datetime = None) -> str:
    """RG + yyyyMMddHHmmss + 4 random digits: 20 characters, the gateway's limit."""
    moment = moment or gateway_now()
    return f"{TRADE_NO_PREFIX}{moment.strftime('%Y%m%d%H%M%S')}{secrets.randbelow(10_000):04d}"

def round_amount(value) -> int:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"amount {value!r} is not a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("amount must be a positive number")
    rounded = int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rounded <= 0:
        raise InvalidAmount("amount must round to at least 1")
    return rounded

@dataclass
class CheckoutParams:
    total_amount: int
    description: str
    item_name: str
    return_url: str
    client_back_url: str = ""
    order_result_url: str = ""
    payment_method: str = "Credit"
    payment_info_url: str = ""
    client_redirect_url: str = ""
    need_extra_paid_info: str = "Y"
    custom_fields: tuple = field(default_factory=tuple)
    trade_no: Optional[str] = None
    trade_date: Optional[datetime] = None

@dataclass
class CheckoutForm:
    action: str
    form: dict

    @property
    def merchant_trade_no(self) -> str:
        return self.form["MerchantTradeNo"]

def build_checkout_form(params: CheckoutParams, credentials: EcpayCredentials = None) -> CheckoutForm:
    credentials = credentials or get_credentials()
    if params.total_amount <= 0:
        raise InvalidAmount("TotalAmount must be positive")

    moment = params.trade_date or gateway_now()
    credit_only = params.payment_method == "Credit"

    form = {
        "MerchantID": credentials.merchant_id,
        "MerchantTradeNo": params.trade_no or generate_trade_no(moment),
        "MerchantTradeDate": format_trade_date(moment),
        "PaymentType": "aio",
        "TotalAmount": str(params.total_amount),
        "TradeDesc": params.description,
        "ItemName": params.item_name,
        "ReturnURL": params.return_url,
        "ChoosePayment": params.payment_method,
        "ClientBackURL": params.client_back_url or "",
        "OrderResultURL": params.order_result_url or "",
        "NeedExtraPaidInfo": "N" if credit_only else ("N" if params.need_extra_paid_info == "N" else "Y"),
        "EncryptType": "1",
    }
    if not credit_only:
        form["PaymentInfoURL"] = params.payment_info_url
        form["ClientRedirectURL"] = params.client_redirect_url
    for index, value in enumerate(params.custom_fields[:3], start=1):
        form[f"CustomField{index}"] = str(value)

    form[SIGNATURE_FIELD] = compute_check_mac_value(form, credentials.hash_key, credentials.hash_iv)
    return CheckoutForm(action=cashier_url(credentials.mode), form=form)
