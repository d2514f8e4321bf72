import logging
from dataclasses import dataclass

from common.error_handling import InvalidAmount
from common.schemas import CheckoutRequest
from common.settings import settings
from points_service.ecpay import (
    CheckoutForm, CheckoutParams, EcpayCredentials, build_checkout_form, get_credentials, round_amount,
)
from points_service.orders import OrderStore

logger = logging.getLogger(__name__)

def _read(value):
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None

@dataclass
class CheckoutResult:
    checkout: CheckoutForm
    points: int

    def to_response(self) -> dict:
        return {
            "ok": True,
            "action": self.checkout.action,
            "form": self.checkout.form,
            "merchantTradeNo": self.checkout.merchant_trade_no,
            "points": self.points,
        }

class CheckoutService:
    """Builds the signed cashier form and records the PENDING order it pays for."""

    def __init__(self, orders: OrderStore, config=settings, credentials: EcpayCredentials = None):
        self.orders = orders
        self.config = config
        self.credentials = credentials

    def _urls(self, request: CheckoutRequest) -> dict:
        base = self.config.public_base_url
        method = self.config.ecpay_payment_method or "Credit"
        credit = method == "Credit"
        return {
            "return_url": _read(self.config.ecpay_return_url) or _read(request.returnUrl)
                          or f"{base}/recharge/ecpay/notify",
            "client_back_url": _read(self.config.ecpay_client_back_url) or _read(request.clientBackUrl)
                               or f"{base}/recharge",
            "order_result_url": _read(self.config.ecpay_order_result_url) or _read(request.orderResultUrl)
                                or f"{base}/recharge/ecpay/order-result",
            "payment_info_url": "" if credit else (_read(self.config.ecpay_payment_info_url)
                                                   or f"{base}/recharge/ecpay/payment-info"),
            "client_redirect_url": "" if credit else (_read(self.config.ecpay_client_redirect_url)
                                                      or f"{base}/recharge/payment-info"),
            "payment_method": method,
        }

    def start(self, account_id: str, request: CheckoutRequest) -> CheckoutResult:
        amount = round_amount(request.amount)
        if request.points is not None and request.points <= 0:
            raise InvalidAmount("points must be positive", field="points")
        points = request.points or amount

        description = _read(request.description) or "Recharge order"
        item_name = _read(request.itemName) or (f"Points {points}" if request.points else f"Recharge {amount}")
        custom_fields = (account_id, str(points), str(amount))

        checkout = build_checkout_form(
            CheckoutParams(
                total_amount=amount,
                description=description,
                item_name=item_name,
                need_extra_paid_info=self.config.ecpay_need_extra_paid_info,
                custom_fields=custom_fields,
                **self._urls(request),
            ),
            self.credentials or get_credentials(self.config),
        )

        self.orders.create(
            checkout.merchant_trade_no,
            account_id,
            points=points,
            amount=amount,
            description=description,
            item_name=item_name,
            custom_fields=custom_fields,
        )
        logger.info(f"Checkout started for {account_id}: {checkout.merchant_trade_no} amount={amount} points={points}")
        return CheckoutResult(checkout=checkout, points=points)
