from pydantic import BaseModel, Field
from typing import Literal, Optional

class BillRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    link_id: str = Field(min_length=1, max_length=64)
    platform: str = Field(min_length=1, max_length=16)

class RechargeRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    amount: int
    memo: Optional[str] = Field(default=None, max_length=200)

class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)
    initial_balance: int = 0

class CheckoutRequest(BaseModel):
    amount: float
    points: Optional[int] = None
    description: Optional[str] = None
    itemName: Optional[str] = None
    returnUrl: Optional[str] = None
    clientBackUrl: Optional[str] = None
    orderResultUrl: Optional[str] = None

class VerificationEmailRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    email: str = Field(min_length=3, max_length=254)
    ttl_seconds: Optional[int] = None

class LedgerEntryView(BaseModel):
    id: str
    delta: int
    reason: str
    link_id: Optional[str] = None
    platform: Optional[str] = None
    bucket_minute: Optional[int] = None
    balance_after: Optional[int] = None
    created_at: int

class OrderView(BaseModel):
    merchantTradeNo: str
    status: Literal["PENDING", "PAID", "FAILED"]
    points: int
    amount: int
    currency: str
    rtnCode: Optional[str] = None
    rtnMsg: Optional[str] = None
    paymentType: Optional[str] = None
    paymentMethod: Optional[str] = None
    tradeNo: Optional[str] = None
    tradeAmt: Optional[int] = None
    paymentDate: Optional[str] = None
    paidAt: Optional[int] = None
    ledgerId: Optional[str] = None
    balanceAfter: Optional[int] = None
    createdAt: int
    updatedAt: int
    rawPaymentInfo: Optional[dict] = None
