from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.transaction import TransactionStatus, TransactionType
from app.services.wallet import MAX_AMOUNT


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class DepositRequest(CamelModel):
    wallet_address: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)


class DepositMetadataOut(CamelModel):
    token_mint: str
    decimals: int
    amount: str
    reference_code: str
    memo: str


class DepositResponse(CamelModel):
    metadata: DepositMetadataOut


class DepositWebhookData(CamelModel):
    user: Optional[str] = None
    amount: Optional[Union[str, int]] = None


class DepositWebhookEvent(CamelModel):
    signature: Optional[str] = None
    event_type: Optional[str] = None
    success: bool = False
    slot: Optional[int] = None
    block_time: Optional[int] = None
    data: Optional[DepositWebhookData] = None


class DepositWebhookPayload(CamelModel):
    event: Optional[DepositWebhookEvent] = None
    timestamp: Optional[int] = None
    indexer_version: Optional[str] = None


class WebhookResult(CamelModel):
    processed: bool


class CreditOut(CamelModel):
    credit: str


class TransactionOut(CamelModel):
    id: int
    tx_type: TransactionType | str
    status: TransactionStatus | str
    amount: Decimal
    fee_amount: Decimal
    signature: Optional[str] = None
    reference_code: Optional[str] = None
    reference_id: Optional[int] = None
    meta: Optional[dict[str, Any]] = None
    occurred_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class WithdrawRequest(CamelModel):
    recipient_address: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)


class WithdrawOut(CamelModel):
    signature: Optional[str] = None
    transaction_id: int
    reference_code: str
    recipient_address: str
    amount: str
    available_amount: str
