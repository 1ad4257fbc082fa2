from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from app.models import CashMovementType, DiscountType, OrderType


class OpenShiftIn(BaseModel):
    opening_cash: Decimal = Field(ge=0)


class CashMovementIn(BaseModel):
    movement_type: CashMovementType
    amount: Decimal = Field(gt=0)
    reason: str


class CloseShiftIn(BaseModel):
    closing_cash: Decimal = Field(ge=0)


class DraftIn(BaseModel):
    order_type: OrderType = OrderType.TAKEAWAY
    table_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None


class CommitItemIn(BaseModel):
    """``order_id`` targets an existing order; without it ``draft`` describes the order to create."""

    order_id: int | None = None
    draft: DraftIn | None = None
    menu_item_id: int
    quantity: int = Field(default=1, ge=1)
    modifier_ids: list[int] = Field(default_factory=list)
    notes: str | None = None
    expected_version: int | None = None


class LineQuantityIn(BaseModel):
    quantity: int = Field(ge=1)
    expected_version: int | None = None


class LineNotesIn(BaseModel):
    notes: str | None = None
    expected_version: int | None = None


class ReasonIn(BaseModel):
    reason: str = ''
    expected_version: int | None = None


class VersionIn(BaseModel):
    expected_version: int | None = None


class DiscountIn(BaseModel):
    discount_type: DiscountType
    value: Decimal
    expected_version: int | None = None


class PaymentSplitIn(BaseModel):
    method: str
    amount: Decimal


class PaymentIn(BaseModel):
    splits: list[PaymentSplitIn]
    expected_version: int | None = None


class RefundIn(BaseModel):
    amount: Decimal | None = None
    reason: str = ''


class TransferLineIn(BaseModel):
    line_id: int
    target_order_id: int


class StartNewOrderIn(BaseModel):
    current_order_id: int | None = None
    draft: DraftIn = Field(default_factory=DraftIn)


class TableClickIn(BaseModel):
    current_order_id: int | None = None


class MergeIn(BaseModel):
    order_id: int
    other_order_id: int


class SplitSliceIn(BaseModel):
    line_id: int
    quantity: int = Field(ge=1)


class SplitIn(BaseModel):
    order_id: int
    slices: list[SplitSliceIn]


class MoveIn(BaseModel):
    order_id: int
    table_id: int


class CheckoutIn(BaseModel):
    order_ids: list[int]
    splits: list[PaymentSplitIn]
