from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')
Money = Numeric(14, 3)
Rate = Numeric(6, 4)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    OPEN = 'OPEN'
    HELD = 'HELD'
    PAID = 'PAID'
    REFUNDED = 'REFUNDED'
    VOIDED = 'VOIDED'
    CANCELLED = 'CANCELLED'


class OrderType(str, Enum):
    DINE_IN = 'DINE_IN'
    TAKEAWAY = 'TAKEAWAY'


class DiscountType(str, Enum):
    PERCENT = 'PERCENT'
    FIXED = 'FIXED'


class ShiftStatus(str, Enum):
    OPEN = 'OPEN'
    CLOSED = 'CLOSED'


class CashMovementType(str, Enum):
    CASH_IN = 'CASH_IN'
    CASH_OUT = 'CASH_OUT'


class RefundType(str, Enum):
    FULL = 'FULL'
    PARTIAL = 'PARTIAL'


class Restaurant(Base):
    __tablename__ = 'restaurants'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default='JOD', server_default='JOD')
    tax_rate: Mapped[Decimal | None] = mapped_column(Rate)
    service_charge_rate: Mapped[Decimal | None] = mapped_column(Rate)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Branch(Base):
    __tablename__ = 'branches'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('restaurants.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DiningTable(Base):
    __tablename__ = 'dining_tables'
    __table_args__ = (
        UniqueConstraint('branch_id', 'name', name='dining_tables_branch_name_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=4, server_default='4')
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class MenuItem(Base):
    __tablename__ = 'menu_items'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('restaurants.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class ModifierOption(Base):
    __tablename__ = 'modifier_options'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    menu_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('menu_items.id', ondelete='CASCADE'), nullable=False)
    group_name: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price_adjustment: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class OrderNumberSequence(Base):
    __tablename__ = 'order_number_sequences'

    restaurant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('restaurants.id', ondelete='CASCADE'), primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class Shift(Base):
    __tablename__ = 'shifts'
    __table_args__ = (
        CheckConstraint('opening_cash >= 0', name='shifts_opening_cash_ck'),
        Index('shifts_branch_status_idx', 'branch_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('restaurants.id'), nullable=False)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id'), nullable=False)
    cashier_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[ShiftStatus] = mapped_column(
        SQLEnum(ShiftStatus, name='shift_status'), nullable=False, default=ShiftStatus.OPEN, server_default='OPEN'
    )
    opening_cash: Mapped[Decimal] = mapped_column(Money, nullable=False)
    closing_cash: Mapped[Decimal | None] = mapped_column(Money)
    expected_cash: Mapped[Decimal | None] = mapped_column(Money)
    cash_variance: Mapped[Decimal | None] = mapped_column(Money)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class CashMovement(Base):
    __tablename__ = 'cash_movements'
    __table_args__ = (
        CheckConstraint('amount > 0', name='cash_movements_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    shift_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shifts.id', ondelete='CASCADE'), nullable=False)
    movement_type: Mapped[CashMovementType] = mapped_column(SQLEnum(CashMovementType, name='cash_movement_type'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    cashier_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def signed_amount(self) -> Decimal:
        if self.movement_type == CashMovementType.CASH_OUT:
            return -self.amount
        return self.amount


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('restaurant_id', 'order_number', name='orders_restaurant_number_key'),
        Index('orders_shift_status_idx', 'shift_id', 'status'),
        Index('orders_table_status_idx', 'table_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('restaurants.id'), nullable=False)
    branch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('branches.id'), nullable=False)
    shift_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shifts.id'), nullable=False)
    order_number: Mapped[int] = mapped_column(Integer, nullable=False)
    order_type: Mapped[OrderType] = mapped_column(SQLEnum(OrderType, name='order_type'), nullable=False)
    table_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('dining_tables.id'))
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.OPEN, server_default='OPEN'
    )
    discount_type: Mapped[DiscountType | None] = mapped_column(SQLEnum(DiscountType, name='discount_type'))
    discount_value: Mapped[Decimal | None] = mapped_column(Money)
    tax_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False, default=Decimal('0'), server_default='0')
    service_charge_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False, default=Decimal('0'), server_default='0')
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    service_charge: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'), server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    customer_name: Mapped[str | None] = mapped_column(Text)
    customer_phone: Mapped[str | None] = mapped_column(Text)
    cancelled_reason: Mapped[str | None] = mapped_column(Text)
    voided_reason: Mapped[str | None] = mapped_column(Text)
    merged_into_order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('orders.id'))
    split_from_order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('orders.id'))
    created_by_cashier_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}


class OrderLine(Base):
    __tablename__ = 'order_lines'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='order_lines_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    menu_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('menu_items.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    modifiers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text)
    voided: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    void_reason: Mapped[str | None] = mapped_column(Text)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    kitchen_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Payment(Base):
    __tablename__ = 'payments'
    __table_args__ = (
        CheckConstraint('amount > 0', name='payments_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    method: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tendered_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128))
    cashier_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Refund(Base):
    __tablename__ = 'refunds'
    __table_args__ = (
        CheckConstraint('amount > 0', name='refunds_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    shift_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shifts.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    refund_type: Mapped[RefundType] = mapped_column(SQLEnum(RefundType, name='refund_type'), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    cashier_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    restaurant_id: Mapped[int | None] = mapped_column(BigInteger)
    branch_id: Mapped[int | None] = mapped_column(BigInteger)
    actor_cashier_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(Text().with_variant(INET(), 'postgresql'))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
