from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select

from app.models import AuditLog, DiscountType, Order, OrderLine, OrderStatus, OrderType
from app.services import order_service, shift_service
from app.services.draft_order import DraftOrder, PersistedOrder
from app.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    NotFoundError,
    PreconditionViolation,
    UserFacingError,
)
from pos_fixtures import PosTestCase


class DraftOrderTests(unittest.TestCase):
    def test_dine_in_draft_needs_a_table(self) -> None:
        with self.assertRaises(UserFacingError) as ctx:
            DraftOrder(order_type=OrderType.DINE_IN)
        self.assertEqual(ctx.exception.code, 'table_required')

    def test_takeaway_draft_cannot_reference_a_table(self) -> None:
        with self.assertRaises(UserFacingError):
            DraftOrder(order_type=OrderType.TAKEAWAY, table_id=3)


class OrderCreationTests(PosTestCase):
    def test_draft_is_materialized_on_first_committed_item(self) -> None:
        self.assertEqual(self.order_count(), 0)
        order, line = order_service.commit_item(
            self.db,
            actor=self.actor,
            active=DraftOrder(order_type=OrderType.DINE_IN, table_id=self.table_id(0), customer_name='Lina'),
            menu_item_id=self.item_id('Burger'),
        )
        self.db.commit()

        self.assertEqual(self.order_count(), 1)
        self.assertEqual(order.status, OrderStatus.OPEN)
        self.assertEqual(order.shift_id, self.shift.id)
        self.assertEqual(order.table_id, self.table_id(0))
        self.assertEqual(order.customer_name, 'Lina')
        self.assertEqual(line.order_id, order.id)
        self.assertEqual(order.subtotal, Decimal('5.000'))

    def test_unknown_menu_item_leaves_no_empty_order(self) -> None:
        with self.assertRaises(NotFoundError):
            order_service.commit_item(
                self.db, actor=self.actor, active=DraftOrder(), menu_item_id=999_999
            )
        self.assertEqual(self.order_count(), 0)

    def test_order_requires_an_open_shift(self) -> None:
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.commit_item(
                self.db, actor=self.world.second_cashier, active=DraftOrder(), menu_item_id=self.item_id('Tea')
            )
        self.assertEqual(ctx.exception.code, 'no_open_shift')
        self.assertEqual(self.order_count(), 0)

    def test_order_numbers_are_sequential_per_restaurant(self) -> None:
        first = self.new_order(('Tea', 1))
        second = self.new_order(('Cake', 1))
        self.assertEqual(second.order_number, first.order_number + 1)

    def test_rates_are_copied_from_restaurant(self) -> None:
        order = self.new_order(('Burger', 1))
        self.assertEqual(Decimal(order.tax_rate), Decimal('0.16'))
        self.assertEqual(Decimal(order.service_charge_rate), Decimal('0.10'))
        # 5.000 + 0.500 service + (5.500 * 0.16) tax
        self.assertEqual(order.total, Decimal('6.380'))

    def test_modifier_adjustment_is_snapshotted_into_unit_price(self) -> None:
        order, line = order_service.commit_item(
            self.db,
            actor=self.actor,
            active=DraftOrder(),
            menu_item_id=self.item_id('Burger'),
            modifier_ids=[self.world.cheese.id],
            quantity=2,
        )
        self.db.commit()
        self.assertEqual(line.unit_price, Decimal('5.500'))
        self.assertEqual(line.modifiers[0]['name'], 'Cheese')
        self.assertEqual(order.subtotal, Decimal('11.000'))

        self.world.items['Burger'].base_price = Decimal('9.000')
        self.db.commit()
        order_service.commit_item(
            self.db,
            actor=self.actor,
            active=PersistedOrder(order_id=order.id),
            menu_item_id=self.item_id('Tea'),
        )
        self.db.commit()
        self.assertEqual(self.reload(order).subtotal, Decimal('13.000'))


class LineOperationTests(PosTestCase):
    def _assert_subtotal_matches_lines(self, order: Order) -> None:
        order = self.reload(order)
        lines = order_service.list_lines(self.db, order.id, include_voided=False)
        expected = sum((Decimal(line.unit_price) * line.quantity for line in lines), Decimal('0'))
        self.assertEqual(order.subtotal, expected)

    def test_subtotal_tracks_every_line_mutation(self) -> None:
        order = self.new_order(('Burger', 1), ('Tea', 2))
        self._assert_subtotal_matches_lines(order)

        tea = order_service.list_lines(self.db, order.id)[1]
        order_service.update_line_quantity(self.db, actor=self.actor, order_id=order.id, line_id=tea.id, quantity=3)
        self.db.commit()
        self._assert_subtotal_matches_lines(order)
        self.assertEqual(self.reload(order).subtotal, Decimal('11.000'))

        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=tea.id, reason='Customer changed mind')
        self.db.commit()
        self._assert_subtotal_matches_lines(order)
        self.assertEqual(self.reload(order).subtotal, Decimal('5.000'))

    def test_voided_line_is_kept_for_audit(self) -> None:
        order = self.new_order(('Burger', 1), ('Tea', 1))
        tea = order_service.list_lines(self.db, order.id)[1]
        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=tea.id, reason='Spilled')
        self.db.commit()

        lines = order_service.list_lines(self.db, order.id)
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].voided)
        self.assertEqual(lines[1].void_reason, 'Spilled')
        actions = self.db.execute(select(AuditLog.action)).scalars().all()
        self.assertIn('LINE_VOIDED', actions)

    def test_void_line_requires_reason(self) -> None:
        order = self.new_order(('Burger', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=line.id, reason='  ')
        self.assertEqual(ctx.exception.code, 'reason_required')

    def test_line_void_needs_open_parent(self) -> None:
        order = self.new_order(('Burger', 1), ('Tea', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        self.db.commit()
        line = order_service.list_lines(self.db, order.id)[0]
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=line.id, reason='x')
        self.assertEqual(ctx.exception.code, 'order_not_open')

    def test_quantity_of_sent_line_cannot_change(self) -> None:
        order = self.new_order(('Tea', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        line.kitchen_sent_at = order.created_at
        self.db.commit()
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.update_line_quantity(self.db, actor=self.actor, order_id=order.id, line_id=line.id, quantity=4)
        self.assertEqual(ctx.exception.code, 'line_sent_to_kitchen')

    def test_line_notes(self) -> None:
        order = self.new_order(('Burger', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        order_service.update_line_notes(self.db, actor=self.actor, order_id=order.id, line_id=line.id, notes=' no onion ')
        self.db.commit()
        self.assertEqual(order_service.list_lines(self.db, order.id)[0].notes, 'no onion')

    def test_recompute_is_idempotent(self) -> None:
        order = self.new_order(('Burger', 1), ('Cake', 3))
        order_service.set_discount(
            self.db, actor=self.actor, order_id=order.id, discount_type=DiscountType.PERCENT, value=Decimal('12.5')
        )
        first = order_service.recompute_totals(self.db, order)
        second = order_service.recompute_totals(self.db, order)
        self.assertEqual(first, second)
        self.assertEqual(order.total, second.total)


class DiscountTests(PosTestCase):
    def test_fixed_discount_cannot_exceed_subtotal(self) -> None:
        order = self.new_order(('Tea', 1))
        with self.assertRaises(UserFacingError) as ctx:
            order_service.set_discount(
                self.db, actor=self.actor, order_id=order.id, discount_type=DiscountType.FIXED, value=Decimal('2.500')
            )
        self.assertEqual(ctx.exception.code, 'discount_exceeds_subtotal')
        order = self.reload(order)
        self.assertIsNone(order.discount_type)
        self.assertEqual(order.discount_amount, Decimal('0'))

    def test_percent_discount_above_hundred_is_rejected(self) -> None:
        order = self.new_order(('Tea', 1))
        with self.assertRaises(UserFacingError):
            order_service.set_discount(
                self.db, actor=self.actor, order_id=order.id, discount_type=DiscountType.PERCENT, value=Decimal('101')
            )

    def test_fixed_discount_is_clamped_when_lines_are_voided(self) -> None:
        order = self.new_order(('Burger', 1), ('Tea', 1))
        order_service.set_discount(
            self.db, actor=self.actor, order_id=order.id, discount_type=DiscountType.FIXED, value=Decimal('4.000')
        )
        self.db.commit()
        burger = order_service.list_lines(self.db, order.id)[0]
        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=burger.id, reason='Wrong item')
        self.db.commit()

        order = self.reload(order)
        self.assertEqual(order.subtotal, Decimal('2.000'))
        self.assertEqual(order.discount_amount, Decimal('2.000'))
        self.assertEqual(order.total, Decimal('0'))

    def test_clear_discount(self) -> None:
        order = self.new_order(('Fries', 1))
        order_service.set_discount(
            self.db, actor=self.actor, order_id=order.id, discount_type=DiscountType.PERCENT, value=Decimal('50')
        )
        order_service.clear_discount(self.db, actor=self.actor, order_id=order.id)
        self.db.commit()
        order = self.reload(order)
        self.assertIsNone(order.discount_type)
        self.assertEqual(order.discount_amount, Decimal('0'))
        # 3.000 + 0.300 + 0.528
        self.assertEqual(order.total, Decimal('3.828'))


class StatusTransitionTests(PosTestCase):
    def test_hold_and_resume(self) -> None:
        order = self.new_order(('Tea', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(self.reload(order).status, OrderStatus.HELD)
        order_service.resume_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(self.reload(order).status, OrderStatus.OPEN)

    def test_hold_requires_an_item(self) -> None:
        order = self.new_order(('Tea', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=line.id, reason='Mistake')
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(ctx.exception.code, 'order_empty')
        self.assertEqual(self.reload(order).status, OrderStatus.OPEN)

    def test_resume_requires_held(self) -> None:
        order = self.new_order(('Tea', 1))
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.resume_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(ctx.exception.code, 'order_not_held')

    def test_cancel_requires_reason_and_works_from_held(self) -> None:
        order = self.new_order(('Tea', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        with self.assertRaises(PreconditionViolation):
            order_service.cancel_order(self.db, actor=self.actor, order_id=order.id, reason='')
        order_service.cancel_order(self.db, actor=self.actor, order_id=order.id, reason='Customer left')
        order = self.reload(order)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.cancelled_reason, 'Customer left')

    def test_cancelled_order_cannot_be_cancelled_again(self) -> None:
        order = self.new_order(('Tea', 1))
        order_service.cancel_order(self.db, actor=self.actor, order_id=order.id, reason='Test')
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.cancel_order(self.db, actor=self.actor, order_id=order.id, reason='Again')
        self.assertEqual(ctx.exception.code, 'order_not_cancellable')

    def test_void_open_order(self) -> None:
        order = self.new_order(('Burger', 1))
        order_service.void_order(self.db, actor=self.actor, order_id=order.id, reason='Test ticket')
        order = self.reload(order)
        self.assertEqual(order.status, OrderStatus.VOIDED)
        self.assertEqual(order.voided_reason, 'Test ticket')

    def test_void_held_order_is_rejected(self) -> None:
        order = self.new_order(('Burger', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.void_order(self.db, actor=self.actor, order_id=order.id, reason='x')
        self.assertEqual(ctx.exception.code, 'order_not_open')

    def test_stale_version_is_a_conflict_not_a_rule_violation(self) -> None:
        order = self.new_order(('Burger', 1))
        stale_version = order.version
        order_service.commit_item(
            self.db, actor=self.actor, active=PersistedOrder(order_id=order.id), menu_item_id=self.item_id('Tea')
        )
        self.db.commit()
        with self.assertRaises(ConcurrencyConflict):
            order_service.hold_order(self.db, actor=self.actor, order_id=order.id, expected_version=stale_version)
        self.assertEqual(self.reload(order).status, OrderStatus.OPEN)

    def test_other_branch_cannot_touch_order(self) -> None:
        order = self.new_order(('Burger', 1))
        with self.assertRaises(AccessDenied):
            order_service.hold_order(self.db, actor=self.world.outsider, order_id=order.id)

    def test_orders_on_closed_shift_are_frozen(self) -> None:
        order = self.new_order(('Burger', 1))
        shift_service.close_shift(self.db, actor=self.actor, shift_id=self.shift.id, closing_cash=Decimal('50.000'))
        self.db.commit()
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.commit_item(
                self.db, actor=self.actor, active=PersistedOrder(order_id=order.id), menu_item_id=self.item_id('Tea')
            )
        self.assertEqual(ctx.exception.code, 'shift_closed')
        # cancel stays available as a safety valve
        order_service.cancel_order(self.db, actor=self.actor, order_id=order.id, reason='Left open at close')
        self.assertEqual(self.reload(order).status, OrderStatus.CANCELLED)


class StartNewOrderTests(PosTestCase):
    def test_current_order_with_items_is_held(self) -> None:
        order = self.new_order(('Burger', 1))
        draft, parked = order_service.start_new_order(
            self.db, actor=self.actor, current=PersistedOrder(order_id=order.id)
        )
        self.db.commit()
        self.assertEqual(parked.id, order.id)
        self.assertEqual(self.reload(order).status, OrderStatus.HELD)
        self.assertEqual(draft.order_type, OrderType.TAKEAWAY)

    def test_empty_current_order_is_cancelled(self) -> None:
        order = self.new_order(('Burger', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=line.id, reason='Mistake')
        order_service.start_new_order(self.db, actor=self.actor, current=PersistedOrder(order_id=order.id))
        self.db.commit()
        order = self.reload(order)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.cancelled_reason, 'Empty order discarded')

    def test_draft_current_needs_no_parking(self) -> None:
        draft, parked = order_service.start_new_order(
            self.db,
            actor=self.actor,
            current=DraftOrder(),
            order_type=OrderType.DINE_IN,
            table_id=self.table_id(1),
        )
        self.assertIsNone(parked)
        self.assertEqual(draft.table_id, self.table_id(1))


class TransferLineTests(PosTestCase):
    def test_last_line_cannot_be_transferred(self) -> None:
        source = self.new_order(('Burger', 1))
        target = self.new_order(('Tea', 1))
        line = order_service.list_lines(self.db, source.id)[0]
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.transfer_line(
                self.db, actor=self.actor, source_order_id=source.id, line_id=line.id, target_order_id=target.id
            )
        self.assertEqual(ctx.exception.code, 'last_line_transfer')
        self.assertEqual(self.db.get(OrderLine, line.id).order_id, source.id)

    def test_voided_lines_do_not_count_towards_transfer_guard(self) -> None:
        source = self.new_order(('Burger', 1), ('Fries', 1))
        target = self.new_order(('Tea', 1))
        burger, fries = order_service.list_lines(self.db, source.id)
        order_service.void_line(self.db, actor=self.actor, order_id=source.id, line_id=fries.id, reason='Burnt')
        with self.assertRaises(PreconditionViolation):
            order_service.transfer_line(
                self.db, actor=self.actor, source_order_id=source.id, line_id=burger.id, target_order_id=target.id
            )

    def test_transfer_recomputes_both_orders(self) -> None:
        source = self.new_order(('Burger', 1), ('Fries', 1))
        target = self.new_order(('Tea', 1))
        fries = order_service.list_lines(self.db, source.id)[1]
        order_service.transfer_line(
            self.db, actor=self.actor, source_order_id=source.id, line_id=fries.id, target_order_id=target.id
        )
        self.db.commit()
        self.assertEqual(self.reload(source).subtotal, Decimal('5.000'))
        self.assertEqual(self.reload(target).subtotal, Decimal('5.000'))
        self.assertEqual(self.db.get(OrderLine, fries.id).order_id, target.id)

    def test_transfer_into_non_open_order_is_rejected(self) -> None:
        source = self.new_order(('Burger', 1), ('Fries', 1))
        target = self.new_order(('Tea', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=target.id)
        fries = order_service.list_lines(self.db, source.id)[1]
        with self.assertRaises(PreconditionViolation):
            order_service.transfer_line(
                self.db, actor=self.actor, source_order_id=source.id, line_id=fries.id, target_order_id=target.id
            )


if __name__ == '__main__':
    unittest.main()
