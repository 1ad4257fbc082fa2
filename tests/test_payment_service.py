from __future__ import annotations

import unittest
from decimal import Decimal

from app.models import OrderStatus, RefundType
from app.services import order_service, payment_service
from app.services.errors import PreconditionViolation, UserFacingError
from app.services.payment_service import PaymentSplit
from pos_fixtures import PosTestCase

# Burger: 5.000 + 0.500 service + 0.880 tax
BURGER_TOTAL = Decimal('6.380')
# Tea: 2.000 + 0.200 service + 0.352 tax
TEA_TOTAL = Decimal('2.552')


class CompletePaymentTests(PosTestCase):
    def test_exact_card_payment(self) -> None:
        order = self.new_order(('Burger', 1))
        result = payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('visa', BURGER_TOTAL)]
        )
        self.db.commit()
        order = self.reload(order)
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertIsNotNone(order.paid_at)
        self.assertEqual(result.change_due, Decimal('0'))
        self.assertEqual(len(payment_service.list_payments(self.db, order.id)), 1)

    def test_cash_overpayment_returns_change_and_records_net_amount(self) -> None:
        order = self.new_order(('Burger', 1))
        result = payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', Decimal('10'))]
        )
        self.db.commit()
        self.assertEqual(result.change_due, Decimal('3.620'))
        payment = payment_service.list_payments(self.db, order.id)[0]
        self.assertEqual(payment.amount, BURGER_TOTAL)
        self.assertEqual(payment.tendered_amount, Decimal('10.000'))

    def test_mixed_split_must_match_exactly(self) -> None:
        order = self.new_order(('Burger', 1))
        with self.assertRaises(UserFacingError) as ctx:
            payment_service.complete_payment(
                self.db,
                actor=self.actor,
                order_id=order.id,
                splits=[PaymentSplit('visa', Decimal('3.000')), PaymentSplit('cash', Decimal('5.000'))],
            )
        self.assertEqual(ctx.exception.code, 'card_overpayment')

        payment_service.complete_payment(
            self.db,
            actor=self.actor,
            order_id=order.id,
            splits=[PaymentSplit('visa', Decimal('3.000')), PaymentSplit('cash', Decimal('3.380'))],
        )
        self.db.commit()
        methods = [payment.method for payment in payment_service.list_payments(self.db, order.id)]
        self.assertEqual(methods, ['visa', 'cash'])

    def test_underpayment_leaves_order_untouched(self) -> None:
        order = self.new_order(('Burger', 1))
        with self.assertRaises(UserFacingError) as ctx:
            payment_service.complete_payment(
                self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', Decimal('6.000'))]
            )
        self.assertEqual(ctx.exception.code, 'underpayment')
        self.assertEqual(self.reload(order).status, OrderStatus.OPEN)
        self.assertEqual(payment_service.list_payments(self.db, order.id), [])

    def test_unknown_method_and_non_positive_amounts(self) -> None:
        order = self.new_order(('Tea', 1))
        with self.assertRaises(UserFacingError) as ctx:
            payment_service.complete_payment(
                self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('bitcoin', TEA_TOTAL)]
            )
        self.assertEqual(ctx.exception.code, 'invalid_payment_method')
        with self.assertRaises(UserFacingError) as ctx:
            payment_service.complete_payment(
                self.db,
                actor=self.actor,
                order_id=order.id,
                splits=[PaymentSplit('cash', TEA_TOTAL), PaymentSplit('visa', Decimal('0'))],
            )
        self.assertEqual(ctx.exception.code, 'invalid_amount')

    def test_order_without_items_cannot_be_paid(self) -> None:
        order = self.new_order(('Tea', 1))
        line = order_service.list_lines(self.db, order.id)[0]
        order_service.void_line(self.db, actor=self.actor, order_id=order.id, line_id=line.id, reason='Mistake')
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.complete_payment(
                self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', Decimal('1'))]
            )
        self.assertEqual(ctx.exception.code, 'order_empty')

    def test_held_order_cannot_be_paid(self) -> None:
        order = self.new_order(('Tea', 1))
        order_service.hold_order(self.db, actor=self.actor, order_id=order.id)
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.complete_payment(
                self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', TEA_TOTAL)]
            )
        self.assertEqual(ctx.exception.code, 'order_not_open')


class AtMostOncePaymentTests(PosTestCase):
    def test_replay_with_same_key_returns_original_result(self) -> None:
        order = self.new_order(('Burger', 1))
        first = payment_service.complete_payment(
            self.db,
            actor=self.actor,
            order_id=order.id,
            splits=[PaymentSplit('cash', Decimal('10'))],
            idempotency_key='till-1-abc',
        )
        self.db.commit()
        second = payment_service.complete_payment(
            self.db,
            actor=self.actor,
            order_id=order.id,
            splits=[PaymentSplit('cash', Decimal('10'))],
            idempotency_key='till-1-abc',
        )
        self.db.commit()

        self.assertFalse(first.replayed)
        self.assertTrue(second.replayed)
        self.assertEqual(second.change_due, first.change_due)
        self.assertEqual(len(payment_service.list_payments(self.db, order.id)), 1)

    def test_second_payment_without_matching_key_is_refused(self) -> None:
        order = self.new_order(('Burger', 1))
        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('visa', BURGER_TOTAL)]
        )
        self.db.commit()
        for key in (None, 'another-key'):
            with self.assertRaises(PreconditionViolation) as ctx:
                payment_service.complete_payment(
                    self.db,
                    actor=self.actor,
                    order_id=order.id,
                    splits=[PaymentSplit('visa', BURGER_TOTAL)],
                    idempotency_key=key,
                )
            self.assertEqual(ctx.exception.code, 'order_already_paid')
        self.assertEqual(len(payment_service.list_payments(self.db, order.id)), 1)


class RefundAndVoidTests(PosTestCase):
    def _paid_order(self):
        order = self.new_order(('Burger', 1))
        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', BURGER_TOTAL)]
        )
        self.db.commit()
        return order

    def test_paid_order_cannot_be_voided(self) -> None:
        order = self._paid_order()
        with self.assertRaises(PreconditionViolation) as ctx:
            order_service.void_order(self.db, actor=self.actor, order_id=order.id, reason='Oops')
        self.assertEqual(ctx.exception.code, 'void_requires_refund')
        self.assertEqual(self.reload(order).status, OrderStatus.PAID)

    def test_open_order_cannot_be_refunded(self) -> None:
        order = self.new_order(('Burger', 1))
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=Decimal('1'), reason='x')
        self.assertEqual(ctx.exception.code, 'order_not_paid')

    def test_partial_refunds_accumulate_until_total(self) -> None:
        order = self._paid_order()
        first = payment_service.refund_order(
            self.db, actor=self.actor, order_id=order.id, amount=Decimal('2.000'), reason='Cold fries'
        )
        self.assertEqual(first.refund_type, RefundType.PARTIAL)
        self.assertEqual(self.reload(order).status, OrderStatus.PAID)

        with self.assertRaises(UserFacingError) as ctx:
            payment_service.refund_order(
                self.db, actor=self.actor, order_id=order.id, amount=Decimal('4.381'), reason='Too much'
            )
        self.assertEqual(ctx.exception.code, 'refund_exceeds_remaining')

        payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=Decimal('4.380'), reason='Rest')
        self.db.commit()
        self.assertEqual(self.reload(order).status, OrderStatus.REFUNDED)
        self.assertEqual(payment_service.refunded_total(self.db, order.id), BURGER_TOTAL)

        with self.assertRaises(UserFacingError):
            payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=Decimal('0.001'), reason='x')

    def test_full_refund_without_amount(self) -> None:
        order = self._paid_order()
        refund = payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=None, reason='Wrong order')
        self.assertEqual(refund.amount, BURGER_TOTAL)
        self.assertEqual(refund.refund_type, RefundType.FULL)
        self.assertEqual(self.reload(order).status, OrderStatus.REFUNDED)

    def test_refund_requires_reason(self) -> None:
        order = self._paid_order()
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=Decimal('1'), reason='')
        self.assertEqual(ctx.exception.code, 'reason_required')


class ReopenTests(PosTestCase):
    def test_reopen_reverses_payments(self) -> None:
        order = self.new_order(('Tea', 1))
        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', TEA_TOTAL)]
        )
        payment_service.reopen_order(self.db, actor=self.actor, order_id=order.id, reason='Wrong tender')
        self.db.commit()

        order = self.reload(order)
        self.assertEqual(order.status, OrderStatus.OPEN)
        self.assertIsNone(order.paid_at)
        self.assertTrue(all(p.reversed_at is not None for p in payment_service.list_payments(self.db, order.id)))

        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('visa', TEA_TOTAL)]
        )
        self.assertEqual(self.reload(order).status, OrderStatus.PAID)

    def test_reopen_after_refund_is_rejected(self) -> None:
        order = self.new_order(('Tea', 1))
        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=order.id, splits=[PaymentSplit('cash', TEA_TOTAL)]
        )
        payment_service.refund_order(self.db, actor=self.actor, order_id=order.id, amount=Decimal('0.500'), reason='Sugar')
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.reopen_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(ctx.exception.code, 'refund_exists')

    def test_reopen_needs_paid_order(self) -> None:
        order = self.new_order(('Tea', 1))
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.reopen_order(self.db, actor=self.actor, order_id=order.id)
        self.assertEqual(ctx.exception.code, 'order_not_paid')


class AllocateTendersTests(unittest.TestCase):
    def test_rows_sum_to_order_amounts_and_columns_to_tenders(self) -> None:
        orders = [Decimal('2.552')] * 3
        tenders = [Decimal('2.552')] * 3
        grid = payment_service.allocate_tenders(orders, tenders)
        self.assertEqual([sum(row, Decimal('0')) for row in grid], orders)
        self.assertEqual([sum(column, Decimal('0')) for column in zip(*grid)], tenders)
        self.assertTrue(all(share >= 0 for row in grid for share in row))

    def test_single_order_takes_every_tender(self) -> None:
        grid = payment_service.allocate_tenders([Decimal('5.000')], [Decimal('3.000'), Decimal('2.000')])
        self.assertEqual(grid, [[Decimal('3.000'), Decimal('2.000')]])


class TableCheckoutTests(PosTestCase):
    def test_group_payment_pays_every_order(self) -> None:
        first = self.new_order(('Burger', 1), table=0)
        second = self.new_order(('Tea', 1), table=0)
        combined = BURGER_TOTAL + TEA_TOTAL

        result = payment_service.table_checkout(
            self.db,
            actor=self.actor,
            order_ids=[first.id, second.id],
            splits=[PaymentSplit('cash', Decimal('10.000'))],
        )
        self.db.commit()

        self.assertEqual(result.total_due, combined)
        self.assertEqual(result.change_due, Decimal('10.000') - combined)
        for order, total in ((first, BURGER_TOTAL), (second, TEA_TOTAL)):
            order = self.reload(order)
            self.assertEqual(order.status, OrderStatus.PAID)
            paid = sum((p.amount for p in payment_service.list_payments(self.db, order.id)), Decimal('0'))
            self.assertEqual(paid, total)

    def test_checkout_is_all_or_nothing(self) -> None:
        first = self.new_order(('Burger', 1), table=0)
        second = self.new_order(('Tea', 1), table=0)
        payment_service.complete_payment(
            self.db, actor=self.actor, order_id=second.id, splits=[PaymentSplit('visa', TEA_TOTAL)]
        )
        self.db.commit()

        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.table_checkout(
                self.db,
                actor=self.actor,
                order_ids=[first.id, second.id],
                splits=[PaymentSplit('cash', Decimal('20'))],
            )
        self.assertEqual(ctx.exception.code, 'order_already_paid')
        self.assertEqual(self.reload(first).status, OrderStatus.OPEN)
        self.assertEqual(payment_service.list_payments(self.db, first.id), [])

    def test_each_order_is_paid_exactly_its_total(self) -> None:
        orders = [self.new_order(('Tea', 1), table=0) for _ in range(3)]
        payment_service.table_checkout(
            self.db,
            actor=self.actor,
            order_ids=[order.id for order in orders],
            splits=[PaymentSplit('cash', TEA_TOTAL), PaymentSplit('visa', TEA_TOTAL), PaymentSplit('cliq', TEA_TOTAL)],
        )
        self.db.commit()

        by_method = {'cash': Decimal('0'), 'visa': Decimal('0'), 'cliq': Decimal('0')}
        for order in orders:
            payments = payment_service.list_payments(self.db, order.id)
            self.assertEqual(sum((p.amount for p in payments), Decimal('0')), TEA_TOTAL)
            self.assertEqual(sum((p.tendered_amount for p in payments), Decimal('0')), TEA_TOTAL)
            for payment in payments:
                by_method[payment.method] += payment.amount
        self.assertEqual(by_method, {'cash': TEA_TOTAL, 'visa': TEA_TOTAL, 'cliq': TEA_TOTAL})

    def test_reopening_one_checked_out_order_reverses_only_its_total(self) -> None:
        orders = [self.new_order(('Tea', 1), table=0) for _ in range(3)]
        payment_service.table_checkout(
            self.db,
            actor=self.actor,
            order_ids=[order.id for order in orders],
            splits=[PaymentSplit('cash', TEA_TOTAL), PaymentSplit('visa', TEA_TOTAL), PaymentSplit('cliq', TEA_TOTAL)],
        )
        payment_service.reopen_order(self.db, actor=self.actor, order_id=orders[0].id, reason='Wrong table')
        self.db.commit()

        reversed_total = sum(
            (p.amount for p in payment_service.list_payments(self.db, orders[0].id) if p.reversed_at is not None),
            Decimal('0'),
        )
        self.assertEqual(reversed_total, TEA_TOTAL)

    def test_checkout_retry_with_same_key_is_replayed(self) -> None:
        first = self.new_order(('Burger', 1), table=0)
        second = self.new_order(('Tea', 1), table=0)
        kwargs = dict(
            actor=self.actor,
            order_ids=[first.id, second.id],
            splits=[PaymentSplit('cash', Decimal('10'))],
            idempotency_key='table-1-checkout',
        )
        original = payment_service.table_checkout(self.db, **kwargs)
        self.db.commit()
        retry = payment_service.table_checkout(self.db, **kwargs)

        self.assertTrue(retry.replayed)
        self.assertEqual(retry.order_ids, original.order_ids)
        self.assertEqual(retry.total_due, original.total_due)
        self.assertEqual(retry.change_due, original.change_due)
        self.assertEqual(len(payment_service.list_payments(self.db, first.id)), 1)

        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.table_checkout(self.db, **{**kwargs, 'idempotency_key': 'other-key'})
        self.assertEqual(ctx.exception.code, 'order_already_paid')

    def test_checkout_orders_must_share_a_table(self) -> None:
        first = self.new_order(('Burger', 1), table=0)
        second = self.new_order(('Tea', 1), table=1)
        with self.assertRaises(PreconditionViolation) as ctx:
            payment_service.table_checkout(
                self.db,
                actor=self.actor,
                order_ids=[first.id, second.id],
                splits=[PaymentSplit('cash', Decimal('20'))],
            )
        self.assertEqual(ctx.exception.code, 'checkout_mixed_tables')


if __name__ == '__main__':
    unittest.main()
