#!/usr/bin/env python3
"""
Billing unit tests: duration rounding, deduction/penalty split, overage
messages, subscription selection and the clamped hour deduction.
"""
import datetime
import unittest

from billing import (PENALIZE, REJECT, BillingEngine, elapsed_minutes,
                     format_overage, overage_message, split_charge)
from errors import NoActiveSubscription
from models import Penalty, Subscription
from tests.base import ParkingTestCase

T0 = datetime.datetime(2026, 3, 2, 8, 0, 0)


class TestDuration(unittest.TestCase):

    def test_ten_seconds_bills_one_minute(self):
        minutes = elapsed_minutes(T0, T0 + datetime.timedelta(seconds=10))
        self.assertEqual(minutes, 1)
        self.assertAlmostEqual(minutes / 60, 1 / 60)

    def test_zero_length_session_bills_one_minute(self):
        self.assertEqual(elapsed_minutes(T0, T0), 1)

    def test_whole_minutes_are_not_rounded_up(self):
        self.assertEqual(elapsed_minutes(T0, T0 + datetime.timedelta(minutes=45)), 45)

    def test_partial_minute_rounds_up(self):
        end = T0 + datetime.timedelta(minutes=45, microseconds=1)
        self.assertEqual(elapsed_minutes(T0, end), 46)

    def test_multi_day_session(self):
        end = T0 + datetime.timedelta(days=2, minutes=3)
        self.assertEqual(elapsed_minutes(T0, end), 2 * 24 * 60 + 3)

    def test_end_before_start_is_rejected(self):
        with self.assertRaises(ValueError):
            elapsed_minutes(T0, T0 - datetime.timedelta(minutes=1))


class TestSplitCharge(unittest.TestCase):

    def test_shortfall_becomes_penalty(self):
        self.assertEqual(split_charge(90, 30), (30, 60))

    def test_covered_session_has_no_penalty(self):
        self.assertEqual(split_charge(45, 120), (45, 0))

    def test_exact_balance(self):
        self.assertEqual(split_charge(18, 18), (18, 0))

    def test_charge_far_above_balance(self):
        self.assertEqual(split_charge(60000, 15), (15, 59985))


class TestOverageMessage(unittest.TestCase):

    def test_hours_and_minutes(self):
        self.assertEqual(format_overage(83), '1 hour 23 minutes')

    def test_plural_and_zero_minutes(self):
        self.assertEqual(format_overage(120), '2 hours 0 minutes')

    def test_under_an_hour(self):
        self.assertEqual(format_overage(30), '0 hours 30 minutes')

    def test_single_minute(self):
        self.assertEqual(format_overage(1), '0 hours 1 minute')

    def test_full_message(self):
        message = overage_message(83)
        self.assertIn('exceeded your balance by 1 hour 23 minutes.', message)


class TestBillingEngine(ParkingTestCase):

    def setUp(self):
        super().setUp()
        self.store = self.services.store
        self.engine = BillingEngine(self.store, PENALIZE)

    def add_subscription(self, hours, days_ago, status='active', user=None):
        subscription = Subscription(
            user_id=(user or self.student).id, hours_remaining=hours, hours_used=0.0,
            status=status, purchase_date=self.clock() - datetime.timedelta(days=days_ago))
        self.store.session.add(subscription)
        self.store.session.commit()
        return subscription

    def settle(self, minutes, user=None):
        start = self.clock()
        with self.store.transaction():
            return self.engine.settle((user or self.student).id, start,
                                      start + datetime.timedelta(minutes=minutes))

    def test_unknown_policy_is_rejected(self):
        with self.assertRaises(ValueError):
            BillingEngine(self.store, 'forgive')

    def test_oldest_active_subscription_is_selected(self):
        older = self.add_subscription(1.0, days_ago=60)
        self.add_subscription(5.0, days_ago=1)
        self.assertEqual(self.engine.select_subscription(self.student.id).id, older.id)

    def test_exhausted_and_inactive_subscriptions_are_skipped(self):
        self.add_subscription(0.0, days_ago=90)
        self.add_subscription(3.0, days_ago=80, status='expired')
        self.assertEqual(self.engine.select_subscription(self.student.id).id,
                         self.subscription.id)

    def test_no_subscription_raises(self):
        with self.assertRaises(NoActiveSubscription):
            self.engine.select_subscription(self.other.id)

    def test_session_within_balance(self):
        result = self.settle(45)

        self.assertEqual(result.elapsed_minutes, 45)
        self.assertEqual(result.charge_hours, 0.75)
        self.assertEqual(result.hours_to_deduct, 0.75)
        self.assertEqual(result.penalty_hours, 0.0)
        self.assertEqual(result.subscription_id_charged, self.subscription.id)
        self.assertAlmostEqual(result.verified_remaining_balance_after, 1.25)
        self.assertIsNone(result.penalty_id)
        self.assertEqual(Penalty.query.count(), 0)

        subscription = self.reload(Subscription, self.subscription.id)
        self.assertAlmostEqual(subscription.hours_remaining, 1.25)
        self.assertAlmostEqual(subscription.hours_used, 0.75)

    def test_penalty_for_overage(self):
        self.subscription.hours_remaining = 0.5
        self.store.session.commit()

        result = self.settle(90)

        self.assertEqual(result.charge_hours, 1.5)
        self.assertEqual(result.hours_to_deduct, 0.5)
        self.assertEqual(result.penalty_hours, 1.0)
        self.assertEqual(result.verified_remaining_balance_after, 0.0)

        penalty = Penalty.query.one()
        self.assertEqual(penalty.id, result.penalty_id)
        self.assertEqual(penalty.user_id, self.student.id)
        self.assertEqual(penalty.penalty_hours, 1.0)

    def test_only_one_subscription_is_charged_per_session(self):
        self.subscription.hours_remaining = 0.5
        second = self.add_subscription(10.0, days_ago=1)
        self.store.session.commit()

        result = self.settle(90)

        self.assertEqual(result.penalty_hours, 1.0)
        self.assertEqual(self.reload(Subscription, second.id).hours_remaining, 10.0)

    def test_balance_never_goes_negative(self):
        for minutes in (1, 500, 100000):
            self.settle(minutes)
            subscription = self.reload(Subscription, self.subscription.id)
            self.assertGreaterEqual(subscription.hours_remaining, 0.0)
        self.assertAlmostEqual(self.reload(Subscription, self.subscription.id).hours_used, 2.0)

    def test_deduct_minutes_clamps_at_zero(self):
        with self.store.transaction():
            remaining = self.store.deduct_minutes(Subscription, self.subscription.id, 3000)
        self.assertEqual(remaining, 0)
        subscription = self.reload(Subscription, self.subscription.id)
        self.assertEqual(subscription.minutes_remaining, 0)
        self.assertEqual(subscription.minutes_used, 3000)

    def test_exactly_covered_sessions_leave_no_penalty(self):
        self.subscription.hours_remaining = 0.3
        self.store.session.commit()

        results = [self.settle(6) for _ in range(3)]

        self.assertEqual([r.penalty_minutes for r in results], [0, 0, 0])
        self.assertFalse(any(r.has_penalty for r in results))
        self.assertEqual(results[-1].minutes_remaining_after, 0)
        self.assertEqual(results[-1].verified_remaining_balance_after, 0.0)
        self.assertEqual(Penalty.query.count(), 0)
        self.assertEqual(self.reload(Subscription, self.subscription.id).minutes_used, 18)

    def test_exhausted_subscription_does_not_shadow_newer_one(self):
        self.subscription.hours_remaining = 1.0
        newer = self.add_subscription(10.0, days_ago=1)

        for _ in range(3):
            self.assertEqual(self.settle(20).subscription_id_charged, self.subscription.id)
        self.assertEqual(self.reload(Subscription, self.subscription.id).minutes_remaining, 0)

        result = self.settle(20)
        self.assertEqual(result.subscription_id_charged, newer.id)
        self.assertEqual(result.penalty_minutes, 0)
        self.assertEqual(self.reload(Subscription, newer.id).minutes_remaining, 600 - 20)
        self.assertEqual(Penalty.query.count(), 0)

    def test_penalize_policy_without_subscription(self):
        result = self.settle(30, user=self.other)

        self.assertIsNone(result.subscription_id_charged)
        self.assertIsNone(result.verified_remaining_balance_after)
        self.assertEqual(result.hours_to_deduct, 0.0)
        self.assertEqual(result.penalty_hours, 0.5)
        self.assertEqual(Penalty.query.filter_by(user_id=self.other.id).count(), 1)

    def test_reject_policy_without_subscription(self):
        self.engine = BillingEngine(self.store, REJECT)
        with self.assertRaises(NoActiveSubscription):
            self.settle(30, user=self.other)
        self.assertEqual(Penalty.query.count(), 0)

    def test_quote_writes_nothing(self):
        start = self.clock()
        quote = self.engine.quote(self.student.id, start, start + datetime.timedelta(hours=3))
        self.store.session.commit()

        self.assertEqual(quote.minutes_to_deduct, 120)
        self.assertEqual(quote.penalty_minutes, 60)
        self.assertEqual(self.reload(Subscription, self.subscription.id).hours_remaining, 2.0)
        self.assertEqual(Penalty.query.count(), 0)


if __name__ == '__main__':
    unittest.main()
