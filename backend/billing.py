"""
Billing for finished parking sessions.

Sessions are billed by the minute (rounded up, minimum one minute) against
the user's oldest active subscription. Whatever that subscription cannot
cover is recorded as a penalty. All ledger arithmetic is in whole minutes;
hours are only derived for display.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from errors import NoActiveSubscription
from models import Penalty, Subscription

logger = logging.getLogger(__name__)

PENALIZE = 'penalize'
REJECT = 'reject'
SHORTFALL_POLICIES = (PENALIZE, REJECT)

_MICROSECONDS_PER_MINUTE = 60 * 1000 * 1000


def elapsed_minutes(start_time, end_time):
    """Whole minutes between two timestamps, rounded up, never less than 1."""
    if end_time < start_time:
        raise ValueError('end_time must not be earlier than start_time')
    delta = end_time - start_time
    micros = (delta.days * 86400 + delta.seconds) * 1000 * 1000 + delta.microseconds
    minutes = -(-micros // _MICROSECONDS_PER_MINUTE)
    return max(1, minutes)


def as_hours(minutes):
    return minutes / 60 if minutes is not None else None


def split_charge(charge_minutes, minutes_remaining):
    """Returns (minutes_to_deduct, penalty_minutes) for one subscription balance."""
    minutes_remaining = max(0, minutes_remaining)
    minutes_to_deduct = min(charge_minutes, minutes_remaining)
    return minutes_to_deduct, charge_minutes - minutes_to_deduct


def format_overage(penalty_minutes):
    """83 -> '1 hour 23 minutes'"""
    hours, minutes = divmod(penalty_minutes, 60)
    return (f"{hours} hour{'s' if hours != 1 else ''} "
            f"{minutes} minute{'s' if minutes != 1 else ''}")


def overage_message(penalty_minutes):
    return (f"Parking session ended successfully. You exceeded your balance by "
            f"{format_overage(penalty_minutes)}. This penalty will be deducted from "
            f"your next subscription plan.")


@dataclass
class ChargeQuote:
    user_id: int
    elapsed_minutes: int
    minutes_to_deduct: int
    penalty_minutes: int
    subscription_id: Optional[int]


@dataclass
class BillingResult:
    elapsed_minutes: int
    minutes_to_deduct: int
    penalty_minutes: int
    subscription_id_charged: Optional[int]
    minutes_remaining_after: Optional[int]
    penalty_id: Optional[int] = None

    @property
    def charge_hours(self):
        return as_hours(self.elapsed_minutes)

    @property
    def hours_to_deduct(self):
        return as_hours(self.minutes_to_deduct)

    @property
    def penalty_hours(self):
        return as_hours(self.penalty_minutes)

    @property
    def verified_remaining_balance_after(self):
        return as_hours(self.minutes_remaining_after)

    @property
    def has_penalty(self):
        return self.penalty_minutes > 0

    def to_dict(self):
        return {
            'duration_minutes': self.elapsed_minutes,
            'charge_hours': self.charge_hours,
            'hours_deducted': self.hours_to_deduct,
            'penalty_hours': self.penalty_hours,
            'penalty_minutes': self.penalty_minutes,
            'has_penalty': self.has_penalty,
            'subscription_id': self.subscription_id_charged,
            'remaining_balance': self.verified_remaining_balance_after
        }


class BillingEngine:

    def __init__(self, store, shortfall_policy=PENALIZE):
        if shortfall_policy not in SHORTFALL_POLICIES:
            raise ValueError(f'Unknown billing shortfall policy: {shortfall_policy}')
        self.store = store
        self.shortfall_policy = shortfall_policy

    def select_subscription(self, user_id, for_update=False):
        """Oldest active subscription with time left, or NoActiveSubscription."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == 'active',
                Subscription.minutes_remaining > 0
            )
            .order_by(Subscription.purchase_date.asc(), Subscription.id.asc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        subscription = self.store.session.execute(stmt).scalar_one_or_none()
        if subscription is None:
            raise NoActiveSubscription()
        return subscription

    def quote(self, user_id, start_time, end_time, for_update=False):
        """
        Works out what a session costs without writing anything.
        Applies the shortfall policy when the user has no usable subscription.
        """
        minutes = elapsed_minutes(start_time, end_time)

        try:
            subscription = self.select_subscription(user_id, for_update=for_update)
        except NoActiveSubscription:
            if self.shortfall_policy == REJECT:
                raise
            logger.warning("User %s has no active subscription; billing %d minutes as penalty",
                           user_id, minutes)
            return ChargeQuote(user_id, minutes, 0, minutes, None)

        minutes_to_deduct, penalty_minutes = split_charge(minutes, subscription.minutes_remaining)
        return ChargeQuote(user_id, minutes, minutes_to_deduct, penalty_minutes, subscription.id)

    def apply(self, quote, reservation_id=None):
        """
        Writes a quote: deducts minutes and inserts the penalty row if any.
        Must run inside the caller's transaction.
        """
        remaining_after = None
        if quote.subscription_id is not None:
            remaining_after = self.store.deduct_minutes(
                Subscription, quote.subscription_id, quote.minutes_to_deduct)

        penalty_id = None
        if quote.penalty_minutes > 0:
            penalty = Penalty(
                user_id=quote.user_id,
                reservation_id=reservation_id,
                penalty_minutes=quote.penalty_minutes
            )
            self.store.session.add(penalty)
            self.store.session.flush()
            penalty_id = penalty.id
            logger.warning("Penalty detected: user %s exceeded balance by %d minutes",
                           quote.user_id, quote.penalty_minutes)

        return BillingResult(
            elapsed_minutes=quote.elapsed_minutes,
            minutes_to_deduct=quote.minutes_to_deduct,
            penalty_minutes=quote.penalty_minutes,
            subscription_id_charged=quote.subscription_id,
            minutes_remaining_after=remaining_after,
            penalty_id=penalty_id
        )

    def settle(self, user_id, start_time, end_time, reservation_id=None):
        """quote() under row locks followed by apply(); one call per ended session."""
        quote = self.quote(user_id, start_time, end_time, for_update=True)
        return self.apply(quote, reservation_id)
