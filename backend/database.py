import logging
from contextlib import contextmanager

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import case, select, update
from sqlalchemy import exc as sa_exc

from errors import StoreUnavailable

db = SQLAlchemy()

logger = logging.getLogger(__name__)

# Errors meaning "the database is unreachable or timed out", as opposed to
# a bug or a constraint violation.
CONNECTIVITY_ERRORS = (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)


class ClaimRejected(Exception):
    """
    Raised by LedgerStore.claim(). `reason` is one of:
    'missing'     - no row with that id
    'unavailable' - the row's status under the lock is not the expected one
    'lost_race'   - the conditional update matched zero rows
    """

    def __init__(self, reason, current_status=None):
        self.reason = reason
        self.current_status = current_status
        super().__init__(f'claim rejected: {reason}')


class LedgerStore:
    """
    Handle on the parking ledger. One instance is built per application and
    passed to every component that reads or mutates spots, reservations or
    subscriptions.
    """

    def __init__(self, database):
        self.db = database

    @property
    def session(self):
        return self.db.session

    @contextmanager
    def transaction(self):
        """
        Runs the block as one unit of work. Commits on success; on any
        exception everything is rolled back before the error propagates.
        """
        session = self.session
        try:
            yield session
            session.commit()
        except CONNECTIVITY_ERRORS as exc:
            session.rollback()
            logger.error("Ledger store unavailable: %s", exc)
            raise StoreUnavailable() from exc
        except Exception:
            session.rollback()
            raise

    def _lock_row(self, model, row_id):
        stmt = (
            select(model)
            .where(model.id == row_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def claim(self, model, row_id, expected, target, **values):
        """
        Moves a row's status from `expected` (a status or a tuple of them)
        to `target`, setting any extra column `values` at the same time.

        The row is locked (SELECT ... FOR UPDATE) and its status re-read under
        the lock; the write itself is conditional on the status still being
        an expected one, so a writer that bypassed the lock is detected by
        a zero row count. Must be called inside transaction().
        """
        if isinstance(expected, str):
            expected = (expected,)

        row = self._lock_row(model, row_id)
        if row is None:
            raise ClaimRejected('missing')
        if row.status not in expected:
            raise ClaimRejected('unavailable', row.status)

        stmt = (
            update(model)
            .where(model.id == row_id, model.status.in_(expected))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            raise ClaimRejected('lost_race', row.status)

        self.session.refresh(row)
        return row

    def deduct_minutes(self, subscription_model, subscription_id, minutes):
        """
        Atomically subtracts `minutes` from a subscription, clamping the balance
        at zero, and returns the balance (in minutes) read back after the update.
        """
        remaining = subscription_model.minutes_remaining - minutes
        stmt = (
            update(subscription_model)
            .where(subscription_model.id == subscription_id)
            .values(
                minutes_remaining=case((remaining < 0, 0), else_=remaining),
                minutes_used=subscription_model.minutes_used + minutes,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        return self.session.execute(
            select(subscription_model.minutes_remaining)
            .where(subscription_model.id == subscription_id)
        ).scalar_one()
