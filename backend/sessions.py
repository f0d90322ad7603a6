"""
Parking session lifecycle.

    reserved --start scan--> active --end scan--> completed
    reserved --cancel------> cancelled

Transitions only move forward. Each one runs in a single transaction that
also moves the spot (reserved -> occupied -> available) and, when a session
ends, applies billing.
"""
import datetime
import logging
from dataclasses import dataclass

from sqlalchemy import select

import activity
from billing import BillingResult, elapsed_minutes, overage_message
from database import ClaimRejected
from errors import ActiveSessionNotFound, Forbidden, ReservationNotFound
from models import (ACTIVE, CANCELLED, COMPLETED, RESERVED, SPOT_AVAILABLE,
                    SPOT_OCCUPIED, SPOT_RESERVED, ParkingSpot, QrScanTracking,
                    Reservation, utcnow)

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value else None


def session_duration_minutes(reservation, now):
    """Minutes billed so far (active) or in total (completed); 0 otherwise."""
    if reservation.status == ACTIVE and reservation.start_time:
        return elapsed_minutes(reservation.start_time, max(now, reservation.start_time))
    if reservation.status == COMPLETED and reservation.start_time and reservation.end_time:
        return elapsed_minutes(reservation.start_time, reservation.end_time)
    return 0


def describe(reservation, now):
    """Read-only projection of a reservation used by every session endpoint."""
    spot = reservation.spot
    return {
        'reservation_id': reservation.id,
        'status': reservation.status,
        'vehicle_plate': reservation.vehicle.plate_number,
        'vehicle_type': reservation.vehicle.vehicle_type,
        'spot_number': spot.spot_number,
        'spot_type': spot.spot_type,
        'section_name': spot.section.name,
        'area_name': spot.area.name,
        'location': spot.area.location,
        'booking_time': _iso(reservation.time_stamp),
        'start_time': _iso(reservation.start_time),
        'end_time': _iso(reservation.end_time),
        'duration_minutes': session_duration_minutes(reservation, now)
    }


@dataclass
class EndResult:
    reservation: Reservation
    billing: BillingResult

    @property
    def message(self):
        if self.billing.has_penalty:
            return overage_message(self.billing.penalty_minutes)
        return 'Parking session ended successfully'


class SessionController:

    def __init__(self, store, issuer, billing, clock=utcnow):
        self.store = store
        self.issuer = issuer
        self.billing = billing
        self.clock = clock

    # --- helpers ---

    def _track_scan(self, session, reservation, actor_id, scan_type, status, when):
        session.add(QrScanTracking(
            reservation_id=reservation.id,
            actor_id=actor_id,
            scan_type=scan_type,
            scan_timestamp=when,
            status_at_scan=status,
            spot_id=reservation.spot_id,
            vehicle_id=reservation.vehicle_id
        ))

    def _release_spot(self, reservation, expected):
        try:
            self.store.claim(ParkingSpot, reservation.spot_id, expected, SPOT_AVAILABLE)
        except ClaimRejected as e:
            # The reservation owned the spot; a spot already marked available
            # is left as is rather than failing the transition.
            logger.warning("Spot %s for reservation %s not released (%s, status %s)",
                           reservation.spot_id, reservation.id, e.reason, e.current_status)

    # --- start ---

    def start(self, payload, actor_id):
        """Starts the session bound to a scanned QR payload."""
        with self.store.transaction() as session:
            reservation = self.issuer.resolve(payload, for_update=True)
            if reservation.status != RESERVED:
                raise ReservationNotFound()

            now = self.clock()
            try:
                self.store.claim(Reservation, reservation.id, RESERVED, ACTIVE, start_time=now)
                self.store.claim(ParkingSpot, reservation.spot_id, SPOT_RESERVED, SPOT_OCCUPIED)
            except ClaimRejected:
                raise ReservationNotFound()

            self._track_scan(session, reservation, actor_id, 'start', ACTIVE, now)

        logger.info("Parking session started for reservation %s", reservation.id)
        activity.log_user_activity(
            reservation.user_id, activity.PARKING_START,
            f"Parking session started at spot {reservation.spot.spot_number}",
            reservation.id)
        return reservation

    # --- end ---

    def _end(self, reservation, actor_id):
        now = self.clock()
        try:
            self.store.claim(Reservation, reservation.id, ACTIVE, COMPLETED, end_time=now)
        except ClaimRejected:
            raise ActiveSessionNotFound()

        billing = self.billing.settle(reservation.user_id, reservation.start_time, now,
                                      reservation_id=reservation.id)
        self._release_spot(reservation, (SPOT_OCCUPIED, SPOT_RESERVED))
        self._track_scan(self.store.session, reservation, actor_id, 'end', COMPLETED, now)
        return billing

    def _finish(self, reservation, billing):
        logger.info("Parking session ended for reservation %s: %s min, %s min deducted, %s min penalty",
                    reservation.id, billing.elapsed_minutes, billing.minutes_to_deduct,
                    billing.penalty_minutes)
        activity.log_user_activity(
            reservation.user_id, activity.PARKING_END,
            f"Parking session ended after {billing.elapsed_minutes} minutes",
            reservation.id)
        return EndResult(reservation, billing)

    def end(self, payload, actor_id):
        """Ends the session bound to a scanned QR payload and bills it."""
        with self.store.transaction():
            reservation = self.issuer.resolve(payload, for_update=True)
            if reservation.status != ACTIVE:
                raise ActiveSessionNotFound()
            billing = self._end(reservation, actor_id)
        return self._finish(reservation, billing)

    def end_by_id(self, reservation_id, actor):
        """Ends a session without a scan: by its owner, an attendant or an admin."""
        with self.store.transaction() as session:
            reservation = session.execute(
                select(Reservation).where(Reservation.id == reservation_id).with_for_update()
            ).scalar_one_or_none()
            if reservation is None or reservation.status != ACTIVE:
                raise ActiveSessionNotFound()
            if reservation.user_id != actor.id and not actor.is_staff:
                raise ActiveSessionNotFound()
            billing = self._end(reservation, actor.id)
        return self._finish(reservation, billing)

    # --- cancel ---

    def cancel(self, reservation_id, actor=None, reason=None):
        """
        Cancels a reservation that has not started. `actor` None means the
        system itself (the stale reservation sweep).
        """
        with self.store.transaction() as session:
            reservation = session.get(Reservation, reservation_id)
            if reservation is None:
                raise ReservationNotFound('Reservation not found')
            if actor is not None and reservation.user_id != actor.id and not actor.is_staff:
                raise Forbidden('Only the owner, an attendant or an admin can cancel this booking')
            try:
                self.store.claim(Reservation, reservation.id, RESERVED, CANCELLED)
            except ClaimRejected:
                raise ReservationNotFound('Only reserved bookings can be cancelled')
            self._release_spot(reservation, SPOT_RESERVED)

        logger.info("Reservation %s cancelled%s", reservation.id, f" ({reason})" if reason else "")
        activity.log_user_activity(
            reservation.user_id, activity.PARKING_CANCEL,
            reason or f"Booking for spot {reservation.spot.spot_number} cancelled",
            reservation.id)
        return reservation

    def expire_stale(self, hold_minutes):
        """Cancels reservations left unscanned for longer than `hold_minutes`."""
        cutoff = self.clock() - datetime.timedelta(minutes=hold_minutes)
        stale_ids = self.store.session.execute(
            select(Reservation.id)
            .where(Reservation.status == RESERVED, Reservation.time_stamp < cutoff)
            .order_by(Reservation.id)
        ).scalars().all()

        expired = []
        for reservation_id in stale_ids:
            try:
                self.cancel(reservation_id,
                            reason=f"Reservation expired after {hold_minutes} minutes")
            except ReservationNotFound:
                # Started between the query and the cancel.
                continue
            expired.append(reservation_id)
        return expired

    # --- read-only ---

    def status(self, reservation_id, viewer):
        reservation = self.store.session.get(Reservation, reservation_id)
        if reservation is None or (reservation.user_id != viewer.id and not viewer.is_staff):
            raise ReservationNotFound('Reservation not found')
        return describe(reservation, self.clock())

    def status_by_qr(self, payload, actor_id=None):
        reservation = self.issuer.resolve(payload)
        if actor_id is not None:
            activity.log_user_activity(
                actor_id, activity.QR_SCAN,
                f"Looked up booking at spot {reservation.spot.spot_number}", reservation.id)
        return describe(reservation, self.clock())
