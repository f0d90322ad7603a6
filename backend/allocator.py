import logging

from sqlalchemy import select

import activity
from database import ClaimRejected
from errors import (ConflictingActiveBooking, SpotAlreadyBooked, SpotNotFound,
                    SpotUnavailable, VehicleNotFound, VehicleTypeMismatch)
from models import (OPEN_STATUSES, SPOT_AVAILABLE, SPOT_RESERVED, ParkingSpot,
                    Reservation, User, Vehicle, utcnow)

logger = logging.getLogger(__name__)

# Vehicle types that park in a differently named spot type
SPOT_TYPE_FOR_VEHICLE = {
    'bicycle': 'bike',
    'ebike': 'bike',
    'e-bike': 'bike',
}


def expected_spot_type(vehicle_type):
    vehicle_type = vehicle_type.strip().lower()
    return SPOT_TYPE_FOR_VEHICLE.get(vehicle_type, vehicle_type)


def open_reservation_for(session, user_id):
    """The user's reserved or active reservation, if any."""
    return session.execute(
        select(Reservation)
        .where(Reservation.user_id == user_id, Reservation.status.in_(OPEN_STATUSES))
        .order_by(Reservation.time_stamp.desc())
        .limit(1)
    ).scalar_one_or_none()


class SpotAllocator:
    """
    Books one spot for one user. Concurrent claims on the same spot are
    serialised by the spot's row lock; exactly one of them succeeds.
    """

    def __init__(self, store, issuer, clock=utcnow):
        self.store = store
        self.issuer = issuer
        self.clock = clock

    def _check_preconditions(self, session, user_id, vehicle_id, spot_id, area_id):
        vehicle = session.execute(
            select(Vehicle).where(Vehicle.id == vehicle_id, Vehicle.user_id == user_id)
        ).scalar_one_or_none()
        if vehicle is None:
            raise VehicleNotFound()

        existing = open_reservation_for(session, user_id)
        if existing is not None:
            raise ConflictingActiveBooking(existing.spot.area.name,
                                           existing.spot.spot_number,
                                           existing.status)

        spot = session.get(ParkingSpot, spot_id)
        if spot is None or spot.section.area_id != area_id:
            raise SpotNotFound()

        expected = expected_spot_type(vehicle.vehicle_type)
        if expected != spot.spot_type.strip().lower():
            raise VehicleTypeMismatch(vehicle.vehicle_type, spot.spot_type, expected)

        return vehicle, spot

    def claim(self, user_id, vehicle_id, spot_id, area_id):
        """
        Reserves `spot_id` for the user's vehicle and returns the new Reservation.
        """
        with self.store.transaction() as session:
            # Serialises concurrent bookings by the same user so the
            # one-open-reservation rule holds.
            session.execute(select(User.id).where(User.id == user_id).with_for_update())

            vehicle, spot = self._check_preconditions(session, user_id, vehicle_id,
                                                      spot_id, area_id)
            try:
                self.store.claim(ParkingSpot, spot_id, SPOT_AVAILABLE, SPOT_RESERVED)
            except ClaimRejected as e:
                if e.reason == 'lost_race':
                    logger.info("Spot %s claim lost race for user %s", spot_id, user_id)
                    raise SpotAlreadyBooked()
                if e.reason == 'missing':
                    raise SpotNotFound()
                raise SpotUnavailable(details={'spot_status': e.current_status})

            reservation = Reservation(
                user_id=user_id,
                vehicle_id=vehicle.id,
                spot_id=spot.id,
                time_stamp=self.clock(),
                start_time=None,
                status='reserved'
            )
            self.issuer.issue(reservation)
            session.add(reservation)
            session.flush()

        logger.info("Booking #%s created for User %s at spot %s", reservation.id, user_id, spot_id)
        activity.log_user_activity(
            user_id, activity.PARKING_BOOK,
            f"Booked spot {spot.spot_number} at {spot.area.name} for {vehicle.plate_number}",
            reservation.id)
        return reservation
