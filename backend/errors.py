"""
Error types raised by the booking, session and billing code.

Every error carries a stable machine-readable code, a human-readable
message and the HTTP status the API answers with.
"""


class ParkingError(Exception):
    code = 'PARKING_ERROR'
    status_code = 400
    default_message = 'Request could not be processed'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        return {
            'message': self.message,
            'error_code': self.code,
            'details': self.details
        }


# --- Validation errors (caller can fix and resubmit) ---

class ValidationFailed(ParkingError):
    code = 'VALIDATION_ERROR'
    default_message = 'Validation Error: Missing or invalid fields'


class VehicleNotFound(ParkingError):
    code = 'VEHICLE_NOT_FOUND'
    default_message = 'Vehicle not found or does not belong to user'


class VehicleTypeMismatch(ParkingError):
    code = 'VEHICLE_TYPE_MISMATCH'

    def __init__(self, vehicle_type, spot_type, expected_spot_type):
        super().__init__(
            f'This parking spot is for {spot_type}s only. Your vehicle is a {vehicle_type}.',
            {
                'vehicle_type': vehicle_type,
                'spot_type': spot_type,
                'expected_spot_type': expected_spot_type
            })


class InvalidQR(ParkingError):
    code = 'INVALID_QR'
    default_message = 'Invalid QR code'


# --- Contention errors (retry with another target) ---

class ConflictingActiveBooking(ParkingError):
    code = 'CONFLICTING_ACTIVE_BOOKING'

    def __init__(self, area_name, spot_number, status):
        super().__init__(
            f'You already have a {status} booking at {area_name}, spot {spot_number}',
            {'area_name': area_name, 'spot_number': spot_number, 'status': status})


class SpotUnavailable(ParkingError):
    code = 'SPOT_UNAVAILABLE'
    default_message = 'Parking spot is no longer available'


class SpotAlreadyBooked(ParkingError):
    code = 'SPOT_ALREADY_BOOKED'
    default_message = 'Parking spot was just booked by someone else'


# --- State errors ---

class AreaNotFound(ParkingError):
    code = 'AREA_NOT_FOUND'
    status_code = 404
    default_message = 'Parking area not found'


class SpotNotFound(ParkingError):
    code = 'SPOT_NOT_FOUND'
    status_code = 404
    default_message = 'Parking spot not found'


class ReservationNotFound(ParkingError):
    code = 'RESERVATION_NOT_FOUND'
    status_code = 404
    default_message = 'Reservation not found or already started'


class ActiveSessionNotFound(ParkingError):
    code = 'ACTIVE_SESSION_NOT_FOUND'
    status_code = 404
    default_message = 'Active parking session not found'


# --- Business condition ---

class NoActiveSubscription(ParkingError):
    code = 'NO_ACTIVE_SUBSCRIPTION'
    default_message = ('No active subscription hours available. '
                       'Please purchase a subscription plan first.')


# --- Access ---

class Forbidden(ParkingError):
    code = 'FORBIDDEN'
    status_code = 403
    default_message = 'Access Denied'


# --- Infrastructure ---

class StoreUnavailable(ParkingError):
    code = 'STORE_UNAVAILABLE'
    status_code = 503
    default_message = 'Parking service is temporarily unavailable, try again later'
