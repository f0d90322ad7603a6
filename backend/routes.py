import datetime
import json
from functools import wraps

import redis
from celery.exceptions import OperationalError as BrokerUnavailable
from dateutil import parser as date_parser
from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required
from sqlalchemy import func, select

import allocator
import tasks
from database import db
from errors import AreaNotFound, Forbidden, ReservationNotFound, ValidationFailed
from extensions import clear_cache, get_cache
from models import (ROLE_ADMIN, ROLE_ATTENDANT, SPOT_AVAILABLE,
                    ParkingArea, ParkingSection, ParkingSpot, QrScanTracking,
                    Reservation, Subscription, User)
from sessions import describe

api = Blueprint('api', __name__, url_prefix='/api')


def services():
    return current_app.extensions['tappark']


def current_user():
    user = db.session.get(User, int(get_jwt_identity()))
    if user is None:
        raise Forbidden('Unknown user')
    return user


# --- Helper Decorator ---
# Checks that the caller's role (read from the users table) is allowed
def roles_required(*roles):
    def wrapper(fn):
        @wraps(fn)
        def decorator(*args, **kwargs):
            user = current_user()
            if user.role not in roles:
                raise Forbidden("Access Denied: Attendants and Admins Only")
            return fn(*args, **kwargs)
        return decorator
    return wrapper


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationFailed('Request body must be a JSON object')
    return data


def _required_int(data, key):
    value = data.get(key)
    if isinstance(value, bool):
        value = None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f'Validation Error: {key} is required and must be an integer',
                               {'field': key})


def _qr_payload(data):
    payload = data.get('qrCodeData') or data.get('qr_payload')
    if not payload:
        raise ValidationFailed('QR code data is required', {'field': 'qrCodeData'})
    if isinstance(payload, dict):
        payload = json.dumps(payload)
    return payload


def _invalidate_spot_caches(reservation):
    clear_cache([f"area_spots_{reservation.spot.section.area_id}_*"])


def _notify_penalty(billing):
    if not billing.penalty_id or not current_app.config.get('PENALTY_NOTICES'):
        return
    try:
        tasks.send_penalty_notice.delay(billing.penalty_id)
    except BrokerUnavailable as e:
        current_app.logger.warning("Could not queue penalty notice %s: %s", billing.penalty_id, e)


# ==========================================
# BOOKING ROUTES (User)
# ==========================================

@api.route('/book', methods=['POST'])
@jwt_required()
def book_spot():
    data = _json_body()
    vehicle_id = _required_int(data, 'vehicleId')
    spot_id = _required_int(data, 'spotId')
    area_id = _required_int(data, 'areaId')
    user = current_user()

    svc = services()
    reservation = svc.allocator.claim(user.id, vehicle_id, spot_id, area_id)
    _invalidate_spot_caches(reservation)

    payload = svc.issuer.payload_for(reservation)
    return jsonify({
        "message": "Parking spot booked successfully",
        "reservationId": reservation.id,
        "qr_payload": payload,
        "qr_code": svc.issuer.render(payload),
        "booking": describe(reservation, svc.clock())
    }), 200


@api.route('/current-booking', methods=['GET'])
@jwt_required()
def current_booking():
    """The caller's reserved or active booking, if any."""
    user = current_user()
    svc = services()
    reservation = allocator.open_reservation_for(db.session, user.id)
    if reservation is None:
        return jsonify({"booking": None}), 200

    booking = describe(reservation, svc.clock())
    booking['qr_payload'] = svc.issuer.payload_for(reservation)
    return jsonify({"booking": booking}), 200


@api.route('/booking/<int:reservation_id>/qr', methods=['GET'])
@jwt_required()
def booking_qr(reservation_id):
    """Re-renders the QR code of one of the caller's open bookings."""
    user = current_user()
    reservation = db.session.get(Reservation, reservation_id)
    if reservation is None or reservation.user_id != user.id or reservation.is_terminal:
        raise ReservationNotFound('Reservation not found')

    svc = services()
    payload = svc.issuer.payload_for(reservation)
    return jsonify({
        "reservation_id": reservation.id,
        "qr_payload": payload,
        "qr_code": svc.issuer.render(payload)
    }), 200


@api.route('/cancel-booking/<int:reservation_id>', methods=['PUT'])
@jwt_required()
def cancel_booking(reservation_id):
    user = current_user()
    reservation = services().sessions.cancel(reservation_id, user)
    _invalidate_spot_caches(reservation)
    return jsonify({
        "message": "Booking cancelled",
        "reservation_id": reservation.id,
        "status": reservation.status
    }), 200


@api.route('/end-session/<int:reservation_id>', methods=['PUT'])
@jwt_required()
def end_own_session(reservation_id):
    """Ends a session without a QR scan (owner, attendant or admin)."""
    user = current_user()
    svc = services()
    result = svc.sessions.end_by_id(reservation_id, user)
    _invalidate_spot_caches(result.reservation)
    _notify_penalty(result.billing)

    return jsonify({
        "message": result.message,
        "session": describe(result.reservation, svc.clock()),
        "billing": result.billing.to_dict()
    }), 200


# ==========================================
# ATTENDANT ROUTES (QR scans)
# ==========================================

@api.route('/start-parking-session', methods=['POST'])
@jwt_required()
@roles_required(ROLE_ATTENDANT, ROLE_ADMIN)
def start_parking_session():
    payload = _qr_payload(_json_body())
    attendant = current_user()
    svc = services()

    reservation = svc.sessions.start(payload, attendant.id)
    _invalidate_spot_caches(reservation)
    return jsonify({
        "message": "Parking session started successfully",
        "session": describe(reservation, svc.clock())
    }), 200


@api.route('/end-parking-session', methods=['POST'])
@jwt_required()
@roles_required(ROLE_ATTENDANT, ROLE_ADMIN)
def end_parking_session():
    payload = _qr_payload(_json_body())
    attendant = current_user()
    svc = services()

    result = svc.sessions.end(payload, attendant.id)
    _invalidate_spot_caches(result.reservation)
    _notify_penalty(result.billing)

    return jsonify({
        "message": result.message,
        "session": describe(result.reservation, svc.clock()),
        "billing": result.billing.to_dict()
    }), 200


@api.route('/parking-session-status/<int:reservation_id>', methods=['GET'])
@jwt_required()
def parking_session_status(reservation_id):
    user = current_user()
    return jsonify(services().sessions.status(reservation_id, user)), 200


@api.route('/parking-session-status-qr/<path:qr_payload>', methods=['GET'])
@jwt_required()
@roles_required(ROLE_ATTENDANT, ROLE_ADMIN)
def parking_session_status_qr(qr_payload):
    attendant = current_user()
    return jsonify(services().sessions.status_by_qr(qr_payload, attendant.id)), 200


@api.route('/scan-history', methods=['GET'])
@jwt_required()
@roles_required(ROLE_ATTENDANT, ROLE_ADMIN)
def scan_history():
    """Latest start/end scans, optionally only those after ?since=<ISO time>."""
    stmt = select(QrScanTracking).order_by(QrScanTracking.scan_timestamp.desc(),
                                           QrScanTracking.id.desc()).limit(100)

    since = request.args.get('since')
    if since:
        try:
            since_time = date_parser.isoparse(since)
        except ValueError:
            raise ValidationFailed('since must be an ISO 8601 timestamp', {'field': 'since'})
        if since_time.tzinfo is not None:
            since_time = since_time.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        stmt = stmt.where(QrScanTracking.scan_timestamp >= since_time)

    scans = []
    for scan in db.session.execute(stmt).scalars():
        reservation = scan.reservation
        scans.append({
            'id': scan.id,
            'reservation_id': scan.reservation_id,
            'scan_type': scan.scan_type,
            'scan_time': scan.scan_timestamp.isoformat(),
            'status_at_scan': scan.status_at_scan,
            'actor_id': scan.actor_id,
            'vehicle_plate': reservation.vehicle.plate_number,
            'spot_number': reservation.spot.spot_number,
            'area_name': reservation.spot.area.name
        })
    return jsonify({"scans": scans}), 200


# ==========================================
# AREA & BALANCE ROUTES
# ==========================================

@api.route('/areas/<int:area_id>/spots', methods=['GET'])
@jwt_required()
def area_spots(area_id):
    spot_type = (request.args.get('type') or 'all').lower()
    cache = get_cache()
    cache_key = f"area_spots_{area_id}_{spot_type}"

    if cache:
        try:
            cached_data = cache.get(cache_key)
        except redis.RedisError as e:
            current_app.logger.warning("Cache read failed for %s: %s", cache_key, e)
            cache = None
        else:
            if cached_data:
                current_app.logger.debug("Cache HIT for %s", cache_key)
                return jsonify(json.loads(cached_data)), 200
            current_app.logger.debug("Cache MISS for %s. Querying DB.", cache_key)

    area = db.session.get(ParkingArea, area_id)
    if area is None:
        raise AreaNotFound()

    stmt = (
        select(ParkingSpot, ParkingSection.name)
        .join(ParkingSection, ParkingSpot.section_id == ParkingSection.id)
        .where(ParkingSection.area_id == area_id)
        .order_by(ParkingSection.name, ParkingSpot.spot_number)
    )
    if spot_type != 'all':
        stmt = stmt.where(func.lower(ParkingSpot.spot_type) == spot_type)

    spots = [{
        'spot_id': spot.id,
        'spot_number': spot.spot_number,
        'spot_type': spot.spot_type,
        'status': spot.status,
        'section_name': section_name
    } for spot, section_name in db.session.execute(stmt)]

    result = {
        'area_id': area.id,
        'area_name': area.name,
        'location': area.location,
        'total_spots': len(spots),
        'available_spots': sum(1 for s in spots if s['status'] == SPOT_AVAILABLE),
        'spots': spots
    }

    if cache:
        try:
            cache.setex(cache_key, current_app.config['AREA_SPOTS_CACHE_TTL'], json.dumps(result))
        except redis.RedisError as e:
            current_app.logger.warning("Cache write failed for %s: %s", cache_key, e)
    return jsonify(result), 200


@api.route('/subscriptions/balance', methods=['GET'])
@jwt_required()
def subscription_balance():
    user = current_user()
    subscriptions = db.session.execute(
        select(Subscription)
        .where(Subscription.user_id == user.id, Subscription.status == 'active')
        .order_by(Subscription.purchase_date.asc())
    ).scalars().all()

    usable = [s for s in subscriptions if s.minutes_remaining > 0]
    return jsonify({
        'total_hours_remaining': sum(s.hours_remaining for s in usable),
        'total_hours_used': sum(s.hours_used for s in usable),
        'active_subscriptions': len(usable),
        'subscriptions': [{
            'subscription_id': s.id,
            'plan_name': s.plan_name,
            'purchase_date': s.purchase_date.isoformat(),
            'hours_remaining': s.hours_remaining,
            'hours_used': s.hours_used
        } for s in subscriptions]
    }), 200

