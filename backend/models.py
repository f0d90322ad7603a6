import datetime

from database import db

# This file contains the schema of the parking ledger.
# SQLAlchemy ORM maps the classes below onto the MySQL (or SQLite) tables.

# Spot statuses
SPOT_AVAILABLE = 'available'
SPOT_RESERVED = 'reserved'
SPOT_OCCUPIED = 'occupied'

# Reservation statuses
RESERVED = 'reserved'
ACTIVE = 'active'
COMPLETED = 'completed'
CANCELLED = 'cancelled'

OPEN_STATUSES = (RESERVED, ACTIVE)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)

ROLE_USER = 'user'
ROLE_ATTENDANT = 'attendant'
ROLE_ADMIN = 'admin'


def utcnow():
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class User(db.Model):
    """
    Account known to the parking system. Role is 'user', 'attendant' or 'admin'.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_USER)

    vehicles = db.relationship('Vehicle', backref='owner', lazy=True)

    @property
    def is_staff(self):
        return self.role in (ROLE_ATTENDANT, ROLE_ADMIN)


class Vehicle(db.Model):
    __tablename__ = 'vehicles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    plate_number = db.Column(db.String(20), nullable=False)
    # car, motorcycle, bicycle, ebike
    vehicle_type = db.Column(db.String(20), nullable=False)
    brand = db.Column(db.String(50), nullable=True)


class ParkingArea(db.Model):
    """
    A campus parking area (e.g. a building's lot). Areas are split into sections.
    """
    __tablename__ = 'parking_area'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    location = db.Column(db.String(200), nullable=True)

    sections = db.relationship('ParkingSection', backref='area', lazy=True,
                               cascade="all, delete-orphan")


class ParkingSection(db.Model):
    __tablename__ = 'parking_section'

    id = db.Column(db.Integer, primary_key=True)
    area_id = db.Column(db.Integer, db.ForeignKey('parking_area.id'), nullable=False)
    name = db.Column(db.String(50), nullable=False)

    spots = db.relationship('ParkingSpot', backref='section', lazy=True,
                            cascade="all, delete-orphan")


class ParkingSpot(db.Model):
    """
    One addressable spot. Status is 'available', 'reserved' or 'occupied' and
    only changes through LedgerStore.claim().
    """
    __tablename__ = 'parking_spot'

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey('parking_section.id'), nullable=False)
    spot_number = db.Column(db.String(20), nullable=False)
    spot_type = db.Column(db.String(20), nullable=False, default='car')
    status = db.Column(db.String(20), nullable=False, default=SPOT_AVAILABLE)

    @property
    def area(self):
        return self.section.area


class Reservation(db.Model):
    """
    One user's booking of one spot, from claim to completion or cancellation.
    Rows are never deleted.
    """
    __tablename__ = 'reservations'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey('vehicles.id'), nullable=False)
    spot_id = db.Column(db.Integer, db.ForeignKey('parking_spot.id'), nullable=False, index=True)

    time_stamp = db.Column(db.DateTime, nullable=False, default=utcnow)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=RESERVED, index=True)
    qr_credential = db.Column(db.String(36), unique=True, nullable=False)

    user = db.relationship('User')
    vehicle = db.relationship('Vehicle')
    spot = db.relationship('ParkingSpot')

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES


def to_minutes(hours):
    """Hours as whole minutes; ledger balances are stored in minutes."""
    return int(round(hours * 60))


class Subscription(db.Model):
    """
    Prepaid pool of parking time. Sessions draw down the oldest active one first.
    Balances are whole minutes; `hours_remaining`/`hours_used` are derived.
    """
    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    plan_name = db.Column(db.String(100), nullable=True)
    minutes_remaining = db.Column(db.Integer, nullable=False, default=0)
    minutes_used = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='active')
    purchase_date = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def hours_remaining(self):
        return (self.minutes_remaining or 0) / 60

    @hours_remaining.setter
    def hours_remaining(self, hours):
        self.minutes_remaining = to_minutes(hours)

    @property
    def hours_used(self):
        return (self.minutes_used or 0) / 60

    @hours_used.setter
    def hours_used(self, hours):
        self.minutes_used = to_minutes(hours)


class Penalty(db.Model):
    """
    Overage minutes a session used beyond the subscription balance. Append-only.
    """
    __tablename__ = 'penalty'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey('reservations.id'), nullable=True)
    penalty_minutes = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.CheckConstraint('penalty_minutes > 0', name='ck_penalty_positive'),
    )

    @property
    def penalty_hours(self):
        return self.penalty_minutes / 60


class QrScanTracking(db.Model):
    """
    Audit trail of start/end scans. Append-only.
    """
    __tablename__ = 'qr_scan_tracking'

    id = db.Column(db.Integer, primary_key=True)
    reservation_id = db.Column(db.Integer, db.ForeignKey('reservations.id'), nullable=False)
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    scan_type = db.Column(db.String(10), nullable=False)  # 'start' or 'end'
    scan_timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)
    status_at_scan = db.Column(db.String(20), nullable=False)
    spot_id = db.Column(db.Integer, nullable=False)
    vehicle_id = db.Column(db.Integer, nullable=False)

    reservation = db.relationship('Reservation')


class ActivityLog(db.Model):
    __tablename__ = 'user_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False)
    action_type = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    target_id = db.Column(db.Integer, nullable=True)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)
