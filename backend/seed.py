# seed.py
# Creates the tables plus demo data for local development, and prints a
# bearer token for each demo account.
from flask_jwt_extended import create_access_token

from app import create_app
from database import db
from models import (ROLE_ADMIN, ROLE_ATTENDANT, ROLE_USER, ParkingArea,
                    ParkingSection, ParkingSpot, Subscription, User, Vehicle)

DEMO_ACCOUNTS = [
    ('admin', 'admin@tappark.local', ROLE_ADMIN),
    ('attendant', 'attendant@tappark.local', ROLE_ATTENDANT),
    ('student', 'student@tappark.local', ROLE_USER),
]

# section name -> (spot type, number of spots)
DEMO_SECTIONS = {
    'S': ('car', 10),
    'M': ('motorcycle', 6),
    'B': ('bike', 8),
}


def seed():
    db.create_all()

    accounts = {}
    for username, email, role in DEMO_ACCOUNTS:
        user = User.query.filter_by(username=username).first()
        if not user:
            print(f"Creating {role} user '{username}'...")
            user = User(username=username, email=email, role=role)
            db.session.add(user)
        accounts[username] = user
    db.session.flush()

    if not ParkingArea.query.first():
        print("Creating demo parking area...")
        area = ParkingArea(name='Main Campus Lot', location='North Gate')
        db.session.add(area)
        for section_name, (spot_type, count) in DEMO_SECTIONS.items():
            section = ParkingSection(area=area, name=section_name)
            db.session.add(section)
            for i in range(1, count + 1):
                db.session.add(ParkingSpot(section=section,
                                           spot_number=f"{section_name}{100 + i}",
                                           spot_type=spot_type))

    student = accounts['student']
    if not Vehicle.query.filter_by(user_id=student.id).first():
        db.session.add(Vehicle(user_id=student.id, plate_number='ABC 1234',
                               vehicle_type='car', brand='Toyota'))
        db.session.add(Vehicle(user_id=student.id, plate_number='BIKE-01',
                               vehicle_type='bicycle', brand='Giant'))
    if not Subscription.query.filter_by(user_id=student.id).first():
        db.session.add(Subscription(user_id=student.id, plan_name='Starter 10h',
                                    hours_remaining=10.0, hours_used=0.0))

    db.session.commit()

    for username, user in accounts.items():
        token = create_access_token(identity=str(user.id))
        print(f"{username} ({user.role}) token: {token}")


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        seed()
