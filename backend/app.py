import logging

from flask import Flask, jsonify

from allocator import SpotAllocator
from billing import BillingEngine
from config import Config
from database import CONNECTIVITY_ERRORS, LedgerStore, db
from errors import ParkingError, StoreUnavailable
from extensions import cors, init_cache, jwt, mail, make_celery
from models import utcnow
from qr_tokens import QrTokenIssuer
from routes import api
from sessions import SessionController


class Services:
    """
    The parking components for one application, built around a single
    LedgerStore handle.
    """

    def __init__(self, app, clock=utcnow):
        self.clock = clock
        self.store = LedgerStore(db)
        self.issuer = QrTokenIssuer(self.store,
                                    box_size=app.config['QR_CODE_SIZE'],
                                    border=app.config['QR_CODE_MARGIN'])
        self.billing = BillingEngine(self.store, app.config['BILLING_SHORTFALL_POLICY'])
        self.allocator = SpotAllocator(self.store, self.issuer, clock=clock)
        self.sessions = SessionController(self.store, self.issuer, self.billing, clock=clock)


def register_error_handlers(app):

    @app.errorhandler(ParkingError)
    def handle_parking_error(error):
        return jsonify(error.to_dict()), error.status_code

    def handle_store_down(error):
        app.logger.error("Database unreachable: %s", error)
        db.session.rollback()
        unavailable = StoreUnavailable()
        return jsonify(unavailable.to_dict()), unavailable.status_code

    for exc_class in CONNECTIVITY_ERRORS:
        app.register_error_handler(exc_class, handle_store_down)


def create_app(config_object=None, clock=None):
    """
    Application factory. `clock` (a callable returning naive UTC datetimes)
    replaces the wall clock for every booking, session and billing step.
    """
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    if not app.debug and not app.testing:
        app.logger.setLevel(logging.INFO)

    # Initialize plugins
    db.init_app(app)
    mail.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})
    init_cache(app)
    make_celery(app)

    app.extensions['tappark'] = Services(app, clock or utcnow)

    register_error_handlers(app)
    app.register_blueprint(api)

    # Health Check Route
    @app.route('/')
    def health_check():
        return "TapPark API is running."

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
