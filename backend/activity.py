import logging

from sqlalchemy.exc import SQLAlchemyError

from database import db
from models import ActivityLog

logger = logging.getLogger(__name__)

# Action types written to user_logs
PARKING_BOOK = 'PARKING_BOOK'
PARKING_START = 'PARKING_START'
PARKING_END = 'PARKING_END'
PARKING_CANCEL = 'PARKING_CANCEL'
QR_SCAN = 'QR_SCAN'


def log_user_activity(user_id, action_type, description, target_id=None):
    """
    Records an entry in user_logs. Called after the main transaction has
    committed; a failure here is logged and never reaches the caller.
    """
    try:
        db.session.add(ActivityLog(
            user_id=user_id,
            action_type=action_type,
            description=description[:255],
            target_id=target_id
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("Activity log write failed (%s for user %s): %s", action_type, user_id, e)
