import logging

from celery import shared_task
from flask import current_app
from flask_mail import Message

from billing import format_overage
from database import db
from extensions import clear_cache, mail
from models import Penalty, User

logger = logging.getLogger(__name__)


@shared_task(name='tasks.send_penalty_notice')
def send_penalty_notice(penalty_id):
    """
    Triggered when a session ends beyond the user's balance. E-mails the user
    the overage that will be taken from their next subscription.
    """
    penalty = db.session.get(Penalty, penalty_id)
    if not penalty:
        logger.error("Penalty %s not found while sending notice", penalty_id)
        return "Failed: Penalty not found"

    user = db.session.get(User, penalty.user_id)
    if not user:
        logger.error("User %s not found while sending penalty notice", penalty.user_id)
        return "Failed: User not found"

    overage = format_overage(penalty.penalty_minutes)
    msg = Message(
        subject="TapPark: Your parking session exceeded your balance",
        recipients=[user.email],
        body=(f"Hello {user.username},\n\n"
              f"Your last parking session exceeded your remaining subscription balance "
              f"by {overage}. This penalty will be deducted from your next subscription plan.\n\n"
              f"Regards,\nTapPark Team")
    )
    mail.send(msg)
    logger.info("Penalty notice sent to %s for penalty %s", user.email, penalty_id)
    return "Penalty notice sent."


@shared_task(name='tasks.expire_stale_reservations')
def expire_stale_reservations():
    """
    Scheduled Task: cancels bookings nobody scanned within
    RESERVATION_HOLD_MINUTES and frees their spots.
    """
    hold = current_app.config.get('RESERVATION_HOLD_MINUTES')
    if not hold:
        return "Reservation expiry disabled."

    sessions = current_app.extensions['tappark'].sessions
    expired = sessions.expire_stale(hold)
    if expired:
        clear_cache(["area_spots_*"])
        logger.info("Expired reservations: %s", expired)
    return f"Expired {len(expired)} reservations."
