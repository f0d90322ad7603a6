import logging

import redis
from celery import Celery, Task
from flask import current_app
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_mail import Mail

logger = logging.getLogger(__name__)

mail = Mail()
jwt = JWTManager()
cors = CORS()


# --- Redis cache ---

def init_cache(app):
    """Creates the Redis client, or None when caching is switched off."""
    url = app.config.get('REDIS_URL')
    cache = redis.Redis.from_url(url) if url else None
    app.extensions['cache'] = cache
    return cache


def get_cache():
    return current_app.extensions.get('cache')


def clear_cache(patterns):
    """Clears Redis cache keys matching the given patterns."""
    cache = get_cache()
    if not cache:
        return
    try:
        keys_to_delete = []
        for pattern in patterns:
            keys_to_delete.extend(cache.keys(pattern))

        if keys_to_delete:
            cache.delete(*keys_to_delete)
            logger.debug("Cache cleared for keys: %s", keys_to_delete)
    except redis.RedisError as e:
        logger.warning("Redis cache clear failed: %s", e)


# --- Celery ---

def make_celery(app):
    """
    Configures a Celery app that runs every task inside the Flask app context.
    """

    class ContextTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery = Celery(app.import_name, task_cls=ContextTask, include=['tasks'])
    celery.conf.update(
        broker_url=app.config['CELERY_BROKER_URL'],
        result_backend=app.config['CELERY_RESULT_BACKEND'],
        task_always_eager=app.config.get('CELERY_TASK_ALWAYS_EAGER', False),
        task_ignore_result=True,
    )

    hold = app.config.get('RESERVATION_HOLD_MINUTES')
    if hold:
        # Sweep at a quarter of the hold so a stale booking lives at most 1.25x hold.
        celery.conf.beat_schedule = {
            'expire-stale-reservations': {
                'task': 'tasks.expire_stale_reservations',
                'schedule': max(60.0, hold * 60 / 4),
            },
        }

    celery.set_default()
    app.extensions['celery'] = celery
    return celery
