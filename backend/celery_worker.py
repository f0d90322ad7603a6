# celery_worker.py
# Run with:  celery -A celery_worker.celery worker --beat --loglevel=info
from app import create_app

# Configure the Flask app; make_celery() already ran inside the factory
flask_app = create_app()

celery = flask_app.extensions['celery']
