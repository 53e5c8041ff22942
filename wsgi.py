"""
WSGI entry point for production deployment with gunicorn
"""
import logging
import os

# Set production environment
os.environ.setdefault('FLASK_ENV', 'production')

from parcel_locator.config import config
from parcel_locator.core.app import app, initialize_app

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Initialize the application for production
initialize_app()

# Export app for gunicorn
application = app

if __name__ == "__main__":
    print("Warning: This file is meant to be run with gunicorn, not directly")
    print("Use: gunicorn -c gunicorn_config.py wsgi:application")
