"""
Main entry point for the Parcel Locator
"""
import logging
import os

from parcel_locator import __version__
from parcel_locator.config import config
from parcel_locator.core.app import app, initialize_app

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Initialize app when module is loaded (for gunicorn)
initialize_app()

if __name__ == "__main__":
    print(f"""
    ╔══════════════════════════════════════════════╗
    ║     Parcel Locator v{__version__:<25}║
    ║     Starting Flask application...            ║
    ╚══════════════════════════════════════════════╝

    Configuration:
    - Debug Mode: {config.DEBUG}
    - AI Features: {config.ENABLE_AI_FEATURES}
    - Google Vision: {config.ENABLE_GOOGLE_VISION}
    - Google Maps: {config.ENABLE_GOOGLE_MAPS}
    - Pipeline deadline: {config.PIPELINE_DEADLINE_SECONDS}s
    - Environment: {os.environ.get('FLASK_ENV', 'development')}
    """)

    app.run(host="0.0.0.0", port=5000, debug=config.DEBUG)
