"""
Configuration settings for the Parcel Locator
"""
import os
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent


def _env_flag(name, default="false"):
    return os.environ.get(name, default).lower() in ["true", "1", "yes", "on"]


class Config:
    # Basic Flask config
    SECRET_KEY = os.environ.get("SESSION_SECRET", "dev-secret-key-change-in-production")
    DEBUG = os.environ.get("FLASK_ENV", "development") == "development"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///localisation_results.db")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    HISTORY_LIMIT = int(os.environ.get("HISTORY_LIMIT", 20))

    # API Keys
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY")
    GOOGLE_APPLICATION_CREDENTIALS = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS_JSON")

    # Feature flags
    ENABLE_AI_FEATURES = bool(OPENAI_API_KEY) and _env_flag("ENABLE_AI_FEATURES", "true")
    ENABLE_GOOGLE_VISION = bool(GOOGLE_APPLICATION_CREDENTIALS)
    ENABLE_GOOGLE_MAPS = bool(GOOGLE_MAPS_API_KEY) and _env_flag("ENABLE_GOOGLE_MAPS", "true")

    # External services
    CADASTRE_API_URL = os.environ.get("CADASTRE_API_URL", "https://apicarto.ign.fr/api/cadastre")
    COMMUNES_API_URL = os.environ.get("COMMUNES_API_URL", "https://geo.api.gouv.fr/communes")
    BUILDINGS_WFS_URL = os.environ.get("BUILDINGS_WFS_URL", "https://data.geopf.fr/wfs/ows")
    CADASTRE_WMS_URL = os.environ.get("CADASTRE_WMS_URL", "https://data.geopf.fr/wms-v/ows")
    ETALAB_WMS_URL = os.environ.get("ETALAB_WMS_URL", "https://cadastre.data.gouv.fr/wms")
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "")

    # Pipeline settings
    MAX_CANDIDATE_WORKERS = int(os.environ.get("MAX_CANDIDATE_WORKERS", 8))
    MAX_GEOCODING_WORKERS = int(os.environ.get("MAX_GEOCODING_WORKERS", 4))
    MAX_ASSET_WORKERS = int(os.environ.get("MAX_ASSET_WORKERS", 8))
    PIPELINE_DEADLINE_SECONDS = float(os.environ.get("PIPELINE_DEADLINE_SECONDS", 45))
    REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", 8))

    # Cache settings
    GEOCODE_CACHE_TTL = int(os.environ.get("GEOCODE_CACHE_TTL", 3600))

    # Upload limits
    MAX_IMAGE_BYTES = int(os.environ.get("MAX_IMAGE_BYTES", 15 * 1024 * 1024))


# Create config instance
config = Config()
