import json
import logging
import time
from typing import List, Optional

from flask import Flask, Response, g, jsonify, request

from parcel_locator import __version__
from parcel_locator.config import config
from parcel_locator.core.errors import AnnotationError
from parcel_locator.core.metrics import (
    app_info, generate_latest, http_request_duration, track_request_metrics, update_system_metrics,
)
from parcel_locator.core.models import LocalizationRecord, db
from parcel_locator.core.pipeline import LocalizationPipeline
from parcel_locator.core.types import (
    Coordinates, ListingData, ReferenceSale, SearchContext, SearchZone, ZoneConstraints,
)
from parcel_locator.geo.cadastre import CadastreClient
from parcel_locator.geo.exclusions import exclusions_from_result, expanded_zone, expansion_level
from parcel_locator.utils.cache import update_cache_metrics
from parcel_locator.utils.resilience import get_all_circuit_breaker_statuses, resilience_manager

logger = logging.getLogger(__name__)

CADASTRE_CACHE_CONTROL = "public, max-age=86400"

app = Flask(__name__)
app.secret_key = config.SECRET_KEY

# Configure the database
app.config["SQLALCHEMY_DATABASE_URI"] = config.SQLALCHEMY_DATABASE_URI
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = config.SQLALCHEMY_ENGINE_OPTIONS
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = config.SQLALCHEMY_TRACK_MODIFICATIONS
app.config["MAX_CONTENT_LENGTH"] = config.MAX_IMAGE_BYTES + 1024 * 1024

db.init_app(app)

cadastre_client = CadastreClient()
_pipeline: Optional[LocalizationPipeline] = None


def get_pipeline() -> LocalizationPipeline:
    """Pipeline shared by all requests, built on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = LocalizationPipeline()
    return _pipeline


def _parse_float(source, name: str, required: bool = False) -> Optional[float]:
    raw = (source.get(name) or '').strip()
    if not raw:
        if required:
            raise ValueError(f"Missing parameter '{name}'")
        return None
    try:
        return float(raw.replace(',', '.'))
    except ValueError:
        raise ValueError(f"Parameter '{name}' must be a number, got '{raw}'") from None


def _parse_list(source, name: str) -> List[str]:
    raw = source.get(name) or ''
    return [item.strip() for item in raw.split(',') if item.strip()]


def _read_image():
    """The uploaded ``image`` file bytes. Raises ValueError when missing, empty or too large."""
    upload = request.files.get('image')
    if upload is None:
        raise ValueError("Missing 'image' file")
    image_bytes = upload.read()
    if not image_bytes:
        raise ValueError("Empty image")
    if len(image_bytes) > config.MAX_IMAGE_BYTES:
        raise ValueError(f"Image larger than {config.MAX_IMAGE_BYTES} bytes")
    return image_bytes


def _parse_context(form) -> Optional[SearchContext]:
    city = (form.get('city') or '').strip() or None
    postal_code = (form.get('postal_code') or '').strip() or None
    department = (form.get('department') or '').strip() or None
    if not (city or postal_code or department):
        return None
    return SearchContext(city=city, postal_code=postal_code, department=department)


def _parse_reference_sales(form) -> List[ReferenceSale]:
    """
    ``reference_sales``: a JSON list of ``{"price", "surface", "date", "lat",
    "lng", "parcel_id"}`` objects. Each sale needs a price and either a
    parcel id or both coordinates.
    """
    raw = (form.get('reference_sales') or '').strip()
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError("Parameter 'reference_sales' must be a JSON list") from None
    if not isinstance(items, list):
        raise ValueError("Parameter 'reference_sales' must be a JSON list")

    sales = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Reference sale {index} must be an object")
        try:
            price = float(item['price'])
            surface = float(item['surface']) if item.get('surface') is not None else None
            coordinates = None
            if item.get('lat') is not None or item.get('lng') is not None:
                coordinates = Coordinates(float(item['lat']), float(item['lng']))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Reference sale {index} is invalid: {e}") from None
        parcel_id = str(item['parcel_id']).strip() if item.get('parcel_id') else None
        if coordinates is None and parcel_id is None:
            raise ValueError(f"Reference sale {index} needs 'parcel_id' or 'lat'/'lng'")
        sales.append(ReferenceSale(
            price=price,
            surface=surface,
            date=str(item['date']) if item.get('date') else None,
            coordinates=coordinates,
            parcel_id=parcel_id,
        ))
    return sales


def _bad_request(message: str):
    return jsonify({'error': message}), 400


# Request/Response Middleware for Metrics
@app.before_request
def before_request():
    """Track request start time for latency measurement."""
    g.start_time = time.time()


@app.after_request
def after_request(response):
    """Track HTTP request metrics after each request."""
    if request.path == '/metrics':
        return response

    request_duration = time.time() - getattr(g, 'start_time', time.time())
    track_request_metrics(
        method=request.method,
        endpoint=request.endpoint or request.path,
        status_code=response.status_code
    )
    http_request_duration.labels(
        method=request.method,
        endpoint=request.endpoint or request.path
    ).observe(request_duration)
    return response


@app.route("/api/localisation", methods=["POST"])
def localise():
    """
    Locate the parcel shown in an uploaded photo.

    Multipart form: ``image`` file, ``lat``, ``lng``, ``radius`` (meters), and
    optionally ``postal_codes``/``communes`` (comma separated), ``city``,
    ``postal_code``, ``department``, ``price``, ``surface`` and
    ``reference_sales`` (JSON list).
    """
    form = request.form
    try:
        image_bytes = _read_image()
        zone = SearchZone(
            center=Coordinates(_parse_float(form, 'lat', True), _parse_float(form, 'lng', True)),
            radius_meters=_parse_float(form, 'radius', True),
            constraints=ZoneConstraints(
                postal_codes=tuple(_parse_list(form, 'postal_codes')),
                communes=tuple(_parse_list(form, 'communes')),
            ),
        )
        listing = ListingData(price=_parse_float(form, 'price'), surface=_parse_float(form, 'surface'))
        reference_sales = _parse_reference_sales(form)
    except ValueError as e:
        return _bad_request(str(e))

    logger.info(f"Localisation request around {zone.center} (radius {zone.radius_meters:.0f} m)")
    try:
        result = get_pipeline().locate(
            image_bytes, zone, context=_parse_context(form), listing=listing, reference_sales=reference_sales,
        )
    except AnnotationError as e:
        logger.error(f"Annotation failed: {e}")
        return jsonify({'error': 'Image annotation failed', 'details': str(e)}), 502

    payload = result.to_dict()
    record = LocalizationRecord.save_result(result, zone)
    payload['request_id'] = record.request_id if record else None
    return jsonify(payload)


@app.route("/api/localisation/more", methods=["POST"])
def localise_more():
    """
    Relaunch a localisation to get new candidates.

    Multipart form: the same ``image``, the ``request_id`` of the original
    request or of any of its relaunches, and optionally the context and
    listing fields of ``/api/localisation``. Candidates proposed by every
    earlier run are excluded and the original zone is widened by one level
    per run.
    """
    form = request.form
    request_id = (form.get('request_id') or '').strip()
    if not request_id:
        return _bad_request("Missing parameter 'request_id'")
    try:
        image_bytes = _read_image()
        listing = ListingData(price=_parse_float(form, 'price'), surface=_parse_float(form, 'surface'))
        reference_sales = _parse_reference_sales(form)
    except ValueError as e:
        return _bad_request(str(e))

    previous = LocalizationRecord.find(request_id)
    if previous is None:
        return jsonify({'error': f"Unknown request_id '{request_id}'"}), 404

    root_request_id = previous.root_request_id or previous.request_id
    runs = LocalizationRecord.runs_for(root_request_id)
    root = next((run for run in runs if run.request_id == root_request_id), previous)
    level = expansion_level(len(runs))
    zone = expanded_zone(root.zone, level)
    exclusions = [excluded for run in runs for excluded in exclusions_from_result(run.data)]

    logger.info(
        f"Relaunch of {root_request_id} at level {level} (radius {zone.radius_meters:.0f} m, "
        f"{len(exclusions)} candidates excluded from {len(runs)} runs)"
    )
    try:
        result = get_pipeline().locate(
            image_bytes, zone, context=_parse_context(form), listing=listing,
            reference_sales=reference_sales, exclusions=exclusions,
        )
    except AnnotationError as e:
        logger.error(f"Annotation failed: {e}")
        return jsonify({'error': 'Image annotation failed', 'details': str(e)}), 502

    payload = result.to_dict()
    record = LocalizationRecord.save_result(result, zone, root_request_id=root_request_id, expansion_level=level)
    payload['request_id'] = record.request_id if record else None
    payload['root_request_id'] = root_request_id
    payload['expansion_level'] = level
    payload['search_radius_meters'] = zone.radius_meters
    return jsonify(payload)


@app.route("/api/localisation/history", methods=["GET"])
def localisation_history():
    try:
        limit = int(request.args.get('limit', config.HISTORY_LIMIT))
    except ValueError:
        return _bad_request("Parameter 'limit' must be an integer")
    limit = max(1, min(limit, 100))
    return jsonify({'results': [record.to_summary() for record in LocalizationRecord.recent(limit)]})


@app.route("/api/cadastre", methods=["GET"])
def cadastre_plan():
    """Cadastral plan image around a point, from the Etalab WMS or the IGN one."""
    try:
        coordinates = Coordinates(_parse_float(request.args, 'lat', True), _parse_float(request.args, 'lng', True))
    except ValueError as e:
        return _bad_request(str(e))

    image = cadastre_client.plan_image(coordinates)
    if not image:
        return jsonify({'error': 'Cadastral plan unavailable'}), 502
    return Response(image, mimetype='image/png', headers={'Cache-Control': CADASTRE_CACHE_CONTROL})


@app.route("/health", methods=["GET"])
def health():
    return jsonify({
        'status': 'healthy',
        'version': __version__,
        'features': {
            'google_vision': config.ENABLE_GOOGLE_VISION,
            'google_maps': config.ENABLE_GOOGLE_MAPS,
            'ai_features': config.ENABLE_AI_FEATURES,
        },
        'services': resilience_manager.get_service_status(),
        'circuit_breakers': get_all_circuit_breaker_statuses(),
    })


# Metrics endpoint
@app.route("/metrics", methods=["GET"])
def metrics():
    """Expose Prometheus metrics."""
    update_system_metrics()
    update_cache_metrics()
    return Response(generate_latest(), mimetype="text/plain")


def initialize_app():
    """Create tables and publish application metadata"""
    with app.app_context():
        db.create_all()
        app_info.info({
            'version': __version__,
            'environment': 'development' if config.DEBUG else 'production',
            'ai_enabled': str(config.ENABLE_AI_FEATURES),
            'google_vision_enabled': str(config.ENABLE_GOOGLE_VISION),
            'google_maps_enabled': str(config.ENABLE_GOOGLE_MAPS),
        })
    logger.info("Application initialized")
