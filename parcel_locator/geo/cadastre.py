"""
Cadastral registry client.

Wraps the public French land registry services:
    - IGN API Carto, cadastre module: parcel geometries and identifiers
    - geo.api.gouv.fr: postal code -> INSEE commune codes
    - IGN Géoplateforme WFS (BD TOPO): buildings, to tag parcels by building type
    - IGN / Etalab WMS: rendered cadastral plan images

Payloads without a ``features`` array are treated as "no data".
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from circuitbreaker import CircuitBreakerError
from shapely.geometry import Point, mapping, shape
from shapely.geometry.base import BaseGeometry

from parcel_locator.config import config
from parcel_locator.core.errors import CadastreError
from parcel_locator.core.types import (
    BUILDING_COLLECTIVE, BUILDING_OTHER, BUILDING_SINGLE_FAMILY, BUILDING_UNBUILT, BUILDING_UNKNOWN,
    Coordinates,
)
from parcel_locator.nlp.address_normalizer import fold
from parcel_locator.utils.http import get_json, timed_get
from parcel_locator.utils.resilience import resilient_cadastre_call, resilient_geo_api_call

logger = logging.getLogger(__name__)

# Bounding box type: (min_lng, min_lat, max_lng, max_lat)
BBox = Tuple[float, float, float, float]

PARCEL_PAGE_SIZE = 500
MAX_PARCEL_PAGES = 4
BUILDINGS_LAYER = 'BDTOPO_V3:batiment'
MAX_BUILDINGS = 2000

CADASTRE_WMS_LAYER = 'CADASTRALPARCELS.PARCELS'
ETALAB_WMS_LAYER = 'parcelles'
WMS_IMAGE_SIZE = 1200
MIN_WMS_IMAGE_BYTES = 1000

# Half-size of the map window around a point (about 400 m x 400 m in mainland France)
POINT_WINDOW_DELTA_LAT = 0.0018
POINT_WINDOW_DELTA_LNG = 0.0027
PARCEL_WINDOW_PADDING = 0.0004

RESIDENTIAL_USAGE = 'residentiel'
IGNORED_USAGES = {'annexe', 'indifferencie'}


def _features(payload: Any) -> List[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    features = payload.get('features')
    if not isinstance(features, list):
        if payload.get('type') == 'Feature' and payload.get('geometry'):
            return [payload]
        return []
    return [f for f in features if isinstance(f, dict) and f.get('geometry')]


def feature_geometry(feature: Dict[str, Any]) -> Optional[BaseGeometry]:
    """Shapely geometry of a GeoJSON feature, or None when invalid."""
    try:
        geometry = shape(feature['geometry'])
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.debug(f"Invalid feature geometry: {e}")
        return None
    if geometry.is_empty:
        return None
    return geometry


def point_window(coordinates: Coordinates) -> BBox:
    return (
        coordinates.lng - POINT_WINDOW_DELTA_LNG,
        coordinates.lat - POINT_WINDOW_DELTA_LAT,
        coordinates.lng + POINT_WINDOW_DELTA_LNG,
        coordinates.lat + POINT_WINDOW_DELTA_LAT,
    )


def wms_map_url(bbox: BBox, base_url: Optional[str] = None, layer: str = CADASTRE_WMS_LAYER,
                size: int = WMS_IMAGE_SIZE) -> str:
    """
    WMS 1.3.0 GetMap URL for a window.

    With CRS EPSG:4326 in WMS 1.3.0 the BBOX axis order is latitude first.
    """
    min_lng, min_lat, max_lng, max_lat = bbox
    params = urlencode({
        'SERVICE': 'WMS',
        'VERSION': '1.3.0',
        'REQUEST': 'GetMap',
        'LAYERS': layer,
        'STYLES': '',
        'FORMAT': 'image/png',
        'TRANSPARENT': 'TRUE',
        'CRS': 'EPSG:4326',
        'WIDTH': size,
        'HEIGHT': size,
        'BBOX': f"{min_lat:.6f},{min_lng:.6f},{max_lat:.6f},{max_lng:.6f}",
    })
    return f"{base_url or config.CADASTRE_WMS_URL}?{params}"


def classify_building(properties: Dict[str, Any]) -> Optional[str]:
    """
    Building type from BD TOPO attributes; None for annexes and undetermined use.
    """
    usage = fold(properties.get('usage_1') or properties.get('usage1') or '')
    if not usage or usage in IGNORED_USAGES:
        return None
    if usage != RESIDENTIAL_USAGE:
        return BUILDING_OTHER
    try:
        dwellings = int(properties.get('nombre_de_logements') or 0)
    except (TypeError, ValueError):
        dwellings = 0
    return BUILDING_COLLECTIVE if dwellings >= 2 else BUILDING_SINGLE_FAMILY


def combine_building_types(types: List[Optional[str]]) -> str:
    """Parcel building type from the types of the buildings standing on it."""
    known = [t for t in types if t]
    if BUILDING_COLLECTIVE in known:
        return BUILDING_COLLECTIVE
    if BUILDING_SINGLE_FAMILY in known:
        return BUILDING_SINGLE_FAMILY
    if BUILDING_OTHER in known:
        return BUILDING_OTHER
    if types:
        return BUILDING_UNKNOWN  # only annexes
    return BUILDING_UNBUILT


class CadastreClient:
    """Read-only client for the cadastral registry services"""

    def __init__(self, api_url: Optional[str] = None, communes_url: Optional[str] = None,
                 buildings_url: Optional[str] = None):
        self.api_url = (api_url or config.CADASTRE_API_URL).rstrip('/')
        self.communes_url = communes_url or config.COMMUNES_API_URL
        self.buildings_url = buildings_url or config.BUILDINGS_WFS_URL

    @resilient_cadastre_call
    def _parcel_page(self, geometry: Dict[str, Any], start: int) -> Any:
        return get_json('cadastre', 'parcelle', f"{self.api_url}/parcelle", params={
            'geom': json.dumps(geometry),
            '_limit': PARCEL_PAGE_SIZE,
            '_start': start,
        })

    def parcels_in_geometry(self, geometry: BaseGeometry) -> List[Dict[str, Any]]:
        """
        Parcel features intersecting a geometry.

        Raises:
            CadastreError: the registry could not be queried.
        """
        features: List[Dict[str, Any]] = []
        geojson = mapping(geometry)
        for page in range(MAX_PARCEL_PAGES):
            try:
                payload = self._parcel_page(geojson, page * PARCEL_PAGE_SIZE)
            except (requests.RequestException, ValueError, CircuitBreakerError) as e:
                raise CadastreError(f"Parcel lookup failed: {e}") from e
            page_features = _features(payload)
            features.extend(page_features)
            if len(page_features) < PARCEL_PAGE_SIZE:
                break
        logger.info(f"Cadastre returned {len(features)} parcels")
        return features

    def parcel_at(self, coordinates: Coordinates) -> Optional[Dict[str, Any]]:
        """The parcel feature containing a point, or None."""
        features = self.parcels_in_geometry(Point(coordinates.lng, coordinates.lat))
        return features[0] if features else None

    @resilient_geo_api_call
    def _communes(self, postal_code: str) -> Any:
        return get_json('geo_api', 'communes', self.communes_url, params={
            'codePostal': postal_code,
            'fields': 'code,nom',
            'format': 'json',
        })

    def communes_for_postal_code(self, postal_code: str) -> List[Dict[str, str]]:
        """INSEE codes and names of the communes served by a postal code."""
        try:
            payload = self._communes(postal_code)
        except (requests.RequestException, ValueError, CircuitBreakerError) as e:
            raise CadastreError(f"Commune lookup failed for {postal_code}: {e}") from e
        if not isinstance(payload, list):
            return []
        return [
            {'code': str(c['code']), 'nom': c.get('nom', '')}
            for c in payload if isinstance(c, dict) and c.get('code')
        ]

    @resilient_cadastre_call
    def _buildings(self, bbox: BBox) -> Any:
        min_lng, min_lat, max_lng, max_lat = bbox
        return get_json('cadastre', 'buildings', self.buildings_url, params={
            'SERVICE': 'WFS',
            'VERSION': '2.0.0',
            'REQUEST': 'GetFeature',
            'TYPENAMES': BUILDINGS_LAYER,
            'OUTPUTFORMAT': 'application/json',
            'SRSNAME': 'CRS:84',
            'BBOX': f"{min_lng},{min_lat},{max_lng},{max_lat},CRS:84",
            'COUNT': MAX_BUILDINGS,
        })

    def buildings_in_bbox(self, bbox: BBox) -> List[Tuple[BaseGeometry, Optional[str]]]:
        """(footprint, building type) of every building in a window."""
        try:
            payload = self._buildings(bbox)
        except (requests.RequestException, ValueError, CircuitBreakerError) as e:
            raise CadastreError(f"Building lookup failed: {e}") from e
        buildings = []
        for feature in _features(payload):
            geometry = feature_geometry(feature)
            if geometry is not None:
                buildings.append((geometry, classify_building(feature.get('properties') or {})))
        return buildings

    def fetch_wms_image(self, url: str) -> Optional[bytes]:
        """Download a rendered WMS image; None unless a real image came back."""
        response = timed_get('cadastre', 'wms', url)
        content_type = response.headers.get('content-type', '')
        if 'image' not in content_type or len(response.content) <= MIN_WMS_IMAGE_BYTES:
            logger.warning(f"WMS returned no usable image ({content_type}, {len(response.content)} bytes)")
            return None
        return response.content

    def plan_image(self, coordinates: Coordinates) -> Optional[bytes]:
        """
        Cadastral plan around a point: the Etalab WMS first, then the IGN one.
        """
        window = point_window(coordinates)
        sources = [
            ('etalab', wms_map_url(window, base_url=config.ETALAB_WMS_URL, layer=ETALAB_WMS_LAYER)),
            ('ign', wms_map_url(window)),
        ]
        for name, url in sources:
            try:
                image = self.fetch_wms_image(url)
            except requests.RequestException as e:
                logger.warning(f"Cadastral WMS '{name}' failed: {e}")
                continue
            if image:
                logger.info(f"Cadastral plan served by '{name}' ({len(image)} bytes)")
                return image
        return None
