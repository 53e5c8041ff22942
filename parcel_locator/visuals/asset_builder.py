"""
Visual Asset Builder

Builds the imagery links shown next to each candidate: a satellite view, a
cadastral plan (always present) and a Street View image (only when Google
has a panorama there).
"""

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional
from urllib.parse import urlencode

import requests
from circuitbreaker import CircuitBreakerError

from parcel_locator.config import config
from parcel_locator.core.types import CandidateVisuals, Coordinates
from parcel_locator.geo.cadastre import (
    PARCEL_WINDOW_PADDING, CadastreClient, feature_geometry, point_window, wms_map_url,
)
from parcel_locator.utils.cache import TTLCache, get_cache
from parcel_locator.utils.http import get_json
from parcel_locator.utils.resilience import first_successful, resilient_google_maps_call

logger = logging.getLogger(__name__)

STATIC_MAPS_URL = "https://maps.googleapis.com/maps/api/staticmap"
STREET_VIEW_URL = "https://maps.googleapis.com/maps/api/streetview"
STREET_VIEW_METADATA_URL = "https://maps.googleapis.com/maps/api/streetview/metadata"

SATELLITE_ZOOM = 19
SATELLITE_SIZE = "800x600"
STREET_VIEW_SIZE = "800x600"
STREET_VIEW_PREVIEW_SIZE = "400x300"
STREET_VIEW_RADIUS_METERS = 50

CADASTRE_PROXY_PATH = "/api/cadastre"

# Which step of the cadastral chain produced the URL
CADASTRE_SOURCE_PARCEL = "parcel_lookup"
CADASTRE_SOURCE_PROXY = "proxy"
CADASTRE_SOURCE_COORDINATES = "coordinates"


def satellite_image_url(coordinates: Coordinates, api_key: Optional[str] = None) -> Optional[str]:
    """Static Maps satellite view with a marker on the candidate, None without a key."""
    if not api_key:
        return None
    location = f"{coordinates.lat},{coordinates.lng}"
    return (
        f"{STATIC_MAPS_URL}?center={location}&zoom={SATELLITE_ZOOM}&size={SATELLITE_SIZE}"
        f"&maptype=satellite&markers=color:red|{location}&key={api_key}"
    )


def bare_satellite_url(coordinates: Coordinates) -> str:
    """Coordinate-centred satellite request with nothing optional in it."""
    return (
        f"{STATIC_MAPS_URL}?center={coordinates.lat},{coordinates.lng}"
        f"&zoom={SATELLITE_ZOOM}&size={SATELLITE_SIZE}&maptype=satellite"
    )


def street_view_image_url(coordinates: Coordinates, api_key: Optional[str] = None,
                          size: str = STREET_VIEW_PREVIEW_SIZE) -> Optional[str]:
    if not api_key:
        return None
    return (
        f"{STREET_VIEW_URL}?size={size}&location={coordinates.lat},{coordinates.lng}"
        f"&heading=0&pitch=0&fov=90&key={api_key}"
    )


def cadastre_proxy_url(coordinates: Coordinates, base_url: Optional[str] = None) -> str:
    query = urlencode({'lat': coordinates.lat, 'lng': coordinates.lng})
    return f"{(base_url if base_url is not None else config.PUBLIC_BASE_URL).rstrip('/')}{CADASTRE_PROXY_PATH}?{query}"


def coordinate_cadastre_url(coordinates: Coordinates) -> str:
    """WMS request on a fixed window around the point. Pure formatting, cannot fail."""
    return wms_map_url(point_window(coordinates))


@resilient_google_maps_call
def fetch_street_view_metadata(coordinates: Coordinates, api_key: str) -> dict:
    return get_json('google_streetview', 'metadata', STREET_VIEW_METADATA_URL, params={
        'location': f"{coordinates.lat},{coordinates.lng}",
        'key': api_key,
        'source': 'outdoor',
        'radius': STREET_VIEW_RADIUS_METERS,
    })


def checked_street_view_url(coordinates: Coordinates, api_key: Optional[str], cache: Optional[TTLCache] = None,
                      size: str = STREET_VIEW_SIZE) -> Optional[str]:
    """Street View image URL when the metadata endpoint reports a panorama, else None."""
    if not api_key:
        return None

    cache = cache or get_cache('street_view_metadata')
    cache_key = f"{coordinates.lat:.6f},{coordinates.lng:.6f}"
    status = cache.get(cache_key)
    if status is None:
        try:
            metadata = fetch_street_view_metadata(coordinates, api_key)
        except (requests.RequestException, ValueError, CircuitBreakerError) as e:
            logger.warning(f"Street View metadata lookup failed at {coordinates}: {e}")
            return None
        status = metadata.get('status', 'UNKNOWN') if isinstance(metadata, dict) else 'UNKNOWN'
        cache.set(cache_key, status)

    if status != 'OK':
        logger.debug(f"No Street View at {coordinates} ({status})")
        return None
    return street_view_image_url(coordinates, api_key, size=size)


class VisualAssetBuilder:
    """Builds CandidateVisuals for a coordinate pair"""

    def __init__(self, cadastre: Optional[CadastreClient] = None, api_key: Optional[str] = None,
                 proxy_base_url: Optional[str] = None, proxy_enabled: bool = True,
                 metadata_cache: Optional[TTLCache] = None):
        self.cadastre = cadastre or CadastreClient()
        self.api_key = api_key if api_key is not None else (
            config.GOOGLE_MAPS_API_KEY if config.ENABLE_GOOGLE_MAPS else None
        )
        self.proxy_base_url = proxy_base_url
        self.proxy_enabled = proxy_enabled
        self.metadata_cache = metadata_cache or get_cache('street_view_metadata')

    def fallback_visuals(self, coordinates: Coordinates) -> CandidateVisuals:
        """Complete struct built only from the coordinates; every later step refines it."""
        return CandidateVisuals(
            satellite_url=bare_satellite_url(coordinates),
            cadastre_url=coordinate_cadastre_url(coordinates),
            cadastre_source=CADASTRE_SOURCE_COORDINATES,
        )

    # -- satellite --------------------------------------------------------

    def satellite_url(self, coordinates: Coordinates) -> str:
        url, _ = first_successful(
            [('static_maps', lambda: satellite_image_url(coordinates, self.api_key))],
            default=lambda: bare_satellite_url(coordinates),
        )
        return url

    # -- cadastre ---------------------------------------------------------

    def _parcel_plan_url(self, coordinates: Coordinates) -> Optional[str]:
        feature = self.cadastre.parcel_at(coordinates)
        if not feature:
            return None
        geometry = feature_geometry(feature)
        if geometry is None:
            return None
        min_lng, min_lat, max_lng, max_lat = geometry.bounds
        return wms_map_url((
            min_lng - PARCEL_WINDOW_PADDING, min_lat - PARCEL_WINDOW_PADDING,
            max_lng + PARCEL_WINDOW_PADDING, max_lat + PARCEL_WINDOW_PADDING,
        ))

    def _proxy_url(self, coordinates: Coordinates) -> Optional[str]:
        if not self.proxy_enabled:
            return None
        return cadastre_proxy_url(coordinates, self.proxy_base_url)

    def cadastre_url(self, coordinates: Coordinates):
        """
        Cadastral plan URL and the step that produced it.

        Parcel lookup, then the internal proxy route, then a coordinate-only
        WMS request. The last step is plain string formatting so the result is
        never empty.
        """
        return first_successful(
            [
                (CADASTRE_SOURCE_PARCEL, lambda: self._parcel_plan_url(coordinates)),
                (CADASTRE_SOURCE_PROXY, lambda: self._proxy_url(coordinates)),
            ],
            default=lambda: coordinate_cadastre_url(coordinates),
            default_name=CADASTRE_SOURCE_COORDINATES,
        )

    # -- street view ------------------------------------------------------

    def street_view_url(self, coordinates: Coordinates) -> Optional[str]:
        return checked_street_view_url(coordinates, self.api_key, self.metadata_cache)

    # -- assembly ---------------------------------------------------------

    def build(self, coordinates: Coordinates, executor: Optional[Executor] = None) -> CandidateVisuals:
        """
        Build the visuals for one point. The three assets are fetched concurrently
        on ``executor`` (or a private pool) and joined before returning.
        """
        own_executor = executor is None
        pool = executor or ThreadPoolExecutor(max_workers=3, thread_name_prefix='assets')
        try:
            satellite_future = pool.submit(self.satellite_url, coordinates)
            cadastre_future = pool.submit(self.cadastre_url, coordinates)
            street_view_future = pool.submit(self.street_view_url, coordinates)

            visuals = self.fallback_visuals(coordinates)
            visuals = visuals.with_satellite(satellite_future.result())
            cadastre_url, cadastre_source = cadastre_future.result()
            visuals = visuals.with_cadastre(cadastre_url, cadastre_source)
            visuals = visuals.with_street_view(street_view_future.result())
        finally:
            if own_executor:
                pool.shutdown(wait=False)
        return visuals
