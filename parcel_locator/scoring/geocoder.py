"""
Geocoder & Ranker

Resolves address candidates to coordinates with the Google Geocoding API,
scores each result by its precision tier and blends that with the textual
score of the candidate.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import googlemaps
from circuitbreaker import CircuitBreakerError
from googlemaps.exceptions import ApiError, HTTPError, Timeout, TransportError

from parcel_locator.config import config
from parcel_locator.core.errors import GeocodingError
from parcel_locator.core.metrics import track_external_api_call, api_errors
from parcel_locator.core.types import AddressCandidate, Coordinates, GeocodedCandidate, SearchContext
from parcel_locator.nlp.address_normalizer import find_postal_code, fold, has_capitalized_city
from parcel_locator.utils.cache import TTLCache, get_cache
from parcel_locator.utils.resilience import resilient_google_maps_call
from parcel_locator.visuals.asset_builder import STREET_VIEW_PREVIEW_SIZE, checked_street_view_url

logger = logging.getLogger(__name__)

# Precision tier -> geocoding score
PRECISION_SCORES = {
    'ROOFTOP': 0.98,
    'RANGE_INTERPOLATED': 0.88,
    'GEOMETRIC_CENTER': 0.78,
    'APPROXIMATE': 0.68,
}
DEFAULT_PRECISION_SCORE = 0.7

CONTEXT_POSTAL_ECHO_BONUS = 0.05
CONTEXT_CITY_ECHO_BONUS = 0.05
MAX_CONTEXT_ECHO_BONUS = 0.1

PRECISE_GEOCODING_THRESHOLD = 0.9
PRECISE_GEOCODING_WEIGHT = 0.7
DEFAULT_GEOCODING_WEIGHT = 0.6

COUNTRY_COMPONENT = 'FR'
REGION_BIAS = 'fr'

GEOCODE_ERRORS = (ApiError, HTTPError, Timeout, TransportError)


def precision_score(location_type: Optional[str]) -> float:
    return PRECISION_SCORES.get((location_type or '').upper(), DEFAULT_PRECISION_SCORE)


def context_echo_bonus(formatted_address: str, context: Optional[SearchContext]) -> float:
    """Bonus when the resolved address repeats the context postal code and/or city."""
    if not context:
        return 0.0
    bonus = 0.0
    folded = fold(formatted_address)
    if context.postal_code and context.postal_code in formatted_address:
        bonus += CONTEXT_POSTAL_ECHO_BONUS
    if context.city and fold(context.city) in folded:
        bonus += CONTEXT_CITY_ECHO_BONUS
    return min(MAX_CONTEXT_ECHO_BONUS, bonus)


def blend_scores(candidate_score: float, geocoding_score: float) -> float:
    """globalScore = candidate * (1 - w) + geocoding * w, w favouring precise geocoding."""
    weight = PRECISE_GEOCODING_WEIGHT if geocoding_score > PRECISE_GEOCODING_THRESHOLD else DEFAULT_GEOCODING_WEIGHT
    return candidate_score * (1 - weight) + geocoding_score * weight


def build_geocoding_query(raw_text: str, context: Optional[SearchContext] = None) -> str:
    """
    Build the query sent to the geocoder.

    An address that already names a postal code or a city is left alone (only
    the country is appended) so that a stale search context cannot drag it to
    another town. Otherwise the context postal code and city are appended.
    """
    query = raw_text.strip()
    if not context:
        return query

    country = context.country or 'France'
    has_country = fold(country) in fold(query)

    if context.department:
        if fold(context.department) not in fold(query):
            return f"{query}, {context.department}, {country}"
        return query if has_country else f"{query}, {country}"

    if find_postal_code(query) or has_capitalized_city(query):
        return query if has_country else f"{query}, {country}"

    locality = ' '.join(part for part in (context.postal_code, context.city) if part)
    if locality and fold(locality) not in fold(query):
        query = f"{query}, {locality}"
    return query if has_country else f"{query}, {country}"


class AddressGeocoder:
    """Geocodes address candidates concurrently and ranks them."""

    def __init__(self, client: Optional[Any] = None, api_key: Optional[str] = None,
                 max_workers: Optional[int] = None, cache: Optional[TTLCache] = None,
                 street_view: Optional[Callable[[Coordinates], Optional[str]]] = None):
        self.api_key = api_key or config.GOOGLE_MAPS_API_KEY
        self.client = client
        if self.client is None and self.api_key and config.ENABLE_GOOGLE_MAPS:
            try:
                self.client = googlemaps.Client(key=self.api_key, timeout=config.REQUEST_TIMEOUT)
                logger.info("Geocoder initialized with Google Maps")
            except ValueError as e:
                logger.error(f"Failed to initialize Google Maps client: {e}")
        self.max_workers = max_workers or config.MAX_GEOCODING_WORKERS
        self.cache = cache or get_cache('geocode')
        self.street_view = street_view or self._street_view_url

    def is_available(self) -> bool:
        return self.client is not None

    def _street_view_url(self, coordinates: Coordinates) -> Optional[str]:
        return checked_street_view_url(coordinates, self.api_key, size=STREET_VIEW_PREVIEW_SIZE)

    @resilient_google_maps_call
    def _geocode_raw(self, query: str) -> List[Dict[str, Any]]:
        start_time = time.time()
        try:
            results = self.client.geocode(query, components={'country': COUNTRY_COMPONENT}, region=REGION_BIAS)
        except GEOCODE_ERRORS as e:
            track_external_api_call('google_maps', 'geocode', 'error', time.time() - start_time)
            api_errors.labels(service='google_maps', error_type=type(e).__name__).inc()
            raise
        track_external_api_call('google_maps', 'geocode', 'success', time.time() - start_time)
        return results or []

    def lookup(self, query: str) -> List[Dict[str, Any]]:
        """Raw geocoder results for a query, cached."""
        cached = self.cache.get(query)
        if cached is not None:
            return cached
        results = self._geocode_raw(query)
        if results:
            self.cache.set(query, results)
        return results

    def geocode_candidate(self, candidate: AddressCandidate,
                          context: Optional[SearchContext] = None) -> GeocodedCandidate:
        """
        Geocode one candidate.

        Raises:
            GeocodingError: transport/API failure or no result.
        """
        query = build_geocoding_query(candidate.raw_text, context)
        try:
            results = self.lookup(query)
        except GEOCODE_ERRORS + (CircuitBreakerError,) as e:
            raise GeocodingError(query, str(e)) from e
        if not results:
            raise GeocodingError(query, "no result")

        result = results[0]
        try:
            location = result['geometry']['location']
            lat, lng = float(location['lat']), float(location['lng'])
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingError(query, f"malformed result: {e}") from e

        location_type = result['geometry'].get('location_type') or 'UNKNOWN'
        formatted_address = result.get('formatted_address') or candidate.raw_text

        geocoding_score = min(1.0, precision_score(location_type) + context_echo_bonus(formatted_address, context))
        global_score = min(1.0, max(0.0, blend_scores(candidate.score, geocoding_score)))

        return GeocodedCandidate(
            address=formatted_address,
            latitude=lat,
            longitude=lng,
            geocoding_score=geocoding_score,
            global_score=global_score,
            source_text=candidate.raw_text,
            location_type=location_type,
            street_view_url=self.street_view(Coordinates(lat, lng)),
        )

    def _try_geocode(self, candidate: AddressCandidate, context: Optional[SearchContext]) -> Optional[GeocodedCandidate]:
        try:
            return self.geocode_candidate(candidate, context)
        except (GeocodingError, ValueError) as e:
            logger.warning(f"Geocoding failed for '{candidate.raw_text}': {e}")
            return None

    def geocode_candidates(self, candidates: List[AddressCandidate],
                           context: Optional[SearchContext] = None) -> List[GeocodedCandidate]:
        """
        Geocode every candidate (concurrently) and return the successes sorted
        by global score, highest first. Failures are logged and skipped.
        """
        if not candidates:
            return []
        if not self.is_available():
            logger.warning("GOOGLE_MAPS_API_KEY not configured, skipping geocoding")
            return []

        workers = max(1, min(self.max_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='geocode') as executor:
            results = list(executor.map(lambda c: self._try_geocode(c, context), candidates))

        geocoded = [r for r in results if r is not None]
        geocoded.sort(key=lambda g: g.global_score, reverse=True)
        logger.info(f"Geocoded {len(geocoded)}/{len(candidates)} address candidates")
        return geocoded

    def reverse_geocode(self, coordinates: Coordinates) -> Optional[str]:
        """Formatted address at a point, for presentation only."""
        if not self.is_available():
            return None
        cache_key = f"reverse:{coordinates.lat:.6f},{coordinates.lng:.6f}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        start_time = time.time()
        try:
            results = self.client.reverse_geocode(coordinates.as_tuple(), language='fr')
        except GEOCODE_ERRORS as e:
            track_external_api_call('google_maps', 'reverse_geocode', 'error', time.time() - start_time)
            logger.warning(f"Reverse geocoding failed at {coordinates}: {e}")
            return None
        track_external_api_call('google_maps', 'reverse_geocode', 'success', time.time() - start_time)

        if not results:
            return None
        # Prefer the most precise result: street address over route over anything else
        for wanted in ('street_address', 'premise', 'route'):
            for result in results:
                if wanted in result.get('types', []):
                    self.cache.set(cache_key, result['formatted_address'])
                    return result['formatted_address']
        address = results[0].get('formatted_address')
        if address:
            self.cache.set(cache_key, address)
        return address
