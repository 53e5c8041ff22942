import pytest
from googlemaps.exceptions import ApiError

from conftest import DummyResponse
from parcel_locator.core.errors import GeocodingError
from parcel_locator.core.types import AddressCandidate, Coordinates, SearchContext
from parcel_locator.scoring import geocoder
from parcel_locator.scoring.geocoder import (
    AddressGeocoder, blend_scores, build_geocoding_query, context_echo_bonus, precision_score,
)
from parcel_locator.utils.cache import TTLCache
from parcel_locator.visuals import asset_builder


def geocode_result(address, lat, lng, location_type="ROOFTOP"):
    return {
        "formatted_address": address,
        "geometry": {"location": {"lat": lat, "lng": lng}, "location_type": location_type},
    }


class FakeMapsClient:
    def __init__(self, results=None, failures=(), reverse=None):
        self.results = results or {}
        self.failures = set(failures)
        self.reverse = reverse or []
        self.queries = []

    def geocode(self, query, components=None, region=None):
        self.queries.append((query, components, region))
        if query in self.failures:
            raise ApiError("OVER_QUERY_LIMIT")
        return self.results.get(query, [])

    def reverse_geocode(self, latlng, language=None):
        return self.reverse


def make_geocoder(client, **kwargs):
    kwargs.setdefault("street_view", lambda coordinates: None)
    return AddressGeocoder(client=client, api_key="test-key", cache=TTLCache("test_geocode", 60), **kwargs)


def test_precision_tiers():
    assert precision_score("ROOFTOP") == 0.98
    assert precision_score("RANGE_INTERPOLATED") == 0.88
    assert precision_score("GEOMETRIC_CENTER") == 0.78
    assert precision_score("APPROXIMATE") == 0.68
    assert precision_score(None) == geocoder.DEFAULT_PRECISION_SCORE


def test_blend_weights_precise_results_more():
    assert blend_scores(0.5, 0.98) == pytest.approx(0.5 * 0.3 + 0.98 * 0.7)
    assert blend_scores(0.5, 0.78) == pytest.approx(0.5 * 0.4 + 0.78 * 0.6)


def test_context_echo_bonus_is_capped():
    context = SearchContext(city="Bordeaux", postal_code="33000")
    assert context_echo_bonus("1 Cours de l'Intendance, 33000 Bordeaux, France", context) == pytest.approx(0.1)
    assert context_echo_bonus("Bordeaux, France", context) == pytest.approx(0.05)
    assert context_echo_bonus("Lyon, France", context) == 0.0
    assert context_echo_bonus("Lyon, France", None) == 0.0


def test_query_keeps_its_own_city():
    context = SearchContext(city="Paris", postal_code="75002")
    assert build_geocoding_query("Bordeaux", context) == "Bordeaux, France"
    assert build_geocoding_query("33600 Pessac", context) == "33600 Pessac, France"


def test_query_gets_context_locality_when_it_has_none():
    context = SearchContext(city="Paris", postal_code="75002")
    assert build_geocoding_query("15 rue de la paix", context) == "15 rue de la paix, 75002 Paris, France"
    assert build_geocoding_query("15 rue de la paix") == "15 rue de la paix"


def test_query_with_department():
    context = SearchContext(city="Arcachon", department="Gironde")
    assert build_geocoding_query("allée des pins", context) == "allée des pins, Gironde, France"


def test_geocode_candidate_blends_scores():
    query = "15 rue de la paix, 75002 Paris, France"
    client = FakeMapsClient(results={query: [geocode_result("15 Rue de la Paix, 75002 Paris, France", 48.869, 2.331)]})
    context = SearchContext(city="Paris", postal_code="75002")

    result = make_geocoder(client).geocode_candidate(AddressCandidate("15 rue de la paix", 0.8), context)

    assert result.geocoding_score == pytest.approx(1.0)
    assert result.global_score == pytest.approx(0.8 * 0.3 + 1.0 * 0.7)
    assert result.coordinates == Coordinates(48.869, 2.331)
    assert result.location_type == "ROOFTOP"
    assert result.source_text == "15 rue de la paix"
    assert client.queries[0][1] == {"country": "FR"}


def test_geocode_candidate_without_result_raises():
    with pytest.raises(GeocodingError):
        make_geocoder(FakeMapsClient()).geocode_candidate(AddressCandidate("nowhere at all", 0.5))


def test_geocode_candidate_with_malformed_result_raises():
    client = FakeMapsClient(results={"somewhere": [{"formatted_address": "x", "geometry": {}}]})
    with pytest.raises(GeocodingError):
        make_geocoder(client).geocode_candidate(AddressCandidate("somewhere", 0.5))


def test_geocode_candidates_skips_failures_and_sorts():
    client = FakeMapsClient(
        results={
            "approximate place": [geocode_result("Somewhere, France", 44.8, -0.5, "APPROXIMATE")],
            "precise place": [geocode_result("1 Rue Precise, France", 44.9, -0.6, "ROOFTOP")],
        },
        failures={"broken place"},
    )
    candidates = [
        AddressCandidate("approximate place", 0.9),
        AddressCandidate("broken place", 0.9),
        AddressCandidate("precise place", 0.6),
        AddressCandidate("unknown place", 0.6),
    ]

    results = make_geocoder(client).geocode_candidates(candidates)

    assert [r.source_text for r in results] == ["precise place", "approximate place"]
    scores = [r.global_score for r in results]
    assert scores == sorted(scores, reverse=True)


def test_geocode_candidates_without_client():
    coder = AddressGeocoder(client=None, api_key=None, cache=TTLCache("test_geocode", 60))
    assert coder.is_available() is False
    assert coder.geocode_candidates([AddressCandidate("15 rue de la paix", 0.8)]) == []


def test_lookup_is_cached():
    client = FakeMapsClient(results={"cached place": [geocode_result("Cached, France", 44.8, -0.5)]})
    coder = make_geocoder(client)

    coder.lookup("cached place")
    coder.lookup("cached place")

    assert len(client.queries) == 1


def test_reverse_geocode_prefers_street_address():
    client = FakeMapsClient(reverse=[
        {"formatted_address": "Bordeaux, France", "types": ["locality"]},
        {"formatted_address": "Rue Sainte-Catherine, Bordeaux", "types": ["route"]},
        {"formatted_address": "12 Rue Sainte-Catherine, 33000 Bordeaux", "types": ["street_address"]},
    ])
    address = make_geocoder(client).reverse_geocode(Coordinates(44.84, -0.574))
    assert address == "12 Rue Sainte-Catherine, 33000 Bordeaux"


def test_street_view_url_only_after_metadata_confirms_a_panorama(patch_session):
    patch_session.response = DummyResponse(payload={"status": "OK"})
    client = FakeMapsClient(results={"panorama place": [geocode_result("1 Rue Vue, Bordeaux", 44.8511, -0.5702)]})

    result = make_geocoder(client, street_view=None).geocode_candidate(AddressCandidate("panorama place", 0.6))

    assert patch_session.calls[0][0] == asset_builder.STREET_VIEW_METADATA_URL
    assert result.street_view_url.startswith(asset_builder.STREET_VIEW_URL)
    assert "test-key" in result.street_view_url


def test_street_view_url_is_omitted_without_panorama(patch_session):
    patch_session.response = DummyResponse(payload={"status": "ZERO_RESULTS"})
    client = FakeMapsClient(results={"blind place": [geocode_result("2 Impasse Noire, Bordeaux", 44.8533, -0.5744)]})

    result = make_geocoder(client, street_view=None).geocode_candidate(AddressCandidate("blind place", 0.6))

    assert len(patch_session.calls) == 1
    assert result.street_view_url is None
