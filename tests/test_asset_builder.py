from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import DummyResponse, square_feature
from parcel_locator.core.errors import CadastreError
from parcel_locator.core.types import Coordinates
from parcel_locator.utils.cache import TTLCache
from parcel_locator.visuals import asset_builder
from parcel_locator.visuals.asset_builder import VisualAssetBuilder

POINT = Coordinates(44.8378, -0.5792)


class FailingCadastre:
    def parcel_at(self, coordinates):
        raise CadastreError("registry down")


class EmptyCadastre:
    def parcel_at(self, coordinates):
        return None


class ParcelCadastre:
    def parcel_at(self, coordinates):
        return square_feature(coordinates.lat, coordinates.lng, id="33063000AB0012")


def make_builder(cadastre, api_key=None, **kwargs):
    return VisualAssetBuilder(
        cadastre=cadastre, api_key=api_key, metadata_cache=TTLCache("test_street_view", 60), **kwargs
    )


def test_fallback_visuals_are_complete():
    visuals = make_builder(EmptyCadastre()).fallback_visuals(POINT)
    assert visuals.satellite_url
    assert visuals.cadastre_url.startswith("https://")
    assert visuals.cadastre_source == asset_builder.CADASTRE_SOURCE_COORDINATES
    assert visuals.street_view_available is False


def test_cadastre_url_from_parcel_geometry():
    url, source = make_builder(ParcelCadastre()).cadastre_url(POINT)
    assert source == asset_builder.CADASTRE_SOURCE_PARCEL
    assert "REQUEST=GetMap" in url
    assert "BBOX=44.837" in url


def test_cadastre_url_uses_proxy_when_parcel_lookup_fails():
    builder = make_builder(FailingCadastre(), proxy_base_url="https://locator.example.org")
    url, source = builder.cadastre_url(POINT)
    assert source == asset_builder.CADASTRE_SOURCE_PROXY
    assert url == "https://locator.example.org/api/cadastre?lat=44.8378&lng=-0.5792"


def test_cadastre_url_is_never_empty():
    builder = make_builder(FailingCadastre(), proxy_enabled=False)
    url, source = builder.cadastre_url(POINT)
    assert url
    assert url == asset_builder.coordinate_cadastre_url(POINT)
    assert source == asset_builder.CADASTRE_SOURCE_COORDINATES


def test_satellite_url_without_key_is_bare():
    url = make_builder(EmptyCadastre()).satellite_url(POINT)
    assert url == asset_builder.bare_satellite_url(POINT)
    assert "key=" not in url


def test_satellite_url_with_key_has_marker():
    url = make_builder(EmptyCadastre(), api_key="maps-key").satellite_url(POINT)
    assert "markers=" in url
    assert url.endswith("key=maps-key")


def test_street_view_needs_ok_metadata(patch_session):
    patch_session.response = DummyResponse(payload={"status": "ZERO_RESULTS"})
    builder = make_builder(EmptyCadastre(), api_key="maps-key")

    assert builder.street_view_url(POINT) is None
    url, params, _ = patch_session.calls[0]
    assert url == asset_builder.STREET_VIEW_METADATA_URL
    assert params["radius"] == asset_builder.STREET_VIEW_RADIUS_METERS


def test_street_view_url_when_panorama_exists(patch_session):
    patch_session.response = DummyResponse(payload={"status": "OK"})
    builder = make_builder(EmptyCadastre(), api_key="maps-key")

    url = builder.street_view_url(POINT)
    builder.street_view_url(POINT)

    assert url.startswith(asset_builder.STREET_VIEW_URL)
    assert len(patch_session.calls) == 1


def test_street_view_metadata_failure_omits_url(patch_session):
    patch_session.response = DummyResponse(status_code=500)
    builder = make_builder(EmptyCadastre(), api_key="maps-key")
    assert builder.street_view_url(POINT) is None


def test_no_street_view_lookup_without_key(patch_session):
    assert make_builder(EmptyCadastre()).street_view_url(POINT) is None
    assert patch_session.calls == []


@pytest.mark.parametrize("shared_pool", [False, True])
def test_build_joins_all_assets(patch_session, shared_pool):
    patch_session.response = DummyResponse(payload={"status": "OK"})
    builder = make_builder(FailingCadastre(), api_key="maps-key", proxy_enabled=False)

    if shared_pool:
        with ThreadPoolExecutor(max_workers=2) as pool:
            visuals = builder.build(POINT, executor=pool)
    else:
        visuals = builder.build(POINT)

    assert visuals.cadastre_url == asset_builder.coordinate_cadastre_url(POINT)
    assert visuals.street_view_available is True
    assert "markers=" in visuals.satellite_url


def test_serialized_visuals_omit_missing_street_view():
    visuals = make_builder(FailingCadastre(), proxy_enabled=False).build(POINT)
    data = visuals.to_dict()
    assert "street_view_url" not in data
    assert data["street_view_available"] is False
    assert data["cadastre_url"]
