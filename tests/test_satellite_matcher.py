import io

import numpy as np
import pytest
from PIL import Image

from conftest import DummyResponse
from parcel_locator.core.types import (
    Coordinates, ImageFeatures, Orientation, PoolShape, PropertyCandidate,
)
from parcel_locator.geo import satellite_matcher
from parcel_locator.geo.satellite_matcher import (
    SatelliteFeatureMatcher, analyze_image, classify_pool_shape, compass_direction, meters_per_pixel,
)

ROOF_GREY = (150, 150, 150)
GRASS_GREEN = (40, 160, 40)
POOL_BLUE = (230, 180, 40)


def overhead_image(with_pool=True, with_garden=True):
    """400x400 BGR tile: a grey roof in the middle, a lawn to the south, a pool in the lawn."""
    image = np.zeros((400, 400, 3), dtype=np.uint8)
    image[150:250, 100:300] = ROOF_GREY
    if with_garden:
        image[250:400, :] = GRASS_GREEN
    if with_pool:
        image[300:340, 20:80] = POOL_BLUE
    return image


def candidate():
    return PropertyCandidate(
        id="330630000AB0001", address="Parcelle AB 0001, Bordeaux", postal_code=None, city="Bordeaux",
        coordinates=Coordinates(45.0, -0.58),
    )


def test_meters_per_pixel_shrinks_with_latitude():
    assert meters_per_pixel(0, 20) == pytest.approx(0.1493, abs=1e-3)
    assert meters_per_pixel(45, 20) < meters_per_pixel(0, 20)


@pytest.mark.parametrize("dx,dy,expected", [
    (0, -1, Orientation.N),
    (1, 0, Orientation.E),
    (0, 1, Orientation.S),
    (-1, 0, Orientation.W),
    (1, -1, Orientation.NE),
    (-1, 1, Orientation.SW),
])
def test_compass_direction(dx, dy, expected):
    assert compass_direction(dx, dy) == expected


@pytest.mark.parametrize("metrics,expected", [
    ({"rectangularity": 0.97, "circularity": 0.75, "solidity": 0.99, "vertices": 4}, PoolShape.RECTANGULAR),
    ({"rectangularity": 0.78, "circularity": 0.88, "solidity": 0.98, "vertices": 8}, PoolShape.ROUND),
    ({"rectangularity": 0.70, "circularity": 0.45, "solidity": 0.75, "vertices": 6}, PoolShape.L_SHAPED),
    ({"rectangularity": 0.72, "circularity": 0.62, "solidity": 0.84, "vertices": 9}, PoolShape.KIDNEY),
    ({"rectangularity": 0.40, "circularity": 0.20, "solidity": 0.95, "vertices": 12}, PoolShape.UNKNOWN),
])
def test_classify_pool_shape(metrics, expected):
    assert classify_pool_shape(metrics) == expected


def test_analyze_house_with_pool_and_garden():
    analysis = analyze_image(overhead_image(), latitude=45.0)

    assert analysis.pool_present is True
    assert analysis.pool_shape == PoolShape.RECTANGULAR
    assert analysis.vegetation_dense is True
    assert analysis.vegetation_ratio == pytest.approx(0.36, abs=0.02)
    assert analysis.building_orientation == Orientation.S
    assert 150 < analysis.estimated_surface < 260


def test_analyze_without_pool_or_garden():
    analysis = analyze_image(overhead_image(with_pool=False, with_garden=False), latitude=45.0)

    assert analysis.pool_present is False
    assert analysis.pool_shape is None
    assert analysis.vegetation_dense is False
    assert analysis.building_orientation is None
    assert analysis.estimated_surface is not None


def test_anchor_shape_is_kept_when_compatible():
    analysis = analyze_image(overhead_image(), latitude=45.0, anchor=PoolShape.RECTANGULAR)
    assert analysis.pool_shape == PoolShape.RECTANGULAR


def test_no_key_means_unknown_analysis():
    analysis = SatelliteFeatureMatcher(api_key="").analyze(candidate(), ImageFeatures(pool_present=True))
    assert analysis.imagery_available is False
    assert analysis.pool_present is None
    assert analysis.vegetation_dense is None


def test_analyze_downloads_tile(patch_session):
    rgb = overhead_image()[:, :, ::-1]
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(rgb)).save(buffer, format="PNG")
    patch_session.response = DummyResponse(content=buffer.getvalue(), headers={"content-type": "image/png"})

    analysis = SatelliteFeatureMatcher(api_key="maps-key").analyze(candidate())

    assert analysis.imagery_available is True
    assert analysis.pool_present is True
    url, params, _ = patch_session.calls[0]
    assert url == satellite_matcher.STATIC_MAPS_URL
    assert params["maptype"] == "satellite"
    assert params["zoom"] == satellite_matcher.ANALYSIS_ZOOM


def test_undecodable_tile_means_unknown_analysis(patch_session):
    patch_session.response = DummyResponse(content=b"not an image")
    analysis = SatelliteFeatureMatcher(api_key="maps-key").analyze(candidate())
    assert analysis.imagery_available is False
