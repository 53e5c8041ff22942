"""
Satellite Feature Matcher

Derives physical features of a candidate parcel from an overhead image:
pool presence and shape, vegetation density, building orientation and
footprint. Vegetation and orientation are measured on the candidate imagery
only; the source photo's pool shape is used as an anchor when classifying the
pool geometry.
"""

import io
import logging
import math
from typing import Optional, Tuple

import cv2
import numpy as np
import requests
from circuitbreaker import CircuitBreakerError
from PIL import Image

from parcel_locator.config import config
from parcel_locator.core.types import (
    Coordinates, ImageFeatures, Orientation, PoolShape, PropertyCandidate, SatelliteAnalysis,
)
from parcel_locator.utils.http import timed_get
from parcel_locator.utils.resilience import resilient_google_maps_call
from parcel_locator.visuals.asset_builder import STATIC_MAPS_URL

logger = logging.getLogger(__name__)

ANALYSIS_ZOOM = 20
ANALYSIS_SIZE = 400
EQUATOR_METERS_PER_PIXEL = 156543.03392

# HSV ranges (OpenCV hue is 0-180)
POOL_HSV_LOWER = (80, 60, 100)
POOL_HSV_UPPER = (115, 255, 255)
VEGETATION_HSV_LOWER = (35, 40, 30)
VEGETATION_HSV_UPPER = (85, 255, 255)
TILE_ROOF_HSV_RANGES = (((0, 60, 60), (20, 255, 230)), ((160, 60, 60), (180, 255, 230)))
GREY_ROOF_HSV_LOWER = (0, 0, 70)
GREY_ROOF_HSV_UPPER = (180, 40, 230)

DENSE_VEGETATION_RATIO = 0.30
MIN_POOL_AREA_PX = 400
MIN_ROOF_AREA_PX = 1500
MORPH_KERNEL_SIZE = 5

# Pool shape geometry thresholds
RECTANGULARITY_MIN = 0.85
CIRCULARITY_MIN = 0.80
KIDNEY_SOLIDITY_MAX = 0.90
KIDNEY_CIRCULARITY_MIN = 0.50
L_SHAPE_SOLIDITY_MAX = 0.85
POLY_APPROX_EPSILON = 0.02

# Relaxed thresholds used when the source photo already tells the shape
ANCHOR_RECTANGULARITY_MIN = 0.70
ANCHOR_CIRCULARITY_MIN = 0.65
ANCHOR_KIDNEY_SOLIDITY_MAX = 0.95
ANCHOR_L_SHAPE_SOLIDITY_MAX = 0.92

COMPASS = (Orientation.N, Orientation.NE, Orientation.E, Orientation.SE,
           Orientation.S, Orientation.SW, Orientation.W, Orientation.NW)


def meters_per_pixel(latitude: float, zoom: int = ANALYSIS_ZOOM) -> float:
    return EQUATOR_METERS_PER_PIXEL * math.cos(math.radians(latitude)) / (2 ** zoom)


def _mask(hsv: np.ndarray, lower, upper) -> np.ndarray:
    return cv2.inRange(hsv, np.array(lower, dtype=np.uint8), np.array(upper, dtype=np.uint8))


def _clean(mask: np.ndarray) -> np.ndarray:
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (MORPH_KERNEL_SIZE, MORPH_KERNEL_SIZE))
    opened = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)
    return cv2.morphologyEx(opened, cv2.MORPH_CLOSE, kernel)


def _contours(mask: np.ndarray):
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    return contours


def shape_metrics(contour: np.ndarray) -> dict:
    """Rectangularity, circularity, solidity and polygon vertex count of a contour."""
    area = cv2.contourArea(contour)
    perimeter = cv2.arcLength(contour, True)
    (_, _), (width, height), _ = cv2.minAreaRect(contour)
    hull_area = cv2.contourArea(cv2.convexHull(contour))
    approx = cv2.approxPolyDP(contour, POLY_APPROX_EPSILON * perimeter, True)
    return {
        'rectangularity': area / (width * height) if width and height else 0.0,
        'circularity': 4 * math.pi * area / (perimeter ** 2) if perimeter else 0.0,
        'solidity': area / hull_area if hull_area else 0.0,
        'vertices': len(approx),
    }


def classify_pool_shape(metrics: dict) -> PoolShape:
    if metrics['vertices'] == 4 and metrics['rectangularity'] >= RECTANGULARITY_MIN:
        return PoolShape.RECTANGULAR
    if metrics['circularity'] >= CIRCULARITY_MIN:
        return PoolShape.ROUND
    if metrics['vertices'] == 6 and metrics['solidity'] < L_SHAPE_SOLIDITY_MAX:
        return PoolShape.L_SHAPED
    if metrics['solidity'] < KIDNEY_SOLIDITY_MAX and metrics['circularity'] >= KIDNEY_CIRCULARITY_MIN:
        return PoolShape.KIDNEY
    return PoolShape.UNKNOWN


def anchor_compatible(anchor: PoolShape, metrics: dict) -> bool:
    """Whether a contour could plausibly be the anchor shape under relaxed tolerances."""
    if anchor == PoolShape.RECTANGULAR:
        return metrics['rectangularity'] >= ANCHOR_RECTANGULARITY_MIN
    if anchor == PoolShape.ROUND:
        return metrics['circularity'] >= ANCHOR_CIRCULARITY_MIN
    if anchor == PoolShape.KIDNEY:
        return metrics['solidity'] < ANCHOR_KIDNEY_SOLIDITY_MAX
    if anchor == PoolShape.L_SHAPED:
        return 5 <= metrics['vertices'] <= 8 and metrics['solidity'] < ANCHOR_L_SHAPE_SOLIDITY_MAX
    return False


def detect_pool(hsv: np.ndarray, anchor: Optional[PoolShape] = None) -> Tuple[bool, Optional[PoolShape]]:
    mask = _clean(_mask(hsv, POOL_HSV_LOWER, POOL_HSV_UPPER))
    contours = [c for c in _contours(mask) if cv2.contourArea(c) >= MIN_POOL_AREA_PX]
    if not contours:
        return False, None

    metrics = shape_metrics(max(contours, key=cv2.contourArea))
    if anchor and anchor != PoolShape.UNKNOWN and anchor_compatible(anchor, metrics):
        return True, anchor
    return True, classify_pool_shape(metrics)


def _roof_mask(hsv: np.ndarray) -> np.ndarray:
    mask = _mask(hsv, GREY_ROOF_HSV_LOWER, GREY_ROOF_HSV_UPPER)
    for lower, upper in TILE_ROOF_HSV_RANGES:
        mask = cv2.bitwise_or(mask, _mask(hsv, lower, upper))
    return _clean(mask)


def main_roof_contour(hsv: np.ndarray) -> Optional[np.ndarray]:
    """Largest roof-coloured blob, preferring the one under the image centre."""
    contours = [c for c in _contours(_roof_mask(hsv)) if cv2.contourArea(c) >= MIN_ROOF_AREA_PX]
    if not contours:
        return None
    height, width = hsv.shape[:2]
    center = (width / 2.0, height / 2.0)
    centred = [c for c in contours if cv2.pointPolygonTest(c, center, False) >= 0]
    return max(centred or contours, key=cv2.contourArea)


def compass_direction(dx: float, dy: float) -> Orientation:
    """Compass direction of an image-space vector (north up, y pointing down)."""
    bearing = math.degrees(math.atan2(dx, -dy)) % 360
    return COMPASS[int((bearing + 22.5) // 45) % 8]


def building_orientation(roof: np.ndarray, vegetation_mask: np.ndarray) -> Optional[Orientation]:
    """
    Facade direction: perpendicular to the long axis of the roof, towards the
    side with the most vegetation (the garden). None without vegetation.
    """
    rect = cv2.minAreaRect(roof)
    (cx, cy) = rect[0]
    corners = cv2.boxPoints(rect)
    edges = [corners[(i + 1) % 4] - corners[i] for i in range(2)]
    ex, ey = max(edges, key=lambda e: float(np.hypot(e[0], e[1])))
    length = float(np.hypot(ex, ey))
    if length == 0:
        return None
    nx, ny = -ey / length, ex / length

    ys, xs = np.nonzero(vegetation_mask)
    if len(xs) == 0:
        return None
    side = (xs - cx) * nx + (ys - cy) * ny
    positive, negative = int((side > 0).sum()), int((side < 0).sum())
    if positive == negative:
        return None
    if negative > positive:
        nx, ny = -nx, -ny
    return compass_direction(nx, ny)


def analyze_image(image: np.ndarray, latitude: float, anchor: Optional[PoolShape] = None,
                  zoom: int = ANALYSIS_ZOOM) -> SatelliteAnalysis:
    """Analyze a BGR overhead image centred on a parcel."""
    hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)

    pool_present, pool_shape = detect_pool(hsv, anchor)

    vegetation_mask = _mask(hsv, VEGETATION_HSV_LOWER, VEGETATION_HSV_UPPER)
    vegetation_ratio = float(np.count_nonzero(vegetation_mask)) / vegetation_mask.size

    orientation = None
    surface = None
    roof = main_roof_contour(hsv)
    if roof is not None:
        orientation = building_orientation(roof, vegetation_mask)
        surface = round(cv2.contourArea(roof) * meters_per_pixel(latitude, zoom) ** 2, 1)

    return SatelliteAnalysis(
        pool_present=pool_present,
        pool_shape=pool_shape,
        vegetation_dense=vegetation_ratio >= DENSE_VEGETATION_RATIO,
        building_orientation=orientation,
        estimated_surface=surface,
        vegetation_ratio=round(vegetation_ratio, 3),
    )


class SatelliteFeatureMatcher:
    """Fetches overhead imagery for candidates and analyzes it"""

    def __init__(self, api_key: Optional[str] = None, zoom: int = ANALYSIS_ZOOM, size: int = ANALYSIS_SIZE):
        self.api_key = api_key if api_key is not None else (
            config.GOOGLE_MAPS_API_KEY if config.ENABLE_GOOGLE_MAPS else None
        )
        self.zoom = zoom
        self.size = size

    def is_available(self) -> bool:
        return bool(self.api_key)

    @resilient_google_maps_call
    def _fetch_tile(self, coordinates: Coordinates) -> bytes:
        response = timed_get('google_maps', 'staticmap', STATIC_MAPS_URL, params={
            'center': f"{coordinates.lat},{coordinates.lng}",
            'zoom': self.zoom,
            'size': f"{self.size}x{self.size}",
            'maptype': 'satellite',
            'key': self.api_key,
        })
        return response.content

    def fetch_image(self, coordinates: Coordinates) -> Optional[np.ndarray]:
        """Satellite tile as a BGR array, or None when it cannot be obtained."""
        try:
            content = self._fetch_tile(coordinates)
            image = Image.open(io.BytesIO(content))
            if image.mode != 'RGB':
                image = image.convert('RGB')
        except (requests.RequestException, CircuitBreakerError, OSError) as e:
            logger.warning(f"Satellite imagery unavailable at {coordinates}: {e}")
            return None
        return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

    def analyze(self, candidate: PropertyCandidate, image_features: Optional[ImageFeatures] = None) -> SatelliteAnalysis:
        """
        Satellite analysis of one candidate; every field is unknown when no
        imagery could be obtained.
        """
        if not self.is_available():
            return SatelliteAnalysis.unavailable()

        image = self.fetch_image(candidate.coordinates)
        if image is None:
            return SatelliteAnalysis.unavailable()

        anchor = image_features.pool_shape if image_features and image_features.pool_present else None
        analysis = analyze_image(image, candidate.coordinates.lat, anchor=anchor, zoom=self.zoom)
        logger.debug(f"Satellite analysis for {candidate.id}: {analysis.to_dict()}")
        return analysis
