"""
EXIF GPS reader.

Phone photos often carry the shooting position. When it is present and inside
the search zone the pipeline can skip visual matching altogether.
"""

import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

from parcel_locator.core.types import Coordinates

logger = logging.getLogger(__name__)

GPS_IFD_TAG = 0x8825
GPS_LATITUDE_REF = 1
GPS_LATITUDE = 2
GPS_LONGITUDE_REF = 3
GPS_LONGITUDE = 4


def _to_degrees(value) -> float:
    """Convert an EXIF (degrees, minutes, seconds) triple of rationals to decimal degrees."""
    degrees, minutes, seconds = (float(part) for part in value)
    return degrees + minutes / 60.0 + seconds / 3600.0


def _ref(value) -> str:
    if isinstance(value, bytes):
        value = value.decode('ascii', errors='ignore')
    return str(value or '').strip().upper()[:1]


def read_exif_gps(image_bytes: bytes) -> Optional[Coordinates]:
    """
    Extract the GPS position stored in the image EXIF block.

    Returns None when the image has no EXIF, no GPS block or an unreadable one.
    """
    if not image_bytes:
        return None

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            gps = image.getexif().get_ifd(GPS_IFD_TAG)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        logger.debug(f"Could not read EXIF block: {e}")
        return None

    if not gps or GPS_LATITUDE not in gps or GPS_LONGITUDE not in gps:
        return None

    try:
        lat = _to_degrees(gps[GPS_LATITUDE])
        lng = _to_degrees(gps[GPS_LONGITUDE])
    except (TypeError, ValueError, ZeroDivisionError) as e:
        logger.warning(f"Malformed EXIF GPS coordinates: {e}")
        return None

    if _ref(gps.get(GPS_LATITUDE_REF)) == 'S':
        lat = -lat
    if _ref(gps.get(GPS_LONGITUDE_REF)) == 'W':
        lng = -lng

    try:
        coordinates = Coordinates(lat, lng)
    except ValueError as e:
        logger.warning(f"EXIF GPS position out of range: {e}")
        return None

    logger.info(f"EXIF GPS position found: {coordinates}")
    return coordinates
