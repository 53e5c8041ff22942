import io

import pytest
from PIL import Image

from parcel_locator.ocr.exif_reader import GPS_IFD_TAG, read_exif_gps


def jpeg_bytes(gps=None):
    image = Image.new("RGB", (32, 32), (120, 160, 200))
    buffer = io.BytesIO()
    if gps is None:
        image.save(buffer, format="JPEG")
    else:
        exif = Image.Exif()
        exif[GPS_IFD_TAG] = gps
        image.save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


def test_reads_gps_position():
    data = jpeg_bytes({1: "N", 2: (44.0, 50.0, 16.08), 3: "W", 4: (0.0, 34.0, 45.12)})

    coordinates = read_exif_gps(data)

    assert coordinates.lat == pytest.approx(44.8378, abs=1e-4)
    assert coordinates.lng == pytest.approx(-0.5792, abs=1e-4)


def test_southern_hemisphere():
    coordinates = read_exif_gps(jpeg_bytes({1: "S", 2: (33.0, 51.0, 0.0), 3: "E", 4: (151.0, 12.0, 0.0)}))
    assert coordinates.lat == pytest.approx(-33.85)
    assert coordinates.lng == pytest.approx(151.2)


def test_image_without_exif():
    assert read_exif_gps(jpeg_bytes()) is None


def test_gps_block_without_position():
    assert read_exif_gps(jpeg_bytes({1: "N", 3: "E"})) is None


@pytest.mark.parametrize("data", [b"", b"not an image at all", b"\xff\xd8\xff\xe1garbage"])
def test_unreadable_input(data):
    assert read_exif_gps(data) is None
