from types import SimpleNamespace

import pytest

from parcel_locator.core.errors import AnnotationError
from parcel_locator.ocr.google_vision_ocr import GoogleVisionOCR


def annotation_response(error_message=""):
    vertex = SimpleNamespace
    return SimpleNamespace(
        error=SimpleNamespace(message=error_message),
        text_annotations=[
            SimpleNamespace(description="12 rue des Pins\n33000 Bordeaux", confidence=0, bounding_poly=None),
            SimpleNamespace(description="rue", confidence=0.93, bounding_poly=None),
            SimpleNamespace(description="  ", confidence=0.5, bounding_poly=None),
            SimpleNamespace(description="Pins", confidence=0, bounding_poly=SimpleNamespace(vertices=[
                vertex(x=300, y=100), vertex(x=400, y=100), vertex(x=400, y=160), vertex(x=300, y=160),
            ])),
        ],
        label_annotations=[SimpleNamespace(description="House", score=0.91)],
        landmark_annotations=[
            SimpleNamespace(description="Grand Théâtre", score=0.7, locations=[
                SimpleNamespace(lat_lng=SimpleNamespace(latitude=44.8425, longitude=-0.5744)),
            ]),
            SimpleNamespace(description="Somewhere", score=0.4, locations=[]),
        ],
        logo_annotations=[SimpleNamespace(description="Orpi", score=0.8)],
    )


class FakeVisionClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def batch_annotate_images(self, requests):
        self.requests.extend(requests)
        if self.error:
            raise self.error
        return SimpleNamespace(responses=[self.response])


def test_annotate_parses_every_signal():
    client = FakeVisionClient(annotation_response())

    signals = GoogleVisionOCR(client=client).annotate(b"jpeg-bytes")

    assert signals.full_text.startswith("12 rue des Pins")
    assert [w.text for w in signals.words] == ["rue", "Pins"]
    assert signals.words[0].confidence == 93.0
    assert 30 <= signals.words[1].confidence <= 100
    assert signals.labels[0].description == "House"
    assert signals.landmarks[0].coordinates.lat == pytest.approx(44.8425)
    assert signals.landmarks[1].coordinates is None
    assert signals.logos[0].description == "Orpi"
    assert len(client.requests[0].features) == 4


def test_error_inside_response_is_fatal():
    client = FakeVisionClient(annotation_response(error_message="Bad image data"))
    with pytest.raises(AnnotationError):
        GoogleVisionOCR(client=client).annotate(b"jpeg-bytes")


def test_transport_failure_is_fatal():
    client = FakeVisionClient(error=RuntimeError("deadline exceeded"))
    with pytest.raises(AnnotationError):
        GoogleVisionOCR(client=client).annotate(b"jpeg-bytes")


def test_missing_client_or_image_is_fatal():
    with pytest.raises(AnnotationError):
        GoogleVisionOCR(client=None).annotate(b"jpeg-bytes")
    with pytest.raises(AnnotationError):
        GoogleVisionOCR(client=FakeVisionClient(annotation_response())).annotate(b"")
