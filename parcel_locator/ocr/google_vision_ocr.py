"""
Google Cloud Vision annotation client.

One request per image collects text, labels, landmarks and logos. The result is
converted into an immutable VisionSignals value consumed by the rest of the
pipeline. Annotation is the one stage that cannot degrade: without any visual
evidence there is nothing to localise, so failures raise AnnotationError.
"""

import json
import logging
import time
from typing import Any, List, Optional

from google.cloud import vision
from google.oauth2 import service_account

from parcel_locator.config import config
from parcel_locator.core.errors import AnnotationError
from parcel_locator.core.metrics import track_annotation
from parcel_locator.core.types import (
    Coordinates, LabelDetection, LandmarkDetection, LogoDetection, OcrWord, VisionSignals
)
from parcel_locator.utils.resilience import resilient_google_vision_call

logger = logging.getLogger(__name__)

MAX_LABELS = 20
MAX_LANDMARKS = 10
MAX_LOGOS = 10

# Languages of the signs and plates we expect to read
LANGUAGE_HINTS = ['fr', 'en']


class GoogleVisionOCR:
    """Google Cloud Vision client for property photos"""

    def __init__(self, client: Optional[Any] = None, credentials_json: Optional[str] = None):
        """
        Initialize the Vision client from service account credentials.

        ``client`` can be injected directly; otherwise credentials come from
        GOOGLE_APPLICATION_CREDENTIALS_JSON.
        """
        self.client = client
        if self.client is not None:
            return

        creds_json = credentials_json or config.GOOGLE_APPLICATION_CREDENTIALS
        if not creds_json:
            logger.warning("GOOGLE_APPLICATION_CREDENTIALS_JSON not found in environment")
            return

        try:
            credentials = service_account.Credentials.from_service_account_info(
                json.loads(creds_json),
                scopes=['https://www.googleapis.com/auth/cloud-vision']
            )
            self.client = vision.ImageAnnotatorClient(credentials=credentials)
            logger.info("Google Cloud Vision client initialized successfully")
        except (ValueError, KeyError) as e:
            logger.error(f"Failed to initialize Google Cloud Vision: {e}")
            self.client = None

    def is_available(self) -> bool:
        return self.client is not None

    @resilient_google_vision_call
    def _batch_annotate(self, image_bytes: bytes):
        request = vision.AnnotateImageRequest(
            image=vision.Image(content=image_bytes),
            features=[
                vision.Feature(type_=vision.Feature.Type.TEXT_DETECTION),
                vision.Feature(type_=vision.Feature.Type.LABEL_DETECTION, max_results=MAX_LABELS),
                vision.Feature(type_=vision.Feature.Type.LANDMARK_DETECTION, max_results=MAX_LANDMARKS),
                vision.Feature(type_=vision.Feature.Type.LOGO_DETECTION, max_results=MAX_LOGOS),
            ],
            image_context=vision.ImageContext(language_hints=LANGUAGE_HINTS),
        )
        return self.client.batch_annotate_images(requests=[request]).responses[0]

    def annotate(self, image_bytes: bytes) -> VisionSignals:
        """
        Annotate one image.

        Raises:
            AnnotationError: client unavailable, empty image, transport failure
                or an error reported inside the response.
        """
        if not image_bytes:
            raise AnnotationError("Empty image")
        if not self.client:
            raise AnnotationError("Google Cloud Vision is not configured")

        start_time = time.time()
        try:
            response = self._batch_annotate(image_bytes)
        except Exception as e:
            track_annotation('google_vision', 'failure', time.time() - start_time)
            logger.error(f"Error in Google Vision annotation: {e}")
            raise AnnotationError(f"Vision annotation failed: {e}") from e

        if response.error.message:
            track_annotation('google_vision', 'failure', time.time() - start_time)
            logger.error(f"Google Vision API error: {response.error.message}")
            raise AnnotationError(response.error.message)

        signals = self.parse_response(response)
        track_annotation('google_vision', 'success', time.time() - start_time)
        logger.info(
            f"Annotation: {len(signals.words)} words, {len(signals.labels)} labels, "
            f"{len(signals.landmarks)} landmarks, {len(signals.logos)} logos"
        )
        return signals

    def parse_response(self, response) -> VisionSignals:
        """Convert an AnnotateImageResponse into VisionSignals."""
        texts = list(response.text_annotations)
        full_text = texts[0].description if texts else ""

        words: List[OcrWord] = []
        for text in texts[1:]:  # first annotation is the full text
            text_str = text.description.strip()
            if not text_str:
                continue
            words.append(OcrWord(text=text_str, confidence=self._word_confidence(text)))

        labels = tuple(
            LabelDetection(description=label.description, score=float(label.score))
            for label in response.label_annotations
        )

        landmarks = []
        for landmark in response.landmark_annotations:
            coordinates = None
            if landmark.locations:
                lat_lng = landmark.locations[0].lat_lng
                try:
                    coordinates = Coordinates(lat_lng.latitude, lat_lng.longitude)
                except ValueError:
                    coordinates = None
            landmarks.append(LandmarkDetection(
                description=landmark.description,
                score=float(landmark.score),
                coordinates=coordinates,
            ))

        logos = tuple(
            LogoDetection(description=logo.description, score=float(logo.score))
            for logo in response.logo_annotations
        )

        return VisionSignals(
            full_text=full_text,
            words=tuple(words),
            labels=labels,
            landmarks=tuple(landmarks),
            logos=logos,
        )

    def _word_confidence(self, text) -> float:
        """Detector confidence when reported, else an estimate from box size and position."""
        reported = getattr(text, 'confidence', 0) or 0
        if reported > 0:
            return round(float(reported) * 100, 1)

        vertices = list(text.bounding_poly.vertices)
        area = self._calculate_polygon_area(vertices)
        base_confidence = min(100, max(30, int(area / 100)))

        position_boost = 0
        if vertices:
            avg_y = sum(v.y for v in vertices) / len(vertices)
            avg_x = sum(v.x for v in vertices) / len(vertices)
            if avg_y < 500:
                position_boost += 10
            if 200 < avg_x < 800:
                position_boost += 5
        return float(min(100, base_confidence + position_boost))

    @staticmethod
    def _calculate_polygon_area(vertices) -> float:
        """Shoelace formula"""
        if not vertices or len(vertices) < 3:
            return 0
        n = len(vertices)
        area = 0
        for i in range(n):
            j = (i + 1) % n
            area += vertices[i].x * vertices[j].y
            area -= vertices[j].x * vertices[i].y
        return abs(area) / 2
