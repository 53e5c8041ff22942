"""
Source image feature analysis.

Detects the exterior features of the submitted photo (property type, pool and
its shape, garden, facade orientation, style) that candidates are compared
against. Label rules always run; when an OpenAI key is configured a vision
model refines them.
"""

import base64
import io
import json
import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from circuitbreaker import CircuitBreakerError
from openai import OpenAI, OpenAIError
from PIL import Image

from parcel_locator.config import config
from parcel_locator.core.types import ImageFeatures, Orientation, PoolShape, VisualHints
from parcel_locator.ocr.signal_extractor import label_matches
from parcel_locator.utils.resilience import resilient_openai_call

logger = logging.getLogger(__name__)

VISION_MODEL = "gpt-4o-mini"
POOL_LABEL_MIN_SCORE = 0.6
LABEL_RULES_CONFIDENCE = 0.5
NO_EVIDENCE_CONFIDENCE = 0.2

HOUSE_LABELS = ['house', 'villa', 'cottage', 'mansion', 'farmhouse', 'chalet', 'estate']
APARTMENT_LABELS = ['apartment', 'condominium', 'tower block', 'high-rise', 'flat']

SYSTEM_PROMPT = """
You are an expert in French residential real estate photography.
Describe the exterior features of the property shown in the photo.

Return valid JSON with this structure:
{
    "property_type": "maison" | "appartement" | "unknown",
    "pool": {"present": true | false, "shape": "rectangular" | "kidney" | "l_shaped" | "round" | "unknown"},
    "garden": {"present": true | false | null},
    "facade_orientation": "N" | "NE" | "E" | "SE" | "S" | "SW" | "W" | "NW" | null,
    "architecture_style": "short description" | null,
    "confidence": number between 0 and 1
}

Only report the facade orientation when shadows or visible landmarks make it clear.
Use null for anything you cannot see.
"""


def _has_label(hints: VisualHints, keywords) -> bool:
    labels = hints.architecture_labels + hints.urban_labels
    return any(label_matches(label.description, keywords) for label in labels)


def features_from_labels(hints: VisualHints) -> ImageFeatures:
    """Label rules: pool labels, vegetation labels and building-type labels."""
    pool_present = any(
        'pool' in label.description.lower() and label.score >= POOL_LABEL_MIN_SCORE
        for label in hints.pool_labels
    )
    vegetation_present = True if hints.vegetation_labels else None

    if _has_label(hints, APARTMENT_LABELS):
        property_type = 'appartement'
    elif _has_label(hints, HOUSE_LABELS):
        property_type = 'maison'
    else:
        property_type = 'unknown'

    evidence = pool_present or vegetation_present or property_type != 'unknown'
    return ImageFeatures(
        property_type=property_type,
        pool_present=pool_present,
        pool_shape=PoolShape.UNKNOWN,
        vegetation_present=vegetation_present,
        confidence=LABEL_RULES_CONFIDENCE if evidence else NO_EVIDENCE_CONFIDENCE,
    )


def merge_model_features(base: ImageFeatures, payload: Dict[str, Any]) -> ImageFeatures:
    """Override label-based values with the fields the model actually returned."""
    updates: Dict[str, Any] = {}

    property_type = payload.get('property_type')
    if property_type in ('maison', 'appartement'):
        updates['property_type'] = property_type

    pool = payload.get('pool')
    if isinstance(pool, dict) and isinstance(pool.get('present'), bool):
        updates['pool_present'] = pool['present']
        updates['pool_shape'] = PoolShape.parse(pool.get('shape')) if pool['present'] else PoolShape.UNKNOWN

    garden = payload.get('garden')
    if isinstance(garden, dict) and isinstance(garden.get('present'), bool):
        updates['vegetation_present'] = garden['present']

    orientation = Orientation.parse(payload.get('facade_orientation'))
    if orientation:
        updates['facade_orientation'] = orientation

    if payload.get('architecture_style'):
        updates['architecture_style'] = str(payload['architecture_style'])

    try:
        updates['confidence'] = max(0.0, min(1.0, float(payload.get('confidence'))))
    except (TypeError, ValueError):
        pass

    return replace(base, **updates)


def _data_url(image_bytes: bytes) -> str:
    try:
        mime = Image.MIME.get(Image.open(io.BytesIO(image_bytes)).format, 'image/jpeg')
    except OSError:
        mime = 'image/jpeg'
    return f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"


class ImageFeatureAnalyzer:
    """Detects the exterior features of the source photo"""

    def __init__(self, client: Optional[Any] = None, api_key: Optional[str] = None):
        self.client = client
        if self.client is None and config.ENABLE_AI_FEATURES:
            self.client = OpenAI(api_key=api_key or config.OPENAI_API_KEY)

    def is_available(self) -> bool:
        return self.client is not None

    @resilient_openai_call
    def _describe(self, image_bytes: bytes) -> Dict[str, Any]:
        response = self.client.chat.completions.create(
            model=VISION_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": [
                    {"type": "text", "text": "Describe the exterior features of this property."},
                    {"type": "image_url", "image_url": {"url": _data_url(image_bytes)}},
                ]},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
        )
        return json.loads(response.choices[0].message.content)

    def analyze(self, image_bytes: bytes, hints: VisualHints) -> ImageFeatures:
        features = features_from_labels(hints)
        if not self.is_available():
            logger.info("OpenAI not configured, using label-based image features")
            return features

        try:
            payload = self._describe(image_bytes)
        except (OpenAIError, CircuitBreakerError, ValueError, TypeError) as e:
            logger.warning(f"Image feature model failed, using label-based features: {e}")
            return features

        if not isinstance(payload, dict):
            logger.warning("Image feature model returned a non-object payload")
            return features

        features = merge_model_features(features, payload)
        logger.info(f"Image features: {features.to_dict()}")
        return features
