"""
Visual Signal Extractor

Regroups the raw annotation output into hints: text lines that look like
address fragments, sign/brand names, and labels bucketed by what they say
about the scene (architecture, vegetation, pool, urban surroundings).
"""

import logging
import re
from typing import Iterable, List, Tuple

from parcel_locator.core.types import LabelDetection, VisionSignals, VisualHints
from parcel_locator.nlp.address_normalizer import POSTAL_CODE_RE, has_street_type

logger = logging.getLogger(__name__)

MIN_WORD_CONFIDENCE = 50
MIN_LABEL_SCORE = 0.5

ARCHITECTURE_KEYWORDS = [
    'house', 'villa', 'cottage', 'building', 'architecture', 'facade', 'roof', 'window',
    'residential area', 'home', 'apartment', 'condominium', 'mansion', 'estate', 'stone',
    'brick', 'farmhouse', 'chalet', 'tower block', 'siding', 'real estate', 'property',
]

VEGETATION_KEYWORDS = [
    'garden', 'tree', 'lawn', 'grass', 'plant', 'shrub', 'hedge', 'vegetation', 'yard',
    'backyard', 'flower', 'palm', 'landscaping', 'woody plant', 'groundcover', 'forest',
]

POOL_KEYWORDS = ['swimming pool', 'pool', 'water', 'leisure centre', 'resort']

URBAN_KEYWORDS = [
    'street', 'road', 'building', 'architecture', 'residential', 'commercial', 'facade',
    'door', 'entrance', 'store', 'shop', 'restaurant', 'cafe', 'square', 'plaza',
    'monument', 'statue', 'fountain', 'neighbourhood', 'neighborhood', 'town', 'city',
]

LEADING_NUMBER_RE = re.compile(r'^\s*\d{1,4}\s*(?:bis|ter|[a-zA-Z])?\b')


def label_matches(description: str, keywords: Iterable[str]) -> bool:
    """True if a keyword starts a word of the label: 'Trees' matches 'tree', 'Street' does not."""
    description = description.lower()
    return any(re.search(rf'\b{re.escape(keyword)}', description) for keyword in keywords)


def _bucket(labels: Iterable[LabelDetection], keywords: List[str]) -> Tuple[LabelDetection, ...]:
    matched = [
        label for label in labels
        if label.score >= MIN_LABEL_SCORE
        and label_matches(label.description, keywords)
    ]
    return tuple(sorted(matched, key=lambda l: l.score, reverse=True))


def is_address_fragment(line: str) -> bool:
    """A line with a street-type keyword, a postal code or a leading house number."""
    line = line.strip()
    if len(line) < 3:
        return False
    return (
        has_street_type(line)
        or POSTAL_CODE_RE.search(line) is not None
        or (LEADING_NUMBER_RE.match(line) is not None and any(c.isalpha() for c in line))
    )


def extract_visual_hints(signals: VisionSignals) -> VisualHints:
    """Build VisualHints from one image's annotation output."""
    lines = [line.strip() for line in (signals.full_text or '').splitlines() if line.strip()]
    fragments = tuple(dict.fromkeys(line for line in lines if is_address_fragment(line)))

    signs = tuple(dict.fromkeys(
        logo.description for logo in signals.logos if logo.description
    ))

    hints = VisualHints(
        address_fragments=fragments,
        signs=signs,
        architecture_labels=_bucket(signals.labels, ARCHITECTURE_KEYWORDS),
        vegetation_labels=_bucket(signals.labels, VEGETATION_KEYWORDS),
        pool_labels=_bucket(signals.labels, POOL_KEYWORDS),
        urban_labels=_bucket(signals.labels, URBAN_KEYWORDS),
        words=tuple(w for w in signals.words if w.confidence >= MIN_WORD_CONFIDENCE),
    )

    logger.info(
        f"Visual hints: {len(hints.address_fragments)} address fragments, {len(hints.signs)} signs, "
        f"{len(hints.urban_labels)} urban labels, {len(hints.pool_labels)} pool labels"
    )
    return hints
