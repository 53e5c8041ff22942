"""
Address Candidate Generator

Turns OCR text, landmarks and labels into scored address hypotheses. Scores
reflect textual plausibility only; geocoding precision is added later by the
geocoder.

Sources, in priority order:
    1. landmarks with coordinates
    2. structured French address patterns in the OCR text
    3. address fragments carrying a postal code
    4. every city name read in the text other than the context city
    5. urban-scene labels combined with the search context
    6. the search context alone
Steps 3 to 6 only run when the previous ones produced nothing, and steps 5
and 6 never run once a different city has been read in the image. Shop signs
are paired with that city, or with the context city, in the last step.
"""

import logging
import re
from typing import List, Optional

from parcel_locator.core.types import AddressCandidate, SearchContext, VisionSignals, VisualHints
from parcel_locator.nlp.address_normalizer import (
    LOWER, STREET_TYPE_PATTERN, UPPER, detect_cities, find_postal_code, fold, has_street_type,
    normalize_address, same_city,
)
from parcel_locator.ocr.signal_extractor import extract_visual_hints

logger = logging.getLogger(__name__)

# Scores
LANDMARK_SCORE = 0.95
STRUCTURED_BASE_SCORE = 0.5
POSTAL_CODE_BONUS = 0.2
HOUSE_NUMBER_BONUS = 0.1
CONTEXT_POSTAL_BONUS = 0.25
CONTEXT_CITY_BONUS = 0.2
STREET_TYPE_BONUS = 0.15
PLACE_BONUS = 0.1
COMPLETE_ADDRESS_BONUS = 0.2
POSTAL_LINE_SCORE = 0.4
DETECTED_CITY_WITH_POSTAL_SCORE = 0.35
DETECTED_CITY_SCORE = 0.25
LABEL_FALLBACK_BASE = 0.2
LABEL_FALLBACK_MAX_BONUS = 0.2
LABEL_FALLBACK_FACTOR = 0.3
CONTEXT_FALLBACK_SCORE = 0.15
SIGN_SCORE = 0.3

MIN_CANDIDATE_LENGTH = 5

_KW = rf"(?i:{STREET_TYPE_PATTERN})"
_CITY = rf"[{UPPER}][{LOWER}]+(?:[ '-][{UPPER}][{LOWER}]+)*"
_NAME_LINKS = r"(?:(?i:de|du|des|la|le|les)\s+|(?i:l|d)['’])*"

STRUCTURED_PATTERNS = [
    # 15 rue de la Paix, 75002 Paris
    re.compile(rf"\b\d{{1,4}}(?:\s*(?i:bis|ter))?\s+{_KW}\s+[^\n,]+?,?\s*\d{{5}}\s+{_CITY}"),
    # 15 rue de la Paix, Paris
    re.compile(rf"\b\d{{1,4}}(?:\s*(?i:bis|ter))?\s+{_KW}\s+[^\n,]+,\s*{_CITY}"),
    # 15 rue de la Paix
    re.compile(rf"\b\d{{1,4}}(?:\s*(?i:bis|ter))?\s+{_KW}\s+[^\n,]+"),
    # Place Tourny, Rue de la Paix
    re.compile(rf"(?<![\w-]){_KW}\s+{_NAME_LINKS}[{UPPER}][{LOWER}'-]+(?:[ -]{_NAME_LINKS}[{UPPER}][{LOWER}'-]+)*"),
]

LEADING_NUMBER_RE = re.compile(r"^\d+")
CAPITAL_RE = re.compile(rf"[{UPPER}]")


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def score_structured_match(text: str, context: Optional[SearchContext] = None) -> float:
    """Textual plausibility of one structured pattern match."""
    score = STRUCTURED_BASE_SCORE
    postal_code = find_postal_code(text)
    has_number = LEADING_NUMBER_RE.match(text) is not None
    has_keyword = has_street_type(text)

    if postal_code:
        score += POSTAL_CODE_BONUS
    if has_number:
        score += HOUSE_NUMBER_BONUS

    if context:
        if context.postal_code and context.postal_code in text:
            score += CONTEXT_POSTAL_BONUS
        if context.city and fold(context.city) in fold(text):
            score += CONTEXT_CITY_BONUS

    if has_keyword:
        score += STREET_TYPE_BONUS
        if re.search(r"\bplace\b", text, re.IGNORECASE):
            score += PLACE_BONUS

    if has_number and has_keyword and postal_code and CAPITAL_RE.search(text):
        score += COMPLETE_ADDRESS_BONUS

    return _clamp(score)


def label_fallback_score(top_label_score: float) -> float:
    return LABEL_FALLBACK_BASE + min(LABEL_FALLBACK_MAX_BONUS, top_label_score * LABEL_FALLBACK_FACTOR)


def _context_address(context: SearchContext) -> str:
    postal = f" {context.postal_code}" if context.postal_code else ""
    return f"{context.city}{postal}, France"


class _CandidateSet:
    """Ordered candidates deduplicated by exact text."""

    def __init__(self):
        self._items: List[AddressCandidate] = []
        self._seen = set()

    def add(self, text: str, score: float) -> bool:
        text = text.strip()
        if len(text) <= MIN_CANDIDATE_LENGTH or text in self._seen:
            return False
        self._seen.add(text)
        self._items.append(AddressCandidate(raw_text=text, score=_clamp(score)))
        return True

    def __len__(self):
        return len(self._items)

    def sorted(self) -> List[AddressCandidate]:
        return sorted(self._items, key=lambda c: c.score, reverse=True)


def extract_address_candidates(signals: VisionSignals, context: Optional[SearchContext] = None,
                               hints: Optional[VisualHints] = None) -> List[AddressCandidate]:
    """
    Generate address hypotheses for one image.

    Args:
        signals: annotation output (full text, landmarks)
        context: optional search context (city, postal code, country)
        hints: visual hints of the same image, built from ``signals`` when omitted

    Returns:
        Candidates sorted by score, highest first
    """
    context = context or SearchContext()
    if hints is None:
        hints = extract_visual_hints(signals)
    candidates = _CandidateSet()
    full_text = signals.full_text or ' '.join(word.text for word in hints.words)

    for landmark in signals.landmarks:
        if landmark.coordinates is not None:
            candidates.add(f"{landmark.description}, {context.city or 'France'}", LANDMARK_SCORE)

    structured_found = 0
    for pattern in STRUCTURED_PATTERNS:
        for match in pattern.finditer(full_text):
            text = normalize_address(match.group(0))
            if candidates.add(text, score_structured_match(text, context)):
                structured_found += 1

    if structured_found == 0:
        for fragment in hints.address_fragments:
            if find_postal_code(fragment):
                candidates.add(normalize_address(fragment), POSTAL_LINE_SCORE)

    if len(candidates) == 0:
        other_cities = [city for city in detect_cities(full_text) if not same_city(city, context.city)]
        locality = None

        if other_cities:
            postal_code = find_postal_code(full_text)
            for city in other_cities:
                if postal_code:
                    candidates.add(f"{postal_code} {city}, France", DETECTED_CITY_WITH_POSTAL_SCORE)
                else:
                    candidates.add(f"{city}, France", DETECTED_CITY_SCORE)
            if context.city:
                logger.info(f"Cities {other_cities} read in image differ from context '{context.city}'")
            locality = other_cities[-1]
        elif context.city:
            if hints.urban_labels:
                candidates.add(_context_address(context), label_fallback_score(hints.urban_labels[0].score))
            else:
                candidates.add(_context_address(context), CONTEXT_FALLBACK_SCORE)
            locality = context.city

        if locality:
            for sign in hints.signs:
                candidates.add(f"{sign}, {locality}", SIGN_SCORE)

    result = candidates.sorted()
    logger.info(f"Generated {len(result)} address candidates")
    for candidate in result[:5]:
        logger.debug(f"  {candidate.score:.2f} {candidate.raw_text}")
    return result
