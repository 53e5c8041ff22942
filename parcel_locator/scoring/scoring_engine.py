"""
Scoring Engine

Compares the source photo's features with a candidate's satellite analysis
and listing context. A missing expected pool eliminates the candidate outright;
otherwise the sub-scores are combined as a weighted average.
"""

import logging
from typing import Iterable, List, Optional

from parcel_locator.core.types import (
    ImageFeatures, ListingData, MatchingScore, PoolShape, PropertyCandidate, RankedCandidate, SatelliteAnalysis,
    ScoreDetails,
)

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50

# Pool
POOL_SHAPE_MATCH_SCORE = 95
POOL_MATCH_SCORE = 80
POOL_ELIMINATED_SCORE = 0

# Vegetation
VEGETATION_CONSISTENT_SCORE = 80
VEGETATION_MISSING_SCORE = 30

# Orientation
ORIENTATION_MATCH_SCORE = 90
ORIENTATION_OPPOSITE_SCORE = 20

# Context (reference transaction)
PRICE_CLOSE_THRESHOLD = 0.2
PRICE_MODERATE_THRESHOLD = 0.4
PRICE_CLOSE_BONUS = 30
PRICE_MODERATE_BONUS = 15
PRICE_FAR_PENALTY = -20
SURFACE_CLOSE_THRESHOLD = 0.1
SURFACE_MODERATE_THRESHOLD = 0.2
SURFACE_CLOSE_BONUS = 20
SURFACE_MODERATE_BONUS = 10

WEIGHTS = {
    'pool_similarity': 3.0,
    'architecture_match': 1.5,
    'vegetation_match': 1.2,
    'surface_match': 1.0,
    'orientation_match': 1.0,
    'context_match': 0.8,
}

MIN_RETAINED_SCORE = 30
MAX_RANKED_CANDIDATES = 10


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def pool_similarity(source: ImageFeatures, satellite: SatelliteAnalysis) -> int:
    if not source.pool_present:
        return NEUTRAL_SCORE
    if satellite.pool_present is False:
        return POOL_ELIMINATED_SCORE
    if satellite.pool_present is None:
        return NEUTRAL_SCORE
    if source.pool_shape != PoolShape.UNKNOWN and satellite.pool_shape == source.pool_shape:
        return POOL_SHAPE_MATCH_SCORE
    return POOL_MATCH_SCORE


def vegetation_match(source: ImageFeatures, satellite: SatelliteAnalysis) -> int:
    """80 when both sides agree, 30 when the photo's garden is missing overhead, 50 otherwise."""
    if source.vegetation_present is None or satellite.vegetation_dense is None:
        return NEUTRAL_SCORE
    if source.vegetation_present == satellite.vegetation_dense:
        return VEGETATION_CONSISTENT_SCORE
    if source.vegetation_present and not satellite.vegetation_dense:
        return VEGETATION_MISSING_SCORE
    return NEUTRAL_SCORE


def orientation_match(source: ImageFeatures, satellite: SatelliteAnalysis) -> int:
    if source.facade_orientation is None or satellite.building_orientation is None:
        return NEUTRAL_SCORE
    if source.facade_orientation == satellite.building_orientation:
        return ORIENTATION_MATCH_SCORE
    if source.facade_orientation.opposite == satellite.building_orientation:
        return ORIENTATION_OPPOSITE_SCORE
    return NEUTRAL_SCORE


def surface_match(candidate: PropertyCandidate, listing: Optional[ListingData]) -> int:
    listing_surface = listing.surface if listing else None
    parcel_surface = candidate.cadastre.terrain_surface
    if not listing_surface or parcel_surface is None:
        return NEUTRAL_SCORE
    difference = abs(listing_surface - parcel_surface) / listing_surface
    return _clamp(100 - difference * 100)


def context_match(candidate: PropertyCandidate, listing: Optional[ListingData]) -> int:
    """Listing price and surface against the candidate's reference transaction."""
    score = NEUTRAL_SCORE
    sale = candidate.reference_sale
    if not listing or not sale:
        return score

    if listing.price and sale.price:
        price_difference = abs(listing.price - sale.price) / listing.price
        if price_difference < PRICE_CLOSE_THRESHOLD:
            score += PRICE_CLOSE_BONUS
        elif price_difference < PRICE_MODERATE_THRESHOLD:
            score += PRICE_MODERATE_BONUS
        else:
            score += PRICE_FAR_PENALTY

    if listing.surface and sale.surface:
        surface_difference = abs(listing.surface - sale.surface) / listing.surface
        if surface_difference < SURFACE_CLOSE_THRESHOLD:
            score += SURFACE_CLOSE_BONUS
        elif surface_difference < SURFACE_MODERATE_THRESHOLD:
            score += SURFACE_MODERATE_BONUS

    return _clamp(score)


def weighted_global_score(details: ScoreDetails) -> int:
    weighted_sum = sum(getattr(details, name) * weight for name, weight in WEIGHTS.items())
    return min(100, int(round(weighted_sum / sum(WEIGHTS.values()))))


def calculate_matching_score(image_features: ImageFeatures, satellite: SatelliteAnalysis,
                             candidate: PropertyCandidate,
                             listing: Optional[ListingData] = None) -> MatchingScore:
    """
    Score one candidate against the source photo.

    If the photo shows a pool and the satellite view shows none, the global
    score is 0 and no other criterion is evaluated. Unknown satellite data
    never eliminates.
    """
    if image_features.pool_present and satellite.pool_present is False:
        logger.debug(f"Candidate {candidate.id} eliminated: no pool on satellite view")
        return MatchingScore(
            global_score=0,
            details=ScoreDetails(pool_similarity=POOL_ELIMINATED_SCORE),
            eliminated=True,
        )

    details = ScoreDetails(
        architecture_match=NEUTRAL_SCORE,
        pool_similarity=pool_similarity(image_features, satellite),
        vegetation_match=vegetation_match(image_features, satellite),
        surface_match=surface_match(candidate, listing),
        orientation_match=orientation_match(image_features, satellite),
        context_match=context_match(candidate, listing),
    )
    return MatchingScore(global_score=weighted_global_score(details), details=details)


def rank_candidates(scored: Iterable[RankedCandidate]) -> List[RankedCandidate]:
    """Drop candidates scoring 30 or less, sort by score and keep the best ten."""
    retained = [c for c in scored if c.global_score > MIN_RETAINED_SCORE]
    retained.sort(key=lambda c: c.global_score, reverse=True)
    return retained[:MAX_RANKED_CANDIDATES]
