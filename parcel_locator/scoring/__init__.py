"""Geocoding, scoring and explanation modules"""

from parcel_locator.scoring.geocoder import AddressGeocoder
from parcel_locator.scoring.scoring_engine import calculate_matching_score, rank_candidates
from parcel_locator.scoring.explanation import generate_explanation

__all__ = [
    'AddressGeocoder',
    'calculate_matching_score',
    'rank_candidates',
    'generate_explanation'
]
