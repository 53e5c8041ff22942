"""
Reference sales

Attaches the caller's reference transactions to the zone candidates so the
scoring engine can compare the listing price and surface with them. A sale
belongs to a candidate when it was recorded on the same parcel, or failing
that when it is the closest sale within a few meters of the candidate.
"""

import logging
from dataclasses import replace
from typing import List, Optional, Sequence

from geopy.distance import geodesic

from parcel_locator.core.types import PropertyCandidate, ReferenceSale

logger = logging.getLogger(__name__)

REFERENCE_SALE_RADIUS_METERS = 30


def match_reference_sale(candidate: PropertyCandidate,
                         sales: Sequence[ReferenceSale]) -> Optional[ReferenceSale]:
    parcel_ids = set(candidate.cadastre.parcel_ids)
    for sale in sales:
        if sale.parcel_id and sale.parcel_id in parcel_ids:
            return sale

    best, best_distance = None, REFERENCE_SALE_RADIUS_METERS
    for sale in sales:
        if sale.coordinates is None:
            continue
        distance = geodesic(candidate.coordinates.as_tuple(), sale.coordinates.as_tuple()).meters
        if distance <= best_distance:
            best, best_distance = sale, distance
    return best


def attach_reference_sales(candidates: Sequence[PropertyCandidate],
                           sales: Sequence[ReferenceSale]) -> List[PropertyCandidate]:
    if not sales:
        return list(candidates)
    result = []
    matched = 0
    for candidate in candidates:
        sale = match_reference_sale(candidate, sales)
        if sale is not None:
            candidate = replace(candidate, reference_sale=sale)
            matched += 1
        result.append(candidate)
    logger.info(f"Reference sales matched {matched}/{len(result)} candidates")
    return result
