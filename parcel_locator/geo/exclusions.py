"""
Relaunch support

A relaunch asks for more candidates for a photo already localised: every
candidate proposed by the earlier runs of the same request is excluded, and
the search zone is widened a little more at each run.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from parcel_locator.core.types import Coordinates, PropertyCandidate, SearchZone

logger = logging.getLogger(__name__)

# About 11 m
COORDINATE_TOLERANCE_DEG = 0.0001

EXPANSION_LOCAL_METERS = 150
EXPANSION_COMMUNE_RADIUS = 2000
EXPANSION_POSTAL_RADIUS = 5000
MAX_EXPANSION_LEVEL = 3

REASON_PARCEL = 'parcel_identical'
REASON_COORDINATES = 'coords_identical'


@dataclass(frozen=True)
class ExcludedCandidate:
    coordinates: Coordinates
    parcel_ids: Tuple[str, ...] = ()


def exclusions_from_result(data: Dict[str, Any]) -> List[ExcludedCandidate]:
    """Fingerprints of the candidates of one stored result (``LocalizationResult.to_dict()``)."""
    excluded = []
    for ranked in (data or {}).get('candidates') or []:
        candidate = ranked.get('candidate') or {}
        location = candidate.get('coordinates') or {}
        try:
            coordinates = Coordinates(float(location['lat']), float(location['lng']))
        except (KeyError, TypeError, ValueError):
            continue
        parcel_ids = tuple((candidate.get('cadastre') or {}).get('parcel_ids') or ())
        excluded.append(ExcludedCandidate(coordinates, parcel_ids))
    return excluded


def _same_point(a: Coordinates, b: Coordinates) -> bool:
    return abs(a.lat - b.lat) < COORDINATE_TOLERANCE_DEG and abs(a.lng - b.lng) < COORDINATE_TOLERANCE_DEG


def is_excluded_point(coordinates: Coordinates, excluded: Iterable[ExcludedCandidate]) -> bool:
    return any(_same_point(coordinates, e.coordinates) for e in excluded)


def exclusion_reason(candidate: PropertyCandidate, excluded: Iterable[ExcludedCandidate]) -> Optional[str]:
    """Why ``candidate`` was already proposed, or None."""
    parcel_ids = set(candidate.cadastre.parcel_ids)
    for previous in excluded:
        if parcel_ids and parcel_ids.intersection(previous.parcel_ids):
            return REASON_PARCEL
        if _same_point(candidate.coordinates, previous.coordinates):
            return REASON_COORDINATES
    return None


def filter_excluded(candidates: Sequence[PropertyCandidate],
                    excluded: Sequence[ExcludedCandidate]) -> Tuple[List[PropertyCandidate], int]:
    """Candidates not proposed before, and how many were dropped."""
    if not excluded:
        return list(candidates), 0
    kept = []
    for candidate in candidates:
        reason = exclusion_reason(candidate, excluded)
        if reason:
            logger.debug(f"Excluding {candidate.id} at {candidate.coordinates}: {reason}")
            continue
        kept.append(candidate)
    dropped = len(candidates) - len(kept)
    if dropped:
        logger.info(f"Excluded {dropped}/{len(candidates)} candidates already proposed")
    return kept, dropped


def expansion_level(previous_runs: int) -> int:
    """1 for the first relaunch, then 2, then 3 for every later one."""
    return max(1, min(MAX_EXPANSION_LEVEL, previous_runs))


def expanded_zone(zone: SearchZone, level: int) -> SearchZone:
    """
    Level 1 adds 150 m around the original zone, level 2 searches 2 km around
    its center, level 3 searches 5 km (about a whole postal code). The
    administrative constraints are kept.
    """
    if level <= 1:
        radius = zone.radius_meters + EXPANSION_LOCAL_METERS
    elif level == 2:
        radius = max(zone.radius_meters, EXPANSION_COMMUNE_RADIUS)
    else:
        radius = max(zone.radius_meters, EXPANSION_POSTAL_RADIUS)
    return replace(zone, radius_meters=radius)
