"""
Zone Candidate Enumerator

Lists the cadastral parcels of a circular search zone. The zone is a hard
boundary: a parcel is kept only when its centroid lies within the radius
(geodesic distance) and it satisfies the administrative constraints.
"""

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from geopy.distance import geodesic
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from parcel_locator.core.errors import CadastreError
from parcel_locator.core.metrics import candidates_enumerated
from parcel_locator.core.types import (
    BUILDING_SINGLE_FAMILY, BUILDING_UNKNOWN, CadastreData, Coordinates, GeocodedCandidate,
    PropertyCandidate, SearchZone,
)
from parcel_locator.geo.cadastre import BBox, CadastreClient, combine_building_types, feature_geometry
from parcel_locator.nlp.address_normalizer import find_postal_code, fold

logger = logging.getLogger(__name__)

MAX_ZONE_CANDIDATES = 50
METERS_PER_DEGREE_LAT = 111320.0

HOUSE_PROPERTY_TYPES = {'maison', 'villa', 'house'}
HOUSE_COMPATIBLE_BUILDINGS = {BUILDING_SINGLE_FAMILY, BUILDING_UNKNOWN}


def zone_bbox(zone: SearchZone) -> BBox:
    """Bounding box enclosing the search circle."""
    lat, lng = zone.center.lat, zone.center.lng
    delta_lat = zone.radius_meters / METERS_PER_DEGREE_LAT
    delta_lng = zone.radius_meters / (METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 0.01))
    return (lng - delta_lng, lat - delta_lat, lng + delta_lng, lat + delta_lat)


def distance_meters(a: Coordinates, b: Coordinates) -> float:
    return geodesic(a.as_tuple(), b.as_tuple()).meters


def is_inside_zone(coordinates: Coordinates, zone: SearchZone) -> bool:
    return distance_meters(coordinates, zone.center) <= zone.radius_meters


def _parcel_commune_code(props: Dict[str, Any]) -> Optional[str]:
    code = props.get('code_insee') or props.get('commune')
    if code:
        return str(code)
    if props.get('code_dep') and props.get('code_com'):
        return f"{props['code_dep']}{props['code_com']}"
    return None


def _parcel_id(props: Dict[str, Any], commune_code: Optional[str]) -> Optional[str]:
    parcel_id = props.get('id') or props.get('idu')
    if parcel_id:
        return str(parcel_id)
    if commune_code and props.get('section') and props.get('numero'):
        return f"{commune_code}{props.get('com_abs') or '000'}{props['section']}{props['numero']}"
    return None


def _parcel_surface(props: Dict[str, Any]) -> Optional[float]:
    try:
        surface = float(props.get('contenance'))
    except (TypeError, ValueError):
        return None
    return surface if surface > 0 else None


class _ZoneParcel:
    """A registry parcel, before being turned into a candidate."""

    def __init__(self, parcel_id: str, geometry: BaseGeometry, centroid: Coordinates,
                 props: Dict[str, Any], commune_code: Optional[str]):
        self.parcel_id = parcel_id
        self.geometry = geometry
        self.centroid = centroid
        self.props = props
        self.commune_code = commune_code
        self.building_type = BUILDING_UNKNOWN


class ZoneCandidateEnumerator:
    """Enumerates candidate parcels inside a SearchZone"""

    def __init__(self, cadastre: Optional[CadastreClient] = None, max_candidates: int = MAX_ZONE_CANDIDATES):
        self.cadastre = cadastre or CadastreClient()
        self.max_candidates = max_candidates

    def resolve_constraints(self, zone: SearchZone) -> Tuple[Optional[Set[str]], Set[str], Dict[str, str]]:
        """
        Turn the zone constraints into matchable values.

        Returns (allowed INSEE codes or None when unconstrained, allowed folded
        commune names, INSEE code -> postal code).
        """
        constraints = zone.constraints
        if constraints.is_empty:
            return None, set(), {}

        codes: Set[str] = set()
        names: Set[str] = set()
        postal_by_code: Dict[str, str] = {}

        for postal_code in constraints.postal_codes:
            try:
                communes = self.cadastre.communes_for_postal_code(postal_code)
            except CadastreError as e:
                logger.warning(f"Could not resolve postal code {postal_code}: {e}")
                continue
            for commune in communes:
                codes.add(commune['code'])
                postal_by_code.setdefault(commune['code'], postal_code)

        for commune in constraints.communes:
            if commune.isdigit() or (len(commune) == 5 and commune[:2] in ('2A', '2B')):
                codes.add(commune)
            else:
                names.add(fold(commune))

        if not codes and not names:
            logger.warning("Zone constraints could not be resolved, filtering on distance only")
            return None, set(), postal_by_code
        return codes, names, postal_by_code

    @staticmethod
    def _registry_parcels(features: Iterable[Dict[str, Any]]) -> List[_ZoneParcel]:
        """Every well-formed parcel the registry returned, deduplicated by id."""
        parcels: List[_ZoneParcel] = []
        seen: Set[str] = set()
        for feature in features:
            props = feature.get('properties') or {}
            geometry = feature_geometry(feature)
            if geometry is None:
                continue
            commune_code = _parcel_commune_code(props)
            parcel_id = _parcel_id(props, commune_code)
            if not parcel_id or parcel_id in seen:
                continue

            centroid_point = geometry.centroid
            try:
                centroid = Coordinates(centroid_point.y, centroid_point.x)
            except ValueError:
                continue
            seen.add(parcel_id)
            parcels.append(_ZoneParcel(parcel_id, geometry, centroid, props, commune_code))
        return parcels

    @staticmethod
    def _satisfies_constraints(parcel: _ZoneParcel, codes: Optional[Set[str]], names: Set[str]) -> bool:
        if codes is None:
            return True
        return parcel.commune_code in codes or fold(parcel.props.get('nom_com') or '') in names

    @staticmethod
    def _seed_satisfies_constraints(seed: GeocodedCandidate, zone: SearchZone,
                                    codes: Optional[Set[str]], names: Set[str]) -> bool:
        """Whether an address outside every registry parcel still names an allowed postal code or commune."""
        if codes is None:
            return True
        postal_code = find_postal_code(seed.address)
        if postal_code and postal_code in zone.constraints.postal_codes:
            return True
        folded = fold(seed.address)
        return any(re.search(rf"\b{re.escape(name)}\b", folded) for name in names)

    def _tag_buildings(self, parcels: List[_ZoneParcel], bbox: BBox) -> None:
        """Set the building type of each parcel from the buildings standing on it."""
        if not parcels:
            return
        try:
            buildings = self.cadastre.buildings_in_bbox(bbox)
        except CadastreError as e:
            logger.warning(f"Building lookup failed, building types unknown: {e}")
            return

        tree = STRtree([p.geometry for p in parcels])
        types_by_parcel: Dict[int, List[Optional[str]]] = {i: [] for i in range(len(parcels))}
        for footprint, building_type in buildings:
            for index in tree.query(footprint.representative_point(), predicate='within'):
                types_by_parcel[int(index)].append(building_type)

        for index, parcel in enumerate(parcels):
            parcel.building_type = combine_building_types(types_by_parcel[index])

    def _to_candidate(self, parcel: _ZoneParcel, postal_by_code: Dict[str, str]) -> PropertyCandidate:
        props = parcel.props
        city = props.get('nom_com')
        section, numero = props.get('section'), props.get('numero')
        label = f"Parcelle {section} {numero}" if section and numero else f"Parcelle {parcel.parcel_id}"
        return PropertyCandidate(
            id=parcel.parcel_id,
            address=f"{label}, {city}" if city else label,
            postal_code=postal_by_code.get(parcel.commune_code or ''),
            city=city,
            coordinates=parcel.centroid,
            cadastre=CadastreData(parcel_ids=(parcel.parcel_id,), terrain_surface=_parcel_surface(props)),
            building_type=parcel.building_type,
            commune_code=parcel.commune_code,
        )

    @staticmethod
    def _seed_candidate(index: int, seed: GeocodedCandidate) -> PropertyCandidate:
        return PropertyCandidate(
            id=f"address-{index}",
            address=seed.address,
            postal_code=find_postal_code(seed.address),
            city=None,
            coordinates=seed.coordinates,
        )

    def enumerate(self, zone: SearchZone, property_type: Optional[str] = None,
                  seeds: Iterable[GeocodedCandidate] = ()) -> List[PropertyCandidate]:
        """
        Candidate parcels of a zone, capped after filtering.

        Parcels containing a seed (a geocoded address hint inside the zone) come
        first, in seed order. A seed on a parcel that the zone, the constraints
        or the house filter removed is dropped with it; a seed outside every
        registry parcel becomes a candidate of its own when its address meets
        the constraints. For a house, parcels carrying a collective,
        non-residential or no building are dropped. A registry failure yields
        no parcels.
        """
        bbox = zone_bbox(zone)
        codes, names, postal_by_code = self.resolve_constraints(zone)

        try:
            features = self.cadastre.parcels_in_geometry(box(*bbox))
        except CadastreError as e:
            logger.error(f"Cadastre lookup failed for zone around {zone.center}: {e}")
            features = []

        registry = self._registry_parcels(features)
        parcels = [
            p for p in registry
            if is_inside_zone(p.centroid, zone) and self._satisfies_constraints(p, codes, names)
        ]
        logger.info(f"{len(parcels)}/{len(features)} parcels inside the {zone.radius_meters:.0f} m zone")

        self._tag_buildings(parcels, bbox)
        if (property_type or '').lower() in HOUSE_PROPERTY_TYPES:
            before = len(parcels)
            parcels = [p for p in parcels if p.building_type in HOUSE_COMPATIBLE_BUILDINGS]
            logger.info(f"House filter kept {len(parcels)}/{before} parcels")

        candidates = [self._to_candidate(p, postal_by_code) for p in parcels]
        by_id = {c.id: c for c in candidates}

        seeded: List[PropertyCandidate] = []
        for index, seed in enumerate(s for s in seeds if is_inside_zone(s.coordinates, zone)):
            point = Point(seed.longitude, seed.latitude)
            covering = next((p for p in registry if p.geometry.covers(point)), None)
            if covering is None:
                if self._seed_satisfies_constraints(seed, zone, codes, names):
                    seeded.append(self._seed_candidate(index, seed))
                else:
                    logger.info(f"Address hint '{seed.address}' is outside the zone constraints, dropped")
                continue
            candidate = by_id.get(covering.parcel_id)
            if candidate is None:
                logger.info(f"Address hint '{seed.address}' lies on filtered parcel {covering.parcel_id}, dropped")
                continue
            if candidate not in seeded:
                seeded.append(candidate)

        remaining = [c for c in candidates if c not in seeded]
        result = (seeded + remaining)[:self.max_candidates]

        candidates_enumerated.inc(len(result))
        logger.info(f"Enumerated {len(result)} candidates ({len(seeded)} seeded)")
        return result
