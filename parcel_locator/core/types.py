"""
Value types shared by the localisation pipeline.

Every type here is a frozen dataclass: values are produced once per request by
one stage and read by the next ones, possibly from several worker threads.
"""

from dataclasses import dataclass, field, replace, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Orientation(Enum):
    """Compass direction of a facade or building axis."""
    N = "N"
    NE = "NE"
    E = "E"
    SE = "SE"
    S = "S"
    SW = "SW"
    W = "W"
    NW = "NW"

    @property
    def opposite(self) -> "Orientation":
        return _OPPOSITES[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["Orientation"]:
        """Accept 'N', 'north', 'nord', 'sud-ouest'... and return None when unknown."""
        if value is None:
            return None
        if isinstance(value, Orientation):
            return value
        key = str(value).strip().lower().replace("_", "-").replace(" ", "-")
        return _ORIENTATION_ALIASES.get(key)


_OPPOSITES = {
    Orientation.N: Orientation.S,
    Orientation.S: Orientation.N,
    Orientation.E: Orientation.W,
    Orientation.W: Orientation.E,
    Orientation.NE: Orientation.SW,
    Orientation.SW: Orientation.NE,
    Orientation.NW: Orientation.SE,
    Orientation.SE: Orientation.NW,
}

_ORIENTATION_ALIASES = {
    "n": Orientation.N, "north": Orientation.N, "nord": Orientation.N,
    "s": Orientation.S, "south": Orientation.S, "sud": Orientation.S,
    "e": Orientation.E, "east": Orientation.E, "est": Orientation.E,
    "w": Orientation.W, "o": Orientation.W, "west": Orientation.W, "ouest": Orientation.W,
    "ne": Orientation.NE, "north-east": Orientation.NE, "northeast": Orientation.NE, "nord-est": Orientation.NE,
    "nw": Orientation.NW, "no": Orientation.NW, "north-west": Orientation.NW, "northwest": Orientation.NW,
    "nord-ouest": Orientation.NW,
    "se": Orientation.SE, "south-east": Orientation.SE, "southeast": Orientation.SE, "sud-est": Orientation.SE,
    "sw": Orientation.SW, "so": Orientation.SW, "south-west": Orientation.SW, "southwest": Orientation.SW,
    "sud-ouest": Orientation.SW,
}


class PoolShape(Enum):
    RECTANGULAR = "rectangular"
    KIDNEY = "kidney"
    L_SHAPED = "l_shaped"
    ROUND = "round"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "PoolShape":
        if isinstance(value, PoolShape):
            return value
        key = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        aliases = {
            "rectangulaire": cls.RECTANGULAR, "rectangle": cls.RECTANGULAR, "oval": cls.ROUND,
            "ronde": cls.ROUND, "circular": cls.ROUND, "haricot": cls.KIDNEY, "freeform": cls.KIDNEY,
            "l": cls.L_SHAPED, "en_l": cls.L_SHAPED,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


# Building type tags attached to zone candidates
BUILDING_SINGLE_FAMILY = "single_family"
BUILDING_COLLECTIVE = "collective"
BUILDING_OTHER = "other"
BUILDING_UNBUILT = "unbuilt"
BUILDING_UNKNOWN = "unknown"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= self.lng <= 180.0:
            raise ValueError(f"Longitude out of range: {self.lng}")

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    def __str__(self):
        return f"{self.lat},{self.lng}"


# =======================
# VISION SIGNALS
# =======================

@dataclass(frozen=True)
class OcrWord:
    text: str
    confidence: float  # 0-100


@dataclass(frozen=True)
class LabelDetection:
    description: str
    score: float


@dataclass(frozen=True)
class LandmarkDetection:
    description: str
    score: float
    coordinates: Optional[Coordinates] = None


@dataclass(frozen=True)
class LogoDetection:
    description: str
    score: float


@dataclass(frozen=True)
class VisionSignals:
    """Raw annotation output for one image."""
    full_text: str = ""
    words: Tuple[OcrWord, ...] = ()
    labels: Tuple[LabelDetection, ...] = ()
    landmarks: Tuple[LandmarkDetection, ...] = ()
    logos: Tuple[LogoDetection, ...] = ()


@dataclass(frozen=True)
class VisualHints:
    """Signals regrouped by what they can tell about the location."""
    address_fragments: Tuple[str, ...] = ()
    signs: Tuple[str, ...] = ()
    architecture_labels: Tuple[LabelDetection, ...] = ()
    vegetation_labels: Tuple[LabelDetection, ...] = ()
    pool_labels: Tuple[LabelDetection, ...] = ()
    urban_labels: Tuple[LabelDetection, ...] = ()
    words: Tuple[OcrWord, ...] = ()


# =======================
# ADDRESS HYPOTHESES
# =======================

@dataclass(frozen=True)
class SearchContext:
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "France"
    department: Optional[str] = None


@dataclass(frozen=True)
class AddressCandidate:
    raw_text: str
    score: float


@dataclass(frozen=True)
class GeocodedCandidate:
    address: str
    latitude: float
    longitude: float
    geocoding_score: float
    global_score: float
    source_text: str
    location_type: str = "UNKNOWN"
    street_view_url: Optional[str] = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =======================
# ZONE AND PARCELS
# =======================

@dataclass(frozen=True)
class ZoneConstraints:
    postal_codes: Tuple[str, ...] = ()
    communes: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.postal_codes and not self.communes


@dataclass(frozen=True)
class SearchZone:
    center: Coordinates
    radius_meters: float
    constraints: ZoneConstraints = field(default_factory=ZoneConstraints)

    def __post_init__(self):
        if self.radius_meters is None or self.radius_meters <= 0:
            raise ValueError(f"Search radius must be positive, got {self.radius_meters}")


@dataclass(frozen=True)
class CadastreData:
    parcel_ids: Tuple[str, ...] = ()
    terrain_surface: Optional[float] = None


@dataclass(frozen=True)
class ReferenceSale:
    """A known transaction, located by parcel id or by coordinates."""
    price: float
    surface: Optional[float] = None
    date: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    parcel_id: Optional[str] = None


@dataclass(frozen=True)
class PropertyCandidate:
    id: str
    address: str
    postal_code: Optional[str]
    city: Optional[str]
    coordinates: Coordinates
    cadastre: CadastreData = field(default_factory=CadastreData)
    building_type: str = BUILDING_UNKNOWN
    commune_code: Optional[str] = None
    reference_sale: Optional[ReferenceSale] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["coordinates"] = {"lat": self.coordinates.lat, "lng": self.coordinates.lng}
        return data


# =======================
# FEATURES AND SCORES
# =======================

@dataclass(frozen=True)
class ImageFeatures:
    """Exterior features detected in the source photo."""
    property_type: str = "unknown"
    pool_present: bool = False
    pool_shape: PoolShape = PoolShape.UNKNOWN
    vegetation_present: Optional[bool] = None
    facade_orientation: Optional[Orientation] = None
    architecture_style: Optional[str] = None
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_type": self.property_type,
            "pool_present": self.pool_present,
            "pool_shape": self.pool_shape.value,
            "vegetation_present": self.vegetation_present,
            "facade_orientation": self.facade_orientation.value if self.facade_orientation else None,
            "architecture_style": self.architecture_style,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class SatelliteAnalysis:
    """What the overhead imagery shows at a candidate. None means unknown."""
    pool_present: Optional[bool] = None
    pool_shape: Optional[PoolShape] = None
    vegetation_dense: Optional[bool] = None
    building_orientation: Optional[Orientation] = None
    estimated_surface: Optional[float] = None
    vegetation_ratio: Optional[float] = None
    imagery_available: bool = True

    @classmethod
    def unavailable(cls) -> "SatelliteAnalysis":
        return cls(imagery_available=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_present": self.pool_present,
            "pool_shape": self.pool_shape.value if self.pool_shape else None,
            "vegetation_dense": self.vegetation_dense,
            "building_orientation": self.building_orientation.value if self.building_orientation else None,
            "estimated_surface": self.estimated_surface,
            "vegetation_ratio": self.vegetation_ratio,
            "imagery_available": self.imagery_available,
        }


@dataclass(frozen=True)
class ListingData:
    price: Optional[float] = None
    surface: Optional[float] = None


@dataclass(frozen=True)
class ScoreDetails:
    architecture_match: int = 50
    pool_similarity: int = 50
    vegetation_match: int = 50
    surface_match: int = 50
    orientation_match: int = 50
    context_match: int = 50


@dataclass(frozen=True)
class MatchingScore:
    global_score: int
    details: ScoreDetails
    eliminated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"global": self.global_score, "details": asdict(self.details), "eliminated": self.eliminated}


# =======================
# VISUALS AND RESULTS
# =======================

@dataclass(frozen=True)
class CandidateVisuals:
    """
    Imagery links for one candidate.

    The cadastral URL is always populated; the builder methods return new
    values so a partially built struct is never shared between threads.
    """
    satellite_url: str
    cadastre_url: str
    cadastre_source: str = "coordinates"
    street_view_url: Optional[str] = None
    street_view_available: bool = False

    def with_satellite(self, url: str) -> "CandidateVisuals":
        return replace(self, satellite_url=url)

    def with_cadastre(self, url: str, source: str) -> "CandidateVisuals":
        if not url:
            return self
        return replace(self, cadastre_url=url, cadastre_source=source)

    def with_street_view(self, url: Optional[str]) -> "CandidateVisuals":
        if not url:
            return replace(self, street_view_url=None, street_view_available=False)
        return replace(self, street_view_url=url, street_view_available=True)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not self.street_view_available:
            data.pop("street_view_url")
        return data


@dataclass(frozen=True)
class RankedCandidate:
    candidate: PropertyCandidate
    satellite: SatelliteAnalysis
    score: MatchingScore
    explanation: str
    visuals: Optional[CandidateVisuals] = None
    source: str = "VISUAL_MATCH"

    @property
    def global_score(self) -> int:
        return self.score.global_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate.to_dict(),
            "satellite": self.satellite.to_dict(),
            "score": self.score.to_dict(),
            "explanation": self.explanation,
            "visuals": self.visuals.to_dict() if self.visuals else None,
            "source": self.source,
        }


@dataclass(frozen=True)
class LocalizationResult:
    status: str
    source: str
    candidates: Tuple[RankedCandidate, ...] = ()
    address_hints: Tuple[GeocodedCandidate, ...] = ()
    image_features: Optional[ImageFeatures] = None
    timed_out: bool = False
    warnings: Tuple[str, ...] = ()
    elapsed_seconds: float = 0.0
    excluded_count: int = 0

    @property
    def best(self) -> Optional[RankedCandidate]:
        return self.candidates[0] if self.candidates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "source": self.source,
            "candidates": [c.to_dict() for c in self.candidates],
            "address_hints": [h.to_dict() for h in self.address_hints],
            "image_features": self.image_features.to_dict() if self.image_features else None,
            "timed_out": self.timed_out,
            "warnings": list(self.warnings),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "excluded_count": self.excluded_count,
        }
