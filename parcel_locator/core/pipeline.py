"""
Localisation pipeline.

Runs one photo through every stage, from annotation to ranked candidates:

    EXIF shortcut -> annotation -> hints / image features -> address candidates
    -> geocoding -> zone enumeration -> exclusions / reference sales
    -> per-candidate matching -> ranking

Per-candidate matching runs on a bounded thread pool. Each candidate fans its
satellite analysis and visual assets out on a shared asset pool and joins them
before being scored. When the overall deadline passes, whatever has been
scored so far is ranked and returned with ``timed_out`` set.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from parcel_locator.ai.image_features import ImageFeatureAnalyzer
from parcel_locator.config import config
from parcel_locator.core.metrics import (
    candidates_eliminated, candidates_returned, deadline_exceeded, pipeline_stage_time, track_localization,
)
from parcel_locator.core.types import (
    CadastreData, Coordinates, ImageFeatures, ListingData, LocalizationResult, MatchingScore,
    PropertyCandidate, RankedCandidate, ReferenceSale, SatelliteAnalysis, ScoreDetails, SearchContext, SearchZone,
)
from parcel_locator.geo.cadastre import CadastreClient
from parcel_locator.geo.exclusions import ExcludedCandidate, filter_excluded, is_excluded_point
from parcel_locator.geo.satellite_matcher import SatelliteFeatureMatcher
from parcel_locator.geo.zone_enumerator import ZoneCandidateEnumerator, is_inside_zone
from parcel_locator.nlp.address_extractor import extract_address_candidates
from parcel_locator.ocr.exif_reader import read_exif_gps
from parcel_locator.ocr.google_vision_ocr import GoogleVisionOCR
from parcel_locator.ocr.signal_extractor import extract_visual_hints
from parcel_locator.scoring.explanation import generate_explanation
from parcel_locator.scoring.geocoder import AddressGeocoder
from parcel_locator.scoring.reference_sales import attach_reference_sales
from parcel_locator.scoring.scoring_engine import calculate_matching_score, rank_candidates
from parcel_locator.visuals.asset_builder import VisualAssetBuilder

logger = logging.getLogger(__name__)

SOURCE_EXIF = "EXIF"
SOURCE_VISUAL_MATCH = "VISUAL_MATCH"
STATUS_SUCCESS = "success"
STATUS_NO_MATCH = "no_match"

EXIF_SCORE = 100
EXIF_EXPLANATION = "Les métadonnées GPS de la photo situent le bien à cette adresse."


class LocalizationPipeline:
    """Photo-to-parcel localisation. Collaborators can be injected for tests."""

    def __init__(self, vision: Optional[GoogleVisionOCR] = None,
                 feature_analyzer: Optional[ImageFeatureAnalyzer] = None,
                 geocoder: Optional[AddressGeocoder] = None,
                 enumerator: Optional[ZoneCandidateEnumerator] = None,
                 satellite: Optional[SatelliteFeatureMatcher] = None,
                 assets: Optional[VisualAssetBuilder] = None,
                 max_workers: Optional[int] = None, asset_workers: Optional[int] = None,
                 deadline_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        cadastre = None
        if enumerator is None or assets is None:
            cadastre = CadastreClient()
        self.vision = vision or GoogleVisionOCR()
        self.feature_analyzer = feature_analyzer or ImageFeatureAnalyzer()
        self.geocoder = geocoder or AddressGeocoder()
        self.enumerator = enumerator or ZoneCandidateEnumerator(cadastre)
        self.satellite = satellite or SatelliteFeatureMatcher()
        self.assets = assets or VisualAssetBuilder(cadastre)
        self.max_workers = max_workers or config.MAX_CANDIDATE_WORKERS
        self.asset_workers = asset_workers or config.MAX_ASSET_WORKERS
        self.deadline_seconds = deadline_seconds or config.PIPELINE_DEADLINE_SECONDS
        self._clock = clock

    # -- EXIF shortcut ----------------------------------------------------

    def _exif_result(self, coordinates: Coordinates, started: float) -> LocalizationResult:
        address = self.geocoder.reverse_geocode(coordinates) or str(coordinates)
        candidate = PropertyCandidate(
            id="exif",
            address=address,
            postal_code=None,
            city=None,
            coordinates=coordinates,
            cadastre=CadastreData(),
        )
        ranked = RankedCandidate(
            candidate=candidate,
            satellite=SatelliteAnalysis.unavailable(),
            score=MatchingScore(global_score=EXIF_SCORE, details=ScoreDetails()),
            explanation=EXIF_EXPLANATION,
            visuals=self.assets.build(coordinates),
            source=SOURCE_EXIF,
        )
        track_localization(STATUS_SUCCESS, SOURCE_EXIF.lower(), EXIF_SCORE)
        candidates_returned.inc()
        logger.info(f"EXIF GPS {coordinates} inside the search zone, visual pipeline skipped")
        return LocalizationResult(
            status=STATUS_SUCCESS,
            source=SOURCE_EXIF,
            candidates=(ranked,),
            elapsed_seconds=self._clock() - started,
        )

    # -- per-candidate matching ------------------------------------------

    def _evaluate(self, candidate: PropertyCandidate, features: ImageFeatures,
                  listing: Optional[ListingData], asset_pool: ThreadPoolExecutor) -> RankedCandidate:
        satellite_future = asset_pool.submit(self.satellite.analyze, candidate, features)
        visuals = self.assets.build(candidate.coordinates, executor=asset_pool)
        satellite = satellite_future.result()

        score = calculate_matching_score(features, satellite, candidate, listing)
        if score.eliminated:
            candidates_eliminated.labels(reason='pool_missing').inc()
        logger.debug(f"Candidate {candidate.id} scored {score.global_score}")
        return RankedCandidate(
            candidate=candidate,
            satellite=satellite,
            score=score,
            explanation=generate_explanation(score, candidate.address),
            visuals=visuals,
        )

    def _match_candidates(self, candidates: List[PropertyCandidate], features: ImageFeatures,
                          listing: Optional[ListingData], timeout: float):
        """Score candidates concurrently until done or ``timeout``; returns (scored, timed_out)."""
        if not candidates:
            return [], False

        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(candidates)), thread_name_prefix='candidate')
        asset_pool = ThreadPoolExecutor(max_workers=self.asset_workers, thread_name_prefix='asset')
        try:
            futures = {
                pool.submit(self._evaluate, candidate, features, listing, asset_pool): candidate
                for candidate in candidates
            }
            done, not_done = wait(futures, timeout=max(0.0, timeout))

            scored = []
            for future in done:
                try:
                    scored.append(future.result())
                except Exception as e:
                    logger.error(f"Matching failed for candidate {futures[future].id}: {e}")
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
            asset_pool.shutdown(wait=False, cancel_futures=True)

        if not_done:
            logger.warning(f"Deadline reached, {len(not_done)}/{len(candidates)} candidates not scored")
        return scored, bool(not_done)

    def _presentation_addresses(self, ranked: List[RankedCandidate], timeout: float) -> List[RankedCandidate]:
        """Replace parcel labels with reverse-geocoded street addresses where available."""
        if not ranked or timeout <= 0 or not self.geocoder.is_available():
            return ranked

        pool = ThreadPoolExecutor(max_workers=config.MAX_GEOCODING_WORKERS, thread_name_prefix='reverse')
        try:
            futures = [pool.submit(self.geocoder.reverse_geocode, r.candidate.coordinates) for r in ranked]
            wait(futures, timeout=timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        result = []
        for ranked_candidate, future in zip(ranked, futures):
            address = None
            if future.done() and not future.cancelled() and future.exception() is None:
                address = future.result()
            if address:
                candidate = replace(ranked_candidate.candidate, address=address)
                ranked_candidate = replace(
                    ranked_candidate,
                    candidate=candidate,
                    explanation=generate_explanation(ranked_candidate.score, address),
                )
            result.append(ranked_candidate)
        return result

    # -- entry point ------------------------------------------------------

    def locate(self, image_bytes: bytes, zone: SearchZone, context: Optional[SearchContext] = None,
               listing: Optional[ListingData] = None, deadline_seconds: Optional[float] = None,
               reference_sales: Sequence[ReferenceSale] = (),
               exclusions: Sequence[ExcludedCandidate] = ()) -> LocalizationResult:
        """
        Locate the parcel shown in ``image_bytes`` inside ``zone``.

        ``reference_sales`` are attached to the candidates they were recorded
        on. Candidates matching ``exclusions`` (proposed by an earlier run of
        the same request) are dropped, including the EXIF shortcut.

        Raises:
            AnnotationError: the image could not be annotated.
        """
        started = self._clock()
        deadline = started + (deadline_seconds or self.deadline_seconds)

        def remaining() -> float:
            return max(0.0, deadline - self._clock())

        warnings: List[str] = []

        exif = read_exif_gps(image_bytes)
        if exif is not None:
            if is_excluded_point(exif, exclusions):
                logger.info(f"EXIF GPS {exif} was already proposed, running the visual pipeline")
            elif is_inside_zone(exif, zone):
                return self._exif_result(exif, started)
            else:
                logger.warning(f"EXIF GPS {exif} is outside the search zone, ignored")
                warnings.append("exif_outside_zone")

        with pipeline_stage_time.labels(stage='annotation').time():
            signals = self.vision.annotate(image_bytes)

        hints = extract_visual_hints(signals)
        features = self.feature_analyzer.analyze(image_bytes, hints)

        with pipeline_stage_time.labels(stage='geocoding').time():
            address_candidates = extract_address_candidates(signals, context, hints)
            geocoded = self.geocoder.geocode_candidates(address_candidates, context)
        address_hints = [g for g in geocoded if is_inside_zone(g.coordinates, zone)]
        if len(address_hints) < len(geocoded):
            logger.info(f"{len(geocoded) - len(address_hints)} geocoded addresses fall outside the zone")
        if not self.geocoder.is_available():
            warnings.append("geocoding_unavailable")

        with pipeline_stage_time.labels(stage='zone').time():
            candidates = self.enumerator.enumerate(zone, features.property_type, seeds=address_hints)
        candidates, excluded_count = filter_excluded(candidates, exclusions)
        if excluded_count:
            candidates_eliminated.labels(reason='already_proposed').inc(excluded_count)
        candidates = attach_reference_sales(candidates, reference_sales)

        timed_out = remaining() <= 0
        scored: List[RankedCandidate] = []
        if not timed_out:
            with pipeline_stage_time.labels(stage='matching').time():
                scored, timed_out = self._match_candidates(candidates, features, listing, remaining())

        ranked = rank_candidates(scored)
        ranked = self._presentation_addresses(ranked, remaining())

        if timed_out:
            deadline_exceeded.inc()
            warnings.append("deadline_exceeded")

        status = STATUS_SUCCESS if ranked else STATUS_NO_MATCH
        top_score = ranked[0].global_score if ranked else None
        track_localization(status, SOURCE_VISUAL_MATCH.lower(), top_score)
        candidates_returned.inc(len(ranked))

        elapsed = self._clock() - started
        pipeline_stage_time.labels(stage='total').observe(elapsed)
        logger.info(
            f"Localisation finished in {elapsed:.1f}s: {len(ranked)} candidates "
            f"({len(scored)}/{len(candidates)} scored, timed_out={timed_out})"
        )
        return LocalizationResult(
            status=status,
            source=SOURCE_VISUAL_MATCH,
            candidates=tuple(ranked),
            address_hints=tuple(address_hints),
            image_features=features,
            timed_out=timed_out,
            warnings=tuple(warnings),
            elapsed_seconds=elapsed,
            excluded_count=excluded_count,
        )
