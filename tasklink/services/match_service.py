"""Weighted multi-criteria ranking of candidate providers."""

import logging
import math
from collections.abc import Iterable, Mapping

from pydantic import ValidationError as PydanticValidationError

from tasklink.core.config import constants, settings
from tasklink.core.errors import ValidationError
from tasklink.core.logging import span
from tasklink.core.repository import Repository
from tasklink.domain.matching import MatchingCriteria, SortKey
from tasklink.domain.profile import Availability, Profile, UserRole
from tasklink.models.service_models import MatchBreakdown, OperationResult, RankedCandidate


logger = logging.getLogger(__name__)


AVAILABILITY_FACTORS: dict[Availability, float] = {
    Availability.AVAILABLE: 1.0,
    Availability.BUSY: 0.5,
    Availability.OFFLINE: 0.0,
}


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _skill_overlap(required: set[str], offered: set[str]) -> float:
    """Fraction of required skills matched by any offered skill (case-insensitive substring)."""
    if not required:
        return 0.0
    offered_lower = [skill.lower() for skill in offered]
    matched = sum(
        1
        for skill in required
        if any(skill.lower() in candidate or candidate in skill.lower() for candidate in offered_lower)
    )
    return matched / len(required)


def _language_match(language: str | None, spoken: set[str]) -> float:
    if not language:
        return 0.0
    return 1.0 if language.lower() in {lang.lower() for lang in spoken} else 0.0


def breakdown(candidate: Profile, criteria: MatchingCriteria) -> MatchBreakdown:
    """Normalize each scoring factor of a candidate to the 0..1 range."""
    cutoff = settings.match_distance_cutoff_km
    return MatchBreakdown(
        distance=max(0.0, (cutoff - candidate.distance_km) / cutoff),
        trust=candidate.trust_score / constants.TRUST_SCORE_MAX,
        rating=candidate.rating / constants.MAX_RATING,
        price=1.0 if criteria.budget_min <= candidate.price <= criteria.budget_max else 0.0,
        skills=_skill_overlap(criteria.required_skills, candidate.skills),
        language=_language_match(criteria.language, candidate.languages),
        availability=AVAILABILITY_FACTORS[candidate.availability],
    )


def score_candidate(candidate: Profile, criteria: MatchingCriteria) -> RankedCandidate:
    """Score a single candidate (0..100) against the criteria."""
    factors = breakdown(candidate, criteria)
    weighted = (
        constants.MATCH_WEIGHT_DISTANCE * factors.distance
        + constants.MATCH_WEIGHT_TRUST * factors.trust
        + constants.MATCH_WEIGHT_RATING * factors.rating
        + constants.MATCH_WEIGHT_PRICE * factors.price
        + constants.MATCH_WEIGHT_SKILLS * factors.skills
        + constants.MATCH_WEIGHT_LANGUAGE * factors.language
        + constants.MATCH_WEIGHT_AVAILABILITY * factors.availability
    )
    score = min(max(_round_half_up(weighted * 100), 0), 100)
    return RankedCandidate(profile=candidate, match_score=score, breakdown=factors)


def sort_ranked(ranked: list[RankedCandidate], sort_by: SortKey = SortKey.MATCH) -> list[RankedCandidate]:
    """Stable re-sort of an already scored list; scores are never recomputed."""
    if sort_by == SortKey.PRICE:
        return sorted(ranked, key=lambda r: r.profile.price)
    if sort_by == SortKey.RATING:
        return sorted(ranked, key=lambda r: r.profile.rating, reverse=True)
    if sort_by == SortKey.DISTANCE:
        return sorted(ranked, key=lambda r: r.profile.distance_km)
    return sorted(ranked, key=lambda r: r.match_score, reverse=True)


def rank(
    candidates: Iterable[Profile],
    criteria: MatchingCriteria,
    sort_by: SortKey = SortKey.MATCH,
) -> list[RankedCandidate]:
    """Score every candidate and return them in the requested order."""
    scored = [score_candidate(candidate, criteria) for candidate in candidates]
    return sort_ranked(scored, sort_by)


def apply_hard_filters(candidates: Iterable[Profile], criteria: MatchingCriteria) -> list[Profile]:
    """Drop candidates below the minimum rating or trust score."""
    return [
        c for c in candidates if c.rating >= criteria.min_rating and c.trust_score >= criteria.min_trust_score
    ]


async def search_providers(
    *,
    repository: Repository,
    criteria: MatchingCriteria | Mapping[str, object],
    sort_by: SortKey = SortKey.MATCH,
    distances: Mapping[str, float] | None = None,
) -> OperationResult[list[RankedCandidate]]:
    """Fetch providers, apply precomputed distances and hard filters, then rank.

    Args:
        repository: Store holding provider profiles
        criteria: Search criteria, or raw criteria fields to validate
        sort_by: Active sort key
        distances: Distance in km per provider ID for this search

    Returns:
        OperationResult carrying the ranked list, or a validation/persistence error
    """
    with span("match_service.search_providers"):
        if not isinstance(criteria, MatchingCriteria):
            try:
                criteria = MatchingCriteria.model_validate(criteria)
            except PydanticValidationError as e:
                logger.info("Rejected search criteria: %s", e)
                return OperationResult.fail(ValidationError(f"Invalid search criteria: {e.errors()[0]['msg']}"))

        try:
            records = await repository.get("profiles", {"role": UserRole.PROVIDER})
        except Exception as e:
            logger.exception("Failed to load provider profiles")
            return OperationResult.fail(e)

        distances = distances or {}
        candidates = []
        for record in records:
            if record["id"] in distances:
                record = {**record, "distance_km": distances[record["id"]]}
            try:
                candidates.append(Profile.model_validate(record))
            except PydanticValidationError as e:
                # A malformed row drops out of the results alone
                logger.warning("Skipped malformed provider profile %s: %s", record.get("id"), e.errors()[0]["msg"])

        filtered = apply_hard_filters(candidates, criteria)
        ranked = rank(filtered, criteria, sort_by)

        logger.info(
            "Ranked %d providers (%d after filters, sort=%s)",
            len(candidates),
            len(filtered),
            sort_by,
        )
        return OperationResult.ok(ranked)
