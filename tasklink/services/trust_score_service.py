"""Trust score calculation from verification artifacts."""

import logging
from collections.abc import Iterable

from tasklink.core.config import constants, settings
from tasklink.core.logging import span
from tasklink.core.repository import Repository
from tasklink.domain.profile import UserRole, VerificationLevel
from tasklink.domain.verification import (
    ROLE_STEPS,
    VERIFICATION_STEPS,
    ArtifactStatus,
    VerificationArtifact,
)
from tasklink.models.service_models import TrustResult, VerificationProgress


logger = logging.getLogger(__name__)

# Statuses that count a required step as done in the progress view
_IN_FLIGHT_STATUSES = {ArtifactStatus.APPROVED, ArtifactStatus.PENDING, ArtifactStatus.SUBMITTED}

TRUST_TIERS: list[tuple[int, str]] = [
    (98, "Legend Elite"),
    (95, "Expert Elite"),
    (90, "Pro Master"),
    (85, "Certified Pro"),
    (80, "Confirmed+"),
    (70, "Confirmed"),
    (60, "Qualified"),
    (40, "Apprentice"),
]


def _valid_for_role(artifact: VerificationArtifact, role: UserRole) -> bool:
    """Check whether an artifact's document type is part of the role's step list."""
    return artifact.document_type in ROLE_STEPS[role]


def compute(
    artifacts: Iterable[VerificationArtifact],
    role: UserRole,
    *,
    count_duplicate_levels: bool | None = None,
) -> TrustResult:
    """Compute trust score and verification level from the approved artifacts.

    Clients earn a fixed amount per approved level-1 artifact and never leave
    the basic tier. Providers earn the configured weight of every approved
    artifact's level. Both scores are capped at TRUST_SCORE_MAX.

    Args:
        artifacts: Every artifact the user has submitted
        role: Role the score is computed for
        count_duplicate_levels: When False, a level contributes its weight at most
            once. Defaults to settings.trust_count_duplicate_levels.

    Returns:
        TrustResult with trust_score and verification_level
    """
    if count_duplicate_levels is None:
        count_duplicate_levels = settings.trust_count_duplicate_levels

    approved = [a for a in artifacts if a.status == ArtifactStatus.APPROVED]

    if role == UserRole.CLIENT:
        level_one = [a for a in approved if a.level == VerificationLevel.BASIC and _valid_for_role(a, role)]
        score = len(level_one) * constants.CLIENT_POINTS_PER_ARTIFACT
        return TrustResult(
            trust_score=min(score, constants.TRUST_SCORE_MAX),
            verification_level=VerificationLevel.BASIC,
        )

    eligible = [a for a in approved if _valid_for_role(a, role)]
    levels = [a.level for a in eligible]
    if not count_duplicate_levels:
        levels = sorted(set(levels))

    score = sum(constants.TRUST_LEVEL_WEIGHTS[level] for level in levels)
    highest = max(levels, default=VerificationLevel.BASIC)

    return TrustResult(
        trust_score=min(score, constants.TRUST_SCORE_MAX),
        verification_level=VerificationLevel(highest),
    )


def trust_tier(score: int) -> str:
    """Descriptive badge label for a trust score."""
    for threshold, label in TRUST_TIERS:
        if score >= threshold:
            return label
    return "Beginner"


def verification_progress(artifacts: Iterable[VerificationArtifact], role: UserRole) -> VerificationProgress:
    """Count required steps that have an approved or in-review artifact."""
    required = [
        doc_type for doc_type in ROLE_STEPS[role] if role in VERIFICATION_STEPS[doc_type].required_for
    ]
    covered = {a.document_type for a in artifacts if a.status in _IN_FLIGHT_STATUSES}
    completed = sum(1 for doc_type in required if doc_type in covered)
    total = len(required)
    percentage = round(completed / total * 100) if total else 100

    return VerificationProgress(
        completed=completed,
        total=total,
        percentage=percentage,
        is_complete=completed == total,
    )


async def refresh_profile_trust(*, repository: Repository, user_id: str) -> TrustResult:
    """Recompute a profile's trust from its current artifacts and persist it.

    Raises:
        RecordNotFoundError: If the profile doesn't exist
        DatabaseError: If the repository call fails
    """
    with span("trust_score_service.refresh_profile_trust"):
        profile = await repository.get_one("profiles", user_id)
        role = UserRole(profile["role"])

        records = await repository.get("verification_artifacts", {"user_id": user_id})
        artifacts = [VerificationArtifact.model_validate(record) for record in records]

        result = compute(artifacts, role)
        is_verified = any(a.status == ArtifactStatus.APPROVED for a in artifacts)

        await repository.update(
            "profiles",
            user_id,
            {
                "trust_score": result.trust_score,
                "verification_level": result.verification_level.label,
                "is_verified": is_verified,
            },
        )

        logger.info(
            "Refreshed trust for user=%s: score=%d level=%s",
            user_id,
            result.trust_score,
            result.verification_level.label,
        )
        return result
