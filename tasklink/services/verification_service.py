"""Verification pipeline: artifact submission, document review, and expiry."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from tasklink.core.config import constants
from tasklink.core.errors import ValidationError
from tasklink.core.logging import span
from tasklink.core.repository import Repository
from tasklink.domain.verification import VERIFICATION_STEPS, ArtifactStatus, DocumentType, VerificationArtifact
from tasklink.models.service_models import VerificationOutcome
from tasklink.services import trust_score_service


logger = logging.getLogger(__name__)


class DocumentVerifier(Protocol):
    """External document verification provider."""

    async def verify(self, artifact: VerificationArtifact) -> VerificationOutcome:
        """Review an artifact and return an approval decision with a confidence (0..100)."""
        ...


class ConfidenceThresholdVerifier:
    """Approve artifacts whose confidence reaches a threshold.

    The confidence comes from an injected scoring callable, typically a client
    for an identity verification service.
    """

    def __init__(
        self,
        scorer: Callable[[VerificationArtifact], int],
        threshold: int = constants.VERIFICATION_APPROVAL_CONFIDENCE,
    ) -> None:
        self._scorer = scorer
        self._threshold = threshold

    async def verify(self, artifact: VerificationArtifact) -> VerificationOutcome:
        confidence = max(0, min(100, int(self._scorer(artifact))))
        approved = confidence >= self._threshold
        reason = None if approved else f"Confidence {confidence} below threshold {self._threshold}"
        return VerificationOutcome(approved=approved, confidence=confidence, reason=reason)


def expiry_for(document_type: DocumentType, submitted_at: datetime) -> datetime:
    """Expiry date of a document submitted at `submitted_at`."""
    if document_type == DocumentType.IDENTITY:
        days = constants.EXPIRY_DAYS_IDENTITY
    elif document_type == DocumentType.ADDRESS:
        days = constants.EXPIRY_DAYS_ADDRESS
    else:
        days = constants.EXPIRY_DAYS_DEFAULT
    return submitted_at + timedelta(days=days)


def _isoformat(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def _parse(timestamp: str) -> datetime:
    return datetime.fromisoformat(timestamp.replace("Z", "+00:00"))


async def submit_artifact(
    *,
    repository: Repository,
    user_id: str,
    document_type: DocumentType,
    document_url: str | None = None,
    now: datetime | None = None,
) -> VerificationArtifact:
    """Store a submitted artifact awaiting review."""
    with span("verification_service.submit_artifact"):
        now = now or datetime.now(UTC)
        record = await repository.insert(
            "verification_artifacts",
            {
                "user_id": user_id,
                "document_type": document_type,
                "status": ArtifactStatus.SUBMITTED,
                "level": VERIFICATION_STEPS[document_type].level,
                "document_url": document_url,
                "confidence_score": None,
                "expires_at": _isoformat(expiry_for(document_type, now)),
            },
        )

        logger.info("Artifact %s (%s) submitted by user %s", record["id"], document_type, user_id)
        return VerificationArtifact.model_validate(record)


async def process_artifact(
    *,
    repository: Repository,
    verifier: DocumentVerifier,
    artifact_id: str,
) -> VerificationArtifact:
    """Run the verifier on an artifact, store its decision, and refresh the owner's trust.

    Raises:
        RecordNotFoundError: If the artifact doesn't exist
        ValidationError: If the artifact was already reviewed
    """
    with span("verification_service.process_artifact"):
        artifact = VerificationArtifact.model_validate(await repository.get_one("verification_artifacts", artifact_id))
        if artifact.status not in {ArtifactStatus.PENDING, ArtifactStatus.SUBMITTED}:
            msg = f"Artifact {artifact_id} was already reviewed ({artifact.status})"
            raise ValidationError(msg)

        outcome = await verifier.verify(artifact)
        status = ArtifactStatus.APPROVED if outcome.approved else ArtifactStatus.REJECTED
        record = await repository.update(
            "verification_artifacts",
            artifact_id,
            {"status": status, "confidence_score": outcome.confidence},
        )

        logger.info(
            "Artifact %s %s (confidence=%d)",
            artifact_id,
            status,
            outcome.confidence,
        )
        await trust_score_service.refresh_profile_trust(repository=repository, user_id=artifact.user_id)
        return VerificationArtifact.model_validate(record)


async def expire_stale_artifacts(
    *,
    repository: Repository,
    user_id: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Mark approved artifacts past their expiry as expired and refresh affected profiles.

    Returns:
        IDs of the artifacts that were expired
    """
    with span("verification_service.expire_stale_artifacts"):
        now = now or datetime.now(UTC)
        filters: dict[str, object] = {"status": ArtifactStatus.APPROVED}
        if user_id is not None:
            filters["user_id"] = user_id

        expired: list[str] = []
        affected_users: set[str] = set()
        for record in await repository.get("verification_artifacts", filters):
            expires_at = record.get("expires_at")
            if not expires_at or _parse(expires_at) > now:
                continue
            await repository.update("verification_artifacts", record["id"], {"status": ArtifactStatus.EXPIRED})
            expired.append(record["id"])
            affected_users.add(record["user_id"])

        for affected in sorted(affected_users):
            await trust_score_service.refresh_profile_trust(repository=repository, user_id=affected)

        if expired:
            logger.info("Expired %d artifacts across %d users", len(expired), len(affected_users))
        return expired
