"""Tests for the verification pipeline."""

from datetime import UTC, datetime

import pytest

from tasklink.core.errors import ValidationError
from tasklink.core.repository import RecordNotFoundError
from tasklink.domain.verification import ArtifactStatus, DocumentType, VerificationArtifact
from tasklink.models.service_models import VerificationOutcome
from tasklink.services.verification_service import (
    ConfidenceThresholdVerifier,
    expire_stale_artifacts,
    expiry_for,
    process_artifact,
    submit_artifact,
)


NOW = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)


class StubVerifier:
    """Verifier returning a fixed outcome."""

    def __init__(self, approved: bool, confidence: int) -> None:
        self.outcome = VerificationOutcome(approved=approved, confidence=confidence)
        self.seen: list[VerificationArtifact] = []

    async def verify(self, artifact: VerificationArtifact) -> VerificationOutcome:
        self.seen.append(artifact)
        return self.outcome


@pytest.fixture
def provider_profile(in_memory_repo):
    return in_memory_repo.seed("profiles", {"id": "provider-1", "role": "provider", "trust_score": 0})


@pytest.mark.unit
class TestConfidenceThresholdVerifier:
    """Tests for ConfidenceThresholdVerifier."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("confidence", "approved"), [(85, True), (97, True), (84, False), (10, False)])
    async def test_threshold(self, confidence, approved):
        verifier = ConfidenceThresholdVerifier(lambda artifact: confidence)
        artifact = VerificationArtifact(id="a1", user_id="u1", document_type=DocumentType.IDENTITY)

        outcome = await verifier.verify(artifact)

        assert outcome.approved is approved
        assert outcome.confidence == confidence
        assert (outcome.reason is None) is approved

    @pytest.mark.asyncio
    async def test_confidence_is_clamped(self):
        verifier = ConfidenceThresholdVerifier(lambda artifact: 140)
        artifact = VerificationArtifact(id="a1", user_id="u1", document_type=DocumentType.PHONE)

        outcome = await verifier.verify(artifact)

        assert outcome.confidence == 100


@pytest.mark.unit
class TestSubmitArtifact:
    """Tests for submit_artifact() and expiry rules."""

    @pytest.mark.parametrize(
        ("document_type", "expected"),
        [
            (DocumentType.IDENTITY, "2031-03-01"),
            (DocumentType.ADDRESS, "2026-05-31"),
            (DocumentType.BACKGROUND, "2027-03-02"),
        ],
    )
    def test_expiry_for(self, document_type, expected):
        assert expiry_for(document_type, NOW).date().isoformat() == expected

    @pytest.mark.asyncio
    async def test_submit_stores_level_and_expiry(self, in_memory_repo):
        artifact = await submit_artifact(
            repository=in_memory_repo,
            user_id="provider-1",
            document_type=DocumentType.ADDRESS,
            document_url="s3://docs/address.jpg",
            now=NOW,
        )

        assert artifact.status == ArtifactStatus.SUBMITTED
        assert artifact.level == 2
        assert artifact.expires_at == "2026-05-31T09:30:00Z"
        assert in_memory_repo.peek("verification_artifacts", artifact.id)["document_url"] == "s3://docs/address.jpg"


@pytest.mark.unit
class TestProcessArtifact:
    """Tests for process_artifact()."""

    @pytest.mark.asyncio
    async def test_approval_refreshes_trust(self, in_memory_repo, provider_profile):
        artifact = await submit_artifact(
            repository=in_memory_repo, user_id="provider-1", document_type=DocumentType.IDENTITY, now=NOW
        )
        verifier = StubVerifier(approved=True, confidence=92)

        processed = await process_artifact(repository=in_memory_repo, verifier=verifier, artifact_id=artifact.id)

        assert processed.status == ArtifactStatus.APPROVED
        assert processed.confidence_score == 92
        assert verifier.seen[0].id == artifact.id
        profile = in_memory_repo.peek("profiles", "provider-1")
        assert profile["trust_score"] == 25
        assert profile["verification_level"] == "government"
        assert profile["is_verified"] is True

    @pytest.mark.asyncio
    async def test_rejection_keeps_trust(self, in_memory_repo, provider_profile):
        artifact = await submit_artifact(
            repository=in_memory_repo, user_id="provider-1", document_type=DocumentType.IDENTITY, now=NOW
        )

        processed = await process_artifact(
            repository=in_memory_repo, verifier=StubVerifier(approved=False, confidence=40), artifact_id=artifact.id
        )

        assert processed.status == ArtifactStatus.REJECTED
        profile = in_memory_repo.peek("profiles", "provider-1")
        assert profile["trust_score"] == 0
        assert profile["is_verified"] is False

    @pytest.mark.asyncio
    async def test_reviewed_artifact_rejected(self, in_memory_repo, provider_profile):
        artifact = in_memory_repo.seed(
            "verification_artifacts",
            {"user_id": "provider-1", "document_type": "phone", "status": "approved", "level": 1},
        )

        with pytest.raises(ValidationError, match="already reviewed"):
            await process_artifact(
                repository=in_memory_repo,
                verifier=StubVerifier(approved=True, confidence=99),
                artifact_id=artifact["id"],
            )

    @pytest.mark.asyncio
    async def test_missing_artifact(self, in_memory_repo):
        with pytest.raises(RecordNotFoundError):
            await process_artifact(
                repository=in_memory_repo, verifier=StubVerifier(approved=True, confidence=99), artifact_id="missing"
            )


@pytest.mark.unit
class TestExpireStaleArtifacts:
    """Tests for expire_stale_artifacts()."""

    @pytest.mark.asyncio
    async def test_expires_past_due_and_refreshes_profile(self, in_memory_repo, provider_profile):
        stale = in_memory_repo.seed(
            "verification_artifacts",
            {
                "user_id": "provider-1",
                "document_type": "address",
                "status": "approved",
                "level": 2,
                "expires_at": "2026-03-01T00:00:00Z",
            },
        )
        fresh = in_memory_repo.seed(
            "verification_artifacts",
            {
                "user_id": "provider-1",
                "document_type": "phone",
                "status": "approved",
                "level": 1,
                "expires_at": "2027-03-01T00:00:00Z",
            },
        )

        expired = await expire_stale_artifacts(repository=in_memory_repo, now=NOW)

        assert expired == [stale["id"]]
        assert in_memory_repo.peek("verification_artifacts", stale["id"])["status"] == "expired"
        assert in_memory_repo.peek("verification_artifacts", fresh["id"])["status"] == "approved"
        profile = in_memory_repo.peek("profiles", "provider-1")
        assert profile["trust_score"] == 20
        assert profile["verification_level"] == "basic"

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, in_memory_repo, provider_profile):
        assert await expire_stale_artifacts(repository=in_memory_repo, user_id="provider-1", now=NOW) == []
        assert ("update", "profiles") not in in_memory_repo.calls
