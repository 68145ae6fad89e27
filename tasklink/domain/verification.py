"""Verification artifact models and the per-role verification step table."""

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator

from tasklink.domain.profile import UserRole


class DocumentType(StrEnum):
    """Kind of identity evidence a user can submit."""

    PHONE = "phone"
    EMAIL = "email"
    IDENTITY = "identity"
    ADDRESS = "address"
    BACKGROUND = "background"
    REFERENCES = "references"
    COMMUNITY = "community"


class ArtifactStatus(StrEnum):
    """Verification pipeline status of an artifact."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class VerificationStep(BaseModel):
    """One row of the verification step table."""

    document_type: DocumentType
    title: str
    level: int = Field(..., ge=1, le=4)
    required_for: frozenset[UserRole] = frozenset()


VERIFICATION_STEPS: dict[DocumentType, VerificationStep] = {
    step.document_type: step
    for step in (
        VerificationStep(
            document_type=DocumentType.PHONE,
            title="Phone number",
            level=1,
            required_for=frozenset({UserRole.CLIENT, UserRole.PROVIDER}),
        ),
        VerificationStep(
            document_type=DocumentType.EMAIL,
            title="Email address",
            level=1,
            required_for=frozenset({UserRole.CLIENT, UserRole.PROVIDER}),
        ),
        VerificationStep(
            document_type=DocumentType.IDENTITY,
            title="National identity card",
            level=2,
            required_for=frozenset({UserRole.PROVIDER}),
        ),
        VerificationStep(
            document_type=DocumentType.ADDRESS,
            title="Proof of address",
            level=2,
            required_for=frozenset({UserRole.PROVIDER}),
        ),
        VerificationStep(document_type=DocumentType.BACKGROUND, title="Criminal record check", level=3),
        VerificationStep(document_type=DocumentType.REFERENCES, title="Professional references", level=3),
        VerificationStep(document_type=DocumentType.COMMUNITY, title="Community validation", level=4),
    )
}

# Steps each role walks through, in display order
ROLE_STEPS: dict[UserRole, tuple[DocumentType, ...]] = {
    UserRole.CLIENT: (DocumentType.PHONE, DocumentType.EMAIL),
    UserRole.PROVIDER: tuple(VERIFICATION_STEPS),
}


def steps_for_role(role: UserRole) -> list[VerificationStep]:
    """Return the verification steps shown to a role."""
    return [VERIFICATION_STEPS[doc_type] for doc_type in ROLE_STEPS[role]]


class VerificationArtifact(BaseModel):
    """A submitted piece of identity evidence."""

    id: str = Field(..., description="Unique artifact ID")
    user_id: str = Field(..., description="Owner profile ID")
    document_type: DocumentType = Field(..., description="Kind of evidence")
    status: ArtifactStatus = Field(default=ArtifactStatus.PENDING, description="Pipeline status")
    level: int = Field(default=0, ge=0, le=4, description="Verification level; 0 means derive from type")
    document_url: str | None = Field(default=None, description="Storage location of the captured document")
    confidence_score: int | None = Field(default=None, ge=0, le=100, description="Verifier confidence")
    expires_at: str | None = Field(default=None, description="Expiry timestamp (ISO format)")

    @model_validator(mode="after")
    def default_level_from_type(self) -> "VerificationArtifact":
        """Fill the level from the step table when the caller didn't provide one."""
        if self.level == 0:
            self.level = VERIFICATION_STEPS[self.document_type].level
        return self

    def required_for_role(self, role: UserRole) -> bool:
        return role in VERIFICATION_STEPS[self.document_type].required_for
