"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from study_designer.schemas.criteria import (
    CodeOption,
    InclusionCriteriaValue,
    LibraryParameter,
    LibraryReference,
)

EvidenceVariableKind = Literal["inclusion", "study"]


# ---------------------------------------------------------------------------
# Evidence variable forms
# ---------------------------------------------------------------------------

class EvidenceVariableFormData(BaseModel):
    """Header of an EvidenceVariable as edited in the form."""
    id: str | None = None
    title: str
    description: str | None = None
    status: Literal["draft", "active", "retired", "unknown"] = "draft"
    url: str | None = None
    identifier: str | None = None
    selectedLibrary: LibraryReference | None = None


class CombinationFormData(BaseModel):
    exclude: bool = False
    code: Literal["all-of", "any-of"] = "all-of"
    combinationId: str | None = None
    combinationDescription: str | None = None
    isXor: bool = False


class ExpressionFormData(BaseModel):
    exclude: bool = False
    expressionName: str | None = None
    expressionDescription: str | None = None
    expressionId: str | None = None
    selectedExpression: str
    selectedLibrary: LibraryReference | None = None
    selectedParameter: str | None = None
    criteriaValue: InclusionCriteriaValue | None = None


class ExistingCanonicalFormData(BaseModel):
    exclude: bool = False
    canonicalUrl: str = Field(..., min_length=1)
    canonicalId: str | None = None
    canonicalDescription: str | None = None


class CanonicalFormData(BaseModel):
    """Edit of a definitionCanonical node, plus the header of the EV it points to."""
    exclude: bool = False
    evidenceVariable: EvidenceVariableFormData


# ---------------------------------------------------------------------------
# Characteristic tree requests
# ---------------------------------------------------------------------------

class CombinationRequest(BaseModel):
    combination: CombinationFormData
    targetPath: list[int] = Field(default_factory=list)


class ExpressionRequest(BaseModel):
    expression: ExpressionFormData
    targetPath: list[int] = Field(default_factory=list)


class ExistingCanonicalRequest(BaseModel):
    canonical: ExistingCanonicalFormData
    targetPath: list[int] = Field(default_factory=list)


class NewCanonicalRequest(BaseModel):
    evidenceVariable: EvidenceVariableFormData
    exclude: bool = False
    targetPath: list[int] = Field(default_factory=list)


class CanonicalUpdateRequest(BaseModel):
    canonical: CanonicalFormData
    originalCanonicalUrl: str
    targetPath: list[int] = Field(..., min_length=1)


class LinkEvidenceVariableRequest(BaseModel):
    evidenceVariableId: str
    kind: EvidenceVariableKind


# ---------------------------------------------------------------------------
# Criteria forms
# ---------------------------------------------------------------------------

class RenderCriteriaRequest(BaseModel):
    value: InclusionCriteriaValue
    errors: dict[str, str] = Field(default_factory=dict)


class CriteriaEditRequest(BaseModel):
    value: InclusionCriteriaValue
    field: str
    raw: Any = None
    codeSystem: str | None = None


class CriteriaEditResponse(BaseModel):
    value: InclusionCriteriaValue
    errors: dict[str, str] = Field(default_factory=dict)
    shapeErrors: list[str] = Field(default_factory=list)
    valid: bool = True


class NewCriteriaRequest(BaseModel):
    parameter: LibraryParameter
    valueSetUrl: str | None = None


# ---------------------------------------------------------------------------
# Studies
# ---------------------------------------------------------------------------

class StudyUpdate(BaseModel):
    """Partial update: only the fields that are set are applied."""
    name: str | None = None
    title: str | None = None
    status: str | None = None
    description: str | None = None
    version: str | None = None
    nctId: str | None = None
    localContact: str | None = None
    studySponsorContact: str | None = None
    studyDesign: list[Any] | None = None


class StudySummary(BaseModel):
    id: str
    name: str | None = None


class EvidenceVariableDisplay(BaseModel):
    id: str | None = None
    title: str = ""
    description: str = ""
    expression: str | None = None
    libraryUrl: str | None = None
    characteristics: list[dict[str, Any]] = Field(default_factory=list)


class LibraryDisplay(BaseModel):
    id: str | None = None
    title: str = ""
    name: str = ""
    url: str = ""
    parameters: list[LibraryParameter] = Field(default_factory=list)
    expressions: list[LibraryParameter] = Field(default_factory=list)
    criteriaExpressions: list[LibraryParameter] = Field(default_factory=list)


class CodeLookupResponse(BaseModel):
    codes: list[CodeOption] = Field(default_factory=list)
    warning: str | None = None


class CohortAndDatamartResult(BaseModel):
    cohortingResult: dict[str, Any]
    datamartResult: dict[str, Any]


# ---------------------------------------------------------------------------
# Health / config
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"


class PublicConfig(BaseModel):
    fhirUrl: str
    knowledgeUrl: str
    terminologyUrl: str
    displayClientLogo: bool
    clientLogo: str
    clientLogoLink: str
    authEnabled: bool = False
