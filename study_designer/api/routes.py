"""
FastAPI routes: the API surface of the study designer.

Studies and evidence variables live on the FHIR servers; every write made
through these routes is also recorded in the local audit log.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from study_designer.api.dependencies import (
    get_evidence_variable_service,
    get_library_service,
    get_study_service,
    get_valueset_service,
)
from study_designer.config import settings
from study_designer.forms.dispatcher import RenderedCriteria, apply_edit, render_criteria_controls
from study_designer.models.database import get_db
from study_designer.schemas.api import (
    CanonicalUpdateRequest,
    CodeLookupResponse,
    CohortAndDatamartResult,
    CombinationRequest,
    CriteriaEditRequest,
    CriteriaEditResponse,
    EvidenceVariableDisplay,
    EvidenceVariableFormData,
    EvidenceVariableKind,
    ExistingCanonicalRequest,
    ExpressionRequest,
    HealthResponse,
    LibraryDisplay,
    LinkEvidenceVariableRequest,
    NewCanonicalRequest,
    NewCriteriaRequest,
    PublicConfig,
    RenderCriteriaRequest,
    StudySummary,
    StudyUpdate,
)
from study_designer.schemas.criteria import CriteriaType, InclusionCriteriaValue, new_criteria_value
from study_designer.services.audit import log_action, recent_actions
from study_designer.services.evidence_variable import EvidenceVariableService
from study_designer.services.export import CSV_MEDIA_TYPE
from study_designer.services.library import LibraryService
from study_designer.services.study import StudyService, extract_study_design_codes
from study_designer.services.valueset import ValueSetService
from study_designer.services.validation import FormValidator, validate_criteria_value

logger = logging.getLogger(__name__)

router = APIRouter()

ACTOR = "api_user"


def _audit(
    db: Session,
    action: str,
    resource_type: str,
    resource_id: str,
    detail: dict[str, Any] | None = None,
) -> None:
    log_action(
        db,
        actor=ACTOR,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        detail=detail,
    )
    db.commit()


# ---------------------------------------------------------------------------
# Health check / public configuration
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


@router.get("/config", response_model=PublicConfig)
def public_config():
    return PublicConfig(
        fhirUrl=settings.FHIR_URL,
        knowledgeUrl=settings.KNOWLEDGE_URL,
        terminologyUrl=settings.TERMINOLOGY_URL,
        displayClientLogo=settings.DISPLAY_CLIENT_LOGO,
        clientLogo=settings.CLIENT_LOGO,
        clientLogoLink=settings.CLIENT_LOGO_LINK,
        authEnabled=bool(settings.KEYCLOAK_URL),
    )


@router.get("/audit")
def list_audit_entries(
    resource_type: str | None = None,
    resource_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return [
        {
            "actor": entry.actor,
            "action": entry.action,
            "resourceType": entry.resource_type,
            "resourceId": entry.resource_id,
            "detail": entry.detail,
            "timestamp": entry.timestamp,
        }
        for entry in recent_actions(db, resource_type, resource_id, limit)
    ]


# ---------------------------------------------------------------------------
# Studies
# ---------------------------------------------------------------------------

@router.get("/studies", response_model=list[StudySummary])
def search_studies(
    study_id: str | None = Query(None, alias="id"),
    title: str | None = None,
    studies: StudyService = Depends(get_study_service),
):
    return studies.search_study_definitions(study_id=study_id, title=title)


@router.get("/studies/{study_id}")
def get_study(study_id: str, studies: StudyService = Depends(get_study_service)):
    return studies.load_study(study_id)


@router.patch("/studies/{study_id}")
def update_study(
    study_id: str,
    update: StudyUpdate,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    updated = studies.update_study(study_id, update)
    _audit(db, "update", "ResearchStudy", study_id, {"fields": sorted(update.model_fields_set)})
    return updated


@router.get("/studies/{study_id}/design-codes", response_model=list[str])
def get_study_design_codes(study_id: str, studies: StudyService = Depends(get_study_service)):
    return extract_study_design_codes(studies.load_study(study_id))


@router.get("/studies/{study_id}/instances")
def get_study_instances(study_id: str, studies: StudyService = Depends(get_study_service)):
    return studies.load_study_instances(studies.load_study_definition(study_id))


@router.post("/studies/{study_id}/instances", status_code=201)
def instantiate_study(
    study_id: str,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    instance = studies.instantiate_study(studies.load_study_definition(study_id))
    if instance is None:
        raise HTTPException(
            status_code=404,
            detail=f"No study instance could be created from definition {study_id}",
        )
    _audit(db, "create", "ResearchStudy", instance.get("id", ""), {"definition": study_id})
    return instance


@router.get(
    "/studies/{study_id}/evidence-variables", response_model=list[EvidenceVariableDisplay]
)
def get_study_evidence_variables(
    study_id: str,
    kind: EvidenceVariableKind = "inclusion",
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
):
    return [m.to_display() for m in evidence_variables.load_evidence_variables(study_id, kind)]


@router.post("/studies/{study_id}/evidence-variables")
def link_evidence_variable(
    study_id: str,
    request: LinkEvidenceVariableRequest,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    updated = studies.add_evidence_variable_to_study(
        study_id, request.evidenceVariableId, request.kind
    )
    _audit(
        db,
        "update",
        "ResearchStudy",
        study_id,
        {"evidenceVariable": request.evidenceVariableId, "kind": request.kind},
    )
    return updated


@router.get("/studies/{study_id}/datamart")
def get_study_datamart(
    study_id: str,
    studies: StudyService = Depends(get_study_service),
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
):
    """The study's datamart List with one row per patient, or nulls before generation."""
    datamart = studies.load_datamart_for_study(studies.load_study(study_id))
    if datamart is None:
        return {"list": None, "rows": []}
    expressions = [
        m.expression
        for m in evidence_variables.load_evidence_variables(study_id, "study")
        if m.expression
    ]
    return {"list": datamart, "rows": studies.load_datamart_rows(datamart["id"], expressions)}


@router.post("/studies/{study_id}/cohorting")
def run_cohorting(
    study_id: str,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    result = studies.execute_cohorting(study_id)
    _audit(db, "operation", "ResearchStudy", study_id, {"operation": "$cohorting"})
    return result


@router.post("/studies/{study_id}/datamart")
def run_generate_datamart(
    study_id: str,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    result = studies.execute_generate_datamart(study_id)
    _audit(db, "operation", "ResearchStudy", study_id, {"operation": "$generate-datamart"})
    return result


@router.post("/studies/{study_id}/cohort-and-datamart", response_model=CohortAndDatamartResult)
def run_cohort_and_datamart(
    study_id: str,
    studies: StudyService = Depends(get_study_service),
    db: Session = Depends(get_db),
):
    result = studies.generate_cohort_and_datamart(study_id)
    _audit(
        db,
        "operation",
        "ResearchStudy",
        study_id,
        {"operation": "$cohorting+$generate-datamart"},
    )
    return CohortAndDatamartResult(**result)


@router.get("/studies/{study_id}/datamart/export")
def export_datamart(study_id: str, studies: StudyService = Depends(get_study_service)):
    filename, content = studies.export_datamart_csv(study_id)
    return Response(
        content=content,
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Evidence variables
# ---------------------------------------------------------------------------

@router.get("/evidence-variables", response_model=list[EvidenceVariableDisplay])
def list_evidence_variables(
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
):
    return [m.to_display() for m in evidence_variables.load_all_evidence_variables()]


@router.post("/evidence-variables", status_code=201)
def create_evidence_variable(
    data: EvidenceVariableFormData,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    created = evidence_variables.create_simple_evidence_variable(data)
    _audit(db, "create", "EvidenceVariable", created.get("id") or "", {"title": data.title})
    return created


@router.get("/evidence-variables/{evidence_variable_id}", response_model=EvidenceVariableDisplay)
def get_evidence_variable(
    evidence_variable_id: str,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
):
    return evidence_variables.get_evidence_variable_by_id(evidence_variable_id).to_display()


@router.put("/evidence-variables/{evidence_variable_id}")
def update_evidence_variable(
    evidence_variable_id: str,
    data: EvidenceVariableFormData,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.update_evidence_variable(evidence_variable_id, data)
    _audit(db, "update", "EvidenceVariable", evidence_variable_id)
    return updated


@router.post("/evidence-variables/{evidence_variable_id}/combinations")
def add_combination(
    evidence_variable_id: str,
    request: CombinationRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.add_definition_by_combination(
        evidence_variable_id, request.combination, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "add-combination", "targetPath": request.targetPath})
    return updated


@router.put("/evidence-variables/{evidence_variable_id}/combinations")
def update_combination(
    evidence_variable_id: str,
    request: CombinationRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.update_definition_by_combination(
        evidence_variable_id, request.combination, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "update-combination", "targetPath": request.targetPath})
    return updated


@router.post("/evidence-variables/{evidence_variable_id}/expressions")
def add_expression(
    evidence_variable_id: str,
    request: ExpressionRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.add_definition_expression(
        evidence_variable_id, request.expression, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "add-expression", "targetPath": request.targetPath})
    return updated


@router.put("/evidence-variables/{evidence_variable_id}/expressions")
def update_expression(
    evidence_variable_id: str,
    request: ExpressionRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.update_definition_expression(
        evidence_variable_id, request.expression, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "update-expression", "targetPath": request.targetPath})
    return updated


@router.post("/evidence-variables/{evidence_variable_id}/canonicals")
def add_existing_canonical(
    evidence_variable_id: str,
    request: ExistingCanonicalRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.add_existing_canonical(
        evidence_variable_id, request.canonical, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "add-canonical", "canonical": request.canonical.canonicalUrl})
    return updated


@router.post("/evidence-variables/{evidence_variable_id}/canonicals/new")
def add_new_canonical(
    evidence_variable_id: str,
    request: NewCanonicalRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.add_new_canonical(
        evidence_variable_id, request.evidenceVariable, request.exclude, request.targetPath
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "add-new-canonical", "title": request.evidenceVariable.title})
    return updated


@router.put("/evidence-variables/{evidence_variable_id}/canonicals")
def update_canonical(
    evidence_variable_id: str,
    request: CanonicalUpdateRequest,
    evidence_variables: EvidenceVariableService = Depends(get_evidence_variable_service),
    db: Session = Depends(get_db),
):
    updated = evidence_variables.update_canonical_characteristic(
        evidence_variable_id,
        request.targetPath,
        request.canonical,
        request.originalCanonicalUrl,
    )
    _audit(db, "update", "EvidenceVariable", evidence_variable_id,
           {"change": "update-canonical", "targetPath": request.targetPath})
    return updated


# ---------------------------------------------------------------------------
# Libraries and ValueSets
# ---------------------------------------------------------------------------

@router.get("/libraries", response_model=list[LibraryDisplay])
def list_libraries(libraries: LibraryService = Depends(get_library_service)):
    return [library.to_display() for library in libraries.load_libraries()]


@router.get("/libraries/{library_id}", response_model=LibraryDisplay)
def get_library(library_id: str, libraries: LibraryService = Depends(get_library_service)):
    return libraries.load_library(library_id).to_display()


@router.get("/valuesets")
def list_value_sets(valuesets: ValueSetService = Depends(get_valueset_service)):
    return valuesets.load_value_sets()


@router.get("/valuesets/codes", response_model=CodeLookupResponse)
def lookup_codes(url: str, valuesets: ValueSetService = Depends(get_valueset_service)):
    codes, warning = valuesets.lookup_codes(url)
    return CodeLookupResponse(codes=codes, warning=warning)


@router.get("/valuesets/comparators/{criteria_type}", response_model=CodeLookupResponse)
def lookup_comparators(
    criteria_type: CriteriaType, valuesets: ValueSetService = Depends(get_valueset_service)
):
    codes, warning = valuesets.load_comparators(criteria_type)
    return CodeLookupResponse(codes=codes, warning=warning)


# ---------------------------------------------------------------------------
# Criteria value forms
# ---------------------------------------------------------------------------

@router.post("/criteria/new", response_model=InclusionCriteriaValue)
def create_criteria_value(request: NewCriteriaRequest):
    return new_criteria_value(request.parameter, request.valueSetUrl)


@router.post("/criteria/render", response_model=RenderedCriteria)
def render_criteria(
    request: RenderCriteriaRequest,
    valuesets: ValueSetService = Depends(get_valueset_service),
):
    """Control set for a criteria value, with its comparators and codes loaded."""
    options = valuesets.control_options(request.value)
    return render_criteria_controls(request.value, request.errors, options)


@router.post("/criteria/edit", response_model=CriteriaEditResponse)
def edit_criteria(request: CriteriaEditRequest):
    validator = FormValidator()
    try:
        value = apply_edit(
            request.value,
            request.field,
            request.raw,
            validate_field=validator.validate_field,
            code_system=request.codeSystem,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    shape_errors = validate_criteria_value(value)
    return CriteriaEditResponse(
        value=value,
        errors=validator.errors,
        shapeErrors=shape_errors,
        valid=validator.is_valid and not shape_errors,
    )
