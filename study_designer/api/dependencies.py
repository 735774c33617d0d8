"""Per-request FHIR clients and the services built on them."""

from collections.abc import Iterator

from fastapi import Depends

from study_designer.config import settings
from study_designer.fhir.client import FhirClients, build_clients
from study_designer.services.evidence_variable import EvidenceVariableService
from study_designer.services.library import LibraryService
from study_designer.services.study import StudyService
from study_designer.services.valueset import ValueSetService


def get_clients() -> Iterator[FhirClients]:
    """FastAPI dependency that yields one client per configured FHIR server."""
    clients = build_clients(settings)
    try:
        yield clients
    finally:
        clients.close()


def get_study_service(clients: FhirClients = Depends(get_clients)) -> StudyService:
    return StudyService(clients.fhir, clients.cohorting, clients.datamart, settings)


def get_evidence_variable_service(
    clients: FhirClients = Depends(get_clients),
    study_service: StudyService = Depends(get_study_service),
) -> EvidenceVariableService:
    return EvidenceVariableService(clients.knowledge, study_service)


def get_library_service(clients: FhirClients = Depends(get_clients)) -> LibraryService:
    return LibraryService(clients.knowledge)


def get_valueset_service(clients: FhirClients = Depends(get_clients)) -> ValueSetService:
    return ValueSetService(clients.terminology, settings)
