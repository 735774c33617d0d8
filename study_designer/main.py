"""
FastAPI application entrypoint.

Run locally:  uvicorn study_designer.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from study_designer.api.routes import router
from study_designer.config import settings
from study_designer.errors import (
    CharacteristicTreeError,
    FhirClientError,
    ResourceNotFoundError,
    ServiceError,
)
from study_designer.models.database import Base, engine
from study_designer.models import audit  # noqa: F401  registers AuditLog on Base

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Study Designer API",
    description=(
        "Design clinical research studies on FHIR servers: ResearchStudy "
        "editing, EvidenceVariable characteristic trees, typed criteria "
        "forms, and cohorting / datamart generation."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ResourceNotFoundError)
def handle_not_found(request: Request, exc: ResourceNotFoundError):
    return _error(404, exc)


@app.exception_handler(CharacteristicTreeError)
def handle_tree_error(request: Request, exc: CharacteristicTreeError):
    return _error(409, exc)


@app.exception_handler(ServiceError)
def handle_service_error(request: Request, exc: ServiceError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error(502, exc)


@app.exception_handler(FhirClientError)
def handle_fhir_error(request: Request, exc: FhirClientError):
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error(502, exc)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
