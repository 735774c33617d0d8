"""Tests for the HTTP surface – FHIR servers faked, audit log on in-memory SQLite."""

import base64

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import FakeFhirClient, bundle
from study_designer.api.dependencies import get_clients
from study_designer.errors import FhirClientError
from study_designer.fhir.client import FhirClients
from study_designer.main import app
from study_designer.models.audit import AuditLog
from study_designer.models.database import Base, get_db


@pytest.fixture
def servers():
    return {name: FakeFhirClient() for name in ("fhir", "knowledge", "terminology", "engines")}


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def client(servers, session_factory):
    def override_clients():
        yield FhirClients(
            fhir=servers["fhir"],
            knowledge=servers["knowledge"],
            terminology=servers["terminology"],
            cohorting=servers["engines"],
            datamart=servers["engines"],
        )

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_clients] = override_clients
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _audit_entries(session_factory):
    db = session_factory()
    try:
        return [(e.action, e.resource_type, e.resource_id) for e in db.query(AuditLog).all()]
    finally:
        db.close()


def _parent(servers, characteristic=None):
    servers["knowledge"].add(
        {
            "resourceType": "EvidenceVariable",
            "id": "ev1",
            "status": "draft",
            "title": "Inclusion",
            "characteristic": characteristic or [],
        }
    )


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_public_config(client):
    body = client.get("/api/v1/config").json()
    assert set(body) >= {"fhirUrl", "knowledgeUrl", "terminologyUrl", "displayClientLogo"}


def test_add_expression_and_audit(client, servers, session_factory):
    _parent(servers)
    response = client.post(
        "/api/v1/evidence-variables/ev1/expressions",
        json={"expression": {"selectedExpression": "IsAdult"}},
    )

    assert response.status_code == 200
    assert response.json()["characteristic"][0]["definitionExpression"]["expression"] == "IsAdult"
    assert _audit_entries(session_factory) == [("update", "EvidenceVariable", "ev1")]


def test_tree_violation_is_409(client, servers, session_factory):
    _parent(servers, [{"definitionExpression": {"expression": "A"}}])
    response = client.post(
        "/api/v1/evidence-variables/ev1/combinations",
        json={"combination": {"code": "all-of"}},
    )

    assert response.status_code == 409
    assert "Cannot add a combination" in response.json()["detail"]
    assert _audit_entries(session_factory) == []


def test_missing_evidence_variable_is_404(client):
    response = client.get("/api/v1/evidence-variables/nope")
    assert response.status_code == 404


def test_unresolvable_canonical_is_404(client, servers):
    _parent(servers)
    response = client.post(
        "/api/v1/evidence-variables/ev1/canonicals",
        json={"canonical": {"canonicalUrl": "https://example.org/ev/missing"}},
    )
    assert response.status_code == 404
    assert "Cannot resolve canonical URL" in response.json()["detail"]


def test_upstream_failure_is_502(client, servers):
    servers["knowledge"].search_results["Library"] = FhirClientError("down", status_code=500)
    response = client.get("/api/v1/libraries")
    assert response.status_code == 502
    assert response.json()["detail"].startswith("Error loading libraries")


def test_get_evidence_variable_display(client, servers):
    _parent(
        servers,
        [{"definitionByCombination": {"code": "any-of", "characteristic": []}}],
    )
    body = client.get("/api/v1/evidence-variables/ev1").json()
    assert body["title"] == "Inclusion"
    assert body["characteristics"][0]["operator"] == "OR"


def test_search_studies(client, servers):
    servers["fhir"].search_results["ResearchStudy"] = bundle(
        {"resourceType": "ResearchStudy", "id": "s1", "title": "Diabetes"}
    )
    response = client.get("/api/v1/studies", params={"title": "Dia"})
    assert response.json() == [{"id": "s1", "name": "Diabetes"}]


def test_update_study(client, servers, session_factory):
    servers["fhir"].add({"resourceType": "ResearchStudy", "id": "s1", "status": "draft"})
    response = client.patch("/api/v1/studies/s1", json={"title": "Renamed"})

    assert response.json()["title"] == "Renamed"
    assert _audit_entries(session_factory) == [("update", "ResearchStudy", "s1")]


def test_export_datamart_csv(client, servers):
    servers["fhir"].add(
        {"resourceType": "ResearchStudy", "id": "s1", "url": "https://example.org/rs/s1"}
    )
    servers["engines"].operation_results["$export-datamart"] = {
        "resourceType": "Binary",
        "data": base64.b64encode(b"a,b\n1,2\n").decode(),
    }
    response = client.get("/api/v1/studies/s1/datamart/export")

    assert response.status_code == 200
    assert response.content == b"a,b\n1,2\n"
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="datamart_s1.csv"' in response.headers["content-disposition"]


def test_study_datamart_before_generation(client, servers):
    servers["fhir"].add({"resourceType": "ResearchStudy", "id": "s1"})
    assert client.get("/api/v1/studies/s1/datamart").json() == {"list": None, "rows": []}


def test_render_criteria_with_range_operator(client):
    response = client.post(
        "/api/v1/criteria/render",
        json={"value": {"type": "integer", "operator": "between"}},
    )
    body = response.json()
    assert body["control"] == "integer-input"
    assert [f["name"] for f in body["fields"]] == ["operator", "minValue", "maxValue"]


def test_edit_criteria(client):
    response = client.post(
        "/api/v1/criteria/edit",
        json={
            "value": {"type": "integer", "value": 18, "operator": "greaterThan"},
            "field": "value",
            "raw": "",
        },
    )
    body = response.json()
    assert body["value"] == {
        "type": "integer",
        "value": None,
        "operator": "greaterThan",
        "minValue": None,
        "maxValue": None,
        "valueSetUrl": None,
    }
    assert body["errors"] == {"criteriaValue": "This field is required."}
    assert body["shapeErrors"] == []
    assert body["valid"] is False


def test_edit_criteria_bad_input_is_422(client):
    response = client.post(
        "/api/v1/criteria/edit",
        json={"value": {"type": "date"}, "field": "value", "raw": "yesterday"},
    )
    assert response.status_code == 422


def test_new_criteria_value(client):
    response = client.post(
        "/api/v1/criteria/new",
        json={"parameter": {"name": "Smoker", "use": "in", "type": "boolean"}},
    )
    assert response.json()["value"] is False


def test_instantiate_study_is_audited(client, servers, session_factory):
    servers["fhir"].add(
        {"resourceType": "ResearchStudy", "id": "s1", "url": "https://example.org/rs/s1"}
    )
    servers["engines"].operation_results["$instantiate-study"] = {
        "resourceType": "Parameters",
        "parameter": [{"name": "studyInstanceUrl", "valueCanonical": "https://example.org/rs/i1"}],
    }
    servers["fhir"].search_results["ResearchStudy"] = bundle(
        {"resourceType": "ResearchStudy", "id": "i1", "url": "https://example.org/rs/i1"}
    )
    response = client.post("/api/v1/studies/s1/instances")

    assert response.status_code == 201
    assert response.json()["id"] == "i1"
    assert _audit_entries(session_factory) == [("create", "ResearchStudy", "i1")]


def test_instantiate_study_without_url_is_404(client, servers, session_factory):
    servers["fhir"].add({"resourceType": "ResearchStudy", "id": "s1"})
    response = client.post("/api/v1/studies/s1/instances")

    assert response.status_code == 404
    assert _audit_entries(session_factory) == []


def test_edit_criteria_complete_value_is_valid(client):
    response = client.post(
        "/api/v1/criteria/edit",
        json={"value": {"type": "integer", "operator": "greaterThan"}, "field": "value", "raw": "18"},
    )
    body = response.json()
    assert body["value"]["value"] == 18
    assert body["errors"] == {}
    assert body["valid"] is True


def test_library_lists_criteria_expressions(client, servers):
    servers["knowledge"].add(
        {
            "resourceType": "Library",
            "id": "lib1",
            "name": "Eligibility",
            "parameter": [
                {"name": "IsAdult", "use": "out", "type": "boolean"},
                {"name": "AgeInYears", "use": "out", "type": "integer"},
            ],
        }
    )
    body = client.get("/api/v1/libraries/lib1").json()
    assert [p["name"] for p in body["expressions"]] == ["IsAdult", "AgeInYears"]
    assert [p["name"] for p in body["criteriaExpressions"]] == ["IsAdult"]
