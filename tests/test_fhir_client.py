"""Tests for the httpx-based FHIR client, using httpx.MockTransport."""

import json

import httpx
import pytest

from study_designer.config import Settings
from study_designer.errors import FhirClientError, ResourceNotFoundError
from study_designer.fhir.client import FhirClient, build_clients, resources_from_bundle


def _client(handler):
    return FhirClient("http://fhir.test/fhir/", transport=httpx.MockTransport(handler))


def test_read_builds_url_and_headers():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["accept"] = request.headers["accept"]
        return httpx.Response(200, json={"resourceType": "ResearchStudy", "id": "1"})

    with _client(handler) as client:
        study = client.read("ResearchStudy", "1")

    assert study["id"] == "1"
    assert seen["url"] == "http://fhir.test/fhir/ResearchStudy/1"
    assert seen["accept"] == "application/fhir+json"


def test_search_passes_params():
    def handler(request):
        assert request.url.path == "/fhir/EvidenceVariable"
        assert request.url.params["url"] == "https://example.org/ev/1"
        return httpx.Response(200, json={"resourceType": "Bundle", "entry": []})

    with _client(handler) as client:
        assert client.search("EvidenceVariable", {"url": "https://example.org/ev/1"})["entry"] == []


def test_update_is_a_full_put():
    def handler(request):
        assert request.method == "PUT"
        assert "if-match" not in request.headers
        return httpx.Response(200, content=request.content)

    body = {"resourceType": "EvidenceVariable", "id": "7", "status": "draft"}
    with _client(handler) as client:
        assert client.update("EvidenceVariable", "7", body) == body


def test_operation_posts_to_dollar_path():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/fhir/ResearchStudy/$cohorting"
        assert json.loads(request.content)["resourceType"] == "Parameters"
        return httpx.Response(200, json={"resourceType": "Group"})

    with _client(handler) as client:
        result = client.operation(
            "cohorting", resource_type="ResearchStudy", input={"resourceType": "Parameters"}
        )
    assert result["resourceType"] == "Group"


def test_not_found_maps_to_resource_not_found():
    with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(ResourceNotFoundError):
            client.read("EvidenceVariable", "missing")


def test_error_status_carries_diagnostics():
    outcome = {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": "error", "code": "invalid", "diagnostics": "bad status"}],
    }
    with _client(lambda request: httpx.Response(422, json=outcome)) as client:
        with pytest.raises(FhirClientError) as excinfo:
            client.update("EvidenceVariable", "1", {})

    assert excinfo.value.status_code == 422
    assert "bad status" in str(excinfo.value)


def test_transport_failure_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with _client(handler) as client:
        with pytest.raises(FhirClientError, match="connection refused"):
            client.read("Library", "1")


def test_empty_body_returns_empty_dict():
    with _client(lambda request: httpx.Response(204)) as client:
        assert client.update("EvidenceVariable", "1", {}) == {}


def test_build_clients_uses_configured_urls():
    config = Settings()
    config.FHIR_URL = "http://data.test/fhir"
    config.KNOWLEDGE_URL = "http://knowledge.test/fhir"
    clients = build_clients(config)
    try:
        assert clients.fhir.base_url == "http://data.test/fhir"
        assert clients.knowledge.base_url == "http://knowledge.test/fhir"
    finally:
        clients.close()


def test_resources_from_bundle_filters_by_type():
    bundle = {
        "entry": [
            {"resource": {"resourceType": "EvidenceVariable", "id": "1"}},
            {"resource": {"resourceType": "OperationOutcome"}},
            {"search": {"mode": "include"}},
        ]
    }
    assert resources_from_bundle(bundle, "EvidenceVariable") == [
        {"resourceType": "EvidenceVariable", "id": "1"}
    ]
    assert len(resources_from_bundle({})) == 0
