"""
Thin FHIR REST client built on httpx.

Each configured server (default FHIR, knowledge, terminology, cohorting
engine, datamart engine) gets its own explicitly constructed client; services
receive the clients they need as constructor arguments so tests can swap in
fakes or an ``httpx.MockTransport``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from study_designer.config import Settings, settings as default_settings
from study_designer.errors import FhirClientError, ResourceNotFoundError

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"


def _diagnostics(response: httpx.Response) -> str:
    """Best-effort extraction of OperationOutcome diagnostics."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome":
        issues = body.get("issue") or []
        messages = [i.get("diagnostics") or i.get("code", "") for i in issues]
        return "; ".join(m for m in messages if m)
    return response.text[:200]


class FhirClient:
    """Synchronous client for one FHIR base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=self.base_url + "/",
            timeout=timeout,
            transport=transport,
            headers={"Accept": FHIR_JSON},
        )

    # -- context management -------------------------------------------------

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> FhirClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- interactions -------------------------------------------------------

    def search(
        self, resource_type: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return self._request("GET", resource_type, params=params)

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        return self._request("GET", f"{resource_type}/{resource_id}")

    def create(self, resource_type: str, body: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", resource_type, json=body)

    def update(
        self, resource_type: str, resource_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        # Full replacement, no If-Match: the last writer wins.
        return self._request("PUT", f"{resource_type}/{resource_id}", json=body)

    def operation(
        self,
        name: str,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        input: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Invoke a FHIR operation (``$name``) at system, type or instance level."""
        op = name if name.startswith("$") else f"${name}"
        parts = [p for p in (resource_type, resource_id, op) if p]
        return self._request("POST", "/".join(parts), json=input or {})

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": FHIR_JSON} if json is not None else None
        logger.debug("%s %s/%s params=%s", method, self.base_url, path, params)
        try:
            response = self._http.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            raise FhirClientError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404:
            raise ResourceNotFoundError(
                f"{path} not found", status_code=404, response_body=response.text
            )
        if response.status_code >= 400:
            raise FhirClientError(
                f"{method} {path} returned {response.status_code}: {_diagnostics(response)}",
                status_code=response.status_code,
                response_body=response.text,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise FhirClientError(
                f"{method} {path} returned a non-JSON body",
                status_code=response.status_code,
                response_body=response.text,
            ) from exc


@dataclass
class FhirClients:
    """The set of clients a request works with, one per configured server."""

    fhir: FhirClient
    knowledge: FhirClient
    terminology: FhirClient
    cohorting: FhirClient
    datamart: FhirClient

    def close(self) -> None:
        for client in (self.fhir, self.knowledge, self.terminology, self.cohorting, self.datamart):
            client.close()


def build_clients(
    config: Settings | None = None,
    transport: httpx.BaseTransport | None = None,
) -> FhirClients:
    """Construct fresh clients for every configured server."""
    config = config or default_settings

    def make(url: str) -> FhirClient:
        return FhirClient(url, timeout=config.FHIR_TIMEOUT, transport=transport)

    return FhirClients(
        fhir=make(config.FHIR_URL),
        knowledge=make(config.KNOWLEDGE_URL),
        terminology=make(config.TERMINOLOGY_URL),
        cohorting=make(config.COHORTING_URL),
        datamart=make(config.DATAMART_URL),
    )


def resources_from_bundle(
    bundle: dict[str, Any], resource_type: str | None = None
) -> list[dict[str, Any]]:
    """Return the entry resources of a Bundle, optionally filtered by type."""
    resources = [e.get("resource") for e in bundle.get("entry") or []]
    return [
        r
        for r in resources
        if r and (resource_type is None or r.get("resourceType") == resource_type)
    ]
