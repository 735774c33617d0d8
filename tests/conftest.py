"""Shared fixtures: an in-memory stand-in for a FHIR server client."""

import copy

import pytest

from study_designer.errors import ResourceNotFoundError
from study_designer.services.evidence_variable import EvidenceVariableService
from study_designer.services.study import StudyService


def bundle(*resources):
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [{"resource": r} for r in resources],
    }


class FakeFhirClient:
    """
    Keeps resources in a dict and records every call.

    ``search_results`` maps a resource type to a Bundle, an exception to
    raise, or a callable taking the search params.
    """

    def __init__(self):
        self.resources = {}
        self.search_results = {}
        self.operation_results = {}
        self.searches = []
        self.created = []
        self.updates = []
        self.operations = []
        self._next_id = 1

    def add(self, resource):
        self.resources[(resource["resourceType"], resource["id"])] = copy.deepcopy(resource)
        return resource

    def stored(self, resource_type, resource_id):
        return self.resources[(resource_type, resource_id)]

    def search(self, resource_type, params=None):
        self.searches.append((resource_type, dict(params or {})))
        result = self.search_results.get(resource_type, bundle())
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(params or {})
        return copy.deepcopy(result)

    def read(self, resource_type, resource_id):
        try:
            return copy.deepcopy(self.resources[(resource_type, resource_id)])
        except KeyError:
            raise ResourceNotFoundError(
                f"{resource_type}/{resource_id} not found", status_code=404
            ) from None

    def create(self, resource_type, body):
        resource = copy.deepcopy(body)
        resource.setdefault("id", f"new-{self._next_id}")
        self._next_id += 1
        self.created.append(resource)
        self.add(resource)
        return copy.deepcopy(resource)

    def update(self, resource_type, resource_id, body):
        self.updates.append((resource_type, resource_id, copy.deepcopy(body)))
        self.resources[(resource_type, resource_id)] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def operation(self, name, *, resource_type=None, resource_id=None, input=None):
        self.operations.append((name, resource_type, resource_id, input))
        result = self.operation_results.get(name, {})
        if isinstance(result, Exception):
            raise result
        return copy.deepcopy(result)

    def close(self):
        pass


@pytest.fixture
def fhir():
    return FakeFhirClient()


@pytest.fixture
def knowledge():
    return FakeFhirClient()


@pytest.fixture
def engines():
    return FakeFhirClient()


@pytest.fixture
def study_service(fhir, engines):
    return StudyService(fhir, engines, engines)


@pytest.fixture
def ev_service(knowledge, study_service):
    return EvidenceVariableService(knowledge, study_service)
