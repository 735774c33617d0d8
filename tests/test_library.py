"""Tests for Library loading and projection."""

import pytest

from conftest import FakeFhirClient, bundle
from study_designer.errors import FhirClientError, ServiceError
from study_designer.services.library import LibraryService

LIBRARY = {
    "resourceType": "Library",
    "id": "lib1",
    "name": "Eligibility",
    "title": "Eligibility criteria",
    "url": "https://example.org/Library/eligibility",
    "parameter": [
        {"name": "MinAge", "use": "in", "type": "integer", "min": 0, "max": "1"},
        {"name": "IsAdult", "use": "out", "type": "boolean"},
        {"name": "AgeInYears", "use": "out", "type": "integer"},
    ],
}


def test_load_libraries():
    knowledge = FakeFhirClient()
    knowledge.search_results["Library"] = bundle(LIBRARY)

    libraries = LibraryService(knowledge).load_libraries()

    assert [lib.id for lib in libraries] == ["lib1"]
    assert knowledge.searches[-1] == ("Library", {"_count": 10000})


def test_library_projections():
    knowledge = FakeFhirClient()
    knowledge.add(LIBRARY)
    library = LibraryService(knowledge).load_library("lib1")

    assert [p.name for p in library.input_parameters()] == ["MinAge"]
    assert [p.name for p in library.boolean_expressions()] == ["IsAdult"]
    display = library.to_display()
    assert [p.name for p in display.expressions] == ["IsAdult", "AgeInYears"]
    assert [p.name for p in display.criteriaExpressions] == ["IsAdult"]


def test_load_libraries_failure_has_context():
    knowledge = FakeFhirClient()
    knowledge.search_results["Library"] = FhirClientError("GET Library returned 500: down")
    with pytest.raises(ServiceError, match="^Error loading libraries"):
        LibraryService(knowledge).load_libraries()
