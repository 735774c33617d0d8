"""Tests for ValueSet lookups and their graceful degradation."""

from conftest import FakeFhirClient, bundle
from study_designer.config import Settings
from study_designer.errors import FhirClientError
from study_designer.schemas.criteria import CriteriaType, InclusionCriteriaValue
from study_designer.services.valueset import ValueSetService

VS_URL = "https://example.org/ValueSet/sex"


def _service(terminology):
    return ValueSetService(terminology, Settings())


def test_expand_flattens_nested_contains():
    terminology = FakeFhirClient()
    terminology.operation_results["$expand"] = {
        "resourceType": "ValueSet",
        "expansion": {
            "contains": [
                {"code": "F", "display": "Female", "system": "s"},
                {
                    "abstract": True,
                    "code": "group",
                    "contains": [{"code": "M", "display": "Male", "system": "s"}],
                },
            ]
        },
    }
    codes = _service(terminology).search_value_set(VS_URL)

    assert [c.code for c in codes] == ["F", "M"]
    name, resource_type, _, parameters = terminology.operations[-1]
    assert (name, resource_type) == ("$expand", "ValueSet")
    assert parameters["parameter"] == [{"name": "url", "valueUri": VS_URL}]


def test_compose_is_used_when_expand_fails():
    terminology = FakeFhirClient()
    terminology.operation_results["$expand"] = FhirClientError("not supported", status_code=501)
    terminology.search_results["ValueSet"] = bundle(
        {
            "resourceType": "ValueSet",
            "compose": {"include": [{"system": "s", "concept": [{"code": "F"}, {"code": "M"}]}]},
        }
    )
    codes = _service(terminology).search_value_set(VS_URL)
    assert [(c.system, c.code) for c in codes] == [("s", "F"), ("s", "M")]


def test_compose_skips_concepts_without_code():
    terminology = FakeFhirClient()
    terminology.operation_results["$expand"] = FhirClientError("not supported", status_code=501)
    terminology.search_results["ValueSet"] = bundle(
        {
            "resourceType": "ValueSet",
            "compose": {
                "include": [
                    {"system": "s", "concept": [{"display": "Unknown"}, {"code": ""}, {"code": "F"}]}
                ]
            },
        }
    )
    codes, warning = _service(terminology).lookup_codes(VS_URL)
    assert [c.code for c in codes] == ["F"]
    assert warning is None


def test_lookup_reports_failure_as_warning():
    terminology = FakeFhirClient()
    terminology.operation_results["$expand"] = FhirClientError("down")
    terminology.search_results["ValueSet"] = FhirClientError("down")

    codes, warning = _service(terminology).lookup_codes(VS_URL)
    assert codes == []
    assert warning == f"Could not load ValueSet {VS_URL}: down"


def test_comparators_have_no_value_set_for_strings():
    codes, warning = _service(FakeFhirClient()).load_comparators(CriteriaType.STRING)
    assert codes == []
    assert "string" in warning


def test_control_options_loads_only_what_is_needed():
    terminology = FakeFhirClient()
    service = _service(terminology)

    service.control_options(InclusionCriteriaValue(type="boolean"))
    assert terminology.operations == []

    service.control_options(InclusionCriteriaValue(type="coding", valueSetUrl=VS_URL))
    assert [op[3]["parameter"][0]["valueUri"] for op in terminology.operations] == [VS_URL]

    options = service.control_options(InclusionCriteriaValue(type="date"))
    assert terminology.operations[-1][3]["parameter"][0]["valueUri"] == (
        Settings.VALUESET_DATE_COMPARATORS_URL
    )
    assert options.codes == []
