"""
ValueSet lookups against the terminology server.

Failures never propagate out of ``lookup_codes`` / ``load_comparators``: the
form degrades to free text (or to the built-in operator list) and shows the
warning. No retry is attempted.
"""

from __future__ import annotations

import logging
from typing import Any

from study_designer.config import Settings, settings as default_settings
from study_designer.errors import FhirClientError
from study_designer.fhir.client import FhirClient, resources_from_bundle
from study_designer.forms.dispatcher import ControlOptions, needs_codes, needs_comparators
from study_designer.schemas.criteria import CodeOption, CriteriaType, InclusionCriteriaValue

logger = logging.getLogger(__name__)


def _flatten_contains(contains: list[dict[str, Any]]) -> list[CodeOption]:
    options: list[CodeOption] = []
    for item in contains:
        if item.get("code") and not item.get("abstract", False):
            options.append(
                CodeOption(code=item["code"], display=item.get("display"), system=item.get("system"))
            )
        options.extend(_flatten_contains(item.get("contains") or []))
    return options


def _codes_from_compose(value_set: dict[str, Any]) -> list[CodeOption]:
    options: list[CodeOption] = []
    for include in (value_set.get("compose") or {}).get("include") or []:
        for concept in include.get("concept") or []:
            if not concept.get("code"):
                continue
            options.append(
                CodeOption(
                    code=concept["code"],
                    display=concept.get("display"),
                    system=include.get("system"),
                )
            )
    return options


class ValueSetService:
    def __init__(self, terminology: FhirClient, config: Settings | None = None):
        self.terminology = terminology
        self.config = config or default_settings

    def load_value_sets(self) -> list[dict[str, Any]]:
        bundle = self.terminology.search("ValueSet")
        return resources_from_bundle(bundle, "ValueSet")

    def search_value_set(self, url: str) -> list[CodeOption]:
        """Codes of the ValueSet at ``url``: $expand first, compose as fallback."""
        try:
            expanded = self.terminology.operation(
                "$expand",
                resource_type="ValueSet",
                input={
                    "resourceType": "Parameters",
                    "parameter": [{"name": "url", "valueUri": url}],
                },
            )
            codes = _flatten_contains((expanded.get("expansion") or {}).get("contains") or [])
            if codes:
                return codes
        except FhirClientError as exc:
            logger.info("$expand of %s failed (%s), reading compose instead", url, exc)

        found = resources_from_bundle(self.terminology.search("ValueSet", {"url": url}), "ValueSet")
        if not found:
            return []
        return _codes_from_compose(found[0])

    def lookup_codes(self, url: str) -> tuple[list[CodeOption], str | None]:
        """Like ``search_value_set`` but reports failure as a warning instead of raising."""
        try:
            return self.search_value_set(url), None
        except FhirClientError as exc:
            logger.warning("ValueSet lookup failed for %s: %s", url, exc)
            return [], f"Could not load ValueSet {url}: {exc.message}"

    def comparator_value_set_url(self, criteria_type: CriteriaType) -> str | None:
        if criteria_type is CriteriaType.INTEGER:
            return self.config.VALUESET_INTEGER_COMPARATORS_URL
        if criteria_type in (CriteriaType.DATE, CriteriaType.DATETIME):
            return self.config.VALUESET_DATE_COMPARATORS_URL
        return None

    def load_comparators(self, criteria_type: CriteriaType) -> tuple[list[CodeOption], str | None]:
        url = self.comparator_value_set_url(criteria_type)
        if not url:
            return [], f"No comparator ValueSet available for type: {criteria_type.value}"
        return self.lookup_codes(url)

    def control_options(self, value: InclusionCriteriaValue) -> ControlOptions:
        """Load whatever remote data the control set for ``value`` needs."""
        options = ControlOptions()
        if needs_comparators(value):
            options.comparators, options.comparator_warning = self.load_comparators(value.type)
        if needs_codes(value):
            options.codes, options.codes_warning = self.lookup_codes(value.valueSetUrl)
        return options
