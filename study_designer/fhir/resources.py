"""
Read-only wrappers around FHIR resource JSON.

EvidenceVariableModel and LibraryModel expose the handful of fields the
API displays and never mutate the underlying resource.
"""

from __future__ import annotations

from typing import Any

from study_designer.evidence.tree import CQF_LIBRARY_EXTENSION, summarize_characteristics
from study_designer.fhir.client import resources_from_bundle
from study_designer.schemas.api import EvidenceVariableDisplay, LibraryDisplay
from study_designer.schemas.criteria import LibraryParameter


class EvidenceVariableModel:
    def __init__(self, resource: dict[str, Any]):
        self._resource = resource

    @property
    def resource(self) -> dict[str, Any]:
        return self._resource

    @property
    def id(self) -> str | None:
        return self._resource.get("id")

    @property
    def title(self) -> str:
        return self._resource.get("title") or ""

    @property
    def description(self) -> str:
        return self._resource.get("description") or ""

    @property
    def expression(self) -> str | None:
        """Expression of the first root characteristic that has one."""
        for characteristic in self._resource.get("characteristic") or []:
            expression = (characteristic.get("definitionExpression") or {}).get("expression")
            if expression:
                return expression
        return None

    @property
    def library_url(self) -> str | None:
        for extension in self._resource.get("extension") or []:
            if extension.get("url") == CQF_LIBRARY_EXTENSION:
                return extension.get("valueCanonical")
        return None

    def to_display(self) -> EvidenceVariableDisplay:
        return EvidenceVariableDisplay(
            id=self.id,
            title=self.title,
            description=self.description,
            expression=self.expression,
            libraryUrl=self.library_url,
            characteristics=summarize_characteristics(self._resource.get("characteristic")),
        )

    @classmethod
    def from_bundle(
        cls, bundle: dict[str, Any]
    ) -> tuple[list[EvidenceVariableModel], list[str]]:
        """
        Split a search Bundle into models and canonical URLs.

        When any EV in the bundle combines canonical references, the URLs are
        returned (and the models list stays empty) so the caller can resolve
        them; otherwise the bundle's EVs are returned as models.
        """
        evidence_variables = resources_from_bundle(bundle, "EvidenceVariable")
        canonical_urls = [
            sub["definitionCanonical"]
            for ev in evidence_variables
            for characteristic in ev.get("characteristic") or []
            for sub in (characteristic.get("definitionByCombination") or {}).get(
                "characteristic"
            )
            or []
            if sub.get("definitionCanonical")
        ]
        if canonical_urls:
            return [], canonical_urls
        return [cls(ev) for ev in evidence_variables], []

    @classmethod
    def from_canonical_bundles(cls, bundles: list[dict[str, Any]]) -> list[EvidenceVariableModel]:
        """First EvidenceVariable of each by-URL search result."""
        models = []
        for bundle in bundles:
            found = resources_from_bundle(bundle, "EvidenceVariable")
            if found:
                models.append(cls(found[0]))
        return models


class LibraryModel:
    def __init__(self, resource: dict[str, Any]):
        self._resource = resource

    @property
    def id(self) -> str | None:
        return self._resource.get("id")

    @property
    def title(self) -> str:
        return self._resource.get("title") or ""

    @property
    def name(self) -> str:
        return self._resource.get("name") or ""

    @property
    def url(self) -> str:
        return self._resource.get("url") or ""

    def parameters(self) -> list[LibraryParameter]:
        return [
            LibraryParameter(
                name=p.get("name") or "",
                use=p.get("use") or "",
                type=p.get("type") or "",
                documentation=p.get("documentation"),
                min=p.get("min"),
                max=p.get("max"),
            )
            for p in self._resource.get("parameter") or []
        ]

    def input_parameters(self) -> list[LibraryParameter]:
        return [p for p in self.parameters() if p.use == "in"]

    def output_parameters(self) -> list[LibraryParameter]:
        return [p for p in self.parameters() if p.use == "out"]

    def boolean_expressions(self) -> list[LibraryParameter]:
        """Outputs usable as inclusion criteria."""
        return [p for p in self.output_parameters() if p.type.lower() == "boolean"]

    def to_display(self) -> LibraryDisplay:
        return LibraryDisplay(
            id=self.id,
            title=self.title,
            name=self.name,
            url=self.url,
            parameters=self.input_parameters(),
            expressions=self.output_parameters(),
            criteriaExpressions=self.boolean_expressions(),
        )

    @classmethod
    def from_bundle(cls, bundle: dict[str, Any]) -> list[LibraryModel]:
        return [cls(r) for r in resources_from_bundle(bundle, "Library")]
