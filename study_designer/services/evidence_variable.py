"""
EvidenceVariable operations on the knowledge server.

Tree edits follow one pattern: read the parent EV fresh, mutate its
characteristic tree in place, PUT the whole resource back. Concurrent edits
of the same EV are last-writer-wins.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from study_designer.errors import (
    CharacteristicTreeError,
    FhirClientError,
    ResourceNotFoundError,
    wrap_errors,
)
from study_designer.evidence.tree import (
    add_characteristic_to_ev,
    build_canonical_characteristic,
    build_expression_characteristic,
    is_combination,
    map_form_data_to_combination,
    map_form_data_to_definition_expression,
    map_form_data_to_evidence_variable,
    navigate_to_characteristic,
    replace_characteristic,
)
from study_designer.fhir.client import FhirClient, resources_from_bundle
from study_designer.fhir.resources import EvidenceVariableModel
from study_designer.schemas.api import (
    CanonicalFormData,
    CombinationFormData,
    EvidenceVariableFormData,
    EvidenceVariableKind,
    ExistingCanonicalFormData,
    ExpressionFormData,
)
from study_designer.services.study import StudyService
from study_designer.services.validation import validate_evidence_variable

logger = logging.getLogger(__name__)

EVIDENCE_VARIABLE = "EvidenceVariable"


class EvidenceVariableService:
    def __init__(self, knowledge: FhirClient, study_service: StudyService):
        self.knowledge = knowledge
        self.study_service = study_service

    def _read(self, evidence_variable_id: str) -> dict[str, Any]:
        return self.knowledge.read(EVIDENCE_VARIABLE, evidence_variable_id)

    def _check(self, resource: dict[str, Any]) -> None:
        errors = validate_evidence_variable(resource)
        if errors:
            raise CharacteristicTreeError(
                "EvidenceVariable failed validation: " + "; ".join(errors)
            )

    def _save(self, evidence_variable_id: str, resource: dict[str, Any]) -> dict[str, Any]:
        self._check(resource)
        return self.knowledge.update(EVIDENCE_VARIABLE, evidence_variable_id, resource)

    # -- loading ---------------------------------------------------------------

    def load_all_evidence_variables(self) -> list[EvidenceVariableModel]:
        with wrap_errors("Error loading all evidence variables"):
            bundle = self.knowledge.search(EVIDENCE_VARIABLE, {"_count": 10000})
        return [EvidenceVariableModel(ev) for ev in resources_from_bundle(bundle, EVIDENCE_VARIABLE)]

    def load_study_variables(self, study_id: str) -> dict[str, Any]:
        return self.knowledge.search(
            EVIDENCE_VARIABLE, {"_has:ResearchStudy:study-variables:_id": study_id}
        )

    def read_evidence_variable_by_url(self, canonical_url: str) -> dict[str, Any]:
        return self.knowledge.search(EVIDENCE_VARIABLE, {"url": canonical_url})

    def load_evidence_variables(
        self, study_id: str, kind: EvidenceVariableKind
    ) -> list[EvidenceVariableModel]:
        """
        Inclusion criteria: the single EV referenced by the study's
        recruitment.eligibility. Study variables: the EVs linked to the study,
        resolved through their canonical references when they combine any.
        """
        with wrap_errors("Error loading evidence variables"):
            if kind == "inclusion":
                study = self.study_service.load_study(study_id)
                reference = ((study.get("recruitment") or {}).get("eligibility") or {}).get(
                    "reference"
                )
                if not reference:
                    return []
                parent_id = reference.replace(f"{EVIDENCE_VARIABLE}/", "")
                return [EvidenceVariableModel(self._read(parent_id))]

            models, canonical_urls = EvidenceVariableModel.from_bundle(
                self.load_study_variables(study_id)
            )
            if canonical_urls:
                return EvidenceVariableModel.from_canonical_bundles(
                    [self.read_evidence_variable_by_url(url) for url in canonical_urls]
                )
            return models

    def get_evidence_variable_by_id(self, evidence_variable_id: str) -> EvidenceVariableModel:
        with wrap_errors("Failed to get EvidenceVariable by ID"):
            return EvidenceVariableModel(self._read(evidence_variable_id))

    # -- header ------------------------------------------------------------------

    def create_simple_evidence_variable(self, data: EvidenceVariableFormData) -> dict[str, Any]:
        resource = map_form_data_to_evidence_variable(data)
        self._check(resource)
        with wrap_errors("Failed to create EvidenceVariable"):
            created = self.knowledge.create(EVIDENCE_VARIABLE, resource)
        logger.info("Created EvidenceVariable %s", created.get("id"))
        return created

    def update_evidence_variable(
        self,
        evidence_variable_id: str,
        data: EvidenceVariableFormData,
        existing: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        with wrap_errors("Failed to update EvidenceVariable"):
            if existing is None:
                existing = self._read(evidence_variable_id)
            updated = map_form_data_to_evidence_variable(data, existing)
            return self._save(evidence_variable_id, updated)

    # -- characteristic tree -------------------------------------------------------

    def add_definition_by_combination(
        self,
        evidence_variable_id: str,
        data: CombinationFormData,
        target_path: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        with wrap_errors("Failed to add combination"):
            parent = self._read(evidence_variable_id)
            add_characteristic_to_ev(parent, map_form_data_to_combination(data), target_path)
            return self._save(evidence_variable_id, parent)

    def update_definition_by_combination(
        self,
        evidence_variable_id: str,
        data: CombinationFormData,
        target_path: Sequence[int],
    ) -> dict[str, Any]:
        if not target_path:
            raise CharacteristicTreeError("targetPath is required to update a combination")
        with wrap_errors("Failed to update combination"):
            parent = self._read(evidence_variable_id)
            target = navigate_to_characteristic(parent, target_path)
            if not is_combination(target):
                raise CharacteristicTreeError(
                    f"Characteristic at path {list(target_path)} is not a combination"
                )
            replace_characteristic(parent, target_path, map_form_data_to_combination(data, target))
            return self._save(evidence_variable_id, parent)

    def add_existing_canonical(
        self,
        parent_id: str,
        data: ExistingCanonicalFormData,
        target_path: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        """Reference an existing EV by canonical URL; the URL must resolve first."""
        unresolvable = ResourceNotFoundError(
            f"Cannot resolve canonical URL: {data.canonicalUrl}. "
            "The EvidenceVariable is not accessible at this URL."
        )
        try:
            found = resources_from_bundle(
                self.read_evidence_variable_by_url(data.canonicalUrl), EVIDENCE_VARIABLE
            )
        except FhirClientError as exc:
            raise unresolvable from exc
        if not found:
            raise unresolvable

        with wrap_errors("Failed to add existing canonical"):
            parent = self._read(parent_id)
            characteristic = build_canonical_characteristic(
                data.canonicalUrl,
                exclude=data.exclude,
                description=data.canonicalDescription,
                link_id=data.canonicalId,
            )
            add_characteristic_to_ev(parent, characteristic, target_path)
            return self._save(parent_id, parent)

    def add_new_canonical(
        self,
        parent_id: str,
        data: EvidenceVariableFormData,
        exclude: bool = False,
        target_path: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        """Create an EV and reference it from ``parent_id`` by its canonical URL."""
        created = self.create_simple_evidence_variable(data)
        if not created.get("url"):
            raise CharacteristicTreeError(
                "The new EvidenceVariable has no url and cannot be referenced"
            )
        canonical = ExistingCanonicalFormData(
            exclude=exclude,
            canonicalUrl=created["url"],
            canonicalId=((created.get("identifier") or [{}])[0]).get("value"),
            canonicalDescription=created.get("description"),
        )
        return self.add_existing_canonical(parent_id, canonical, target_path)

    def add_definition_expression(
        self,
        evidence_variable_id: str,
        data: ExpressionFormData,
        target_path: Sequence[int] | None = None,
    ) -> dict[str, Any]:
        with wrap_errors("Failed to add definition expression"):
            parent = self._read(evidence_variable_id)
            add_characteristic_to_ev(parent, build_expression_characteristic(data), target_path)
            return self._save(evidence_variable_id, parent)

    def update_definition_expression(
        self,
        evidence_variable_id: str,
        data: ExpressionFormData,
        target_path: Sequence[int],
    ) -> dict[str, Any]:
        if not target_path:
            raise CharacteristicTreeError("targetPath is required to update an expression")
        with wrap_errors("Failed to update definition expression"):
            parent = self._read(evidence_variable_id)
            target = navigate_to_characteristic(parent, target_path)
            if is_combination(target):
                raise CharacteristicTreeError(
                    f"Characteristic at path {list(target_path)} is a combination, not an expression"
                )
            target["exclude"] = data.exclude
            if data.expressionDescription is not None:
                target["description"] = data.expressionDescription
            if data.expressionId:
                target["linkId"] = data.expressionId
            else:
                target.pop("linkId", None)
            target.pop("definitionCanonical", None)
            target["definitionExpression"] = map_form_data_to_definition_expression(data)
            return self._save(evidence_variable_id, parent)

    def update_canonical_characteristic(
        self,
        parent_id: str,
        target_path: Sequence[int],
        data: CanonicalFormData,
        original_canonical_url: str,
    ) -> dict[str, Any]:
        """
        Edit a definitionCanonical node. When the form carries the referenced
        EV's id, that EV's header is saved first.
        """
        referenced = data.evidenceVariable
        if referenced.id:
            original = self.get_evidence_variable_by_id(referenced.id)
            self.update_evidence_variable(referenced.id, referenced, original.resource)

        with wrap_errors("Failed to update canonical characteristic"):
            parent = self._read(parent_id)
            target = navigate_to_characteristic(parent, target_path)
            if not target.get("definitionCanonical"):
                raise CharacteristicTreeError("Target characteristic is not a definitionCanonical")
            target["exclude"] = data.exclude
            if referenced.description is not None:
                target["description"] = referenced.description
            if referenced.identifier:
                target["linkId"] = referenced.identifier
            else:
                target.pop("linkId", None)
            if referenced.url and referenced.url != original_canonical_url:
                target["definitionCanonical"] = referenced.url
            return self._save(parent_id, parent)
