"""
ResearchStudy operations: browsing, editing, linking evidence variables and
driving the cohorting / datamart engines.

Every edit reads the study fresh and writes the whole resource back.
"""

from __future__ import annotations

import logging
from typing import Any

from study_designer.config import Settings, settings as default_settings
from study_designer.errors import FhirClientError, ServiceError, wrap_errors
from study_designer.fhir.client import FhirClient, resources_from_bundle
from study_designer.fhir.parameters import (
    create_parameters,
    create_parameters_for_export_datamart,
    create_parameters_for_instantiate_study,
    get_parameter_value,
)
from study_designer.schemas.api import EvidenceVariableKind, StudySummary, StudyUpdate
from study_designer.services.export import datamart_filename, decode_datamart_csv

logger = logging.getLogger(__name__)

DATAMART_EXTENSION = "https://www.isis.com/StructureDefinition/EXT-Datamart"
NCT_SYSTEM = "http://clinicaltrials.gov"
PARTY_ROLE_SYSTEM = "http://hl7.org/fhir/research-study-party-role"
STUDY_DESIGN_SYSTEM = "http://hl7.org/fhir/study-design"


def create_coding(system: str, code: str, display: str | None = None) -> dict[str, str]:
    return {"system": system, "code": code, "display": display or code}


# ---------------------------------------------------------------------------
# In-place edits of a ResearchStudy resource
# ---------------------------------------------------------------------------

def update_associated_party(study: dict[str, Any], role_code: str, new_name: str | None) -> None:
    parties = study.setdefault("associatedParty", [])
    party = next(
        (
            p
            for p in parties
            if ((p.get("role") or {}).get("coding") or [{}])[0].get("code") == role_code
        ),
        None,
    )
    if party is not None:
        party["name"] = new_name
    elif new_name:
        parties.append(
            {"name": new_name, "role": {"coding": [create_coding(PARTY_ROLE_SYSTEM, role_code)]}}
        )


def update_identifier(study: dict[str, Any], new_nct_id: str | None) -> None:
    identifiers = study.setdefault("identifier", [])
    nct = next((i for i in identifiers if i.get("system") == NCT_SYSTEM), None)
    if nct is not None:
        nct["value"] = new_nct_id
    else:
        identifiers.append({"system": NCT_SYSTEM, "value": new_nct_id})


def update_study_design(study: dict[str, Any], new_design: list[Any] | None) -> None:
    """Accepts CodeableConcepts as-is, or bare codes from the study-design ValueSet."""
    if not new_design:
        return
    first = new_design[0]
    if isinstance(first, dict) and first.get("coding"):
        study["studyDesign"] = new_design
    else:
        study["studyDesign"] = [
            {"coding": [create_coding(STUDY_DESIGN_SYSTEM, code)]} for code in new_design
        ]


def extract_study_design_codes(study: dict[str, Any]) -> list[str]:
    codes = [
        ((design.get("coding") or [{}])[0]).get("code") or ""
        for design in study.get("studyDesign") or []
    ]
    return [code for code in codes if code]


def get_definition_canonical(definition: dict[str, Any] | None) -> str | None:
    """Canonical of a study definition: its url, else ``ResearchStudy/<id>``."""
    if not definition:
        return None
    url = (definition.get("url") or "").strip()
    if url:
        return url
    resource_id = (definition.get("id") or "").strip()
    if resource_id:
        return f"ResearchStudy/{resource_id}"
    return None


def is_derived_from_canonical(artifact: dict[str, Any] | None, canonical: str) -> bool:
    """True for a derived-from RelatedArtifact pointing at ``canonical`` (any version)."""
    if not artifact or artifact.get("type") != "derived-from":
        return False
    referenced = (artifact.get("resource") or "").split("|")[0]
    return referenced == canonical


class StudyService:
    def __init__(
        self,
        fhir: FhirClient,
        cohorting: FhirClient,
        datamart: FhirClient,
        config: Settings | None = None,
    ):
        self.fhir = fhir
        self.cohorting = cohorting
        self.datamart = datamart
        self.config = config or default_settings

    # -- browsing -------------------------------------------------------------

    def search_study_definitions(
        self, study_id: str | None = None, title: str | None = None, count: int = 50
    ) -> list[StudySummary]:
        """ResearchStudy definitions (phase ``template``), newest first."""
        params: dict[str, Any] = {
            "_elements": "id,title",
            "_sort": "-_lastUpdated",
            "phase": "template",
            "_count": count,
        }
        if study_id:
            params["_id"] = study_id
        if title:
            params["title:contains"] = title
        with wrap_errors("Error searching studies"):
            bundle = self.fhir.search("ResearchStudy", params)
        return [
            StudySummary(id=study["id"], name=study.get("title"))
            for study in resources_from_bundle(bundle, "ResearchStudy")
            if study.get("id")
        ]

    def load_study(self, study_id: str) -> dict[str, Any]:
        with wrap_errors(f"Error loading study {study_id}"):
            return self.fhir.read("ResearchStudy", study_id)

    load_study_definition = load_study

    def load_study_instances(self, definition: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Instances derived from a study definition.

        Tries a targeted ``related-artifact`` search first; servers that do not
        support it get a broad search filtered here.
        """
        canonical = get_definition_canonical(definition)
        if not canonical:
            return []

        def derived(bundle: dict[str, Any]) -> list[dict[str, Any]]:
            return [
                study
                for study in resources_from_bundle(bundle, "ResearchStudy")
                if any(
                    is_derived_from_canonical(a, canonical)
                    for a in study.get("relatedArtifact") or []
                )
            ]

        try:
            return derived(
                self.fhir.search("ResearchStudy", {"related-artifact": canonical, "_count": 100})
            )
        except FhirClientError as exc:
            logger.warning("related-artifact search unsupported, falling back to broad search: %s", exc)

        with wrap_errors("Unable to load study instances"):
            bundle = self.fhir.search("ResearchStudy", {"_count": 100, "_sort": "-_lastUpdated"})
        return derived(bundle)

    def instantiate_study(self, definition: dict[str, Any]) -> dict[str, Any] | None:
        """
        Create a study instance from a definition via ``$instantiate-study``.

        The cohorting engine answers with the canonical of the new instance
        (``studyInstanceUrl``), which is resolved on the FHIR server. Returns
        None when the definition has no url or the instance cannot be found.
        """
        study_url = (definition.get("url") or "").strip()
        if not study_url:
            logger.warning(
                "Cannot instantiate study %s without a canonical URL on the definition",
                definition.get("id"),
            )
            return None

        parameters = create_parameters_for_instantiate_study(study_url, self.config)
        logger.info("Instantiating study %s", study_url)
        with wrap_errors("Error instantiating study"):
            result = self.cohorting.operation(
                "$instantiate-study", resource_type="ResearchStudy", input=parameters
            )
            instance_url = next(
                (
                    p.get("valueCanonical")
                    for p in result.get("parameter") or []
                    if p.get("name") == "studyInstanceUrl"
                ),
                None,
            )
            if not instance_url:
                logger.warning("$instantiate-study returned no studyInstanceUrl for %s", study_url)
                return None
            bundle = self.fhir.search("ResearchStudy", {"url": instance_url})
        instances = resources_from_bundle(bundle, "ResearchStudy")
        if not instances:
            logger.warning("Study instance %s not found", instance_url)
            return None
        return instances[0]

    # -- editing ----------------------------------------------------------------

    def update_study(self, study_id: str, update: StudyUpdate) -> dict[str, Any]:
        provided = update.model_fields_set
        with wrap_errors("Failed to update study"):
            study = self.fhir.read("ResearchStudy", study_id)
            if "nctId" in provided:
                update_identifier(study, update.nctId)
            if "localContact" in provided:
                update_associated_party(study, "general-contact", update.localContact)
            if "studySponsorContact" in provided:
                update_associated_party(study, "sponsor", update.studySponsorContact)
            if "studyDesign" in provided:
                update_study_design(study, update.studyDesign)
            for field in ("name", "title", "status", "description", "version"):
                new_value = getattr(update, field)
                if new_value is not None:
                    study[field] = new_value
            return self.fhir.update("ResearchStudy", study_id, study)

    def add_evidence_variable_to_study(
        self, study_id: str, evidence_variable_id: str, kind: EvidenceVariableKind
    ) -> dict[str, Any]:
        """Inclusion criteria go to recruitment.eligibility, study variables to the datamart extension."""
        reference = {"reference": f"EvidenceVariable/{evidence_variable_id}"}
        with wrap_errors("Failed to add evidence variable to study"):
            study = self.fhir.read("ResearchStudy", study_id)
            if kind == "inclusion":
                study.setdefault("recruitment", {})["eligibility"] = reference
            else:
                extensions = study.setdefault("extension", [])
                datamart = next(
                    (e for e in extensions if e.get("url") == DATAMART_EXTENSION), None
                )
                if datamart is None:
                    datamart = {"url": DATAMART_EXTENSION, "extension": []}
                    extensions.append(datamart)
                datamart.setdefault("extension", []).append(
                    {"url": "variable", "valueReference": reference}
                )
            return self.fhir.update("ResearchStudy", study_id, study)

    # -- datamart -----------------------------------------------------------------

    def load_list_by_id(self, list_id: str) -> dict[str, Any]:
        with wrap_errors(f"Error loading list {list_id}"):
            return self.fhir.read("List", list_id)

    def load_datamart_for_study(self, study: dict[str, Any]) -> dict[str, Any] | None:
        """The datamart List referenced by the study's evaluation extension, if any."""
        datamart = next(
            (e for e in study.get("extension") or [] if e.get("url") == DATAMART_EXTENSION),
            None,
        )
        if datamart is None:
            return None
        evaluation = next(
            (e for e in datamart.get("extension") or [] if e.get("url") == "evaluation"),
            None,
        )
        reference = ((evaluation or {}).get("valueReference") or {}).get("reference")
        if not reference:
            return None
        list_id = reference.split("/")[1] if "/" in reference else reference
        return self.load_list_by_id(list_id)

    def load_datamart_rows(
        self, list_id: str, variable_expressions: list[str]
    ) -> list[dict[str, str]]:
        """One row per Parameters in the datamart list; missing variables read ``N/A``."""
        with wrap_errors("Error loading datamart rows"):
            bundle = self.fhir.search("Parameters", {"_has:List:item:_id": list_id})
        rows = []
        for resource in resources_from_bundle(bundle, "Parameters"):
            row = {expression: "N/A" for expression in variable_expressions}
            for param in resource.get("parameter") or []:
                if param.get("name") != "Patient":
                    row[param.get("name", "")] = get_parameter_value(param)
            rows.append(row)
        return rows

    # -- engine operations ----------------------------------------------------------

    def _execute_operation(
        self, study_id: str, operation: str, client: FhirClient, export: bool = False
    ) -> dict[str, Any]:
        study = self.load_study(study_id)
        study_url = study.get("url") or ""
        parameters = (
            create_parameters_for_export_datamart(study_url, self.config)
            if export
            else create_parameters(study_url, self.config)
        )
        logger.info("Running %s for study %s", operation, study_id)
        with wrap_errors(f"Error running {operation} for study {study_id}"):
            return client.operation(operation, resource_type="ResearchStudy", input=parameters)

    def execute_cohorting(self, study_id: str) -> dict[str, Any]:
        """Group of the patients eligible for the study."""
        return self._execute_operation(study_id, "$cohorting", self.cohorting)

    def execute_generate_datamart(self, study_id: str) -> dict[str, Any]:
        """List of Parameters, one per patient, with the study variables."""
        return self._execute_operation(study_id, "$generate-datamart", self.datamart)

    def generate_cohort_and_datamart(self, study_id: str) -> dict[str, dict[str, Any]]:
        try:
            cohorting_result = self.execute_cohorting(study_id)
            datamart_result = self.execute_generate_datamart(study_id)
        except ServiceError as exc:
            raise ServiceError(f"Error while generating cohort and datamart: {exc}") from exc
        return {"cohortingResult": cohorting_result, "datamartResult": datamart_result}

    def execute_export_datamart(self, study_id: str) -> dict[str, Any]:
        return self._execute_operation(study_id, "$export-datamart", self.datamart, export=True)

    def export_datamart_csv(self, study_id: str) -> tuple[str, bytes]:
        """(file name, CSV bytes) of the exported datamart."""
        response = self.execute_export_datamart(study_id)
        return datamart_filename(study_id), decode_datamart_csv(response)
