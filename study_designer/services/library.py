"""CQL Library lookups on the knowledge server."""

from __future__ import annotations

import logging

from study_designer.errors import wrap_errors
from study_designer.fhir.client import FhirClient
from study_designer.fhir.resources import LibraryModel

logger = logging.getLogger(__name__)


class LibraryService:
    def __init__(self, knowledge: FhirClient):
        self.knowledge = knowledge

    def load_libraries(self) -> list[LibraryModel]:
        with wrap_errors("Error loading libraries"):
            bundle = self.knowledge.search("Library", {"_count": 10000})
        libraries = LibraryModel.from_bundle(bundle)
        logger.info("Loaded %d libraries", len(libraries))
        return libraries

    def load_library(self, library_id: str) -> LibraryModel:
        with wrap_errors(f"Error loading library with ID {library_id}"):
            return LibraryModel(self.knowledge.read("Library", library_id))
