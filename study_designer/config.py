import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # FHIR servers
    FHIR_URL: str = os.getenv("FHIR_URL", "http://localhost:8080/fhir")
    KNOWLEDGE_URL: str = os.getenv("KNOWLEDGE_URL", "http://localhost:8080/fhir")
    TERMINOLOGY_URL: str = os.getenv("TERMINOLOGY_URL", "http://localhost:8080/fhir")
    COHORTING_URL: str = os.getenv("COHORTING_URL", "http://localhost:8080/fhir")
    DATAMART_URL: str = os.getenv("DATAMART_URL", "http://localhost:8080/fhir")
    CQL_URL: str = os.getenv("CQL_URL", "")
    MAPPING_URL: str = os.getenv("MAPPING_URL", "")
    FHIR_TIMEOUT: float = float(os.getenv("FHIR_TIMEOUT", "30"))

    # ValueSets
    VALUESET_RESEARCHSTUDYPHASES_URL: str = os.getenv(
        "VALUESET_RESEARCHSTUDYPHASES_URL",
        "https://www.isis.com/ValueSet/VS-ResearchStudyPhase",
    )
    VALUESET_RESEARCHSTUDYSTUDYDESIGN_URL: str = os.getenv(
        "VALUESET_RESEARCHSTUDYSTUDYDESIGN_URL",
        "http://hl7.org/fhir/ValueSet/study-design",
    )
    VALUESET_INTEGER_COMPARATORS_URL: str = os.getenv(
        "VALUESET_INTEGER_COMPARATORS_URL",
        "https://www.centreantoinelacassagne.org/ValueSet/VS-IntegerComparators",
    )
    VALUESET_DATE_COMPARATORS_URL: str = os.getenv(
        "VALUESET_DATE_COMPARATORS_URL",
        "https://www.centreantoinelacassagne.org/ValueSet/VS-DateComparators",
    )

    # Branding
    DISPLAY_CLIENT_LOGO: bool = os.getenv("DISPLAY_CLIENT_LOGO", "false").lower() == "true"
    CLIENT_LOGO: str = os.getenv("CLIENT_LOGO", "")
    CLIENT_LOGO_LINK: str = os.getenv("CLIENT_LOGO_LINK", "")

    # Authentication is stubbed; these are only surfaced, never enforced.
    KEYCLOAK_URL: str = os.getenv("KEYCLOAK_URL", "")
    KEYCLOAK_REALM: str = os.getenv("KEYCLOAK_REALM", "")
    KEYCLOAK_CLIENT_ID: str = os.getenv("KEYCLOAK_CLIENT_ID", "")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./study_designer.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
