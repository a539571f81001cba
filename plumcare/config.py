from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Normalizer configuration with environment variable support"""

    # Provenance
    ehr_source_system: str = "http://plumcare.io/ehr-source"

    # HL7v2
    default_assigning_authority_oid: str = "2.16.840.1.113883.4.3"  # used when PID-3.4 is empty

    # Vendor defaults
    default_country: str = "US"

    # Bundles
    bundle_type: str = "transaction"

    # Logging
    log_level: str = "WARNING"
    log_json: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "PLUMCARE_"
        extra = "ignore"


settings = Settings()
