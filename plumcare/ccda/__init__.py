"""
C-CDA parsing and C-CDA → FHIR transforms.
"""
from .tree import CdaElement, find_section, parse_cda
from .transform import (
    parse_cda_datetime,
    parse_ccda_to_allergies,
    parse_ccda_to_conditions,
    parse_ccda_to_fhir,
    parse_ccda_to_medications,
    parse_ccda_to_observations,
    parse_ccda_to_patient,
)

__all__ = [
    "CdaElement",
    "find_section",
    "parse_cda",
    "parse_cda_datetime",
    "parse_ccda_to_allergies",
    "parse_ccda_to_conditions",
    "parse_ccda_to_fhir",
    "parse_ccda_to_medications",
    "parse_ccda_to_observations",
    "parse_ccda_to_patient",
]
