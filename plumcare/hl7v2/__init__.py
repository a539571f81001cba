"""
HL7v2 parsing and HL7v2 → FHIR transforms.
"""
from .tokenizer import (
    Segment,
    component,
    field,
    find_segment,
    find_segments,
    parse_hl7_datetime,
    parse_message,
    repetitions,
    split_messages,
)
from .transform import (
    parse_hl7v2_to_conditions,
    parse_hl7v2_to_diagnostic_report,
    parse_hl7v2_to_encounter,
    parse_hl7v2_to_fhir,
    parse_hl7v2_to_observations,
    parse_hl7v2_to_patient,
)

__all__ = [
    "Segment",
    "component",
    "field",
    "find_segment",
    "find_segments",
    "parse_hl7_datetime",
    "parse_message",
    "repetitions",
    "split_messages",
    "parse_hl7v2_to_conditions",
    "parse_hl7v2_to_diagnostic_report",
    "parse_hl7v2_to_encounter",
    "parse_hl7v2_to_fhir",
    "parse_hl7v2_to_observations",
    "parse_hl7v2_to_patient",
]
