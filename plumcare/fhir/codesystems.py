"""
Fixed reference vocabularies.

These URIs, OIDs and codes must match what downstream FHIR servers and
other PlumCare services expect, character for character.
"""
from typing import Dict

# Code system URIs
LOINC = "http://loinc.org"
SNOMED = "http://snomed.info/sct"
RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"
ICD10CM = "http://hl7.org/fhir/sid/icd-10-cm"
ICD9CM = "http://hl7.org/fhir/sid/icd-9-cm"
NDC = "http://hl7.org/fhir/sid/ndc"
UCUM = "http://unitsofmeasure.org"
US_SSN = "http://hl7.org/fhir/sid/us-ssn"
US_NPI = "http://hl7.org/fhir/sid/us-npi"
BCP47 = "urn:ietf:bcp:47"

# HL7 terminology
V3_ACT_CODE = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
V3_PARTICIPATION_TYPE = "http://terminology.hl7.org/CodeSystem/v3-ParticipationType"
V3_INTERPRETATION = "http://terminology.hl7.org/CodeSystem/v3-ObservationInterpretation"
V3_MARITAL_STATUS = "http://terminology.hl7.org/CodeSystem/v3-MaritalStatus"
V2_IDENTIFIER_TYPE = "http://terminology.hl7.org/CodeSystem/v2-0203"
V2_CONTACT_ROLE = "http://terminology.hl7.org/CodeSystem/v2-0131"
V2_DIAGNOSTIC_SERVICE = "http://terminology.hl7.org/CodeSystem/v2-0074"
OBSERVATION_CATEGORY = "http://terminology.hl7.org/CodeSystem/observation-category"
CONDITION_CATEGORY = "http://terminology.hl7.org/CodeSystem/condition-category"
CONDITION_CLINICAL = "http://terminology.hl7.org/CodeSystem/condition-clinical"
CONDITION_VER_STATUS = "http://terminology.hl7.org/CodeSystem/condition-ver-status"
ALLERGY_CLINICAL = "http://terminology.hl7.org/CodeSystem/allergyintolerance-clinical"
ALLERGY_VERIFICATION = "http://terminology.hl7.org/CodeSystem/allergyintolerance-verification"
DIAGNOSIS_ROLE = "http://terminology.hl7.org/CodeSystem/diagnosis-role"
SERVICE_TYPE = "http://terminology.hl7.org/CodeSystem/service-type"

# US Core
US_CORE_RACE = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-race"
US_CORE_ETHNICITY = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-ethnicity"
OMB_RACE_ETHNICITY = "urn:oid:2.16.840.1.113883.6.238"

# C-CDA section LOINC codes
SECTION_PROBLEMS = "11450-4"
SECTION_ALLERGIES = "48765-2"
SECTION_MEDICATIONS = "10160-0"
SECTION_RESULTS = "30954-2"
SECTION_VITAL_SIGNS = "8716-3"
CCD_DOCUMENT = "34133-9"

# Identifier OIDs used in CDA patientRole/id@root
OID_US_SSN = "2.16.840.1.113883.4.1"
OID_MRN = "2.16.840.1.113883.4.3"

OID_TO_URI: Dict[str, str] = {
    "2.16.840.1.113883.6.96": SNOMED,
    "2.16.840.1.113883.6.1": LOINC,
    "2.16.840.1.113883.6.88": RXNORM,
    "2.16.840.1.113883.6.90": ICD10CM,
}

# HL7 v3 ActCode encounter classes
ENCOUNTER_CLASSES: Dict[str, str] = {
    "AMB": "ambulatory",
    "VR": "virtual",
    "IMP": "inpatient encounter",
    "EMER": "emergency",
    "HH": "home health",
    "PRENC": "pre-admission",
}


def oid_to_uri(oid: str) -> str:
    """Map a code-system OID to its canonical URI, else an OID URN."""
    return OID_TO_URI.get(oid, f"urn:oid:{oid}")


def encounter_class(code: str) -> Dict[str, str]:
    """Build the Encounter.class Coding for an ActCode."""
    return {"system": V3_ACT_CODE, "code": code, "display": ENCOUNTER_CLASSES[code]}
