"""
HL7v2 to FHIR Transform

Maps the segments of an ADT/ORU message to FHIR R4 resources:
- PID → Patient
- PV1 (+ DG1) → Encounter
- OBX → Observation (one per segment)
- first OBR → DiagnosticReport
- DG1 → Condition (one per segment)

Every function accepts either the raw message text or segments already
produced by ``parse_message``. Missing segments mean "nothing to extract"
and yield None or an empty list.
"""
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger
from fhir.resources.R4B.bundle import Bundle
from fhir.resources.R4B.condition import Condition
from fhir.resources.R4B.diagnosticreport import DiagnosticReport
from fhir.resources.R4B.encounter import Encounter
from fhir.resources.R4B.observation import Observation
from fhir.resources.R4B.patient import Patient

from plumcare.config import settings
from plumcare.fhir import codesystems as cs
from plumcare.fhir.bundler import FHIRBundler
from plumcare.fhir.common import (
    EhrSource,
    category,
    codeable,
    coding,
    compact,
    fhir_datetime,
    generate_id,
    identifier,
    patient_ref,
    quantity,
    source_meta,
)
from plumcare.hl7v2.tokenizer import (
    Segment,
    component,
    field,
    find_segment,
    find_segments,
    parse_hl7_date,
    parse_hl7_datetime,
    parse_message,
    subcomponent,
)

HL7Input = Union[str, Sequence[Segment]]

# PID fields
PID_IDENTIFIER_LIST = 3
PID_NAME = 5
PID_BIRTH_DATE = 7
PID_SEX = 8
PID_RACE = 10
PID_ADDRESS = 11
PID_HOME_PHONE = 13
PID_SSN = 19
PID_ETHNIC_GROUP = 22

# PV1 fields
PV1_PATIENT_CLASS = 2
PV1_LOCATION = 3
PV1_ATTENDING_DOCTOR = 7
PV1_VISIT_NUMBER = 19
PV1_ADMIT_TIME = 44
PV1_DISCHARGE_TIME = 45
PV1_VISIT_INDICATOR = 51

# OBR fields
OBR_PLACER_ORDER = 2
OBR_FILLER_ORDER = 3
OBR_SERVICE_ID = 4
OBR_OBSERVATION_TIME = 7
OBR_RESULT_STATUS = 25

# OBX fields
OBX_VALUE_TYPE = 2
OBX_IDENTIFIER = 3
OBX_VALUE = 5
OBX_UNITS = 6
OBX_REFERENCE_RANGE = 7
OBX_ABNORMAL_FLAGS = 8
OBX_RESULT_STATUS = 11
OBX_OBSERVATION_TIME = 14

# DG1 fields
DG1_DIAGNOSIS_CODE = 3
DG1_DIAGNOSIS_TIME = 5
DG1_DIAGNOSIS_TYPE = 6

PLACER_ORDER_SYSTEM = "http://plumcare.io/placer-order"
FILLER_ORDER_SYSTEM = "http://plumcare.io/filler-order"
VISIT_NUMBER_SYSTEM = "http://plumcare.io/visit-number"

GENDERS = {"M": "male", "F": "female", "O": "other"}

PATIENT_CLASSES = {"I": "IMP", "O": "AMB", "E": "EMER", "P": "PRENC"}

VISIT_INDICATORS = {"V": "finished", "A": "in-progress"}

INTERPRETATIONS = {
    "N": "Normal",
    "L": "Low",
    "H": "High",
    "LL": "Critical low",
    "HH": "Critical high",
    "A": "Abnormal",
}

# HL7 table 0396 coding-system names
CODING_SYSTEMS = {
    "LN": cs.LOINC,
    "LOINC": cs.LOINC,
    "SCT": cs.SNOMED,
    "SNM": cs.SNOMED,
    "I10": cs.ICD10CM,
    "ICD10": cs.ICD10CM,
    "RXNORM": cs.RXNORM,
}


def map_gender(sex: str) -> str:
    return GENDERS.get(sex.upper(), "unknown")


def map_encounter_class(patient_class: str) -> Dict[str, str]:
    return cs.encounter_class(PATIENT_CLASSES.get(patient_class.upper(), "AMB"))


def map_encounter_status(visit_indicator: str) -> str:
    return VISIT_INDICATORS.get(visit_indicator.upper(), "in-progress")


def map_interpretation(flag: str) -> Dict[str, str]:
    code = flag.upper() if flag.upper() in INTERPRETATIONS else "N"
    return {"system": cs.V3_INTERPRETATION, "code": code, "display": INTERPRETATIONS[code]}


def coding_system(name: str) -> Optional[str]:
    """URI for an HL7v2 coding-system name; unknown names become OID URNs."""
    if not name:
        return None
    return CODING_SYSTEMS.get(name.upper(), f"urn:oid:{name}")


def _segments(message: HL7Input) -> Sequence[Segment]:
    if isinstance(message, str):
        return parse_message(message)
    if isinstance(message, (list, tuple)) and all(isinstance(s, Segment) for s in message):
        return message
    # Let parse_message raise the contract violation
    return parse_message(message)


def _native_patient_id(segments: Sequence[Segment]) -> str:
    return component(field(find_segment(segments, "PID"), PID_IDENTIFIER_LIST), 0)


def _fhir_timestamp(segment: Segment, index: int) -> Optional[str]:
    # HL7 times carry no usable zone once decoded; they are emitted as UTC
    return fhir_datetime(parse_hl7_datetime(field(segment, index)))


def _assigning_authority(id_field: str) -> str:
    """PID-3.4, preferring the universal id of an ``name&oid&ISO`` HD value."""
    authority = component(id_field, 3)
    return subcomponent(authority, 1) or subcomponent(authority, 0)


def _race_extension(url: str, value: str) -> Optional[Dict[str, Any]]:
    code = component(value, 0)
    if not code:
        return None
    return {
        "url": url,
        "extension": [{
            "url": "ombCategory",
            "valueCoding": coding(cs.OMB_RACE_ETHNICITY, code, component(value, 1)),
        }],
    }


def parse_hl7v2_to_patient(message: HL7Input) -> Optional[Patient]:
    """
    Convert the PID segment to a FHIR Patient.

    Args:
        message: Raw HL7v2 text or tokenized segments

    Returns:
        FHIR Patient, or None if the message has no PID segment
    """
    segments = _segments(message)
    pid = find_segment(segments, "PID")
    if pid is None:
        logger.debug("HL7v2 message has no PID segment; no Patient extracted")
        return None

    id_field = field(pid, PID_IDENTIFIER_LIST)
    authority = _assigning_authority(id_field) or settings.default_assigning_authority_oid
    name_field = field(pid, PID_NAME)
    address_field = field(pid, PID_ADDRESS)

    patient_dict: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": generate_id(),
        "meta": source_meta(EhrSource.HL7V2),
        "gender": map_gender(field(pid, PID_SEX)),
    }

    identifiers = [
        identifier(f"urn:oid:{authority}", component(id_field, 0), "MR", "Medical Record Number"),
        identifier(cs.US_SSN, field(pid, PID_SSN)),
    ]
    identifiers = [i for i in identifiers if i]
    if identifiers:
        patient_dict["identifier"] = identifiers

    name = compact({
        "use": "official",
        "family": component(name_field, 0),
        "given": [g for g in (component(name_field, 1), component(name_field, 2)) if g],
    })
    if len(name) > 1:
        patient_dict["name"] = [name]

    birth_date = parse_hl7_date(field(pid, PID_BIRTH_DATE))
    if birth_date:
        patient_dict["birthDate"] = birth_date

    phone = component(field(pid, PID_HOME_PHONE), 0)
    if phone:
        patient_dict["telecom"] = [{"system": "phone", "value": phone, "use": "home"}]

    street = component(address_field, 0)
    address = compact({
        "line": [street] if street else None,
        "city": component(address_field, 2),
        "state": component(address_field, 3),
        "postalCode": component(address_field, 4),
        "country": component(address_field, 5),
    })
    if address:
        patient_dict["address"] = [{"use": "home", **address}]

    extensions = [
        _race_extension(cs.US_CORE_RACE, field(pid, PID_RACE)),
        _race_extension(cs.US_CORE_ETHNICITY, field(pid, PID_ETHNIC_GROUP)),
    ]
    extensions = [e for e in extensions if e]
    if extensions:
        patient_dict["extension"] = extensions

    return Patient(**patient_dict)


def parse_hl7v2_to_encounter(message: HL7Input, patient_reference: str = None) -> Optional[Encounter]:
    """
    Convert the PV1 segment (plus any DG1 segments) to a FHIR Encounter.

    Args:
        message: Raw HL7v2 text or tokenized segments
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Encounter, or None if the message has no PV1 segment
    """
    segments = _segments(message)
    pv1 = find_segment(segments, "PV1")
    if pv1 is None:
        logger.debug("HL7v2 message has no PV1 segment; no Encounter extracted")
        return None

    encounter_dict: Dict[str, Any] = {
        "resourceType": "Encounter",
        "id": generate_id(),
        "meta": source_meta(EhrSource.HL7V2),
        "status": map_encounter_status(field(pv1, PV1_VISIT_INDICATOR)),
        "class": map_encounter_class(field(pv1, PV1_PATIENT_CLASS)),
        "subject": patient_ref(patient_reference, _native_patient_id(segments)),
    }

    visit_number = identifier(VISIT_NUMBER_SYSTEM, component(field(pv1, PV1_VISIT_NUMBER), 0))
    if visit_number:
        encounter_dict["identifier"] = [visit_number]

    period = compact({
        "start": _fhir_timestamp(pv1, PV1_ADMIT_TIME),
        "end": _fhir_timestamp(pv1, PV1_DISCHARGE_TIME),
    })
    if period:
        encounter_dict["period"] = period

    # PV1-3: point of care ^ room ^ bed ^ facility
    location_field = field(pv1, PV1_LOCATION)
    facility_name = component(location_field, 0)
    facility_id = component(location_field, 3)
    if facility_name:
        facility: Dict[str, Any] = {"display": facility_name}
        if facility_id:
            facility["identifier"] = {"value": facility_id}
        encounter_dict["serviceProvider"] = facility
        encounter_dict["location"] = [{"location": {"display": facility_name}}]

    # PV1-7: id ^ family ^ given ^ ... ^ NPI (component 9)
    provider_field = field(pv1, PV1_ATTENDING_DOCTOR)
    provider_id = component(provider_field, 0)
    provider_last = component(provider_field, 1)
    if provider_id or provider_last:
        individual: Dict[str, Any] = {}
        display = f"{component(provider_field, 2)} {provider_last}".strip()
        if display:
            individual["display"] = display
        npi = component(provider_field, 8)
        if npi:
            individual["identifier"] = {"system": cs.US_NPI, "value": npi}
        elif provider_id:
            individual["identifier"] = {"value": provider_id}
        encounter_dict["participant"] = [{
            "type": [{"coding": [coding(cs.V3_PARTICIPATION_TYPE, "ATND", "attender")]}],
            "individual": individual,
        }]

    diagnoses = []
    for dg1 in find_segments(segments, "DG1"):
        code_field = field(dg1, DG1_DIAGNOSIS_CODE)
        display = component(code_field, 1) or component(code_field, 0)
        if not display:
            continue
        diagnoses.append({
            "condition": {"display": display},
            "use": {"coding": [coding(cs.DIAGNOSIS_ROLE, "AD", "Admission diagnosis")]},
        })
    if diagnoses:
        encounter_dict["diagnosis"] = diagnoses

    return Encounter(**encounter_dict)


def _reference_range(value: str, units: str) -> Dict[str, Any]:
    parts = value.split("-")
    if len(parts) == 2:
        low = quantity(parts[0], units)
        high = quantity(parts[1], units)
        if low and high:
            return {"low": low, "high": high}
    return {"text": value}


def _parse_observation(obx: Segment, subject: Dict[str, str]) -> Observation:
    value_type = field(obx, OBX_VALUE_TYPE)
    id_field = field(obx, OBX_IDENTIFIER)
    code = component(id_field, 0)
    display = component(id_field, 1)
    value = field(obx, OBX_VALUE)
    units = component(field(obx, OBX_UNITS), 0)
    reference_range = field(obx, OBX_REFERENCE_RANGE)
    abnormal_flag = field(obx, OBX_ABNORMAL_FLAGS)

    observation_dict: Dict[str, Any] = {
        "resourceType": "Observation",
        "id": generate_id(),
        "meta": source_meta(EhrSource.HL7V2),
        "status": "final" if field(obx, OBX_RESULT_STATUS) == "F" else "preliminary",
        "code": codeable(coding_system(component(id_field, 2)), code, display) or {"text": "Unspecified observation"},
        "subject": subject,
    }

    effective = _fhir_timestamp(obx, OBX_OBSERVATION_TIME)
    if effective:
        observation_dict["effectiveDateTime"] = effective

    if value_type == "NM":
        if value:
            # Non-numeric NM values are dropped rather than sent as strings
            value_quantity = quantity(value, units, units)
            if value_quantity:
                observation_dict["valueQuantity"] = value_quantity
    elif value:
        observation_dict["valueString"] = value

    if reference_range:
        observation_dict["referenceRange"] = [_reference_range(reference_range, units)]

    if abnormal_flag:
        observation_dict["interpretation"] = [{"coding": [map_interpretation(abnormal_flag)]}]

    return Observation(**observation_dict)


def parse_hl7v2_to_observations(message: HL7Input, patient_reference: str = None) -> List[Observation]:
    """
    Convert every OBX segment to a FHIR Observation.

    Args:
        message: Raw HL7v2 text or tokenized segments
        patient_reference: Reference to Patient resource

    Returns:
        Observations in segment order (empty if there are no OBX segments)
    """
    segments = _segments(message)
    subject = patient_ref(patient_reference, _native_patient_id(segments))
    return [_parse_observation(obx, subject) for obx in find_segments(segments, "OBX")]


def parse_hl7v2_to_diagnostic_report(
    message: HL7Input,
    patient_reference: str = None,
    observations: Optional[List[Observation]] = None,
) -> Optional[DiagnosticReport]:
    """
    Convert the first OBR segment to a FHIR DiagnosticReport.

    Args:
        message: Raw HL7v2 text or tokenized segments
        patient_reference: Reference to Patient resource
        observations: Observations already extracted from this message; if
            omitted they are extracted here. Pass them to make the report's
            result references match the Observations you keep.

    Returns:
        FHIR DiagnosticReport, or None if the message has no OBR segment
    """
    segments = _segments(message)
    obr = find_segment(segments, "OBR")
    if obr is None:
        return None

    if observations is None:
        observations = parse_hl7v2_to_observations(segments, patient_reference)

    service_field = field(obr, OBR_SERVICE_ID)
    service_name = component(service_field, 1)
    report_dict: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "id": generate_id(),
        "meta": source_meta(EhrSource.HL7V2),
        "status": "final" if field(obr, OBR_RESULT_STATUS) == "F" else "preliminary",
        "code": codeable(cs.LOINC, component(service_field, 0), service_name) or {"text": "Unspecified report"},
        "subject": patient_ref(patient_reference, _native_patient_id(segments)),
    }

    identifiers = [
        identifier(PLACER_ORDER_SYSTEM, component(field(obr, OBR_PLACER_ORDER), 0)),
        identifier(FILLER_ORDER_SYSTEM, component(field(obr, OBR_FILLER_ORDER), 0)),
    ]
    identifiers = [i for i in identifiers if i]
    if identifiers:
        report_dict["identifier"] = identifiers

    effective = _fhir_timestamp(obr, OBR_OBSERVATION_TIME)
    if effective:
        report_dict["effectiveDateTime"] = effective

    if observations:
        report_dict["result"] = [
            compact({"reference": f"Observation/{obs.id}", "display": obs.code.text})
            for obs in observations
        ]

    return DiagnosticReport(**report_dict)


def parse_hl7v2_to_conditions(message: HL7Input, patient_reference: str = None) -> List[Condition]:
    """
    Convert every DG1 segment to a FHIR Condition.

    HL7v2 ADT does not carry resolution state, so every Condition is
    active/confirmed. DG1-6 ``A`` (admitting) marks an encounter diagnosis;
    anything else is a problem-list item.

    Args:
        message: Raw HL7v2 text or tokenized segments
        patient_reference: Reference to Patient resource

    Returns:
        Conditions in segment order
    """
    segments = _segments(message)
    subject = patient_ref(patient_reference, _native_patient_id(segments))

    conditions = []
    for dg1 in find_segments(segments, "DG1"):
        code_field = field(dg1, DG1_DIAGNOSIS_CODE)
        encounter_diagnosis = field(dg1, DG1_DIAGNOSIS_TYPE) == "A"

        condition_dict: Dict[str, Any] = {
            "resourceType": "Condition",
            "id": generate_id(),
            "meta": source_meta(EhrSource.HL7V2),
            "clinicalStatus": {"coding": [coding(cs.CONDITION_CLINICAL, "active", "Active")]},
            "verificationStatus": {"coding": [coding(cs.CONDITION_VER_STATUS, "confirmed", "Confirmed")]},
            "category": category(
                cs.CONDITION_CATEGORY,
                "encounter-diagnosis" if encounter_diagnosis else "problem-list-item",
                "Encounter Diagnosis" if encounter_diagnosis else "Problem List Item",
            ),
            "subject": subject,
        }

        code = codeable(coding_system(component(code_field, 2)), component(code_field, 0), component(code_field, 1))
        if code:
            condition_dict["code"] = code

        onset = _fhir_timestamp(dg1, DG1_DIAGNOSIS_TIME)
        if onset:
            condition_dict["onsetDateTime"] = onset

        conditions.append(Condition(**condition_dict))

    return conditions


def parse_hl7v2_to_fhir(message: HL7Input) -> Bundle:
    """
    Convert a complete HL7v2 message to a FHIR transaction Bundle.

    Entry order: Patient, Encounter, Conditions, Observations,
    DiagnosticReport. Resource kinds the message does not carry are
    skipped.

    Args:
        message: Raw HL7v2 text or tokenized segments

    Returns:
        Transaction Bundle (possibly empty)
    """
    segments = _segments(message)
    bundler = FHIRBundler()

    patient = parse_hl7v2_to_patient(segments)
    bundler.add_resource(patient)
    patient_reference = bundler.patient_reference

    bundler.add_resource(parse_hl7v2_to_encounter(segments, patient_reference))
    bundler.add_resources(parse_hl7v2_to_conditions(segments, patient_reference))

    observations = parse_hl7v2_to_observations(segments, patient_reference)
    bundler.add_resources(observations)
    bundler.add_resource(parse_hl7v2_to_diagnostic_report(segments, patient_reference, observations))

    logger.debug("HL7v2 message produced {}", bundler.resource_counts())
    return bundler.build()
