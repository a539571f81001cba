"""
C-CDA to FHIR Transform

Walks a CDA document tree and maps:
- recordTarget/patientRole → Patient
- Problems section (11450-4) → Condition
- Allergies section (48765-2) → AllergyIntolerance
- Medications section (10160-0) → MedicationStatement
- Results (30954-2) and Vital Signs (8716-3) sections → Observation

A section that is missing, or present but without entries, gives an empty
list for its resource type.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from fhir.resources.R4B.allergyintolerance import AllergyIntolerance
from fhir.resources.R4B.bundle import Bundle
from fhir.resources.R4B.condition import Condition
from fhir.resources.R4B.medicationstatement import MedicationStatement
from fhir.resources.R4B.observation import Observation
from fhir.resources.R4B.patient import Patient

from plumcare.ccda.tree import (
    CdaElement,
    attr,
    child,
    children,
    find_all,
    find_first,
    find_section,
    parse_cda,
    path,
    text,
)
from plumcare.errors import CallerContractViolation
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
    observation_category,
    patient_ref,
    quantity,
    source_meta,
)

CdaInput = Union[str, CdaElement]

GENDERS = {"M": "male", "F": "female", "UN": "other"}

ADDRESS_USES = {"HP": "home", "H": "home", "WP": "work", "TMP": "temp"}

TELECOM_USES = {"HP": "home", "H": "home", "WP": "work", "MC": "mobile"}

CONCERN_STATUSES = {
    "active": "active",
    "completed": "resolved",
    "suspended": "inactive",
    "aborted": "inactive",
}

MEDICATION_STATUSES = {
    "active": "active",
    "completed": "completed",
    "aborted": "stopped",
    "suspended": "on-hold",
    "nullified": "entered-in-error",
}

OBSERVATION_STATUSES = {
    "completed": "final",
    "active": "preliminary",
    "aborted": "cancelled",
    "nullified": "entered-in-error",
}

_CDA_TIMESTAMP = re.compile(r"^(\d{8})(\d{6})?(?:\.\d+)?([+-]\d{4})?$")


def parse_cda_datetime(value: str) -> Optional[str]:
    """
    Decode a CDA TS value (``YYYYMMDD[HHMMSS][+/-ZZZZ]``).

    Unlike HL7v2 timestamps the UTC offset is kept, as ``+HH:MM``.

    Returns:
        FHIR date or dateTime string, or None if the value is not a timestamp
    """
    match = _CDA_TIMESTAMP.match(value or "")
    if not match:
        return None
    day, clock, offset = match.groups()
    try:
        if clock:
            moment = datetime.strptime(day + clock, "%Y%m%d%H%M%S")
        else:
            moment = datetime.strptime(day, "%Y%m%d")
    except ValueError:
        logger.warning("Ignoring malformed CDA timestamp {!r}", value)
        return None
    if not clock:
        return moment.strftime("%Y-%m-%d")
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if offset:
        iso += f"{offset[:3]}:{offset[3:]}"
    return iso


def _document(document: CdaInput) -> Optional[CdaElement]:
    if isinstance(document, CdaElement):
        return document
    if isinstance(document, str):
        return parse_cda(document)
    raise CallerContractViolation("CDA document must be a string", expected="str", received=document)


def _code_concept(code_element: Optional[CdaElement]) -> Dict[str, Any]:
    """CodeableConcept for a CD/CE element (code, codeSystem, displayName)."""
    system = attr(code_element, "codeSystem")
    return codeable(
        cs.oid_to_uri(system) if system else None,
        attr(code_element, "code"),
        attr(code_element, "displayName"),
        text(child(code_element, "originalText")) or None,
    )


def _effective_low(element: Optional[CdaElement]) -> Optional[str]:
    effective = child(element, "effectiveTime")
    return fhir_datetime(parse_cda_datetime(attr(child(effective, "low"), "value") or attr(effective, "value")))


def _section_entries(root: Optional[CdaElement], loinc_code: str) -> List[CdaElement]:
    section = find_section(root, loinc_code)
    if section is None:
        logger.debug("CDA document has no section {}", loinc_code)
        return []
    return children(section, "entry")


def _patient_role(root: Optional[CdaElement]) -> Optional[CdaElement]:
    return path(root, "recordTarget", "patientRole")


def _native_patient_id(root: Optional[CdaElement]) -> str:
    for id_element in children(_patient_role(root), "id"):
        if attr(id_element, "root") == cs.OID_MRN:
            return attr(id_element, "extension")
    return ""


def _race_extension(url: str, code_element: Optional[CdaElement]) -> Optional[Dict[str, Any]]:
    code = attr(code_element, "code")
    if not code:
        return None
    return {
        "url": url,
        "extension": [{
            "url": "ombCategory",
            "valueCoding": coding(cs.OMB_RACE_ETHNICITY, code, attr(code_element, "displayName")),
        }],
    }


def parse_ccda_to_patient(document: CdaInput) -> Optional[Patient]:
    """
    Convert recordTarget/patientRole to a FHIR Patient.

    Args:
        document: CDA XML text or a parsed tree

    Returns:
        FHIR Patient, or None if the document has no patientRole
    """
    root = _document(document)
    role = _patient_role(root)
    if role is None:
        logger.warning("CDA document has no recordTarget/patientRole")
        return None
    person = child(role, "patient")

    patient_dict: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": generate_id(),
        "meta": source_meta(EhrSource.CCDA),
        "gender": GENDERS.get(attr(child(person, "administrativeGenderCode"), "code").upper(), "unknown"),
    }

    identifiers = []
    for id_element in children(role, "id"):
        oid = attr(id_element, "root")
        value = attr(id_element, "extension")
        if oid == cs.OID_US_SSN:
            identifiers.append(identifier(cs.US_SSN, value))
        elif oid == cs.OID_MRN:
            identifiers.append(identifier(f"urn:oid:{oid}", value, "MR", "Medical Record Number"))
        elif oid:
            identifiers.append(identifier(f"urn:oid:{oid}", value))
    identifiers = [i for i in identifiers if i]
    if identifiers:
        patient_dict["identifier"] = identifiers

    names = []
    for name_element in children(person, "name"):
        name = compact({
            "family": text(child(name_element, "family")),
            "given": [text(g) for g in children(name_element, "given") if text(g)],
        })
        if name:
            names.append({"use": "official", **name})
    if names:
        patient_dict["name"] = names

    birth_date = parse_cda_datetime(attr(child(person, "birthTime"), "value"))
    if birth_date:
        patient_dict["birthDate"] = birth_date[:10]

    addresses = []
    for addr_element in children(role, "addr"):
        address = compact({
            "line": [text(line) for line in children(addr_element, "streetAddressLine") if text(line)],
            "city": text(child(addr_element, "city")),
            "state": text(child(addr_element, "state")),
            "postalCode": text(child(addr_element, "postalCode")),
            "country": text(child(addr_element, "country")),
        })
        if address:
            use = ADDRESS_USES.get(attr(addr_element, "use"))
            addresses.append({"use": use, **address} if use else address)
    if addresses:
        patient_dict["address"] = addresses

    telecoms = []
    for telecom_element in children(role, "telecom"):
        value = attr(telecom_element, "value")
        if value.startswith("tel:") and value[4:]:
            telecoms.append(compact({
                "system": "phone",
                "value": value[4:],
                "use": TELECOM_USES.get(attr(telecom_element, "use")),
            }))
        elif value.startswith("mailto:") and value[7:]:
            telecoms.append({"system": "email", "value": value[7:]})
    if telecoms:
        patient_dict["telecom"] = telecoms

    extensions = [
        _race_extension(cs.US_CORE_RACE, child(person, "raceCode")),
        _race_extension(cs.US_CORE_ETHNICITY, child(person, "ethnicGroupCode")),
    ]
    extensions = [e for e in extensions if e]
    if extensions:
        patient_dict["extension"] = extensions

    communication = child(person, "languageCommunication")
    language = attr(child(communication, "languageCode"), "code")
    if language:
        patient_dict["communication"] = [{
            "language": {"coding": [coding(cs.BCP47, language)]},
            "preferred": attr(child(communication, "preferenceInd"), "value") == "true",
        }]

    return Patient(**patient_dict)


def parse_ccda_to_conditions(document: CdaInput, patient_reference: str = None) -> List[Condition]:
    """
    Convert Problems section entries to FHIR Conditions.

    Args:
        document: CDA XML text or a parsed tree
        patient_reference: Reference to Patient resource

    Returns:
        Conditions (empty if the section is absent or has no entries)
    """
    root = _document(document)
    subject = patient_ref(patient_reference, _native_patient_id(root))

    conditions = []
    for entry in _section_entries(root, cs.SECTION_PROBLEMS):
        concern = child(entry, "act")
        problem = find_first(entry, "observation")
        if problem is None:
            continue
        status = CONCERN_STATUSES.get(attr(child(concern, "statusCode"), "code"), "active")

        condition_dict: Dict[str, Any] = {
            "resourceType": "Condition",
            "id": generate_id(),
            "meta": source_meta(EhrSource.CCDA),
            "clinicalStatus": {"coding": [coding(cs.CONDITION_CLINICAL, status, status.capitalize())]},
            "verificationStatus": {"coding": [coding(cs.CONDITION_VER_STATUS, "confirmed", "Confirmed")]},
            "category": category(cs.CONDITION_CATEGORY, "problem-list-item", "Problem List Item"),
            "subject": subject,
        }

        code = _code_concept(child(problem, "value"))
        if code:
            condition_dict["code"] = code

        onset = _effective_low(problem)
        if onset:
            condition_dict["onsetDateTime"] = onset

        conditions.append(Condition(**condition_dict))

    return conditions


def parse_ccda_to_allergies(document: CdaInput, patient_reference: str = None) -> List[AllergyIntolerance]:
    """
    Convert Allergies section entries to FHIR AllergyIntolerance resources.

    The allergen comes from the observation's participant/playingEntity
    code, reactions from its MFST (manifestation) entryRelationships.

    Args:
        document: CDA XML text or a parsed tree
        patient_reference: Reference to Patient resource

    Returns:
        AllergyIntolerances (empty if the section is absent or has no entries)
    """
    root = _document(document)
    patient = patient_ref(patient_reference, _native_patient_id(root))

    allergies = []
    for entry in _section_entries(root, cs.SECTION_ALLERGIES):
        concern = child(entry, "act")
        observation = find_first(entry, "observation")
        if observation is None:
            continue
        status = "active" if attr(child(concern, "statusCode"), "code") in ("", "active") else "inactive"

        allergy_dict: Dict[str, Any] = {
            "resourceType": "AllergyIntolerance",
            "id": generate_id(),
            "meta": source_meta(EhrSource.CCDA),
            "clinicalStatus": {"coding": [coding(cs.ALLERGY_CLINICAL, status, status.capitalize())]},
            "verificationStatus": {"coding": [coding(cs.ALLERGY_VERIFICATION, "confirmed", "Confirmed")]},
            "patient": patient,
        }

        allergen = path(observation, "participant", "participantRole", "playingEntity")
        code = _code_concept(child(allergen, "code")) or compact({"text": text(child(allergen, "name"))})
        if code:
            allergy_dict["code"] = code

        onset = _effective_low(observation)
        if onset:
            allergy_dict["onsetDateTime"] = onset

        manifestations = []
        for relationship in children(observation, "entryRelationship"):
            if attr(relationship, "typeCode") != "MFST":
                continue
            reaction = _code_concept(child(child(relationship, "observation"), "value"))
            if reaction:
                manifestations.append(reaction)
        if manifestations:
            allergy_dict["reaction"] = [{"manifestation": manifestations}]

        allergies.append(AllergyIntolerance(**allergy_dict))

    return allergies


def _dosage(administration: CdaElement) -> Optional[Dict[str, Any]]:
    dosage: Dict[str, Any] = {}

    dose = quantity(attr(child(administration, "doseQuantity"), "value") or None,
                    attr(child(administration, "doseQuantity"), "unit"))
    if dose:
        dosage["doseAndRate"] = [{"doseQuantity": dose}]

    for effective in children(administration, "effectiveTime"):
        if attr(effective, "type") != "PIVL_TS":
            continue
        period = child(effective, "period")
        value = quantity(attr(period, "value") or None)
        unit = attr(period, "unit")
        if value and unit in ("s", "min", "h", "d", "wk", "mo", "a"):
            dosage["timing"] = {"repeat": {"frequency": 1, "period": value["value"], "periodUnit": unit}}
        break

    return dosage or None


def parse_ccda_to_medications(document: CdaInput, patient_reference: str = None) -> List[MedicationStatement]:
    """
    Convert Medications section substanceAdministrations to MedicationStatements.

    Args:
        document: CDA XML text or a parsed tree
        patient_reference: Reference to Patient resource

    Returns:
        MedicationStatements (empty if the section is absent or has no entries)
    """
    root = _document(document)
    subject = patient_ref(patient_reference, _native_patient_id(root))

    medications = []
    for entry in _section_entries(root, cs.SECTION_MEDICATIONS):
        administration = child(entry, "substanceAdministration")
        if administration is None:
            continue
        material = path(administration, "consumable", "manufacturedProduct", "manufacturedMaterial")

        medication_dict: Dict[str, Any] = {
            "resourceType": "MedicationStatement",
            "id": generate_id(),
            "meta": source_meta(EhrSource.CCDA),
            "status": MEDICATION_STATUSES.get(attr(child(administration, "statusCode"), "code"), "active"),
            "medicationCodeableConcept": _code_concept(child(material, "code")) or {"text": "Unknown medication"},
            "subject": subject,
        }

        start = _effective_low(administration)
        if start:
            medication_dict["effectivePeriod"] = {"start": start}

        dosage = _dosage(administration)
        if dosage:
            medication_dict["dosage"] = [dosage]

        medications.append(MedicationStatement(**medication_dict))

    return medications


def _parse_observation(observation: CdaElement, category_code: str, subject: Dict[str, str]) -> Observation:
    observation_dict: Dict[str, Any] = {
        "resourceType": "Observation",
        "id": generate_id(),
        "meta": source_meta(EhrSource.CCDA),
        "status": OBSERVATION_STATUSES.get(attr(child(observation, "statusCode"), "code"), "final"),
        "category": observation_category(category_code),
        "code": _code_concept(child(observation, "code")) or {"text": "Unspecified observation"},
        "subject": subject,
    }

    effective = _effective_low(observation)
    if effective:
        observation_dict["effectiveDateTime"] = effective

    value = child(observation, "value")
    value_type = attr(value, "type")
    if value_type in ("CD", "CE", "CO"):
        concept = _code_concept(value)
        if concept:
            observation_dict["valueCodeableConcept"] = concept
    elif attr(value, "value"):
        value_quantity = quantity(attr(value, "value"), attr(value, "unit"), attr(value, "unit"))
        if value_quantity:
            observation_dict["valueQuantity"] = value_quantity
    elif text(value):
        observation_dict["valueString"] = text(value)

    interpretation = attr(child(observation, "interpretationCode"), "code")
    if interpretation:
        observation_dict["interpretation"] = [{"coding": [coding(cs.V3_INTERPRETATION, interpretation)]}]

    range_value = path(observation, "referenceRange", "observationRange", "value")
    reference_range = compact({
        "low": quantity(attr(child(range_value, "low"), "value") or None, attr(child(range_value, "low"), "unit")),
        "high": quantity(attr(child(range_value, "high"), "value") or None, attr(child(range_value, "high"), "unit")),
        "text": text(path(observation, "referenceRange", "observationRange", "text")),
    })
    if reference_range:
        observation_dict["referenceRange"] = [reference_range]

    return Observation(**observation_dict)


def parse_ccda_to_observations(document: CdaInput, patient_reference: str = None) -> List[Observation]:
    """
    Convert Results and Vital Signs section observations to FHIR Observations.

    Lab results come first (category laboratory), then vital signs
    (category vital-signs), in one list.

    Args:
        document: CDA XML text or a parsed tree
        patient_reference: Reference to Patient resource

    Returns:
        Observations (empty if neither section has entries)
    """
    root = _document(document)
    subject = patient_ref(patient_reference, _native_patient_id(root))

    observations = []
    for loinc_code, category_code in ((cs.SECTION_RESULTS, "laboratory"), (cs.SECTION_VITAL_SIGNS, "vital-signs")):
        for entry in _section_entries(root, loinc_code):
            for observation in find_all(entry, "observation"):
                observations.append(_parse_observation(observation, category_code, subject))

    return observations


def parse_ccda_to_fhir(document: CdaInput) -> Bundle:
    """
    Convert a complete C-CDA document to a FHIR transaction Bundle.

    Entry order: Patient, Conditions, AllergyIntolerances,
    MedicationStatements, Observations.

    Args:
        document: CDA XML text or a parsed tree

    Returns:
        Transaction Bundle (empty if the document could not be parsed)
    """
    root = _document(document)
    bundler = FHIRBundler()
    if root is None:
        return bundler.build()

    bundler.add_resource(parse_ccda_to_patient(root))
    patient_reference = bundler.patient_reference

    bundler.add_resources(parse_ccda_to_conditions(root, patient_reference))
    bundler.add_resources(parse_ccda_to_allergies(root, patient_reference))
    bundler.add_resources(parse_ccda_to_medications(root, patient_reference))
    bundler.add_resources(parse_ccda_to_observations(root, patient_reference))

    logger.debug("C-CDA document produced {}", bundler.resource_counts())
    return bundler.build()
