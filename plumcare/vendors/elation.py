"""
Elation JSON to FHIR Mappers

Maps Elation EMR API records to FHIR R4 resources:
- patient → Patient
- visit note → Encounter (its embedded vitals → Observations)
- problem → Condition
- allergy → AllergyIntolerance
- medication → MedicationStatement
- lab order → Observation per result + DiagnosticReport

Elation ids are integers; they are carried as strings in identifiers.
"""
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from fhir.resources.R4B.allergyintolerance import AllergyIntolerance
from fhir.resources.R4B.bundle import Bundle
from fhir.resources.R4B.condition import Condition
from fhir.resources.R4B.diagnosticreport import DiagnosticReport
from fhir.resources.R4B.encounter import Encounter
from fhir.resources.R4B.medicationstatement import MedicationStatement
from fhir.resources.R4B.observation import Observation
from fhir.resources.R4B.patient import Patient

from plumcare.errors import require_mapping
from plumcare.fhir import codesystems as cs
from plumcare.fhir.bundler import FHIRBundler
from plumcare.fhir.common import (
    EhrSource,
    as_instant,
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

ELATION = "http://elationemr.com"

GENDERS = {"Male": "male", "Female": "female", "Other": "other"}

PROBLEM_STATUSES = {"Active": "active", "Resolved": "resolved", "Inactive": "inactive"}

MEDICATION_STATUSES = {"Active": "active", "Completed": "completed", "Discontinued": "stopped"}

ALLERGY_CATEGORIES = {"Drug": "medication", "Food": "food", "Environmental": "environment"}

ALLERGY_SEVERITIES = {"Mild": "mild", "Moderate": "moderate", "Severe": "severe", "Life-threatening": "severe"}

LAB_REPORT_STATUSES = {"Final": "final", "Complete": "final", "Cancelled": "cancelled"}

PHONE_USES = {"Mobile": "mobile", "Home": "home"}

# Native unit → UCUM code
UNIT_CODES = {
    "F": "[degF]",
    "C": "Cel",
    "in": "[in_i]",
    "cm": "cm",
    "lb": "[lb_av]",
    "kg": "kg",
}

# (field, LOINC, display, default unit, unit field)
VITAL_SIGNS = [
    ("blood_pressure_systolic", "8480-6", "Systolic blood pressure", "mm[Hg]", None),
    ("blood_pressure_diastolic", "8462-4", "Diastolic blood pressure", "mm[Hg]", None),
    ("heart_rate", "8867-4", "Heart rate", "/min", None),
    ("respiratory_rate", "9279-1", "Respiratory rate", "/min", None),
    ("temperature", "8310-5", "Body temperature", "F", "temperature_unit"),
    ("height", "8302-2", "Body height", "in", "height_unit"),
    ("weight", "29463-7", "Body weight", "lb", "weight_unit"),
    ("bmi", "39156-5", "Body mass index", "kg/m2", None),
    ("oxygen_saturation", "2708-6", "Oxygen saturation", "%", None),
    ("pain_level", "72514-3", "Pain severity", "{score}", None),
]


def map_gender(sex: Any) -> str:
    return GENDERS.get(sex, "unknown")


def map_problem_status(status: Any) -> str:
    return PROBLEM_STATUSES.get(status, "active")


def map_medication_status(status: Any) -> str:
    return MEDICATION_STATUSES.get(status, "active")


def _system(kind: str) -> str:
    return f"{ELATION}/{kind}"


def _meta(record: Dict[str, Any]) -> Dict[str, Any]:
    return source_meta(EhrSource.ELATION, record.get("last_modified_date"))


def parse_elation_patient_to_fhir(elation_patient: Dict[str, Any]) -> Patient:
    """
    Convert an Elation patient record to a FHIR Patient.

    Args:
        elation_patient: Elation patient JSON object

    Returns:
        FHIR Patient resource
    """
    require_mapping(elation_patient, "Elation patient")

    patient_dict: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": generate_id(),
        "meta": _meta(elation_patient),
        "gender": map_gender(elation_patient.get("sex")),
    }

    identifiers = [
        identifier(_system("patient-id"), elation_patient.get("id"), "MR", "Medical Record Number"),
        identifier(_system("mrn"), elation_patient.get("mrn")),
        identifier(cs.US_SSN, elation_patient.get("ssn")),
    ]
    identifiers = [i for i in identifiers if i]
    if identifiers:
        patient_dict["identifier"] = identifiers

    names = []
    official = compact({
        "family": elation_patient.get("last_name"),
        "given": [g for g in (elation_patient.get("first_name"), elation_patient.get("middle_name")) if g],
    })
    if official:
        names.append({"use": "official", **official})
    if elation_patient.get("nickname"):
        names.append({"use": "nickname", "given": [elation_patient["nickname"]]})
    if names:
        patient_dict["name"] = names

    if elation_patient.get("dob"):
        patient_dict["birthDate"] = elation_patient["dob"]

    telecom = []
    for phone in elation_patient.get("phones") or []:
        if not phone.get("phone"):
            continue
        telecom.append({
            "system": "phone",
            "value": phone["phone"],
            "use": PHONE_USES.get(phone.get("phone_type"), "work"),
            "rank": 1 if phone.get("is_primary") else 2,
        })
    for email in elation_patient.get("emails") or []:
        if not email.get("email"):
            continue
        telecom.append({"system": "email", "value": email["email"], "rank": 1 if email.get("is_primary") else 2})
    if telecom:
        patient_dict["telecom"] = telecom

    address = elation_patient.get("address") or {}
    home = compact({
        "line": [line for line in (address.get("address_line1"), address.get("address_line2")) if line],
        "city": address.get("city"),
        "state": address.get("state"),
        "postalCode": address.get("zip"),
        "country": address.get("country"),
    })
    if home:
        patient_dict["address"] = [{"use": "home", **home}]

    marital_status = elation_patient.get("marital_status")
    if marital_status:
        patient_dict["maritalStatus"] = {
            "coding": [coding(cs.V3_MARITAL_STATUS, marital_status[0].upper(), marital_status)]
        }

    extensions = [
        {"url": url, "extension": [{"url": "text", "valueString": elation_patient[key]}]}
        for key, url in (("race", cs.US_CORE_RACE), ("ethnicity", cs.US_CORE_ETHNICITY))
        if elation_patient.get(key)
    ]
    if extensions:
        patient_dict["extension"] = extensions

    if elation_patient.get("preferred_language"):
        patient_dict["communication"] = [{
            "language": {"coding": [coding(cs.BCP47, elation_patient["preferred_language"])]},
            "preferred": True,
        }]

    # Add emergency contact if present
    contact = elation_patient.get("emergency_contact")
    if contact:
        relationship = compact({
            "coding": [coding(cs.V2_CONTACT_ROLE, "C", "Emergency Contact")],
            "text": contact.get("relationship"),
        })
        patient_dict["contact"] = [compact({
            "relationship": [relationship],
            "name": compact({"text": contact.get("name")}),
            "telecom": [{"system": "phone", "value": contact["phone"]}] if contact.get("phone") else None,
        })]

    return Patient(**patient_dict)


def parse_elation_visit_note_to_fhir(visit_note: Dict[str, Any], patient_reference: str = None) -> Encounter:
    """
    Convert an Elation visit note to a FHIR Encounter.

    A signed note is a finished encounter; telehealth visit types are
    virtual, everything else ambulatory.

    Args:
        visit_note: Elation visit note JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Encounter resource
    """
    require_mapping(visit_note, "Elation visit note")
    visit_type = visit_note.get("visit_type") or ""

    encounter_dict: Dict[str, Any] = {
        "resourceType": "Encounter",
        "id": generate_id(),
        "meta": _meta(visit_note),
        "status": "finished" if visit_note.get("signed") else "in-progress",
        "class": cs.encounter_class("VR" if "telehealth" in visit_type.lower() else "AMB"),
        "subject": patient_ref(patient_reference, visit_note.get("patient")),
    }

    note_id = identifier(_system("visit-note-id"), visit_note.get("id"))
    if note_id:
        encounter_dict["identifier"] = [note_id]

    if visit_type:
        encounter_dict["type"] = [{"coding": [coding(_system("visit-type"), visit_type, visit_type)]}]

    physician = identifier(_system("physician-id"), visit_note.get("physician"))
    if physician:
        encounter_dict["participant"] = [{
            "type": [{"coding": [coding(cs.V3_PARTICIPATION_TYPE, "ATND", "attender")]}],
            "individual": {"identifier": physician},
        }]

    start = fhir_datetime(visit_note.get("document_date"))
    if start:
        encounter_dict["period"] = {"start": start}

    if visit_note.get("chief_complaint"):
        encounter_dict["reasonCode"] = [{"text": visit_note["chief_complaint"]}]

    diagnoses = []
    for diagnosis in visit_note.get("icd10_codes") or []:
        rank = diagnosis.get("rank")
        diagnoses.append(compact({
            "condition": {"display": diagnosis.get("description") or diagnosis.get("code") or "Unspecified"},
            "use": {"coding": [coding(cs.DIAGNOSIS_ROLE, "AD" if rank == 1 else "DD")]},
            "rank": rank if isinstance(rank, int) and rank > 0 else None,
        }))
    if diagnoses:
        encounter_dict["diagnosis"] = diagnoses

    return Encounter(**encounter_dict)


def parse_elation_vitals_to_fhir(
    vitals: Dict[str, Any],
    patient_reference: str = None,
    effective_date_time: Optional[str] = None,
) -> List[Observation]:
    """
    Convert an Elation vitals block to FHIR Observations.

    One Observation per recorded measurement, coded with its LOINC vital
    sign code. Measurements that are absent or not numeric are skipped.

    Args:
        vitals: Elation vitals JSON object (as embedded in a visit note)
        patient_reference: Reference to Patient resource
        effective_date_time: When the vitals were taken

    Returns:
        Observations in a fixed vital-sign order
    """
    require_mapping(vitals, "Elation vitals")
    subject = patient_ref(patient_reference, vitals.get("patient"))
    effective = fhir_datetime(effective_date_time)

    observations = []
    for field_name, loinc, display, default_unit, unit_field in VITAL_SIGNS:
        unit = (vitals.get(unit_field) if unit_field else None) or default_unit
        value_quantity = quantity(vitals.get(field_name), unit, UNIT_CODES.get(unit, unit))
        if value_quantity is None:
            continue

        observation_dict: Dict[str, Any] = {
            "resourceType": "Observation",
            "id": generate_id(),
            "meta": source_meta(EhrSource.ELATION),
            "status": "final",
            "category": observation_category("vital-signs"),
            "code": codeable(cs.LOINC, loinc, display),
            "subject": subject,
            "valueQuantity": value_quantity,
        }
        if effective:
            observation_dict["effectiveDateTime"] = effective

        observations.append(Observation(**observation_dict))

    return observations


def parse_elation_problem_to_fhir(elation_problem: Dict[str, Any], patient_reference: str = None) -> Condition:
    """
    Convert an Elation problem to a FHIR Condition.

    Args:
        elation_problem: Elation problem JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Condition resource
    """
    require_mapping(elation_problem, "Elation problem")
    status = map_problem_status(elation_problem.get("status"))

    condition_dict: Dict[str, Any] = {
        "resourceType": "Condition",
        "id": generate_id(),
        "meta": _meta(elation_problem),
        "clinicalStatus": {"coding": [coding(cs.CONDITION_CLINICAL, status, elation_problem.get("status"))]},
        "verificationStatus": {"coding": [coding(cs.CONDITION_VER_STATUS, "confirmed", "Confirmed")]},
        "category": category(cs.CONDITION_CATEGORY, "problem-list-item", "Problem List Item"),
        "subject": patient_ref(patient_reference, elation_problem.get("patient")),
    }

    problem_id = identifier(_system("problem-id"), elation_problem.get("id"))
    if problem_id:
        condition_dict["identifier"] = [problem_id]

    code = codeable(cs.ICD10CM, elation_problem.get("icd10_code"), elation_problem.get("description"))
    if code:
        condition_dict["code"] = code

    onset = fhir_datetime(elation_problem.get("onset_date"))
    if onset:
        condition_dict["onsetDateTime"] = onset
    abatement = fhir_datetime(elation_problem.get("resolved_date"))
    if abatement:
        condition_dict["abatementDateTime"] = abatement
    recorded = fhir_datetime(elation_problem.get("created_date"))
    if recorded:
        condition_dict["recordedDate"] = recorded
    if elation_problem.get("notes"):
        condition_dict["note"] = [{"text": elation_problem["notes"]}]

    return Condition(**condition_dict)


def parse_elation_allergy_to_fhir(elation_allergy: Dict[str, Any], patient_reference: str = None) -> AllergyIntolerance:
    """
    Convert an Elation allergy to a FHIR AllergyIntolerance.

    Drug allergens are allergies, everything else an intolerance.
    "Life-threatening" severity maps to FHIR ``severe``.

    Args:
        elation_allergy: Elation allergy JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR AllergyIntolerance resource
    """
    require_mapping(elation_allergy, "Elation allergy")
    status = "active" if elation_allergy.get("status") == "Active" else "inactive"
    allergen_type = elation_allergy.get("allergen_type")

    allergy_dict: Dict[str, Any] = {
        "resourceType": "AllergyIntolerance",
        "id": generate_id(),
        "meta": _meta(elation_allergy),
        "clinicalStatus": {"coding": [coding(
            cs.ALLERGY_CLINICAL, status, elation_allergy.get("status") or status.capitalize()
        )]},
        "verificationStatus": {"coding": [coding(cs.ALLERGY_VERIFICATION, "confirmed", "Confirmed")]},
        "type": "allergy" if allergen_type == "Drug" else "intolerance",
        "category": [ALLERGY_CATEGORIES.get(allergen_type, "biologic")],
        "patient": patient_ref(patient_reference, elation_allergy.get("patient")),
    }

    allergy_id = identifier(_system("allergy-id"), elation_allergy.get("id"))
    if allergy_id:
        allergy_dict["identifier"] = [allergy_id]

    if elation_allergy.get("allergen"):
        allergy_dict["code"] = {"text": elation_allergy["allergen"]}

    onset = fhir_datetime(elation_allergy.get("onset_date"))
    if onset:
        allergy_dict["onsetDateTime"] = onset
    recorded = fhir_datetime(elation_allergy.get("created_date"))
    if recorded:
        allergy_dict["recordedDate"] = recorded

    if elation_allergy.get("reaction"):
        allergy_dict["reaction"] = [compact({
            "manifestation": [{"text": elation_allergy["reaction"]}],
            "severity": ALLERGY_SEVERITIES.get(elation_allergy.get("severity")),
        })]

    if elation_allergy.get("notes"):
        allergy_dict["note"] = [{"text": elation_allergy["notes"]}]

    return AllergyIntolerance(**allergy_dict)


def parse_elation_medication_to_fhir(
    elation_medication: Dict[str, Any],
    patient_reference: str = None,
) -> MedicationStatement:
    """
    Convert an Elation prescription to a FHIR MedicationStatement.

    Args:
        elation_medication: Elation medication JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR MedicationStatement resource
    """
    require_mapping(elation_medication, "Elation medication")
    status = elation_medication.get("status")

    medication_dict: Dict[str, Any] = {
        "resourceType": "MedicationStatement",
        "id": generate_id(),
        "meta": _meta(elation_medication),
        "status": map_medication_status(status),
        "medicationCodeableConcept": codeable(
            cs.RXNORM, elation_medication.get("rxnorm"), elation_medication.get("drug_name")
        ) or {"text": "Unknown medication"},
        "subject": patient_ref(patient_reference, elation_medication.get("patient")),
    }

    medication_id = identifier(_system("medication-id"), elation_medication.get("id"))
    if medication_id:
        medication_dict["identifier"] = [medication_id]

    start = fhir_datetime(elation_medication.get("prescribed_date"))
    if start:
        medication_dict["effectivePeriod"] = {"start": start}
    asserted = fhir_datetime(elation_medication.get("created_date"))
    if asserted:
        medication_dict["dateAsserted"] = asserted

    days_supply = quantity(elation_medication.get("days_supply"), "days", "d")
    dose = quantity(elation_medication.get("quantity"), elation_medication.get("quantity_unit"))
    dosage = compact({
        "text": elation_medication.get("sig"),
        "timing": {"repeat": {"boundsDuration": days_supply}} if days_supply else None,
        "doseAndRate": [{"doseQuantity": dose}] if dose else None,
    })
    if dosage:
        medication_dict["dosage"] = [dosage]

    # Add reason stopped if discontinued
    if status == "Discontinued" and elation_medication.get("discontinue_reason"):
        medication_dict["statusReason"] = [{"text": elation_medication["discontinue_reason"]}]

    return MedicationStatement(**medication_dict)


def _lab_result_observation(
    result: Dict[str, Any],
    subject: Dict[str, str],
    effective: Optional[str],
) -> Observation:
    if result.get("loinc_code"):
        code = codeable(cs.LOINC, result["loinc_code"], result.get("test_name"))
    else:
        code = codeable(_system("test-code"), result.get("test_code"), result.get("test_name"))

    observation_dict: Dict[str, Any] = {
        "resourceType": "Observation",
        "id": generate_id(),
        "meta": source_meta(EhrSource.ELATION),
        "status": "final",
        "category": observation_category("laboratory"),
        "code": code or {"text": "Unspecified test"},
        "subject": subject,
    }
    if effective:
        observation_dict["effectiveDateTime"] = effective

    value_quantity = quantity(result.get("value"), result.get("unit"))
    if value_quantity:
        observation_dict["valueQuantity"] = value_quantity

    flag = result.get("abnormal_flag")
    if flag and flag != "N":
        observation_dict["interpretation"] = [{"coding": [coding(cs.V3_INTERPRETATION, flag)]}]

    if result.get("reference_range"):
        observation_dict["referenceRange"] = [{"text": result["reference_range"]}]

    return Observation(**observation_dict)


def parse_elation_lab_order_to_fhir(
    elation_lab_order: Dict[str, Any],
    patient_reference: str = None,
) -> Tuple[DiagnosticReport, List[Observation]]:
    """
    Convert an Elation lab order to a DiagnosticReport and its Observations.

    Args:
        elation_lab_order: Elation lab order JSON object (``tests`` + optional ``results``)
        patient_reference: Reference to Patient resource

    Returns:
        Tuple of (report, observations); orders without results give an
        empty observation list
    """
    require_mapping(elation_lab_order, "Elation lab order")
    subject = patient_ref(patient_reference, elation_lab_order.get("patient"))
    effective = fhir_datetime(elation_lab_order.get("result_date"))

    observations = [
        _lab_result_observation(result, subject, effective)
        for result in elation_lab_order.get("results") or []
    ]

    tests = elation_lab_order.get("tests") or []
    test_codings = [
        coding(cs.LOINC, t["loinc_code"], t.get("name")) if t.get("loinc_code")
        else coding(_system("test-code"), t.get("code"), t.get("name"))
        for t in tests
    ]
    report_dict: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "id": generate_id(),
        "meta": _meta(elation_lab_order),
        "status": LAB_REPORT_STATUSES.get(elation_lab_order.get("status"), "registered"),
        "category": category(cs.V2_DIAGNOSTIC_SERVICE, "LAB", "Laboratory"),
        "code": compact({
            "coding": [c for c in test_codings if "code" in c],
            "text": ", ".join(t["name"] for t in tests if t.get("name")),
        }) or {"text": "Laboratory order"},
        "subject": subject,
    }

    order_id = identifier(_system("lab-order-id"), elation_lab_order.get("id"))
    if order_id:
        report_dict["identifier"] = [order_id]
    if effective:
        report_dict["effectiveDateTime"] = effective
    issued = as_instant(elation_lab_order.get("last_modified_date"))
    if issued:
        report_dict["issued"] = issued
    if elation_lab_order.get("lab_name"):
        report_dict["performer"] = [{"display": elation_lab_order["lab_name"]}]
    if observations:
        report_dict["result"] = [
            compact({"reference": f"Observation/{obs.id}", "display": obs.code.text})
            for obs in observations
        ]

    return DiagnosticReport(**report_dict), observations


def parse_elation_json_to_fhir(data: Dict[str, Any]) -> Bundle:
    """
    Convert a complete Elation patient export to a FHIR transaction Bundle.

    Each visit note contributes its Encounter followed by the Observations
    for its embedded vitals.

    Args:
        data: Dict with ``patient`` and optional ``visitNotes``, ``problems``,
            ``allergies``, ``medications`` and ``labOrders`` lists

    Returns:
        Transaction Bundle, Patient first
    """
    require_mapping(data, "Elation export")
    require_mapping(data.get("patient"), "Elation export patient")

    bundler = FHIRBundler()
    bundler.add_resource(parse_elation_patient_to_fhir(data["patient"]))
    patient_reference = bundler.patient_reference

    for note in data.get("visitNotes") or []:
        bundler.add_resource(parse_elation_visit_note_to_fhir(note, patient_reference))
        if note.get("vitals"):
            bundler.add_resources(parse_elation_vitals_to_fhir(
                note["vitals"], patient_reference, note.get("document_date")
            ))
    for problem in data.get("problems") or []:
        bundler.add_resource(parse_elation_problem_to_fhir(problem, patient_reference))
    for allergy in data.get("allergies") or []:
        bundler.add_resource(parse_elation_allergy_to_fhir(allergy, patient_reference))
    for medication in data.get("medications") or []:
        bundler.add_resource(parse_elation_medication_to_fhir(medication, patient_reference))
    for lab_order in data.get("labOrders") or []:
        report, observations = parse_elation_lab_order_to_fhir(lab_order, patient_reference)
        bundler.add_resources(observations)
        bundler.add_resource(report)

    logger.debug("Elation export produced {}", bundler.resource_counts())
    return bundler.build()
