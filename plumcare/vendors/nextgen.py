"""
NextGen JSON to FHIR Mappers

Maps NextGen Enterprise API records to FHIR R4 resources:
- patient → Patient
- encounter → Encounter (its embedded vitals → Observations)
- problem → Condition
- allergy → AllergyIntolerance
- medication → MedicationStatement
- lab order → Observation per result + DiagnosticReport

NextGen carries richer status vocabularies and structured reference
ranges than the other vendors; both are mapped where present.
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

NEXTGEN = "http://nextgen.com"

GENDERS = {"M": "male", "F": "female", "O": "other"}

ENCOUNTER_TYPES = {
    "office visit": "AMB",
    "telehealth": "VR",
    "hospital visit": "IMP",
    "emergency": "EMER",
    "procedure": "AMB",
    "consultation": "AMB",
}

ENCOUNTER_STATUSES = {
    "Open": "in-progress",
    "Closed": "finished",
    "Billed": "finished",
    "Void": "cancelled",
}

PROBLEM_STATUSES = {
    "Active": "active",
    "Chronic": "active",
    "Resolved": "resolved",
    "Inactive": "inactive",
}

ALLERGY_STATUSES = {
    "Active": "active",
    "Inactive": "inactive",
    "Entered in Error": "entered-in-error",
}

ALLERGY_CATEGORIES = {
    "Drug": "medication",
    "Food": "food",
    "Environment": "environment",
    "Latex": "biologic",
    "Other": "biologic",
}

ALLERGY_SEVERITIES = {"Mild": "mild", "Moderate": "moderate", "Severe": "severe", "Fatal": "severe"}

MEDICATION_STATUSES = {
    "Active": "active",
    "Completed": "completed",
    "Discontinued": "stopped",
    "On Hold": "on-hold",
}

DRUG_CODE_SYSTEMS = {"RxNorm": cs.RXNORM, "NDC": cs.NDC}

RESULT_STATUSES = {
    "Final": "final",
    "Preliminary": "preliminary",
    "Corrected": "corrected",
}

ORDER_STATUSES = {
    "Completed": "final",
    "Cancelled": "cancelled",
    "In Process": "partial",
}

ADDRESS_USES = {"Home": "home", "Work": "work", "Temporary": "temp"}

# (field, LOINC, display, UCUM unit)
VITAL_SIGNS = [
    ("blood_pressure_systolic", "8480-6", "Systolic blood pressure", "mm[Hg]"),
    ("blood_pressure_diastolic", "8462-4", "Diastolic blood pressure", "mm[Hg]"),
    ("pulse_rate", "8867-4", "Heart rate", "/min"),
    ("respiratory_rate", "9279-1", "Respiratory rate", "/min"),
    ("temperature_fahrenheit", "8310-5", "Body temperature", "[degF]"),
    ("height_inches", "8302-2", "Body height", "[in_i]"),
    ("weight_lbs", "29463-7", "Body weight", "[lb_av]"),
    ("bmi", "39156-5", "Body mass index", "kg/m2"),
    ("oxygen_saturation", "2708-6", "Oxygen saturation", "%"),
    ("pain_scale", "72514-3", "Pain severity", "{score}"),
    ("head_circumference_cm", "9843-4", "Head Occipital-frontal circumference", "cm"),
]


def map_gender(gender: Any) -> str:
    return GENDERS.get(str(gender or "").upper(), "unknown")


def map_encounter_class(encounter_type: Any) -> Dict[str, str]:
    return cs.encounter_class(ENCOUNTER_TYPES.get(str(encounter_type or "").lower(), "AMB"))


def map_encounter_status(status: Any) -> str:
    return ENCOUNTER_STATUSES.get(status, "in-progress")


def _system(kind: str) -> str:
    return f"{NEXTGEN}/{kind}"


def _meta(record: Dict[str, Any]) -> Dict[str, Any]:
    return source_meta(EhrSource.NEXTGEN, record.get("modified_timestamp"))


def parse_nextgen_patient_to_fhir(nextgen_patient: Dict[str, Any]) -> Patient:
    """
    Convert a NextGen person record to a FHIR Patient.

    Args:
        nextgen_patient: NextGen patient JSON object

    Returns:
        FHIR Patient resource
    """
    require_mapping(nextgen_patient, "NextGen patient")
    person_id = nextgen_patient.get("person_id")

    patient_dict: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": generate_id(),
        "meta": _meta(nextgen_patient),
        "gender": map_gender(nextgen_patient.get("gender")),
    }
    if nextgen_patient.get("patient_status"):
        patient_dict["active"] = nextgen_patient["patient_status"] == "Active"

    identifiers = [
        identifier(_system("person-id"), person_id, "PI", "Patient internal identifier"),
        identifier(_system("mrn"), nextgen_patient.get("mrn"), "MR", "Medical Record Number"),
        identifier(cs.US_SSN, nextgen_patient.get("ssn")),
    ]
    if nextgen_patient.get("enterprise_id"):
        identifiers.insert(2, identifier(_system(f"enterprise/{nextgen_patient['enterprise_id']}"), person_id))
    identifiers = [i for i in identifiers if i]
    if identifiers:
        patient_dict["identifier"] = identifiers

    names = []
    official = compact({
        "family": nextgen_patient.get("last_name"),
        "given": [g for g in (nextgen_patient.get("first_name"), nextgen_patient.get("middle_name")) if g],
    })
    if official:
        names.append({"use": "official", **official})
    if nextgen_patient.get("preferred_name"):
        names.append({"use": "nickname", "given": [nextgen_patient["preferred_name"]]})
    if names:
        patient_dict["name"] = names

    if nextgen_patient.get("date_of_birth"):
        patient_dict["birthDate"] = nextgen_patient["date_of_birth"]

    telecom = [
        {"system": "phone", "value": str(nextgen_patient[key]), "use": use}
        for key, use in (("home_phone", "home"), ("mobile_phone", "mobile"), ("work_phone", "work"))
        if nextgen_patient.get(key)
    ]
    if nextgen_patient.get("email_address"):
        telecom.append({"system": "email", "value": nextgen_patient["email_address"]})
    if telecom:
        patient_dict["telecom"] = telecom

    address = nextgen_patient.get("address") or {}
    postal = compact({
        "line": [line for line in (address.get("address_line_1"), address.get("address_line_2")) if line],
        "city": address.get("city"),
        "state": address.get("state_code"),
        "postalCode": address.get("postal_code"),
        "country": address.get("country_code"),
    })
    if postal:
        patient_dict["address"] = [{"use": ADDRESS_USES.get(address.get("address_type"), "home"), **postal}]

    marital_status = nextgen_patient.get("marital_status_code")
    if marital_status:
        patient_dict["maritalStatus"] = {
            "coding": [coding(cs.V3_MARITAL_STATUS, marital_status[0].upper(), marital_status)]
        }

    extensions = [
        {
            "url": url,
            "extension": [{
                "url": "ombCategory",
                "valueCoding": coding(cs.OMB_RACE_ETHNICITY, nextgen_patient[key]),
            }],
        }
        for key, url in (("race_code", cs.US_CORE_RACE), ("ethnicity_code", cs.US_CORE_ETHNICITY))
        if nextgen_patient.get(key)
    ]
    if extensions:
        patient_dict["extension"] = extensions

    if nextgen_patient.get("preferred_language"):
        patient_dict["communication"] = [{
            "language": {"coding": [coding(cs.BCP47, nextgen_patient["preferred_language"])]},
            "preferred": True,
        }]

    return Patient(**patient_dict)


def parse_nextgen_encounter_to_fhir(nextgen_encounter: Dict[str, Any], patient_reference: str = None) -> Encounter:
    """
    Convert a NextGen encounter to a FHIR Encounter.

    Args:
        nextgen_encounter: NextGen encounter JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Encounter resource
    """
    require_mapping(nextgen_encounter, "NextGen encounter")
    encounter_type = nextgen_encounter.get("encounter_type")

    encounter_dict: Dict[str, Any] = {
        "resourceType": "Encounter",
        "id": generate_id(),
        "meta": _meta(nextgen_encounter),
        "status": map_encounter_status(nextgen_encounter.get("encounter_status")),
        "class": map_encounter_class(encounter_type),
        "subject": patient_ref(patient_reference, nextgen_encounter.get("person_id")),
    }

    encounter_id = identifier(_system("encounter-id"), nextgen_encounter.get("encounter_id"))
    if encounter_id:
        encounter_dict["identifier"] = [encounter_id]

    if encounter_type:
        encounter_dict["type"] = [{"coding": [coding(_system("encounter-type"), encounter_type, encounter_type)]}]

    service_type = codeable(
        cs.SERVICE_TYPE,
        nextgen_encounter.get("place_of_service_code"),
        nextgen_encounter.get("service_location"),
    )
    if service_type:
        encounter_dict["serviceType"] = service_type

    provider = identifier(_system("provider-id"), nextgen_encounter.get("rendering_provider_id"))
    if provider:
        encounter_dict["participant"] = [{
            "type": [{"coding": [coding(cs.V3_PARTICIPATION_TYPE, "ATND", "attender")]}],
            "individual": {"identifier": provider},
        }]

    start = fhir_datetime(nextgen_encounter.get("encounter_date"))
    if start:
        encounter_dict["period"] = {"start": start}

    if nextgen_encounter.get("chief_complaint"):
        encounter_dict["reasonCode"] = [{"text": nextgen_encounter["chief_complaint"]}]

    diagnoses = []
    for diagnosis in nextgen_encounter.get("diagnoses") or []:
        primary = diagnosis.get("diagnosis_type") == "Primary"
        rank = diagnosis.get("sequence_number")
        diagnoses.append(compact({
            "condition": {"display": diagnosis.get("description") or diagnosis.get("icd_code") or "Unspecified"},
            "use": {"coding": [coding(
                cs.DIAGNOSIS_ROLE,
                "AD" if primary else "DD",
                "Admission diagnosis" if primary else "Discharge diagnosis",
            )]},
            "rank": rank if isinstance(rank, int) and rank > 0 else None,
        }))
    if diagnoses:
        encounter_dict["diagnosis"] = diagnoses

    return Encounter(**encounter_dict)


def parse_nextgen_vitals_to_fhir(vitals: Dict[str, Any], patient_reference: str = None) -> List[Observation]:
    """
    Convert a NextGen vitals block to FHIR Observations.

    Only numeric measurements are mapped.

    Args:
        vitals: NextGen vitals JSON object
        patient_reference: Reference to Patient resource

    Returns:
        Observations in a fixed vital-sign order
    """
    require_mapping(vitals, "NextGen vitals")
    subject = patient_ref(patient_reference, vitals.get("person_id"))
    effective = fhir_datetime(vitals.get("recorded_date"))

    observations = []
    for field_name, loinc, display, unit in VITAL_SIGNS:
        value = vitals.get(field_name)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            continue
        value_quantity = quantity(value, unit, unit)
        if value_quantity is None:
            continue

        observation_dict: Dict[str, Any] = {
            "resourceType": "Observation",
            "id": generate_id(),
            "meta": source_meta(EhrSource.NEXTGEN),
            "status": "final",
            "category": observation_category("vital-signs"),
            "code": codeable(cs.LOINC, loinc, display),
            "subject": subject,
            "valueQuantity": value_quantity,
        }
        if effective:
            observation_dict["effectiveDateTime"] = effective
        if vitals.get("recorded_by"):
            observation_dict["performer"] = [{"display": vitals["recorded_by"]}]

        observations.append(Observation(**observation_dict))

    return observations


def parse_nextgen_problem_to_fhir(nextgen_problem: Dict[str, Any], patient_reference: str = None) -> Condition:
    """
    Convert a NextGen problem to a FHIR Condition.

    Args:
        nextgen_problem: NextGen problem JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Condition resource
    """
    require_mapping(nextgen_problem, "NextGen problem")
    status = PROBLEM_STATUSES.get(nextgen_problem.get("status"), "active")
    icd_system = cs.ICD10CM if nextgen_problem.get("icd_version") == "ICD-10" else cs.ICD9CM

    condition_dict: Dict[str, Any] = {
        "resourceType": "Condition",
        "id": generate_id(),
        "meta": _meta(nextgen_problem),
        "clinicalStatus": {"coding": [coding(cs.CONDITION_CLINICAL, status, nextgen_problem.get("status"))]},
        "verificationStatus": {"coding": [coding(cs.CONDITION_VER_STATUS, "confirmed", "Confirmed")]},
        "category": category(cs.CONDITION_CATEGORY, "problem-list-item", "Problem List Item"),
        "subject": patient_ref(patient_reference, nextgen_problem.get("person_id")),
    }

    problem_id = identifier(_system("problem-id"), nextgen_problem.get("problem_id"))
    if problem_id:
        condition_dict["identifier"] = [problem_id]

    codings = [
        coding(icd_system, nextgen_problem.get("icd_code"), nextgen_problem.get("description")),
        coding(cs.SNOMED, nextgen_problem.get("snomed_code")),
    ]
    code = compact({
        "coding": [c for c in codings if "code" in c],
        "text": nextgen_problem.get("description"),
    })
    if code:
        condition_dict["code"] = code

    onset = fhir_datetime(nextgen_problem.get("onset_date"))
    if onset:
        condition_dict["onsetDateTime"] = onset
    abatement = fhir_datetime(nextgen_problem.get("resolution_date"))
    if abatement:
        condition_dict["abatementDateTime"] = abatement
    recorded = fhir_datetime(nextgen_problem.get("created_timestamp"))
    if recorded:
        condition_dict["recordedDate"] = recorded
    if nextgen_problem.get("notes"):
        condition_dict["note"] = [{"text": nextgen_problem["notes"]}]

    return Condition(**condition_dict)


def parse_nextgen_allergy_to_fhir(nextgen_allergy: Dict[str, Any], patient_reference: str = None) -> AllergyIntolerance:
    """
    Convert a NextGen allergy to a FHIR AllergyIntolerance.

    Args:
        nextgen_allergy: NextGen allergy JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR AllergyIntolerance resource
    """
    require_mapping(nextgen_allergy, "NextGen allergy")
    status = ALLERGY_STATUSES.get(nextgen_allergy.get("status"), "active")
    verified = bool(nextgen_allergy.get("verified"))
    allergen_type = nextgen_allergy.get("allergen_type")

    allergy_dict: Dict[str, Any] = {
        "resourceType": "AllergyIntolerance",
        "id": generate_id(),
        "meta": _meta(nextgen_allergy),
        "verificationStatus": {"coding": [coding(
            cs.ALLERGY_VERIFICATION,
            "confirmed" if verified else "unconfirmed",
            "Confirmed" if verified else "Unconfirmed",
        )]},
        "type": "allergy" if allergen_type == "Drug" else "intolerance",
        "category": [ALLERGY_CATEGORIES.get(allergen_type, "biologic")],
        "patient": patient_ref(patient_reference, nextgen_allergy.get("person_id")),
    }

    if status == "entered-in-error":
        # clinicalStatus must be absent for entered-in-error records
        allergy_dict["verificationStatus"] = {"coding": [coding(
            cs.ALLERGY_VERIFICATION, "entered-in-error", "Entered in Error"
        )]}
    else:
        allergy_dict["clinicalStatus"] = {"coding": [coding(
            cs.ALLERGY_CLINICAL, status, nextgen_allergy.get("status") or status.capitalize()
        )]}

    allergy_id = identifier(_system("allergy-id"), nextgen_allergy.get("allergy_id"))
    if allergy_id:
        allergy_dict["identifier"] = [allergy_id]

    code_system = nextgen_allergy.get("allergen_code_system")
    code = codeable(
        cs.SNOMED if code_system == "SNOMED" else _system(code_system or "allergen-code"),
        nextgen_allergy.get("allergen_code"),
        nextgen_allergy.get("allergen_name"),
    )
    if code:
        allergy_dict["code"] = code

    onset = fhir_datetime(nextgen_allergy.get("onset_date"))
    if onset:
        allergy_dict["onsetDateTime"] = onset
    recorded = fhir_datetime(nextgen_allergy.get("recorded_date"))
    if recorded:
        allergy_dict["recordedDate"] = recorded
    if nextgen_allergy.get("recorded_by"):
        allergy_dict["recorder"] = {"display": nextgen_allergy["recorded_by"]}

    if nextgen_allergy.get("reaction_description"):
        allergy_dict["reaction"] = [compact({
            "manifestation": [{"text": nextgen_allergy["reaction_description"]}],
            "severity": ALLERGY_SEVERITIES.get(nextgen_allergy.get("reaction_severity")),
        })]

    if nextgen_allergy.get("notes"):
        allergy_dict["note"] = [{"text": nextgen_allergy["notes"]}]

    return AllergyIntolerance(**allergy_dict)


def parse_nextgen_medication_to_fhir(
    nextgen_medication: Dict[str, Any],
    patient_reference: str = None,
) -> MedicationStatement:
    """
    Convert a NextGen medication to a FHIR MedicationStatement.

    Args:
        nextgen_medication: NextGen medication JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR MedicationStatement resource
    """
    require_mapping(nextgen_medication, "NextGen medication")
    status = nextgen_medication.get("status")
    drug_system = DRUG_CODE_SYSTEMS.get(nextgen_medication.get("drug_code_system"), _system("drug-code"))

    medication_dict: Dict[str, Any] = {
        "resourceType": "MedicationStatement",
        "id": generate_id(),
        "meta": _meta(nextgen_medication),
        "status": MEDICATION_STATUSES.get(status, "active"),
        "medicationCodeableConcept": codeable(
            drug_system, nextgen_medication.get("drug_code"), nextgen_medication.get("drug_name")
        ) or {"text": "Unknown medication"},
        "subject": patient_ref(patient_reference, nextgen_medication.get("person_id")),
    }

    medication_id = identifier(_system("medication-id"), nextgen_medication.get("medication_id"))
    if medication_id:
        medication_dict["identifier"] = [medication_id]

    period = compact({
        "start": fhir_datetime(nextgen_medication.get("start_date")),
        "end": fhir_datetime(nextgen_medication.get("end_date")),
    })
    if period:
        medication_dict["effectivePeriod"] = period
    asserted = fhir_datetime(nextgen_medication.get("created_timestamp"))
    if asserted:
        medication_dict["dateAsserted"] = asserted

    days_supply = quantity(nextgen_medication.get("days_supply"), "days", "d")
    timing = compact({
        "code": compact({"text": nextgen_medication.get("frequency")}),
        "repeat": {"boundsDuration": days_supply} if days_supply else None,
    })
    dose = quantity(nextgen_medication.get("quantity_prescribed"), nextgen_medication.get("quantity_unit"))
    dosage = compact({
        "text": nextgen_medication.get("sig"),
        "route": compact({"text": nextgen_medication.get("route")}),
        "method": compact({"text": nextgen_medication.get("dosage_form")}),
        "timing": timing,
        "doseAndRate": [{"doseQuantity": dose}] if dose else None,
    })
    if dosage:
        medication_dict["dosage"] = [dosage]

    # Add reason stopped if discontinued
    if status == "Discontinued" and nextgen_medication.get("discontinue_reason"):
        medication_dict["statusReason"] = [{"text": nextgen_medication["discontinue_reason"]}]

    return MedicationStatement(**medication_dict)


def _reference_range(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    unit = result.get("result_unit")
    reference_range = compact({
        "low": quantity(result.get("reference_range_low"), unit),
        "high": quantity(result.get("reference_range_high"), unit),
        "text": result.get("reference_range_text"),
    })
    return reference_range or None


def _lab_result_observation(result: Dict[str, Any], subject: Dict[str, str]) -> Observation:
    if result.get("loinc_code"):
        code = codeable(cs.LOINC, result["loinc_code"], result.get("test_name"))
    else:
        code = codeable(_system("test-code"), result.get("test_code"), result.get("test_name"))

    observation_dict: Dict[str, Any] = {
        "resourceType": "Observation",
        "id": generate_id(),
        "meta": source_meta(EhrSource.NEXTGEN),
        "status": RESULT_STATUSES.get(result.get("result_status"), "cancelled"),
        "category": observation_category("laboratory"),
        "code": code or {"text": "Unspecified test"},
        "subject": subject,
    }

    result_id = identifier(_system("result-id"), result.get("result_id"))
    if result_id:
        observation_dict["identifier"] = [result_id]

    effective = fhir_datetime(result.get("performed_date"))
    if effective:
        observation_dict["effectiveDateTime"] = effective

    value_quantity = quantity(result.get("result_value"), result.get("result_unit"))
    if value_quantity:
        observation_dict["valueQuantity"] = value_quantity

    flag = result.get("abnormal_flag")
    if flag and flag != "N":
        observation_dict["interpretation"] = [{"coding": [coding(cs.V3_INTERPRETATION, flag)]}]

    reference_range = _reference_range(result)
    if reference_range:
        observation_dict["referenceRange"] = [reference_range]

    if result.get("notes"):
        observation_dict["note"] = [{"text": result["notes"]}]

    return Observation(**observation_dict)


def parse_nextgen_lab_order_to_fhir(
    nextgen_lab_order: Dict[str, Any],
    patient_reference: str = None,
) -> Tuple[DiagnosticReport, List[Observation]]:
    """
    Convert a NextGen lab order to a DiagnosticReport and its Observations.

    Args:
        nextgen_lab_order: NextGen lab order JSON object (``order_tests`` + optional ``results``)
        patient_reference: Reference to Patient resource

    Returns:
        Tuple of (report, observations)
    """
    require_mapping(nextgen_lab_order, "NextGen lab order")
    subject = patient_ref(patient_reference, nextgen_lab_order.get("person_id"))

    observations = [
        _lab_result_observation(result, subject)
        for result in nextgen_lab_order.get("results") or []
    ]

    tests = nextgen_lab_order.get("order_tests") or []
    test_codings = [
        coding(cs.LOINC, t["loinc_code"], t.get("test_name")) if t.get("loinc_code")
        else coding(_system("test-code"), t.get("test_code"), t.get("test_name"))
        for t in tests
    ]
    report_dict: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "id": generate_id(),
        "meta": _meta(nextgen_lab_order),
        "status": ORDER_STATUSES.get(nextgen_lab_order.get("order_status"), "registered"),
        "category": category(cs.V2_DIAGNOSTIC_SERVICE, "LAB", "Laboratory"),
        "code": compact({
            "coding": [c for c in test_codings if "code" in c],
            "text": ", ".join(t["test_name"] for t in tests if t.get("test_name")),
        }) or {"text": "Laboratory order"},
        "subject": subject,
    }

    order_id = identifier(_system("order-id"), nextgen_lab_order.get("order_id"))
    if order_id:
        report_dict["identifier"] = [order_id]

    effective = fhir_datetime(nextgen_lab_order.get("result_date"))
    if effective:
        report_dict["effectiveDateTime"] = effective
    issued = as_instant(nextgen_lab_order.get("modified_timestamp"))
    if issued:
        report_dict["issued"] = issued

    # Add performing lab if present
    if nextgen_lab_order.get("performing_lab_name"):
        report_dict["performer"] = [compact({
            "display": nextgen_lab_order["performing_lab_name"],
            "identifier": identifier(_system("lab-id"), nextgen_lab_order.get("performing_lab_id")),
        })]

    if observations:
        report_dict["result"] = [
            compact({"reference": f"Observation/{obs.id}", "display": obs.code.text})
            for obs in observations
        ]

    return DiagnosticReport(**report_dict), observations


def parse_nextgen_json_to_fhir(data: Dict[str, Any]) -> Bundle:
    """
    Convert a complete NextGen patient export to a FHIR transaction Bundle.

    Args:
        data: Dict with ``patient`` and optional ``encounters``, ``problems``,
            ``allergies``, ``medications`` and ``labOrders`` lists

    Returns:
        Transaction Bundle, Patient first
    """
    require_mapping(data, "NextGen export")
    require_mapping(data.get("patient"), "NextGen export patient")

    bundler = FHIRBundler()
    bundler.add_resource(parse_nextgen_patient_to_fhir(data["patient"]))
    patient_reference = bundler.patient_reference

    for encounter in data.get("encounters") or []:
        bundler.add_resource(parse_nextgen_encounter_to_fhir(encounter, patient_reference))
        if encounter.get("vitals"):
            bundler.add_resources(parse_nextgen_vitals_to_fhir(encounter["vitals"], patient_reference))
    for problem in data.get("problems") or []:
        bundler.add_resource(parse_nextgen_problem_to_fhir(problem, patient_reference))
    for allergy in data.get("allergies") or []:
        bundler.add_resource(parse_nextgen_allergy_to_fhir(allergy, patient_reference))
    for medication in data.get("medications") or []:
        bundler.add_resource(parse_nextgen_medication_to_fhir(medication, patient_reference))
    for lab_order in data.get("labOrders") or []:
        report, observations = parse_nextgen_lab_order_to_fhir(lab_order, patient_reference)
        bundler.add_resources(observations)
        bundler.add_resource(report)

    logger.debug("NextGen export produced {}", bundler.resource_counts())
    return bundler.build()
