"""
Athena JSON to FHIR Mappers

Maps athenaOne API records to FHIR R4 resources:
- patient → Patient
- encounter → Encounter
- vitals reading → Observation (vital-signs), one per vital
- lab result → Observation (laboratory) per analyte + DiagnosticReport
- problem → Condition
- allergy → AllergyIntolerance
- medication → MedicationStatement

Athena dates are ISO ``YYYY-MM-DD``; date-only values that land in FHIR
dateTime elements are widened to midnight.
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

from plumcare.config import settings
from plumcare.errors import require_mapping
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

ATHENA = "http://athenahealth.com"

GENDERS = {"M": "male", "F": "female", "O": "other"}

ENCOUNTER_TYPES = {
    "OFFICE": "AMB",
    "TELEHEALTH": "VR",
    "INPATIENT": "IMP",
    "EMERGENCY": "EMER",
    "HOME VISIT": "HH",
}

ENCOUNTER_STATUSES = {
    "OPEN": "in-progress",
    "CLOSED": "finished",
    "CANCELLED": "cancelled",
}

PROBLEM_STATUSES = {
    "ACTIVE": "active",
    "CHRONIC": "active",
    "RESOLVED": "resolved",
    "INACTIVE": "inactive",
}

MEDICATION_STATUSES = {
    "active": "active",
    "discontinued": "stopped",
}

LAB_RESULT_STATUSES = {
    "FINAL": "final",
    "PRELIMINARY": "preliminary",
    "CORRECTED": "corrected",
    "CANCELLED": "cancelled",
}


def map_gender(sex: Any) -> str:
    return GENDERS.get(str(sex or "").upper(), "unknown")


def map_encounter_class(encounter_type: Any) -> Dict[str, str]:
    """HL7 v3 ActCode class for an Athena encounter type; unknown types are ambulatory."""
    return cs.encounter_class(ENCOUNTER_TYPES.get(str(encounter_type or "").upper(), "AMB"))


def map_encounter_status(status: Any) -> str:
    return ENCOUNTER_STATUSES.get(str(status or "").upper(), "in-progress")


def map_problem_status(status: Any) -> str:
    return PROBLEM_STATUSES.get(str(status or "").upper(), "active")


def _system(kind: str) -> str:
    return f"{ATHENA}/{kind}"


def _meta() -> Dict[str, Any]:
    return source_meta(EhrSource.ATHENA)


def parse_athena_patient_to_fhir(athena_patient: Dict[str, Any]) -> Patient:
    """
    Convert an Athena patient record to a FHIR Patient.

    Args:
        athena_patient: Athena patient JSON object

    Returns:
        FHIR Patient resource
    """
    require_mapping(athena_patient, "Athena patient")
    patient_id = athena_patient.get("patientid")

    patient_dict: Dict[str, Any] = {
        "resourceType": "Patient",
        "id": generate_id(),
        "meta": _meta(),
        "gender": map_gender(athena_patient.get("sex")),
    }

    identifiers = [
        identifier(_system("patient-id"), patient_id, "MR", "Medical Record Number"),
        identifier(cs.US_SSN, athena_patient.get("ssn")),
    ]
    if athena_patient.get("enterpriseid"):
        identifiers.insert(1, identifier(_system(f"enterprise/{athena_patient['enterpriseid']}"), patient_id))
    identifiers = [i for i in identifiers if i]
    if identifiers:
        patient_dict["identifier"] = identifiers

    names = []
    official = compact({
        "family": athena_patient.get("lastname"),
        "given": [g for g in (athena_patient.get("firstname"), athena_patient.get("middlename")) if g],
        "suffix": [athena_patient["suffix"]] if athena_patient.get("suffix") else None,
    })
    if official:
        names.append({"use": "official", **official})
    # Add preferred name if present
    if athena_patient.get("preferredname"):
        names.append({"use": "nickname", "given": [athena_patient["preferredname"]]})
    if names:
        patient_dict["name"] = names

    if athena_patient.get("dob"):
        patient_dict["birthDate"] = athena_patient["dob"]

    telecom = []
    for key, use in (("homephone", "home"), ("mobilephone", "mobile"), ("workphone", "work")):
        if athena_patient.get(key):
            telecom.append({"system": "phone", "value": str(athena_patient[key]), "use": use})
    if athena_patient.get("email"):
        telecom.append({"system": "email", "value": athena_patient["email"]})
    if telecom:
        patient_dict["telecom"] = telecom

    # Add address if present
    if athena_patient.get("address1") or athena_patient.get("city"):
        patient_dict["address"] = [compact({
            "use": "home",
            "line": [line for line in (athena_patient.get("address1"), athena_patient.get("address2")) if line],
            "city": athena_patient.get("city"),
            "state": athena_patient.get("state"),
            "postalCode": athena_patient.get("zip"),
            "country": athena_patient.get("countrycode") or settings.default_country,
        })]

    marital_status = athena_patient.get("maritalstatus")
    if marital_status:
        patient_dict["maritalStatus"] = {
            "coding": [coding(cs.V3_MARITAL_STATUS, marital_status[0].upper(), marital_status)]
        }

    extensions = []
    if athena_patient.get("race"):
        extensions.append({
            "url": cs.US_CORE_RACE,
            "extension": [{"url": "text", "valueString": athena_patient.get("racename") or athena_patient["race"]}],
        })
    if athena_patient.get("ethnicity"):
        extensions.append({
            "url": cs.US_CORE_ETHNICITY,
            "extension": [{
                "url": "text",
                "valueString": athena_patient.get("ethnicityname") or athena_patient["ethnicity"],
            }],
        })
    if extensions:
        patient_dict["extension"] = extensions

    if athena_patient.get("language6392code"):
        patient_dict["communication"] = [{
            "language": {"coding": [coding(cs.BCP47, athena_patient["language6392code"])]},
            "preferred": True,
        }]

    return Patient(**patient_dict)


def parse_athena_encounter_to_fhir(athena_encounter: Dict[str, Any], patient_reference: str = None) -> Encounter:
    """
    Convert an Athena encounter to a FHIR Encounter.

    Args:
        athena_encounter: Athena encounter JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Encounter resource
    """
    require_mapping(athena_encounter, "Athena encounter")
    encounter_type = athena_encounter.get("encountertype")

    encounter_dict: Dict[str, Any] = {
        "resourceType": "Encounter",
        "id": generate_id(),
        "meta": _meta(),
        "status": map_encounter_status(athena_encounter.get("encounterstatus")),
        "class": map_encounter_class(encounter_type),
        "subject": patient_ref(patient_reference, athena_encounter.get("patientid")),
    }

    encounter_id = identifier(_system("encounter-id"), athena_encounter.get("encounterid"))
    if encounter_id:
        encounter_dict["identifier"] = [encounter_id]

    if encounter_type:
        encounter_dict["type"] = [{"coding": [coding(_system("encounter-type"), encounter_type, encounter_type)]}]

    provider_name = " ".join(
        n for n in (athena_encounter.get("providerfirstname"), athena_encounter.get("providerlastname")) if n
    )
    individual = compact({
        "display": provider_name,
        "identifier": identifier(_system("provider-id"), athena_encounter.get("providerid")),
    })
    if individual:
        encounter_dict["participant"] = [{
            "type": [{"coding": [coding(cs.V3_PARTICIPATION_TYPE, "ATND", "attender")]}],
            "individual": individual,
        }]

    period = compact({
        "start": fhir_datetime(athena_encounter.get("encounterdate")),
        "end": fhir_datetime(athena_encounter.get("closeddatetime")),
    })
    if period:
        encounter_dict["period"] = period

    diagnoses = []
    for diagnosis in athena_encounter.get("diagnoses") or []:
        sequence = diagnosis.get("sequence")
        admission = sequence == 1
        diagnoses.append(compact({
            "condition": {"display": diagnosis.get("description") or diagnosis.get("icd10code") or "Unspecified"},
            "use": {"coding": [coding(
                cs.DIAGNOSIS_ROLE,
                "AD" if admission else "DD",
                "Admission diagnosis" if admission else "Discharge diagnosis",
            )]},
            "rank": sequence if isinstance(sequence, int) and sequence > 0 else None,
        }))
    if diagnoses:
        encounter_dict["diagnosis"] = diagnoses

    return Encounter(**encounter_dict)


def parse_athena_vitals_to_fhir(athena_vitals: Dict[str, Any], patient_reference: str = None) -> List[Observation]:
    """
    Convert one Athena vitals reading to FHIR Observations, one per vital.

    Args:
        athena_vitals: Athena vitals JSON object (``readingdatetime`` + ``vitals``)
        patient_reference: Reference to Patient resource

    Returns:
        Observations in reading order
    """
    require_mapping(athena_vitals, "Athena vitals")
    subject = patient_ref(patient_reference, athena_vitals.get("patientid"))
    effective = fhir_datetime(athena_vitals.get("readingdatetime"))

    observations = []
    for vital in athena_vitals.get("vitals") or []:
        observation_dict: Dict[str, Any] = {
            "resourceType": "Observation",
            "id": generate_id(),
            "meta": _meta(),
            "status": "final",
            "category": observation_category("vital-signs"),
            "code": {"text": vital.get("vitalname") or "Unspecified vital"},
            "subject": subject,
        }
        if effective:
            observation_dict["effectiveDateTime"] = effective

        value_quantity = quantity(vital.get("vitalvalue"), vital.get("vitalunits"))
        if value_quantity:
            observation_dict["valueQuantity"] = value_quantity

        observations.append(Observation(**observation_dict))

    return observations


def parse_athena_lab_result_to_fhir(
    athena_lab_result: Dict[str, Any],
    patient_reference: str = None,
) -> Tuple[DiagnosticReport, List[Observation]]:
    """
    Convert an Athena lab result to a DiagnosticReport and its Observations.

    Args:
        athena_lab_result: Athena lab result JSON object (``panels`` of ``analytes``)
        patient_reference: Reference to Patient resource

    Returns:
        Tuple of (report, observations); the report's ``result`` references
        each observation
    """
    require_mapping(athena_lab_result, "Athena lab result")
    subject = patient_ref(patient_reference, athena_lab_result.get("patientid"))
    effective = fhir_datetime(athena_lab_result.get("resultdate"))
    panels = athena_lab_result.get("panels") or []

    observations = []
    for panel in panels:
        for analyte in panel.get("analytes") or []:
            observation_dict: Dict[str, Any] = {
                "resourceType": "Observation",
                "id": generate_id(),
                "meta": _meta(),
                "status": "final",
                "category": observation_category("laboratory"),
                "code": codeable(cs.LOINC, analyte.get("loinccode"), analyte.get("analytename"))
                or {"text": "Unspecified analyte"},
                "subject": subject,
            }
            if effective:
                observation_dict["effectiveDateTime"] = effective

            value_quantity = quantity(analyte.get("analytevalue"), analyte.get("units"))
            if value_quantity:
                observation_dict["valueQuantity"] = value_quantity

            # Add interpretation if present
            if analyte.get("abnormalflag"):
                observation_dict["interpretation"] = [{
                    "coding": [coding(cs.V3_INTERPRETATION, analyte["abnormalflag"])]
                }]

            if analyte.get("referencerange"):
                observation_dict["referenceRange"] = [{"text": analyte["referencerange"]}]

            observations.append(Observation(**observation_dict))

    report_dict: Dict[str, Any] = {
        "resourceType": "DiagnosticReport",
        "id": generate_id(),
        "meta": _meta(),
        "status": LAB_RESULT_STATUSES.get(str(athena_lab_result.get("resultstatus") or "").upper(), "final"),
        "category": category(cs.V2_DIAGNOSTIC_SERVICE, "LAB", "Laboratory"),
        "subject": subject,
    }

    panel_codings = [coding(cs.LOINC, p.get("loinccode"), p.get("panelname")) for p in panels if p.get("loinccode")]
    panel_names = ", ".join(p["panelname"] for p in panels if p.get("panelname"))
    report_dict["code"] = compact({"coding": panel_codings, "text": panel_names}) or {"text": "Laboratory result"}

    lab_result_id = identifier(_system("lab-result-id"), athena_lab_result.get("labresultid"))
    if lab_result_id:
        report_dict["identifier"] = [lab_result_id]
    if effective:
        report_dict["effectiveDateTime"] = effective
    if athena_lab_result.get("performinglabname"):
        report_dict["performer"] = [{"display": athena_lab_result["performinglabname"]}]
    if observations:
        report_dict["result"] = [
            compact({"reference": f"Observation/{obs.id}", "display": obs.code.text})
            for obs in observations
        ]

    return DiagnosticReport(**report_dict), observations


def parse_athena_problem_to_fhir(athena_problem: Dict[str, Any], patient_reference: str = None) -> Condition:
    """
    Convert an Athena problem-list entry to a FHIR Condition.

    Args:
        athena_problem: Athena problem JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR Condition resource
    """
    require_mapping(athena_problem, "Athena problem")
    status = map_problem_status(athena_problem.get("status"))

    condition_dict: Dict[str, Any] = {
        "resourceType": "Condition",
        "id": generate_id(),
        "meta": _meta(),
        "clinicalStatus": {"coding": [coding(cs.CONDITION_CLINICAL, status, athena_problem.get("status"))]},
        "verificationStatus": {"coding": [coding(cs.CONDITION_VER_STATUS, "confirmed", "Confirmed")]},
        "category": category(cs.CONDITION_CATEGORY, "problem-list-item", "Problem List Item"),
        "subject": patient_ref(patient_reference, athena_problem.get("patientid")),
    }

    problem_id = identifier(_system("problem-id"), athena_problem.get("problemid"))
    if problem_id:
        condition_dict["identifier"] = [problem_id]

    codings = [
        coding(cs.ICD10CM, athena_problem.get("icd10code"), athena_problem.get("name")),
        coding(cs.SNOMED, athena_problem.get("snomedcode")),
    ]
    code = compact({
        "coding": [c for c in codings if "code" in c],
        "text": athena_problem.get("name"),
    })
    if code:
        condition_dict["code"] = code

    onset = fhir_datetime(athena_problem.get("onsetdate"))
    if onset:
        condition_dict["onsetDateTime"] = onset
    recorded = fhir_datetime(athena_problem.get("lastmodifieddatetime"))
    if recorded:
        condition_dict["recordedDate"] = recorded
    if athena_problem.get("note"):
        condition_dict["note"] = [{"text": athena_problem["note"]}]

    return Condition(**condition_dict)


def parse_athena_allergy_to_fhir(athena_allergy: Dict[str, Any], patient_reference: str = None) -> AllergyIntolerance:
    """
    Convert an Athena allergy to a FHIR AllergyIntolerance.

    Args:
        athena_allergy: Athena allergy JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR AllergyIntolerance resource
    """
    require_mapping(athena_allergy, "Athena allergy")
    status = "active" if str(athena_allergy.get("status") or "active").lower() == "active" else "inactive"

    allergy_dict: Dict[str, Any] = {
        "resourceType": "AllergyIntolerance",
        "id": generate_id(),
        "meta": _meta(),
        "clinicalStatus": {"coding": [coding(cs.ALLERGY_CLINICAL, status, status.capitalize())]},
        "verificationStatus": {"coding": [coding(cs.ALLERGY_VERIFICATION, "confirmed", "Confirmed")]},
        "patient": patient_ref(patient_reference, athena_allergy.get("patientid")),
    }

    allergy_id = identifier(_system("allergy-id"), athena_allergy.get("allergyid"))
    if allergy_id:
        allergy_dict["identifier"] = [allergy_id]

    code = codeable(_system("allergen"), athena_allergy.get("allergenid"), athena_allergy.get("allergenname"))
    if code:
        allergy_dict["code"] = code

    onset = fhir_datetime(athena_allergy.get("onsetdate"))
    if onset:
        allergy_dict["onsetDateTime"] = onset

    reactions = [r for r in athena_allergy.get("reactions") or [] if r]
    if reactions:
        reaction: Dict[str, Any] = {"manifestation": [{"text": r} for r in reactions]}
        severity = str(athena_allergy.get("severity") or "").lower()
        if severity in ("mild", "moderate", "severe"):
            reaction["severity"] = severity
        allergy_dict["reaction"] = [reaction]

    if athena_allergy.get("note"):
        allergy_dict["note"] = [{"text": athena_allergy["note"]}]

    return AllergyIntolerance(**allergy_dict)


def parse_athena_medication_to_fhir(
    athena_medication: Dict[str, Any],
    patient_reference: str = None,
) -> MedicationStatement:
    """
    Convert an Athena medication to a FHIR MedicationStatement.

    Args:
        athena_medication: Athena medication JSON object
        patient_reference: Reference to Patient resource

    Returns:
        FHIR MedicationStatement resource
    """
    require_mapping(athena_medication, "Athena medication")
    status = MEDICATION_STATUSES.get(str(athena_medication.get("status") or "").lower(), "completed")

    medication_dict: Dict[str, Any] = {
        "resourceType": "MedicationStatement",
        "id": generate_id(),
        "meta": _meta(),
        "status": status,
        "medicationCodeableConcept": codeable(
            cs.RXNORM, athena_medication.get("medicationcode"), athena_medication.get("medication")
        ) or {"text": "Unknown medication"},
        "subject": patient_ref(patient_reference, athena_medication.get("patientid")),
    }

    medication_id = identifier(_system("medication-id"), athena_medication.get("medicationid"))
    if medication_id:
        medication_dict["identifier"] = [medication_id]

    period = compact({
        "start": fhir_datetime(athena_medication.get("startdate")),
        "end": fhir_datetime(athena_medication.get("stopdate")),
    })
    if period:
        medication_dict["effectivePeriod"] = period

    asserted = fhir_datetime(athena_medication.get("prescribeddatetime"))
    if asserted:
        medication_dict["dateAsserted"] = asserted
    if athena_medication.get("sig"):
        medication_dict["dosage"] = [{"text": athena_medication["sig"]}]

    return MedicationStatement(**medication_dict)


def parse_athena_json_to_fhir(data: Dict[str, Any]) -> Bundle:
    """
    Convert a complete Athena patient export to a FHIR transaction Bundle.

    Args:
        data: Dict with ``patient`` and optional ``encounters``, ``problems``,
            ``allergies``, ``medications``, ``vitals`` and ``labResults`` lists

    Returns:
        Transaction Bundle, Patient first
    """
    require_mapping(data, "Athena export")
    require_mapping(data.get("patient"), "Athena export patient")

    bundler = FHIRBundler()
    bundler.add_resource(parse_athena_patient_to_fhir(data["patient"]))
    patient_reference = bundler.patient_reference

    for encounter in data.get("encounters") or []:
        bundler.add_resource(parse_athena_encounter_to_fhir(encounter, patient_reference))
    for problem in data.get("problems") or []:
        bundler.add_resource(parse_athena_problem_to_fhir(problem, patient_reference))
    for allergy in data.get("allergies") or []:
        bundler.add_resource(parse_athena_allergy_to_fhir(allergy, patient_reference))
    for medication in data.get("medications") or []:
        bundler.add_resource(parse_athena_medication_to_fhir(medication, patient_reference))
    for vitals in data.get("vitals") or []:
        bundler.add_resources(parse_athena_vitals_to_fhir(vitals, patient_reference))
    for lab_result in data.get("labResults") or []:
        report, observations = parse_athena_lab_result_to_fhir(lab_result, patient_reference)
        bundler.add_resources(observations)
        bundler.add_resource(report)

    logger.debug("Athena export produced {}", bundler.resource_counts())
    return bundler.build()
