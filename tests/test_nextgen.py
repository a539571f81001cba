"""
NextGen Mapper Tests

Tests for:
1. Patient / encounter / vitals / problem / allergy / medication /
   lab order mappers
2. NextGen status vocabularies
3. Whole-export bundles
"""
import pytest

from plumcare.errors import CallerContractViolation
from plumcare.fhir import codesystems as cs
from plumcare.fhir.common import to_dict
from plumcare.vendors.nextgen import (
    map_encounter_class,
    parse_nextgen_allergy_to_fhir,
    parse_nextgen_encounter_to_fhir,
    parse_nextgen_json_to_fhir,
    parse_nextgen_lab_order_to_fhir,
    parse_nextgen_medication_to_fhir,
    parse_nextgen_patient_to_fhir,
    parse_nextgen_problem_to_fhir,
    parse_nextgen_vitals_to_fhir,
)


# ============================================================================
# Sample Data for Testing
# ============================================================================

SAMPLE_PATIENT = {
    "person_id": "NG-3001",
    "enterprise_id": "ENT1",
    "mrn": "MRN-3001",
    "first_name": "Priya",
    "last_name": "Patel",
    "preferred_name": "Pri",
    "gender": "F",
    "date_of_birth": "1990-02-14",
    "ssn": "333-44-5555",
    "mobile_phone": "2065550111",
    "email_address": "priya@example.com",
    "address": {
        "address_type": "Work",
        "address_line_1": "500 Pine St",
        "address_line_2": "Suite 200",
        "city": "Seattle",
        "state_code": "WA",
        "postal_code": "98101",
        "country_code": "US",
    },
    "race_code": "2028-9",
    "ethnicity_code": "2186-5",
    "preferred_language": "en",
    "patient_status": "Active",
    "modified_timestamp": "2024-04-01T15:30:00Z",
}

SAMPLE_VITALS = {
    "person_id": "NG-3001",
    "recorded_date": "2024-04-02T10:00:00Z",
    "recorded_by": "RN Kim",
    "blood_pressure_systolic": 118,
    "blood_pressure_diastolic": 76,
    "pulse_rate": 64,
    "temperature_fahrenheit": 98.2,
    "weight_lbs": 140.5,
    "pain_scale": "2",
    "head_circumference_cm": None,
}

SAMPLE_ENCOUNTER = {
    "encounter_id": "E-42",
    "person_id": "NG-3001",
    "encounter_type": "Telehealth",
    "encounter_status": "Billed",
    "encounter_date": "2024-04-02",
    "rendering_provider_id": "PRV-9",
    "place_of_service_code": "02",
    "service_location": "Telehealth",
    "chief_complaint": "Migraine",
    "diagnoses": [
        {"icd_code": "G43.909", "description": "Migraine, unspecified", "diagnosis_type": "Primary",
         "sequence_number": 1},
        {"icd_code": "R51.9", "description": "Headache", "diagnosis_type": "Secondary", "sequence_number": 2},
    ],
    "vitals": SAMPLE_VITALS,
}

SAMPLE_PROBLEM = {
    "problem_id": "PB-1",
    "person_id": "NG-3001",
    "description": "Migraine",
    "icd_code": "346.90",
    "icd_version": "ICD-9",
    "snomed_code": "37796009",
    "status": "Chronic",
    "onset_date": "2015-01-01",
}

SAMPLE_ALLERGY = {
    "allergy_id": "AG-1",
    "person_id": "NG-3001",
    "allergen_name": "Shellfish",
    "allergen_code": "227037002",
    "allergen_code_system": "SNOMED",
    "allergen_type": "Food",
    "reaction_description": "Anaphylaxis",
    "reaction_severity": "Fatal",
    "status": "Active",
    "verified": True,
    "recorded_by": "Dr. Ortiz",
}

SAMPLE_MEDICATION = {
    "medication_id": "MD-1",
    "person_id": "NG-3001",
    "drug_name": "Sumatriptan 50 MG Oral Tablet",
    "drug_code": "313225",
    "drug_code_system": "RxNorm",
    "status": "On Hold",
    "start_date": "2024-01-01",
    "sig": "1 tablet at onset of migraine",
    "route": "Oral",
    "dosage_form": "Tablet",
    "frequency": "PRN",
    "quantity_prescribed": 9,
    "quantity_unit": "tablet",
    "days_supply": 30,
}

SAMPLE_LAB_ORDER = {
    "order_id": "LO-1",
    "person_id": "NG-3001",
    "order_status": "In Process",
    "performing_lab_name": "Quest",
    "performing_lab_id": "Q-1",
    "order_tests": [
        {"test_code": "CBC", "test_name": "Complete blood count", "loinc_code": "58410-2"},
        {"test_code": "TSH", "test_name": "TSH"},
    ],
    "results": [
        {"result_id": "R1", "test_name": "Hemoglobin", "loinc_code": "718-7", "result_value": "13.1",
         "result_unit": "g/dL", "reference_range_low": "12.0", "reference_range_high": "15.5",
         "result_status": "Final", "abnormal_flag": "N", "performed_date": "2024-04-03"},
        {"result_id": "R2", "test_name": "TSH", "test_code": "TSH", "result_value": "pending",
         "result_status": "Pending", "reference_range_text": "0.4-4.0 mIU/L"},
    ],
    "modified_timestamp": "2024-04-03T09:00:00Z",
}

SAMPLE_EXPORT = {
    "patient": SAMPLE_PATIENT,
    "encounters": [SAMPLE_ENCOUNTER],
    "problems": [SAMPLE_PROBLEM],
    "allergies": [SAMPLE_ALLERGY],
    "medications": [SAMPLE_MEDICATION],
    "labOrders": [SAMPLE_LAB_ORDER],
}


# ============================================================================
# Mapper Unit Tests
# ============================================================================

class TestPatientMapper:
    """Test NextGen patient → Patient."""

    def test_map_full_patient(self):
        patient = parse_nextgen_patient_to_fhir(SAMPLE_PATIENT)
        data = to_dict(patient)

        assert patient.gender == "female"
        assert patient.active is True
        assert data["address"][0]["use"] == "work"
        assert data["address"][0]["line"] == ["500 Pine St", "Suite 200"]
        assert data["name"][1] == {"use": "nickname", "given": ["Pri"]}
        assert data["meta"]["lastUpdated"].startswith("2024-04-01T15:30:00")

    def test_identifiers(self):
        patient = parse_nextgen_patient_to_fhir(SAMPLE_PATIENT)

        assert [i.type.coding[0].code for i in patient.identifier[:2]] == ["PI", "MR"]
        assert [i.system for i in patient.identifier] == [
            "http://nextgen.com/person-id",
            "http://nextgen.com/mrn",
            "http://nextgen.com/enterprise/ENT1",
            cs.US_SSN,
        ]

    def test_omb_extensions(self):
        patient = parse_nextgen_patient_to_fhir(SAMPLE_PATIENT)
        race = patient.extension[0]

        assert race.url == cs.US_CORE_RACE
        assert race.extension[0].url == "ombCategory"
        assert race.extension[0].valueCoding.system == cs.OMB_RACE_ETHNICITY
        assert race.extension[0].valueCoding.code == "2028-9"

    def test_inactive_patient(self):
        patient = parse_nextgen_patient_to_fhir({"person_id": "1", "patient_status": "Inactive"})
        assert patient.active is False

    def test_map_minimal_patient(self):
        patient = parse_nextgen_patient_to_fhir({"person_id": "1"})

        assert patient.id
        assert patient.identifier[0].value == "1"
        assert patient.gender == "unknown"
        assert patient.active is None


class TestEncounterMapper:
    """Test NextGen encounter → Encounter."""

    def test_map_encounter(self):
        encounter = parse_nextgen_encounter_to_fhir(SAMPLE_ENCOUNTER, "Patient/abc")
        data = to_dict(encounter)

        assert encounter.status == "finished"
        assert data["class"]["code"] == "VR"
        assert data["serviceType"]["coding"][0] == {
            "system": cs.SERVICE_TYPE, "code": "02", "display": "Telehealth",
        }
        assert [d["use"]["coding"][0]["code"] for d in data["diagnosis"]] == ["AD", "DD"]
        assert data["participant"][0]["individual"]["identifier"]["value"] == "PRV-9"
        assert data["period"]["start"] == "2024-04-02"

    def test_period_start_without_zone(self):
        encounter = parse_nextgen_encounter_to_fhir({"person_id": "1", "encounter_date": "2024-04-02T08:45:00"})
        assert to_dict(encounter)["period"]["start"] in ("2024-04-02T08:45:00Z", "2024-04-02T08:45:00+00:00")

    @pytest.mark.parametrize("encounter_type,code", [
        ("Office Visit", "AMB"),
        ("Hospital Visit", "IMP"),
        ("Emergency", "EMER"),
        ("Procedure", "AMB"),
        ("Lab Only", "AMB"),
    ])
    def test_encounter_class(self, encounter_type, code):
        assert map_encounter_class(encounter_type)["code"] == code

    @pytest.mark.parametrize("status,expected", [
        ("Open", "in-progress"),
        ("Closed", "finished"),
        ("Void", "cancelled"),
        ("Scheduled", "in-progress"),
    ])
    def test_status(self, status, expected):
        encounter = parse_nextgen_encounter_to_fhir({"person_id": "1", "encounter_status": status})
        assert encounter.status == expected


class TestVitalsMapper:
    """Test NextGen vitals → Observations."""

    def test_map_vitals(self):
        observations = parse_nextgen_vitals_to_fhir(SAMPLE_VITALS, "Patient/abc")
        codes = [o.code.coding[0].code for o in observations]

        assert codes == ["8480-6", "8462-4", "8867-4", "8310-5", "29463-7"]
        assert observations[0].performer[0].display == "RN Kim"
        assert observations[4].valueQuantity.code == "[lb_av]"
        assert to_dict(observations[0])["effectiveDateTime"] in ("2024-04-02T10:00:00Z", "2024-04-02T10:00:00+00:00")

    def test_recorded_date_without_zone(self):
        observation = parse_nextgen_vitals_to_fhir({"pulse_rate": 64, "recorded_date": "2024-04-02 10:00:00"})[0]
        assert to_dict(observation)["effectiveDateTime"] in ("2024-04-02T10:00:00Z", "2024-04-02T10:00:00+00:00")

    def test_string_values_skipped(self):
        """Only numbers are measurements; "2" for pain_scale is skipped."""
        observations = parse_nextgen_vitals_to_fhir({"pain_scale": "2", "bmi": True})
        assert observations == []

    def test_head_circumference(self):
        observation = parse_nextgen_vitals_to_fhir({"head_circumference_cm": 45.2})[0]

        assert observation.code.coding[0].code == "9843-4"
        assert observation.valueQuantity.code == "cm"


class TestProblemMapper:
    """Test NextGen problem → Condition."""

    def test_icd9_problem(self):
        condition = parse_nextgen_problem_to_fhir(SAMPLE_PROBLEM, "Patient/abc")

        assert condition.clinicalStatus.coding[0].code == "active"
        assert [c.system for c in condition.code.coding] == [cs.ICD9CM, cs.SNOMED]

    def test_icd10_problem(self):
        condition = parse_nextgen_problem_to_fhir({"icd_code": "G43.909", "icd_version": "ICD-10"})
        assert condition.code.coding[0].system == cs.ICD10CM


class TestAllergyMapper:
    """Test NextGen allergy → AllergyIntolerance."""

    def test_map_allergy(self):
        allergy = parse_nextgen_allergy_to_fhir(SAMPLE_ALLERGY, "Patient/abc")

        assert allergy.clinicalStatus.coding[0].code == "active"
        assert allergy.verificationStatus.coding[0].code == "confirmed"
        assert allergy.code.coding[0].system == cs.SNOMED
        assert allergy.category == ["food"]
        assert allergy.reaction[0].severity == "severe"
        assert allergy.recorder.display == "Dr. Ortiz"

    def test_unverified_allergy(self):
        allergy = parse_nextgen_allergy_to_fhir({"allergen_name": "Dust", "allergen_type": "Environment"})

        assert allergy.verificationStatus.coding[0].code == "unconfirmed"
        assert allergy.category == ["environment"]

    def test_entered_in_error(self):
        allergy = parse_nextgen_allergy_to_fhir({"allergen_name": "Penicillin", "status": "Entered in Error"})

        assert allergy.clinicalStatus is None
        assert allergy.verificationStatus.coding[0].code == "entered-in-error"


class TestMedicationMapper:
    """Test NextGen medication → MedicationStatement."""

    def test_map_medication(self):
        medication = parse_nextgen_medication_to_fhir(SAMPLE_MEDICATION, "Patient/abc")
        dosage = medication.dosage[0]

        assert medication.status == "on-hold"
        assert medication.medicationCodeableConcept.coding[0].system == cs.RXNORM
        assert dosage.route.text == "Oral"
        assert dosage.method.text == "Tablet"
        assert dosage.timing.code.text == "PRN"
        assert float(dosage.timing.repeat.boundsDuration.value) == 30.0

    def test_ndc_code_system(self):
        medication = parse_nextgen_medication_to_fhir({"drug_code": "0093-1", "drug_code_system": "NDC"})
        assert medication.medicationCodeableConcept.coding[0].system == cs.NDC


class TestLabOrderMapper:
    """Test NextGen lab order → DiagnosticReport + Observations."""

    def test_map_lab_order(self):
        report, observations = parse_nextgen_lab_order_to_fhir(SAMPLE_LAB_ORDER, "Patient/abc")

        assert report.status == "partial"
        assert report.code.text == "Complete blood count, TSH"
        assert [c.code for c in report.code.coding] == ["58410-2", "TSH"]
        assert report.performer[0].identifier.value == "Q-1"
        assert [r.reference for r in report.result] == [f"Observation/{o.id}" for o in observations]

    def test_structured_reference_range(self):
        hemoglobin, tsh = parse_nextgen_lab_order_to_fhir(SAMPLE_LAB_ORDER)[1]

        assert hemoglobin.status == "final"
        assert float(hemoglobin.referenceRange[0].low.value) == 12.0
        assert float(hemoglobin.referenceRange[0].high.value) == 15.5
        assert hemoglobin.interpretation is None
        assert tsh.status == "cancelled"
        assert tsh.valueQuantity is None
        assert tsh.referenceRange[0].text == "0.4-4.0 mIU/L"

    @pytest.mark.parametrize("order_status,expected", [
        ("Completed", "final"),
        ("Cancelled", "cancelled"),
        ("In Process", "partial"),
        ("Ordered", "registered"),
    ])
    def test_order_status(self, order_status, expected):
        report, _ = parse_nextgen_lab_order_to_fhir({"order_status": order_status})
        assert report.status == expected


# ============================================================================
# Export Bundle Tests
# ============================================================================

class TestNextGenBundle:
    """Test parse_nextgen_json_to_fhir."""

    def test_full_export(self):
        bundle = parse_nextgen_json_to_fhir(SAMPLE_EXPORT)
        types = [e.resource.get_resource_type() for e in bundle.entry]

        assert types == (
            ["Patient", "Encounter"]
            + ["Observation"] * 5
            + ["Condition", "AllergyIntolerance", "MedicationStatement"]
            + ["Observation"] * 2
            + ["DiagnosticReport"]
        )

    def test_every_resource_tagged(self):
        bundle = parse_nextgen_json_to_fhir(SAMPLE_EXPORT)
        assert {e.resource.meta.tag[0].code for e in bundle.entry} == {"nextgen"}

    def test_missing_patient_rejected(self):
        with pytest.raises(CallerContractViolation):
            parse_nextgen_json_to_fhir({"patient": "NG-3001"})
