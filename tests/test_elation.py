"""
Elation Mapper Tests

Tests for:
1. Patient / visit note / vitals / problem / allergy / medication /
   lab order mappers
2. Whole-export bundles
"""
import pytest

from plumcare.errors import CallerContractViolation
from plumcare.fhir import codesystems as cs
from plumcare.fhir.common import to_dict
from plumcare.vendors.elation import (
    parse_elation_allergy_to_fhir,
    parse_elation_json_to_fhir,
    parse_elation_lab_order_to_fhir,
    parse_elation_medication_to_fhir,
    parse_elation_patient_to_fhir,
    parse_elation_problem_to_fhir,
    parse_elation_visit_note_to_fhir,
    parse_elation_vitals_to_fhir,
)


# ============================================================================
# Sample Data for Testing
# ============================================================================

SAMPLE_PATIENT = {
    "id": 140758496,
    "first_name": "Robert",
    "middle_name": "J",
    "last_name": "Chen",
    "sex": "Male",
    "dob": "1962-11-30",
    "ssn": "222-33-4444",
    "phones": [
        {"phone": "415-555-0199", "phone_type": "Mobile", "is_primary": True},
        {"phone": "415-555-0100", "phone_type": "Office"},
    ],
    "emails": [{"email": "rchen@example.com", "is_primary": True}],
    "address": {"address_line1": "1 Market St", "city": "San Francisco", "state": "CA", "zip": "94105"},
    "emergency_contact": {"name": "Linda Chen", "relationship": "Spouse", "phone": "415-555-0142"},
    "last_modified_date": "2024-03-01T12:00:00Z",
}

SAMPLE_VITALS = {
    "blood_pressure_systolic": 130,
    "blood_pressure_diastolic": 85,
    "heart_rate": 72,
    "temperature": 98.6,
    "temperature_unit": "F",
    "weight": 180,
    "weight_unit": "lb",
    "height": None,
}

SAMPLE_VISIT_NOTE = {
    "id": 5001,
    "patient": 140758496,
    "physician": 77,
    "document_date": "2024-03-01",
    "visit_type": "Telehealth Follow-up",
    "signed": True,
    "chief_complaint": "Blood pressure check",
    "icd10_codes": [{"code": "I10", "description": "Essential hypertension", "rank": 1}],
    "vitals": SAMPLE_VITALS,
}

SAMPLE_PROBLEM = {
    "id": 9001,
    "patient": 140758496,
    "description": "Acute bronchitis",
    "icd10_code": "J20.9",
    "status": "Resolved",
    "onset_date": "2023-11-01",
    "resolved_date": "2023-11-20",
}

SAMPLE_ALLERGY = {
    "id": 3001,
    "patient": 140758496,
    "allergen": "Sulfa drugs",
    "allergen_type": "Drug",
    "reaction": "Rash",
    "severity": "Life-threatening",
    "status": "Active",
}

SAMPLE_MEDICATION = {
    "id": 4001,
    "patient": 140758496,
    "drug_name": "Amlodipine 5 MG Oral Tablet",
    "rxnorm": "197361",
    "status": "Discontinued",
    "discontinue_reason": "Ankle swelling",
    "prescribed_date": "2023-06-01",
    "sig": "1 tablet daily",
    "quantity": 30,
    "quantity_unit": "tablet",
    "days_supply": 30,
}

SAMPLE_LAB_ORDER = {
    "id": 6001,
    "patient": 140758496,
    "ordering_physician": 77,
    "order_date": "2024-03-01",
    "status": "Final",
    "lab_name": "LabCorp",
    "tests": [{"code": "LIPID", "name": "Lipid Panel", "loinc_code": "57698-3"}],
    "result_date": "2024-03-04",
    "results": [
        {"test_name": "LDL Cholesterol", "loinc_code": "13457-7", "value": "142", "unit": "mg/dL",
         "abnormal_flag": "H", "reference_range": "<100"},
        {"test_name": "Glucose", "test_code": "GLU", "value": "90", "unit": "mg/dL", "abnormal_flag": "N"},
    ],
    "last_modified_date": "2024-03-05T08:00:00Z",
}

SAMPLE_EXPORT = {
    "patient": SAMPLE_PATIENT,
    "visitNotes": [SAMPLE_VISIT_NOTE],
    "problems": [SAMPLE_PROBLEM],
    "allergies": [SAMPLE_ALLERGY],
    "medications": [SAMPLE_MEDICATION],
    "labOrders": [SAMPLE_LAB_ORDER],
}


# ============================================================================
# Mapper Unit Tests
# ============================================================================

class TestPatientMapper:
    """Test Elation patient → Patient."""

    def test_map_full_patient(self):
        patient = parse_elation_patient_to_fhir(SAMPLE_PATIENT)
        data = to_dict(patient)

        assert patient.gender == "male"
        assert data["birthDate"] == "1962-11-30"
        assert data["identifier"][0]["value"] == "140758496"
        assert data["telecom"][0] == {"system": "phone", "value": "415-555-0199", "use": "mobile", "rank": 1}
        assert data["telecom"][1]["use"] == "work"
        assert data["telecom"][2]["system"] == "email"
        assert data["address"][0]["line"] == ["1 Market St"]

    def test_emergency_contact(self):
        contact = parse_elation_patient_to_fhir(SAMPLE_PATIENT).contact[0]

        assert contact.relationship[0].coding[0].code == "C"
        assert contact.relationship[0].text == "Spouse"
        assert contact.name.text == "Linda Chen"
        assert contact.telecom[0].value == "415-555-0142"

    def test_last_updated_from_native_timestamp(self):
        data = to_dict(parse_elation_patient_to_fhir(SAMPLE_PATIENT))
        assert data["meta"]["lastUpdated"].startswith("2024-03-01T12:00:00")
        assert data["meta"]["tag"][0]["code"] == "elation"

    def test_timestamp_without_zone_not_used(self):
        patient = parse_elation_patient_to_fhir({"id": 1, "last_modified_date": "2024-03-01"})
        assert patient.meta.lastUpdated is None

    def test_map_minimal_patient(self):
        patient = parse_elation_patient_to_fhir({"id": 1})

        assert patient.id
        assert patient.identifier[0].value == "1"
        assert patient.gender == "unknown"

    def test_ids_are_fresh_identifiers_are_stable(self):
        first = parse_elation_patient_to_fhir(SAMPLE_PATIENT)
        second = parse_elation_patient_to_fhir(SAMPLE_PATIENT)

        assert first.id != second.id
        assert [i.value for i in first.identifier] == [i.value for i in second.identifier]


class TestVisitNoteMapper:
    """Test Elation visit note → Encounter."""

    def test_map_visit_note(self):
        encounter = parse_elation_visit_note_to_fhir(SAMPLE_VISIT_NOTE, "Patient/abc")
        data = to_dict(encounter)

        assert encounter.status == "finished"
        assert data["class"]["code"] == "VR"
        assert data["reasonCode"][0]["text"] == "Blood pressure check"
        assert data["diagnosis"][0]["rank"] == 1
        assert data["participant"][0]["individual"]["identifier"]["value"] == "77"

    def test_unsigned_office_visit(self):
        encounter = parse_elation_visit_note_to_fhir({"patient": 1, "visit_type": "Office Visit"})
        data = to_dict(encounter)

        assert encounter.status == "in-progress"
        assert data["class"]["code"] == "AMB"
        assert data["subject"]["reference"] == "Patient/1"


class TestVitalsMapper:
    """Test Elation vitals → Observations."""

    def test_map_vitals(self):
        observations = parse_elation_vitals_to_fhir(SAMPLE_VITALS, "Patient/abc", "2024-03-01T00:00:00")
        codes = [o.code.coding[0].code for o in observations]

        assert codes == ["8480-6", "8462-4", "8867-4", "8310-5", "29463-7"]
        assert {o.category[0].coding[0].code for o in observations} == {"vital-signs"}

    def test_ucum_units(self):
        observations = parse_elation_vitals_to_fhir(SAMPLE_VITALS)
        by_code = {o.code.coding[0].code: o for o in observations}

        assert by_code["8310-5"].valueQuantity.code == "[degF]"
        assert by_code["29463-7"].valueQuantity.code == "[lb_av]"
        assert by_code["8480-6"].valueQuantity.code == "mm[Hg]"
        assert float(by_code["8310-5"].valueQuantity.value) == 98.6

    @pytest.mark.parametrize("taken,expected", [
        ("2024-03-01", ("2024-03-01",)),
        ("2024-03-01T10:20:00", ("2024-03-01T10:20:00Z", "2024-03-01T10:20:00+00:00")),
        ("2024-03-01T10:20:00Z", ("2024-03-01T10:20:00Z", "2024-03-01T10:20:00+00:00")),
        ("2024-03-01T10:20:00+05:30", ("2024-03-01T10:20:00+05:30",)),
    ])
    def test_effective_date_time(self, taken, expected):
        observation = parse_elation_vitals_to_fhir({"heart_rate": 72}, "Patient/abc", taken)[0]
        assert to_dict(observation)["effectiveDateTime"] in expected

    def test_metric_units(self):
        observations = parse_elation_vitals_to_fhir({"temperature": 37.0, "temperature_unit": "C"})
        assert observations[0].valueQuantity.code == "Cel"

    def test_non_numeric_values_skipped(self):
        observations = parse_elation_vitals_to_fhir({"heart_rate": "fast", "bmi": 24.1})

        assert len(observations) == 1
        assert observations[0].code.coding[0].code == "39156-5"


class TestProblemMapper:
    """Test Elation problem → Condition."""

    def test_map_problem(self):
        condition = parse_elation_problem_to_fhir(SAMPLE_PROBLEM, "Patient/abc")
        data = to_dict(condition)

        assert condition.clinicalStatus.coding[0].code == "resolved"
        assert condition.code.coding[0].system == cs.ICD10CM
        assert data["abatementDateTime"].startswith("2023-11-20")

    def test_unknown_status_defaults_active(self):
        condition = parse_elation_problem_to_fhir({"description": "X", "status": "Unknown"})
        assert condition.clinicalStatus.coding[0].code == "active"

    def test_dates(self):
        condition = parse_elation_problem_to_fhir({
            "description": "X",
            "onset_date": "2023-11-01",
            "created_date": "2023-11-01T09:00:00",
        })
        data = to_dict(condition)

        assert data["onsetDateTime"] == "2023-11-01"
        assert data["recordedDate"] in ("2023-11-01T09:00:00Z", "2023-11-01T09:00:00+00:00")


class TestAllergyMapper:
    """Test Elation allergy → AllergyIntolerance."""

    def test_map_drug_allergy(self):
        allergy = parse_elation_allergy_to_fhir(SAMPLE_ALLERGY, "Patient/abc")

        assert allergy.type == "allergy"
        assert allergy.category == ["medication"]
        assert allergy.code.text == "Sulfa drugs"
        assert allergy.reaction[0].severity == "severe"
        assert allergy.clinicalStatus.coding[0].code == "active"

    def test_food_intolerance(self):
        allergy = parse_elation_allergy_to_fhir({"allergen": "Lactose", "allergen_type": "Food", "status": "Inactive"})

        assert allergy.type == "intolerance"
        assert allergy.category == ["food"]
        assert allergy.clinicalStatus.coding[0].code == "inactive"


class TestMedicationMapper:
    """Test Elation medication → MedicationStatement."""

    def test_map_discontinued_medication(self):
        medication = parse_elation_medication_to_fhir(SAMPLE_MEDICATION, "Patient/abc")
        dosage = medication.dosage[0]

        assert medication.status == "stopped"
        assert medication.statusReason[0].text == "Ankle swelling"
        assert medication.medicationCodeableConcept.coding[0].code == "197361"
        assert float(dosage.timing.repeat.boundsDuration.value) == 30.0
        assert dosage.timing.repeat.boundsDuration.code == "d"
        assert float(dosage.doseAndRate[0].doseQuantity.value) == 30.0

    def test_default_status(self):
        assert parse_elation_medication_to_fhir({"drug_name": "X"}).status == "active"


class TestLabOrderMapper:
    """Test Elation lab order → DiagnosticReport + Observations."""

    def test_map_lab_order(self):
        report, observations = parse_elation_lab_order_to_fhir(SAMPLE_LAB_ORDER, "Patient/abc")
        ldl, glucose = observations

        assert report.status == "final"
        assert report.code.coding[0].system == cs.LOINC
        assert report.code.text == "Lipid Panel"
        assert report.performer[0].display == "LabCorp"
        assert to_dict(report)["issued"].startswith("2024-03-05T08:00:00")
        assert ldl.interpretation[0].coding[0].code == "H"
        assert glucose.interpretation is None
        assert glucose.code.coding[0].system == "http://elationemr.com/test-code"

    @pytest.mark.parametrize("status,expected", [
        ("Final", "final"),
        ("Complete", "final"),
        ("Cancelled", "cancelled"),
        ("Ordered", "registered"),
    ])
    def test_report_status(self, status, expected):
        report, _ = parse_elation_lab_order_to_fhir({**SAMPLE_LAB_ORDER, "status": status})
        assert report.status == expected

    def test_order_without_results(self):
        order = {"id": 1, "patient": 2, "status": "Ordered", "tests": [{"code": "CBC", "name": "CBC"}]}
        report, observations = parse_elation_lab_order_to_fhir(order)

        assert observations == []
        assert report.status == "registered"
        assert report.result is None
        assert report.subject.reference == "Patient/2"


# ============================================================================
# Export Bundle Tests
# ============================================================================

class TestElationBundle:
    """Test parse_elation_json_to_fhir."""

    def test_full_export(self):
        bundle = parse_elation_json_to_fhir(SAMPLE_EXPORT)
        types = [e.resource.get_resource_type() for e in bundle.entry]

        assert types == (
            ["Patient", "Encounter"]
            + ["Observation"] * 5
            + ["Condition", "AllergyIntolerance", "MedicationStatement"]
            + ["Observation"] * 2
            + ["DiagnosticReport"]
        )

    def test_visit_vitals_take_visit_date(self):
        bundle = parse_elation_json_to_fhir(SAMPLE_EXPORT)
        vitals = to_dict(bundle.entry[2].resource)

        assert vitals["effectiveDateTime"] == "2024-03-01"

    def test_native_references_rewritten(self):
        bundle = parse_elation_json_to_fhir(SAMPLE_EXPORT)
        patient_reference = f"Patient/{bundle.entry[0].resource.id}"

        for entry in bundle.entry[1:]:
            resource = entry.resource
            ref = resource.patient if resource.get_resource_type() == "AllergyIntolerance" else resource.subject
            assert ref.reference == patient_reference

    def test_non_mapping_export_rejected(self):
        with pytest.raises(CallerContractViolation):
            parse_elation_json_to_fhir([SAMPLE_PATIENT])
