"""
Lab Order Tests

Tests for:
1. Elation / NextGen shape discrimination
2. Model validation
3. ServiceRequest mapping for both shapes
"""
import pytest

from plumcare.errors import CallerContractViolation
from plumcare.fhir import codesystems as cs
from plumcare.fhir.common import to_dict
from plumcare.vendors.lab_orders import (
    ElationLabOrder,
    LabOrderShape,
    NextGenLabOrder,
    classify_lab_order,
    parse_lab_order,
    parse_lab_order_to_service_request,
)


# ============================================================================
# Sample Data for Testing
# ============================================================================

ELATION_ORDER = {
    "id": 6001,
    "patient": 140758496,
    "ordering_physician": 77,
    "order_date": "2024-03-01",
    "status": "Ordered",
    "priority": "STAT",
    "lab_name": "LabCorp",
    "tests": [
        {"code": "LIPID", "name": "Lipid Panel", "loinc_code": "57698-3"},
        {"code": "A1C", "name": "Hemoglobin A1c"},
    ],
    "notes": "Fasting",
}

NEXTGEN_ORDER = {
    "order_id": "LO-1",
    "person_id": "NG-3001",
    "ordering_provider_id": "PRV-9",
    "order_date": "2024-04-02",
    "order_status": "Completed",
    "priority": "Routine",
    "performing_lab_name": "Quest",
    "performing_lab_id": "Q-1",
    "order_tests": [{"test_code": "CBC", "test_name": "Complete blood count", "loinc_code": "58410-2"}],
    "special_instructions": "Draw before noon",
    "modified_timestamp": "2024-04-03T09:00:00Z",
}


# ============================================================================
# Discriminator Tests
# ============================================================================

class TestClassifyLabOrder:
    """Test which shape a record is taken to be."""

    def test_elation_shape(self):
        assert classify_lab_order(ELATION_ORDER) is LabOrderShape.ELATION

    def test_nextgen_shape(self):
        assert classify_lab_order(NEXTGEN_ORDER) is LabOrderShape.NEXTGEN

    def test_empty_test_list_still_discriminates(self):
        """Presence of the key decides, not whether it has items."""
        assert classify_lab_order({"id": 1, "tests": []}) is LabOrderShape.ELATION
        assert classify_lab_order({"order_id": 1, "order_tests": []}) is LabOrderShape.NEXTGEN

    def test_neither_shape(self):
        with pytest.raises(CallerContractViolation):
            classify_lab_order({"id": 1})

    def test_both_shapes(self):
        with pytest.raises(CallerContractViolation):
            classify_lab_order({**ELATION_ORDER, "order_tests": []})

    def test_non_mapping(self):
        with pytest.raises(CallerContractViolation):
            classify_lab_order("tests")


class TestParseLabOrder:
    """Test validation into union members."""

    def test_parses_to_model(self):
        assert isinstance(parse_lab_order(ELATION_ORDER), ElationLabOrder)
        assert isinstance(parse_lab_order(NEXTGEN_ORDER), NextGenLabOrder)

    def test_model_passes_through(self):
        order = NextGenLabOrder.model_validate(NEXTGEN_ORDER)
        assert parse_lab_order(order) is order

    def test_missing_id_rejected(self):
        with pytest.raises(CallerContractViolation) as exc_info:
            parse_lab_order({"tests": []})
        assert exc_info.value.expected == "ElationLabOrder"

    def test_vendor_neutral_accessors(self):
        elation = parse_lab_order(ELATION_ORDER)
        nextgen = parse_lab_order(NEXTGEN_ORDER)

        assert (elation.native_id, elation.native_patient_id, elation.order_status) == (6001, 140758496, "Ordered")
        assert (nextgen.native_id, nextgen.native_patient_id, nextgen.order_status) == ("LO-1", "NG-3001", "Completed")
        assert [t.system for t in elation.ordered_tests()] == [cs.LOINC, "http://elationemr.com/test-code"]


# ============================================================================
# ServiceRequest Mapping Tests
# ============================================================================

class TestServiceRequestMapping:
    """Test lab order → ServiceRequest."""

    def test_elation_order(self):
        request = parse_lab_order_to_service_request(ELATION_ORDER, "Patient/abc")
        data = to_dict(request)

        assert request.status == "active"
        assert request.intent == "order"
        assert request.priority == "stat"
        assert data["subject"]["reference"] == "Patient/abc"
        assert data["category"][0]["coding"][0]["code"] == "108252007"
        assert [c["code"] for c in data["code"]["coding"]] == ["57698-3", "A1C"]
        assert data["code"]["text"] == "Lipid Panel, Hemoglobin A1c"
        assert data["identifier"][0] == {"system": "http://elationemr.com/lab-order-id", "value": "6001"}
        assert data["requester"]["identifier"]["value"] == "77"
        assert data["performer"][0]["display"] == "LabCorp"
        assert data["note"][0]["text"] == "Fasting"
        assert data["authoredOn"] == "2024-03-01"
        assert data["meta"]["tag"][0]["code"] == "elation"

    def test_nextgen_order(self):
        request = parse_lab_order_to_service_request(NEXTGEN_ORDER)
        data = to_dict(request)

        assert request.status == "completed"
        assert request.priority == "routine"
        assert data["subject"]["reference"] == "Patient/NG-3001"
        assert data["code"]["coding"][0] == {"system": cs.LOINC, "code": "58410-2", "display": "Complete blood count"}
        assert data["performer"][0]["identifier"]["value"] == "Q-1"
        assert data["requester"]["identifier"]["system"] == "http://nextgen.com/provider-id"
        assert data["meta"]["tag"][0]["code"] == "nextgen"
        assert data["meta"]["lastUpdated"].startswith("2024-04-03T09:00:00")

    @pytest.mark.parametrize("status,expected", [
        ("Ordered", "active"),
        ("In Process", "active"),
        ("Final", "completed"),
        ("Complete", "completed"),
        ("Cancelled", "revoked"),
        ("Lost", "unknown"),
    ])
    def test_status(self, status, expected):
        request = parse_lab_order_to_service_request({"id": 1, "status": status, "tests": []})
        assert request.status == expected

    def test_minimal_order(self):
        request = parse_lab_order_to_service_request({"order_id": "X", "order_tests": []})
        data = to_dict(request)

        assert "code" not in data
        assert "priority" not in data
        assert "performer" not in data
        assert data["subject"]["reference"] == "Patient/unknown"

    def test_ambiguous_order_rejected(self):
        with pytest.raises(CallerContractViolation):
            parse_lab_order_to_service_request({**NEXTGEN_ORDER, "tests": []})
