"""
Lab Orders → ServiceRequest

Elation and NextGen both emit lab orders, with diverging field names:

    Elation:  tests[{code, name, loinc_code}],                 status, ordering_physician
    NextGen:  order_tests[{test_code, test_name, loinc_code}], order_status, ordering_provider_id

The two shapes are modelled as separate pydantic models joined in the
``LabOrder`` union. ``classify_lab_order`` picks the member by checking
which test list key the record carries, so every record is exactly one
shape or is rejected.
"""
from enum import Enum
from typing import Any, ClassVar, Dict, List, NamedTuple, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError
from fhir.resources.R4B.servicerequest import ServiceRequest

from plumcare.errors import CallerContractViolation, require_mapping
from plumcare.fhir import codesystems as cs
from plumcare.fhir.common import (
    EhrSource,
    coding,
    compact,
    fhir_datetime,
    generate_id,
    identifier,
    patient_ref,
    source_meta,
)

NativeId = Union[int, str]

SERVICE_REQUEST_STATUSES = {
    "Ordered": "active",
    "Collected": "active",
    "In Progress": "active",
    "In Process": "active",
    "Final": "completed",
    "Complete": "completed",
    "Completed": "completed",
    "Cancelled": "revoked",
}

PRIORITIES = {"Routine": "routine", "Urgent": "urgent", "STAT": "stat", "ASAP": "asap"}

LABORATORY_PROCEDURE = ("108252007", "Laboratory procedure")


class LabOrderShape(str, Enum):
    """Which vendor field set a lab order record uses."""
    ELATION = "elation"
    NEXTGEN = "nextgen"


class OrderedTest(NamedTuple):
    """One ordered test, in vendor-neutral form."""
    system: str
    code: Optional[str]
    name: Optional[str]


# Elation shape
class ElationLabTest(BaseModel):
    """Test requested on an Elation lab order"""
    code: Optional[str] = None
    name: Optional[str] = None
    loinc_code: Optional[str] = None


class ElationLabOrder(BaseModel):
    """Elation lab order; discriminated by its ``tests`` list"""
    id: NativeId
    patient: Optional[NativeId] = None
    ordering_physician: Optional[NativeId] = None
    order_date: Optional[str] = None
    status: str = "Ordered"
    priority: Optional[str] = None
    lab_name: Optional[str] = None
    tests: List[ElationLabTest] = Field(default_factory=list)
    notes: Optional[str] = None
    last_modified_date: Optional[str] = None

    shape: ClassVar[LabOrderShape] = LabOrderShape.ELATION
    source: ClassVar[EhrSource] = EhrSource.ELATION
    id_system: ClassVar[str] = "http://elationemr.com/lab-order-id"
    requester_system: ClassVar[str] = "http://elationemr.com/physician-id"
    test_code_system: ClassVar[str] = "http://elationemr.com/test-code"

    @property
    def native_id(self) -> NativeId:
        return self.id

    @property
    def native_patient_id(self) -> Optional[NativeId]:
        return self.patient

    @property
    def requester_id(self) -> Optional[NativeId]:
        return self.ordering_physician

    @property
    def order_status(self) -> str:
        return self.status

    @property
    def lab(self) -> Dict[str, Any]:
        return compact({"display": self.lab_name})

    @property
    def note(self) -> Optional[str]:
        return self.notes

    @property
    def last_updated(self) -> Optional[str]:
        return self.last_modified_date

    def ordered_tests(self) -> List[OrderedTest]:
        return [
            OrderedTest(cs.LOINC, t.loinc_code, t.name) if t.loinc_code
            else OrderedTest(self.test_code_system, t.code, t.name)
            for t in self.tests
        ]


# NextGen shape
class NextGenOrderTest(BaseModel):
    """Test requested on a NextGen lab order"""
    test_id: Optional[str] = None
    test_code: Optional[str] = None
    test_name: Optional[str] = None
    loinc_code: Optional[str] = None


class NextGenLabOrder(BaseModel):
    """NextGen lab order; discriminated by its ``order_tests`` list"""
    order_id: NativeId
    person_id: Optional[NativeId] = None
    ordering_provider_id: Optional[NativeId] = None
    order_date: Optional[str] = None
    order_status: str = "Ordered"
    priority: Optional[str] = None
    performing_lab_name: Optional[str] = None
    performing_lab_id: Optional[str] = None
    order_tests: List[NextGenOrderTest] = Field(default_factory=list)
    special_instructions: Optional[str] = None
    modified_timestamp: Optional[str] = None

    shape: ClassVar[LabOrderShape] = LabOrderShape.NEXTGEN
    source: ClassVar[EhrSource] = EhrSource.NEXTGEN
    id_system: ClassVar[str] = "http://nextgen.com/order-id"
    requester_system: ClassVar[str] = "http://nextgen.com/provider-id"
    test_code_system: ClassVar[str] = "http://nextgen.com/test-code"

    @property
    def native_id(self) -> NativeId:
        return self.order_id

    @property
    def native_patient_id(self) -> Optional[NativeId]:
        return self.person_id

    @property
    def requester_id(self) -> Optional[NativeId]:
        return self.ordering_provider_id

    @property
    def lab(self) -> Dict[str, Any]:
        return compact({
            "display": self.performing_lab_name,
            "identifier": identifier("http://nextgen.com/lab-id", self.performing_lab_id),
        })

    @property
    def note(self) -> Optional[str]:
        return self.special_instructions

    @property
    def last_updated(self) -> Optional[str]:
        return self.modified_timestamp

    def ordered_tests(self) -> List[OrderedTest]:
        return [
            OrderedTest(cs.LOINC, t.loinc_code, t.test_name) if t.loinc_code
            else OrderedTest(self.test_code_system, t.test_code, t.test_name)
            for t in self.order_tests
        ]


LabOrder = Union[ElationLabOrder, NextGenLabOrder]

_MODELS = {
    LabOrderShape.ELATION: ElationLabOrder,
    LabOrderShape.NEXTGEN: NextGenLabOrder,
}


def classify_lab_order(record: Dict[str, Any]) -> LabOrderShape:
    """
    Decide which vendor shape a lab order record has.

    Args:
        record: Native lab order JSON object

    Returns:
        ELATION if the record has ``tests``, NEXTGEN if it has ``order_tests``

    Raises:
        CallerContractViolation: If the record has neither key, or both
    """
    require_mapping(record, "Lab order")
    has_tests = "tests" in record
    has_order_tests = "order_tests" in record

    if has_tests and not has_order_tests:
        return LabOrderShape.ELATION
    if has_order_tests and not has_tests:
        return LabOrderShape.NEXTGEN
    raise CallerContractViolation(
        "Lab order must carry exactly one of 'tests' or 'order_tests'",
        expected="tests | order_tests",
        received=record,
    )


def parse_lab_order(record: Union[Dict[str, Any], LabOrder]) -> LabOrder:
    """
    Validate a native lab order into its tagged-union member.

    Raises:
        CallerContractViolation: If the shape is ambiguous or its fields
            do not validate
    """
    if isinstance(record, (ElationLabOrder, NextGenLabOrder)):
        return record
    shape = classify_lab_order(record)
    try:
        return _MODELS[shape].model_validate(record)
    except ValidationError as e:
        raise CallerContractViolation(
            f"Invalid {shape.value} lab order: {e.error_count()} field error(s)",
            expected=_MODELS[shape].__name__,
            received=record,
        ) from e


def parse_lab_order_to_service_request(
    record: Union[Dict[str, Any], LabOrder],
    patient_reference: str = None,
) -> ServiceRequest:
    """
    Convert an Elation or NextGen lab order to a FHIR ServiceRequest.

    Args:
        record: Native lab order JSON object (either shape), or an already
            validated ``LabOrder``
        patient_reference: Reference to Patient resource

    Returns:
        FHIR ServiceRequest resource with intent ``order``
    """
    order = parse_lab_order(record)
    logger.debug("Mapping {} lab order {} to ServiceRequest", order.shape.value, order.native_id)

    request_dict: Dict[str, Any] = {
        "resourceType": "ServiceRequest",
        "id": generate_id(),
        "meta": source_meta(order.source, order.last_updated),
        "status": SERVICE_REQUEST_STATUSES.get(order.order_status, "unknown"),
        "intent": "order",
        "category": [{"coding": [coding(cs.SNOMED, *LABORATORY_PROCEDURE)]}],
        "subject": patient_ref(patient_reference, order.native_patient_id),
    }

    order_id = identifier(order.id_system, order.native_id)
    if order_id:
        request_dict["identifier"] = [order_id]

    tests = order.ordered_tests()
    code = compact({
        "coding": [coding(t.system, t.code, t.name) for t in tests if t.code],
        "text": ", ".join(t.name for t in tests if t.name),
    })
    if code:
        request_dict["code"] = code

    priority = PRIORITIES.get(order.priority)
    if priority:
        request_dict["priority"] = priority
    authored_on = fhir_datetime(order.order_date)
    if authored_on:
        request_dict["authoredOn"] = authored_on

    requester = identifier(order.requester_system, order.requester_id)
    if requester:
        request_dict["requester"] = {"identifier": requester}
    if order.lab:
        request_dict["performer"] = [order.lab]
    if order.note:
        request_dict["note"] = [{"text": order.note}]

    return ServiceRequest(**request_dict)
