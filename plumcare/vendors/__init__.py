"""
Vendor JSON → FHIR mappers (Athena, Elation, NextGen) and the lab-order
ServiceRequest mapper shared by Elation and NextGen.
"""
from .athena import parse_athena_json_to_fhir
from .elation import parse_elation_json_to_fhir
from .nextgen import parse_nextgen_json_to_fhir
from .lab_orders import (
    ElationLabOrder,
    LabOrder,
    LabOrderShape,
    NextGenLabOrder,
    classify_lab_order,
    parse_lab_order,
    parse_lab_order_to_service_request,
)

__all__ = [
    "parse_athena_json_to_fhir",
    "parse_elation_json_to_fhir",
    "parse_nextgen_json_to_fhir",
    "ElationLabOrder",
    "LabOrder",
    "LabOrderShape",
    "NextGenLabOrder",
    "classify_lab_order",
    "parse_lab_order",
    "parse_lab_order_to_service_request",
]
