"""
Shared helpers for building FHIR R4 resources.

Every mapper in this package builds a plain dict and hands it to the
matching ``fhir.resources.R4B`` model, so the helpers here return plain
dicts/strings and never model instances.
"""
import json
import math
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger

from plumcare.config import settings
from plumcare.fhir import codesystems as cs

_PARTIAL_DATE = re.compile(r"\d{4}(-\d{2}(-\d{2})?)?")
_DATE_FORMATS = {4: "%Y", 7: "%Y-%m", 10: "%Y-%m-%d"}


class EhrSource(str, Enum):
    """Origin format recorded in every resource's provenance tag."""
    HL7V2 = "hl7v2"
    CCDA = "ccda"
    ATHENA = "athena"
    ELATION = "elation"
    NEXTGEN = "nextgen"

    @property
    def display(self) -> str:
        return _SOURCE_DISPLAY[self]


_SOURCE_DISPLAY = {
    EhrSource.HL7V2: "HL7 v2.x Message",
    EhrSource.CCDA: "C-CDA Document",
    EhrSource.ATHENA: "Athena Health",
    EhrSource.ELATION: "Elation Health",
    EhrSource.NEXTGEN: "NextGen Healthcare",
}


def generate_id() -> str:
    """Generate a unique resource ID."""
    return str(uuid.uuid4())


def source_meta(source: EhrSource, last_updated: Any = None) -> Dict[str, Any]:
    """
    Build resource.meta carrying the provenance tag.

    Args:
        source: Format the resource was produced from
        last_updated: Native modification timestamp; kept only if it is a
            valid FHIR instant (has a timezone)

    Returns:
        Dict for the ``meta`` element
    """
    meta: Dict[str, Any] = {
        "tag": [{
            "system": settings.ehr_source_system,
            "code": source.value,
            "display": source.display,
        }]
    }
    instant = as_instant(last_updated)
    if instant:
        meta["lastUpdated"] = instant
    return meta


def patient_ref(patient_reference: Optional[str], native_patient_id: Any = None) -> Dict[str, str]:
    """
    Reference to the subject patient.

    Without an explicit reference the vendor's own patient id is used; the
    bundle assembler rewrites it to the generated Patient id.
    """
    if patient_reference:
        return {"reference": patient_reference}
    if native_patient_id not in (None, ""):
        return {"reference": f"Patient/{native_patient_id}"}
    return {"reference": "Patient/unknown"}


def coding(system: Optional[str], code: Any, display: Any = None) -> Dict[str, str]:
    """Coding dict with empty members dropped."""
    return compact({
        "system": system,
        "code": str(code) if code not in (None, "") else None,
        "display": str(display) if display not in (None, "") else None,
    })


def codeable(system: Optional[str], code: Any, display: Any = None, text: Any = None) -> Dict[str, Any]:
    """CodeableConcept with a single coding (omitted if there is no code)."""
    concept: Dict[str, Any] = {}
    if code not in (None, ""):
        concept["coding"] = [coding(system, code, display)]
    if text not in (None, ""):
        concept["text"] = str(text)
    elif display not in (None, ""):
        concept["text"] = str(display)
    return concept


def category(system: str, code: str, display: str) -> List[Dict[str, Any]]:
    return [{"coding": [{"system": system, "code": code, "display": display}]}]


def observation_category(code: str) -> List[Dict[str, Any]]:
    displays = {"vital-signs": "Vital Signs", "laboratory": "Laboratory"}
    return category(cs.OBSERVATION_CATEGORY, code, displays[code])


def identifier(system: str, value: Any, type_code: Optional[str] = None,
               type_display: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Identifier dict, or None if the native value is missing."""
    if value in (None, ""):
        return None
    ident: Dict[str, Any] = {"system": system, "value": str(value)}
    if type_code:
        ident["type"] = {"coding": [coding(cs.V2_IDENTIFIER_TYPE, type_code, type_display)]}
    return ident


def parse_decimal(value: Any, what: str = "value") -> Optional[float]:
    """
    Parse a numeric lab/vital value.

    Unparseable values are logged and yield None so the caller can omit
    the quantity instead of failing the resource.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            logger.warning("Dropping non-numeric {}: {!r}", what, value)
            return None
    if math.isnan(number) or math.isinf(number):
        logger.warning("Dropping non-finite {}: {!r}", what, value)
        return None
    return number


def quantity(value: Any, unit: Any = None, code: Any = None) -> Optional[Dict[str, Any]]:
    """UCUM Quantity dict, or None when value is not numeric."""
    number = parse_decimal(value)
    if number is None:
        return None
    qty: Dict[str, Any] = {"value": number, "system": cs.UCUM}
    if unit not in (None, ""):
        qty["unit"] = str(unit)
    if code not in (None, ""):
        qty["code"] = str(code)
    return qty


def fhir_datetime(value: Any) -> Optional[str]:
    """
    Normalize a native date or timestamp for a FHIR ``dateTime`` element.

    FHIR only allows a time together with a zone, so:

    - ``YYYY``, ``YYYY-MM`` and ``YYYY-MM-DD`` are kept as they are
    - a timestamp with an offset keeps it (``Z`` becomes ``+00:00``)
    - a timestamp without one is taken as UTC and gets a ``Z`` suffix

    Args:
        value: Native date/timestamp (``T`` or space separated)

    Returns:
        FHIR dateTime string, or None if value is empty or unparseable
    """
    if value in (None, ""):
        return None
    text = str(value).strip()
    if _PARTIAL_DATE.fullmatch(text):
        try:
            datetime.strptime(text, _DATE_FORMATS[len(text)])
        except ValueError:
            logger.warning("Dropping malformed date {!r}", value)
            return None
        return text
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Dropping malformed timestamp {!r}", value)
        return None
    if parsed.tzinfo is None:
        return f"{parsed.isoformat()}Z"
    return parsed.isoformat()


def as_instant(value: Any) -> Optional[str]:
    """Return value if it is an ISO timestamp with a timezone, else None."""
    if not isinstance(value, str) or "T" not in value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return value if parsed.tzinfo is not None else None


def compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None, an empty string, or an empty list/dict."""
    return {k: v for k, v in data.items() if v not in (None, "", [], {})}


def to_dict(resource) -> Dict[str, Any]:
    """
    Serialize a fhir.resources model to a JSON-compatible dict.

    Returns:
        Dict with FHIR element names (``class``, not ``class_fhir``) and
        no None-valued elements
    """
    return json.loads(resource.model_dump_json(by_alias=True, exclude_none=True))
