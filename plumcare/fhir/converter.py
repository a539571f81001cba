"""
FHIR Converter Service

Single entry point for turning one native record into a FHIR transaction
Bundle, whatever format it arrives in.

Supported source formats:
1. hl7v2   - pipe-delimited HL7 v2.x message (str)
2. ccda    - C-CDA XML document (str)
3. athena  - Athena patient export (dict)
4. elation - Elation patient export (dict)
5. nextgen - NextGen patient export (dict)
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass

from loguru import logger
from pydantic import ValidationError
from fhir.resources.R4B.bundle import Bundle

from plumcare.ccda.transform import parse_ccda_to_fhir
from plumcare.errors import PlumCareError, UnsupportedFormatError
from plumcare.fhir.common import to_dict
from plumcare.hl7v2.transform import parse_hl7v2_to_fhir
from plumcare.vendors.athena import parse_athena_json_to_fhir
from plumcare.vendors.elation import parse_elation_json_to_fhir
from plumcare.vendors.nextgen import parse_nextgen_json_to_fhir

Transform = Callable[[Any], Bundle]

FORMATS: Dict[str, Transform] = {
    "hl7v2": parse_hl7v2_to_fhir,
    "ccda": parse_ccda_to_fhir,
    "athena": parse_athena_json_to_fhir,
    "elation": parse_elation_json_to_fhir,
    "nextgen": parse_nextgen_json_to_fhir,
}


@dataclass
class ConversionResult:
    """Result of FHIR conversion."""
    success: bool
    source_format: Optional[str] = None
    bundle: Optional[Bundle] = None
    bundle_dict: Optional[Dict[str, Any]] = None
    resource_counts: Optional[Dict[str, int]] = None
    error: Optional[str] = None


def count_resources(bundle: Bundle) -> Dict[str, int]:
    """Number of entries per resource type in a bundle."""
    counts: Dict[str, int] = {}
    for entry in bundle.entry or []:
        resource_type = entry.resource.get_resource_type()
        counts[resource_type] = counts.get(resource_type, 0) + 1
    return counts


class FHIRConverter:
    """
    Converts native EHR records to FHIR Bundles.

    Usage:
        converter = FHIRConverter()
        result = converter.convert("hl7v2", message_text)

        if result.success:
            fhir_bundle = result.bundle_dict
    """

    def __init__(self, formats: Optional[Dict[str, Transform]] = None):
        """
        Initialize the converter.

        Args:
            formats: Format name → transform registry (defaults to FORMATS)
        """
        self.formats = dict(formats or FORMATS)

    @property
    def supported_formats(self) -> List[str]:
        return sorted(self.formats)

    def transform_for(self, source_format: str) -> Transform:
        """
        Look up the transform registered for a source format.

        Raises:
            UnsupportedFormatError: If nothing is registered under the name
        """
        key = (source_format or "").strip().lower()
        if key not in self.formats:
            raise UnsupportedFormatError(source_format, self.supported_formats)
        return self.formats[key]

    def convert(self, source_format: str, payload: Any) -> ConversionResult:
        """
        Convert one native record to a FHIR Bundle.

        Args:
            source_format: One of ``supported_formats``
            payload: Raw text (hl7v2, ccda) or parsed JSON object (vendors)

        Returns:
            ConversionResult with Bundle and metadata; ``success`` is False
            when the record violates its input contract or the resulting
            resources fail FHIR validation

        Raises:
            UnsupportedFormatError: If source_format is unknown
        """
        transform = self.transform_for(source_format)
        key = source_format.strip().lower()

        try:
            bundle = transform(payload)
        except PlumCareError as e:
            logger.error("{} conversion rejected record: {}", key, e)
            return ConversionResult(success=False, source_format=key, error=f"FHIR conversion failed: {e}")
        except ValidationError as e:
            logger.error("{} conversion produced invalid FHIR: {} error(s)", key, e.error_count())
            return ConversionResult(success=False, source_format=key, error=f"FHIR validation failed: {e}")

        return ConversionResult(
            success=True,
            source_format=key,
            bundle=bundle,
            bundle_dict=to_dict(bundle),
            resource_counts=count_resources(bundle),
        )

    def convert_many(self, items: Iterable[Tuple[str, Any]]) -> List[ConversionResult]:
        """
        Convert a batch of (source_format, payload) pairs.

        A failed record yields a failed ConversionResult in its position;
        it never stops the rest of the batch.
        """
        results = []
        for source_format, payload in items:
            try:
                results.append(self.convert(source_format, payload))
            except UnsupportedFormatError as e:
                logger.error("Skipping record: {}", e)
                results.append(ConversionResult(success=False, source_format=source_format, error=str(e)))

        failed = sum(1 for r in results if not r.success)
        logger.debug("Converted {} record(s), {} failed", len(results), failed)
        return results
