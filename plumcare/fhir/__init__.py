"""
FHIR Construction Module

Shared pieces every source-format transform builds on, using the
fhir.resources R4B models.

Components:
- codesystems: Terminology URIs, OIDs and section codes
- common: Id generation, provenance meta, coding helpers, serialization
- bundler: Transaction Bundle assembly
- converter: Format dispatch (import from plumcare.fhir.converter)
"""
from .bundler import FHIRBundler, assemble_bundle
from .common import EhrSource, generate_id, to_dict

__all__ = [
    "FHIRBundler",
    "assemble_bundle",
    "EhrSource",
    "generate_id",
    "to_dict",
]
