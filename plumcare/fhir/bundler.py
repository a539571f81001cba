"""
FHIR Bundle Assembler

Wraps the resources transformed from one native record into a FHIR R4
transaction Bundle. Each entry is POSTed to its resource type endpoint,
and every dependent resource's patient reference is pointed at the
Patient generated for this record.
"""
import json
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from loguru import logger
from fhir.resources.R4B.bundle import Bundle, BundleEntry, BundleEntryRequest
from fhir.resources.R4B.resource import Resource

from plumcare.config import settings
from plumcare.fhir.common import generate_id, to_dict

# Elements that point at the subject patient, per resource type
PATIENT_REFERENCE_FIELDS = ("subject", "patient")


def generate_bundle_id() -> str:
    """Generate a unique bundle ID."""
    return generate_id()


def rewrite_patient_reference(resource: Resource, patient_reference: str) -> Resource:
    """
    Return a copy of resource whose patient reference is patient_reference.

    Only references that already point at a Patient are rewritten, and the
    input resource is left untouched.

    Args:
        resource: Dependent resource (Encounter, Observation, ...)
        patient_reference: ``Patient/<generated id>``

    Returns:
        The resource itself if nothing needed rewriting, else a copy
    """
    updates = {}
    for field_name in PATIENT_REFERENCE_FIELDS:
        ref = getattr(resource, field_name, None)
        if ref is None or not getattr(ref, "reference", None):
            continue
        if ref.reference.startswith("Patient/") and ref.reference != patient_reference:
            updates[field_name] = ref.model_copy(update={"reference": patient_reference})
    if not updates:
        return resource
    return resource.model_copy(update=updates)


class FHIRBundler:
    """
    Assembles FHIR resources into a transaction Bundle.

    Entries keep insertion order. The patient is always entry zero once
    set with ``set_patient``.
    """

    def __init__(self):
        """Initialize the bundler."""
        self.entries: List[BundleEntry] = []
        self.patient_id: Optional[str] = None

    @property
    def patient_reference(self) -> Optional[str]:
        """``Patient/<id>`` of the bundle's patient, if one was set."""
        return f"Patient/{self.patient_id}" if self.patient_id else None

    def set_patient(self, patient: Resource) -> None:
        """
        Place the patient first and remember its id for reference rewriting.

        Args:
            patient: FHIR Patient resource
        """
        if self.patient_id is not None:
            self.entries = [e for e in self.entries if e.resource.id != self.patient_id]
        self.patient_id = patient.id
        self.entries.insert(0, self._entry(patient))
        # Entries added before the patient still point at the native id
        self.entries = [self.entries[0]] + [
            self._entry(rewrite_patient_reference(e.resource, self.patient_reference))
            for e in self.entries[1:]
        ]

    def add_resource(self, resource: Optional[Resource]) -> None:
        """
        Add a resource to the bundle.

        None is ignored so extraction functions that found nothing can be
        passed straight through.

        Args:
            resource: FHIR resource to add
        """
        if resource is None:
            return
        if resource.get_resource_type() == "Patient" and self.patient_id is None:
            self.set_patient(resource)
            return
        if self.patient_reference:
            resource = rewrite_patient_reference(resource, self.patient_reference)
        self.entries.append(self._entry(resource))

    def add_resources(self, resources: List[Resource]) -> None:
        """
        Add multiple resources to the bundle.

        Args:
            resources: List of FHIR resources to add
        """
        for resource in resources:
            self.add_resource(resource)

    def build(self, bundle_id: str = None) -> Bundle:
        """
        Build the final FHIR Bundle.

        Args:
            bundle_id: Optional bundle ID (generated if not provided)

        Returns:
            FHIR transaction Bundle containing all added resources
        """
        bundle_id = bundle_id or generate_bundle_id()

        bundle = Bundle(
            id=bundle_id,
            type=settings.bundle_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            entry=self.entries if self.entries else None
        )
        logger.debug("Built {} bundle {} with {} entries", bundle.type, bundle_id, len(self.entries))

        return bundle

    def to_dict(self) -> Dict[str, Any]:
        """
        Build and return the bundle as a dictionary.

        Returns:
            Bundle as a dictionary (JSON-serializable)
        """
        return to_dict(self.build())

    def to_json(self, indent: int = 2) -> str:
        """
        Build and return the bundle as a JSON string.

        Args:
            indent: JSON indentation level

        Returns:
            Bundle as a JSON string
        """
        return json.dumps(self.to_dict(), indent=indent)

    @property
    def resource_count(self) -> int:
        """Number of resources in the bundle."""
        return len(self.entries)

    def get_resource_types(self) -> List[str]:
        """Get list of resource types in the bundle."""
        return [entry.resource.get_resource_type() for entry in self.entries]

    def resource_counts(self) -> Dict[str, int]:
        """Number of entries per resource type."""
        counts: Dict[str, int] = {}
        for resource_type in self.get_resource_types():
            counts[resource_type] = counts.get(resource_type, 0) + 1
        return counts

    def clear(self) -> None:
        """Clear all entries from the bundle."""
        self.entries = []
        self.patient_id = None

    @staticmethod
    def _entry(resource: Resource) -> BundleEntry:
        resource_type = resource.get_resource_type()
        return BundleEntry(
            fullUrl=f"urn:uuid:{resource.id}",
            resource=resource,
            request=BundleEntryRequest(method="POST", url=resource_type),
        )


def assemble_bundle(patient: Optional[Resource], resources: List[Resource]) -> Bundle:
    """
    One-shot assembly for a single record.

    Args:
        patient: The record's Patient (may be None if none was extracted)
        resources: Dependent resources in creation order

    Returns:
        Transaction Bundle
    """
    bundler = FHIRBundler()
    bundler.add_resource(patient)
    bundler.add_resources(resources)
    return bundler.build()
