"""
PlumCare format normalization.

Turns HL7v2 messages, C-CDA documents and Athena, Elation and NextGen
JSON exports into FHIR R4 transaction Bundles.
"""
__version__ = "0.1.0"
