"""Namespace and canonical URL definitions.

Based on the CDA R2 schema and the FHIR tooling extensions used by the
CDA logical models.
"""

# Schematron
SCHEMATRON = "http://purl.oclc.org/dsdl/schematron"

# CDA R2
CDA = "urn:hl7-org:v3"
SDTC = "urn:hl7-org:sdtc"

# XML Schema instance (xsi:type)
XSI = "http://www.w3.org/2001/XMLSchema-instance"

# Prefix -> namespace URI, in serialization order
NAMESPACES: dict[str, str] = {
    "sch": SCHEMATRON,
    "cda": CDA,
    "xsi": XSI,
    "sdtc": SDTC,
}

# Namespaces usable inside generated XPath (no schematron prefix)
XPATH_NAMESPACES: dict[str, str] = {
    prefix: uri for prefix, uri in NAMESPACES.items() if prefix != "sch"
}

# Canonical base of the CDA logical models
CDA_ROOT = "http://hl7.org/cda/stds/core/StructureDefinition/"
CLINICAL_DOCUMENT = f"{CDA_ROOT}ClinicalDocument"
CLINICAL_DOCUMENT_XPATH = "/cda:ClinicalDocument"

# FHIR tooling extensions describing XML representation
EXT_XML_CHOICE_GROUP = "http://hl7.org/fhir/tools/StructureDefinition/xml-choice-group"
EXT_XML_NAME = "http://hl7.org/fhir/tools/StructureDefinition/xml-name"
EXT_XML_NAMESPACE = "http://hl7.org/fhir/tools/StructureDefinition/xml-namespace"


def ns_prefix(uri: str) -> str | None:
    """Get the prefix bound to a namespace URI, or None if unknown."""
    for prefix, namespace in NAMESPACES.items():
        if namespace == uri:
            return prefix
    return None
