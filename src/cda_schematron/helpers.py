"""Small helpers shared by the generator modules.

Provides:
- XML NCName normalization for schematron ids and ``let`` names
- ValueSet expansion flattening and filtering
- OID extraction from ValueSet/CodeSystem identifiers
- Error message extraction from FHIR OperationOutcome payloads
"""

from __future__ import annotations

import re
import uuid
from typing import Any

_NCNAME = re.compile(r"^[a-zA-Z_][\w.-]*$")
_NCNAME_BODY = re.compile(r"^[\w.-]*$")


def _random_ncname() -> str:
    random_id = str(uuid.uuid4())
    return random_id if random_id[0].isalpha() else "a" + random_id[1:]


def normalize_ncname(value: str | None, required: bool = False) -> str | None:
    """Turn an arbitrary string into a valid XML NCName.

    Characters outside ``[\\w.-]`` become ``-``; a name starting with a
    digit, ``.`` or ``-`` gets a leading underscore.

    Args:
        value: The candidate name.
        required: Generate a random name instead of returning None.

    Returns:
        The normalized name, or None when ``value`` is empty and not required.
    """
    if not value or not value.strip():
        return _random_ncname() if required else None
    value = re.sub(r"[^\w.-]", "-", value.strip())
    if _NCNAME.match(value):
        return value
    if _NCNAME_BODY.match(value):
        return f"_{value}"
    return _random_ncname() if required else None


def vs_url_to_ncname(url: str) -> str:
    """NCName from the last segment of a ValueSet URL (or any name)."""
    name = normalize_ncname(url.rstrip("/").split("/")[-1], required=True)
    assert name is not None
    return name


def flatten_concepts(concepts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Flatten nested ``expansion.contains`` entries into a single list."""
    flat: list[dict[str, Any]] = []
    for concept in concepts:
        nested = concept.get("contains")
        if nested:
            flat.append({k: v for k, v in concept.items() if k != "contains"})
            flat.extend(flatten_concepts(nested))
        else:
            flat.append(concept)
    return flat


def filter_concept(concept: dict[str, Any]) -> bool:
    """False for concepts flagged ``notSelectable``."""
    for prop in concept.get("property", []):
        if prop.get("code") == "notSelectable" and prop.get("valueBoolean"):
            return False
    return True


def value_set_or_code_system_to_oid(resource: dict[str, Any] | None) -> str | None:
    """Get the OID from a ValueSet or CodeSystem ``urn:oid:`` identifier."""
    if not resource:
        return None
    identifiers = resource.get("identifier", [])
    if isinstance(identifiers, dict):
        identifiers = [identifiers]
    for identifier in identifiers:
        value = identifier.get("value", "")
        if value.startswith("urn:oid:"):
            return value[len("urn:oid:"):]
    return None


def operation_outcome_message(payload: Any) -> str | None:
    """Summarize a FHIR OperationOutcome (``code: text`` per issue)."""
    if not isinstance(payload, dict) or payload.get("resourceType") != "OperationOutcome":
        return None
    issues = []
    for issue in payload.get("issue", []):
        text = issue.get("details", {}).get("text")
        issues.append(f"{issue.get('code')}: {text}" if text else str(issue.get("code")))
    if issues:
        return ",".join(issues)
    return payload.get("text", {}).get("div")
