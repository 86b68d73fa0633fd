"""
================================================================================
Device Mapper: Entra ID Devices → Action1 Endpoint Patches
================================================================================

This module holds the pure mapping logic of the connector. It never talks to
an API. It handles:

1. Name Matching - Pairing Entra devices with Action1 endpoints by name
2. Patch Building - Turning one Entra device into an Action1 custom-attribute
   patch, following the ordered property mappings of a target scope

Matching Logic:
---------------
Names are compared trimmed and case-insensitive, in two phases:
1. Full name - "HOST1.corp.example.com" vs the full endpoint name
2. Short name - everything from the first "." removed on both sides, only
   tried when phase 1 found no candidate at all

If a phase finds exactly one endpoint → matched ("full" or "short")
If a phase finds several endpoints  → ambiguous ("duplicate_full"/"duplicate_short")
If neither phase finds anything     → unmatched

The matcher never picks one of several equally named endpoints.

Patch Format:
-------------
Action1 accepts a flat object with "custom:"-prefixed keys:
    {"custom:Entra Groups": "Group A, Group B"}

Usage Example:
--------------
    from entra2action1.device_mapper import map_devices_to_patches

    result = map_devices_to_patches(entra_devices, endpoints, mappings)
    print(f"Matched: {len(result.matched)}, patches: {len(result.patches)}")
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .config import PropertyMapping


MATCH_FULL = "full"
MATCH_SHORT = "short"

REASON_DUPLICATE_FULL = "duplicate_full"
REASON_DUPLICATE_SHORT = "duplicate_short"

CUSTOM_PREFIX = "custom:"


# =============================================================================
# RESULT DATA CLASSES
# =============================================================================

@dataclass
class MatchedPair:
    """An Entra device paired with exactly one Action1 endpoint."""
    entra_device: Dict[str, Any]
    endpoint: Dict[str, Any]
    match_type: str                 # "full" or "short"


@dataclass
class AmbiguousMatch:
    """An Entra device whose name fits more than one Action1 endpoint."""
    entra_device: Dict[str, Any]
    candidates: List[Dict[str, Any]]
    reason: str                     # "duplicate_full" or "duplicate_short"


@dataclass
class MatchResult:
    """Three disjoint buckets; every input device lands in exactly one."""
    matched: List[MatchedPair] = field(default_factory=list)
    unmatched_entra: List[Dict[str, Any]] = field(default_factory=list)
    ambiguous: List[AmbiguousMatch] = field(default_factory=list)


@dataclass
class PlannedPatch:
    """
    A patch ready to be sent to one Action1 endpoint.

    Attributes:
        endpoint_id: Target Action1 endpoint ID
        endpoint_name: Endpoint name as shown in Action1
        entra_name: Display name of the source Entra device
        match_type: Which matching phase paired them
        patch: Flat {"custom:<attr>": value} body
    """
    endpoint_id: Optional[str]
    endpoint_name: str
    entra_name: Optional[str]
    match_type: str
    patch: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint_id": self.endpoint_id,
            "endpoint_name": self.endpoint_name,
            "entra_name": self.entra_name,
            "match_type": self.match_type,
            "patch": dict(self.patch),
        }


@dataclass
class MappingResult(MatchResult):
    """MatchResult plus the ordered patches built from the matched pairs."""
    patches: List[PlannedPatch] = field(default_factory=list)


# =============================================================================
# NAME NORMALIZATION
# =============================================================================

def normalize_name(value: Any) -> str:
    """Trim and case-fold a name; None becomes an empty string."""
    if value is None:
        return ""
    return str(value).strip().casefold()


def strip_fqdn(name: Any) -> str:
    """
    Drop the domain part of a host name.

    "host1.corp.example.com" → "host1". A leading dot is not treated as a
    separator, so ".hidden" stays as is.
    """
    text = str(name or "").strip()
    dot = text.find(".")
    return text[:dot] if dot > 0 else text


def normalize_short_name(value: Any) -> str:
    return normalize_name(strip_fqdn(value))


def get_endpoint_name(endpoint: Any) -> str:
    """Action1 reports the host name as device_name, older payloads as name."""
    if not isinstance(endpoint, dict):
        return ""
    return endpoint.get("device_name") or endpoint.get("name") or ""


def to_custom_key(attribute: Any) -> str:
    """
    Normalize an Action1 attribute name to its "custom:" patch key.

    "Entra Groups" → "custom:Entra Groups". Names that already carry the prefix
    (in any case) are kept as written. Blank names give "".
    """
    raw = str(attribute or "").strip()
    if not raw:
        return ""
    if raw.lower().startswith(CUSTOM_PREFIX):
        return raw
    return f"{CUSTOM_PREFIX}{raw}"


# =============================================================================
# MATCHING
# =============================================================================

def _build_index(endpoints: Optional[Iterable[Dict[str, Any]]], normalize) -> Dict[str, List[Dict[str, Any]]]:
    # normalized name -> endpoints carrying it, in input order
    index: Dict[str, List[Dict[str, Any]]] = {}
    for endpoint in endpoints or []:
        key = normalize(get_endpoint_name(endpoint))
        if not key:
            continue
        index.setdefault(key, []).append(endpoint)
    return index


def build_endpoint_index(endpoints: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
    """Index endpoints by normalized full name."""
    return _build_index(endpoints, normalize_name)


def build_endpoint_short_index(endpoints: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
    """Index endpoints by normalized short (FQDN-stripped) name."""
    return _build_index(endpoints, normalize_short_name)


def match_devices(
    entra_devices: Optional[Iterable[Dict[str, Any]]],
    endpoints: Optional[Iterable[Dict[str, Any]]],
) -> MatchResult:
    """
    Match Entra devices to Action1 endpoints by display name.

    Args:
        entra_devices: Entra device records (need "displayName")
        endpoints: Action1 endpoint records (need "device_name" or "name")

    Returns:
        MatchResult with matched, unmatched_entra and ambiguous buckets

    Example:
        >>> result = match_devices(
        ...     [{"displayName": "host1.corp.local"}],
        ...     [{"id": "e1", "name": "HOST1"}],
        ... )
        >>> result.matched[0].match_type
        'short'
    """
    endpoints = list(endpoints or [])
    full_index = build_endpoint_index(endpoints)
    short_index = build_endpoint_short_index(endpoints)

    result = MatchResult()

    for device in entra_devices or []:
        entra_name = device.get("displayName") if isinstance(device, dict) else None
        full_key = normalize_name(entra_name)

        if not full_key:
            result.unmatched_entra.append(device)
            continue

        # Phase 1: full name. Several candidates is final, no fallback.
        candidates = full_index.get(full_key, [])
        if len(candidates) == 1:
            result.matched.append(MatchedPair(device, candidates[0], MATCH_FULL))
            continue
        if len(candidates) > 1:
            result.ambiguous.append(AmbiguousMatch(device, candidates, REASON_DUPLICATE_FULL))
            continue

        # Phase 2: short name (FQDN fallback)
        candidates = short_index.get(normalize_short_name(entra_name), [])
        if not candidates:
            result.unmatched_entra.append(device)
        elif len(candidates) > 1:
            result.ambiguous.append(AmbiguousMatch(device, candidates, REASON_DUPLICATE_SHORT))
        else:
            result.matched.append(MatchedPair(device, candidates[0], MATCH_SHORT))

    return result


# =============================================================================
# PATCH BUILDING
# =============================================================================

def _is_blank(value: Any) -> bool:
    # 0 and False are real values and must reach Action1
    if value is None:
        return True
    return isinstance(value, str) and value.strip() == ""


def build_endpoint_patch(
    entra_device: Dict[str, Any],
    mappings: Iterable[PropertyMapping],
) -> Optional[Dict[str, Any]]:
    """
    Build the Action1 patch body for one Entra device.

    Blank values are skipped so an existing Action1 attribute is never
    overwritten with an empty string. When two mappings target the same
    attribute the later one wins.

    Args:
        entra_device: Entra device record
        mappings: Ordered property mappings of the target scope

    Returns:
        Non-empty patch dict, or None if no mapping produced a value
    """
    patch: Dict[str, Any] = {}

    for mapping in mappings or []:
        entra_property = mapping.entra_property
        attribute = mapping.action1_custom_attribute
        if not entra_property or not attribute:
            continue

        value = (entra_device or {}).get(entra_property)
        if _is_blank(value):
            continue

        key = to_custom_key(attribute)
        if not key:
            continue
        patch[key] = value

    return patch or None


def map_devices_to_patches(
    entra_devices: Optional[Iterable[Dict[str, Any]]],
    endpoints: Optional[Iterable[Dict[str, Any]]],
    mappings: Iterable[PropertyMapping],
) -> MappingResult:
    """
    Match devices and build one patch per matched pair.

    Pairs whose device yields no usable value produce no patch.

    Returns:
        MappingResult (match buckets plus ordered PlannedPatch list)
    """
    mappings = list(mappings or [])
    matches = match_devices(entra_devices, endpoints)

    result = MappingResult(
        matched=matches.matched,
        unmatched_entra=matches.unmatched_entra,
        ambiguous=matches.ambiguous,
    )

    for pair in matches.matched:
        patch = build_endpoint_patch(pair.entra_device, mappings)
        if patch is None:
            continue
        result.patches.append(PlannedPatch(
            endpoint_id=pair.endpoint.get("id"),
            endpoint_name=get_endpoint_name(pair.endpoint),
            entra_name=pair.entra_device.get("displayName"),
            match_type=pair.match_type,
            patch=patch,
        ))

    return result
