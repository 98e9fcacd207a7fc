"""Static source-type -> executor capability matrix."""

from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class CapabilityEntry:
    primary: str
    fallback: Tuple[str, ...]


CAPABILITY_MATRIX: Dict[str, CapabilityEntry] = {
    "csv": CapabilityEntry("csv", ("html",)),
    "xlsx": CapabilityEntry("xlsx", ("csv",)),
    "pdf": CapabilityEntry("pdf", ("image", "html")),
    "image": CapabilityEntry("image", ("html",)),
    "html": CapabilityEntry("html", ("api",)),
    "api": CapabilityEntry("api", ("html",)),
    "unknown": CapabilityEntry("html", ("api",)),
}


def capability_for(source_type: str) -> CapabilityEntry:
    return CAPABILITY_MATRIX.get(source_type, CAPABILITY_MATRIX["unknown"])


def required_features_for_source_type(source_type: str) -> List[str]:
    """Model-native features a binary source would need if no local parser handles it."""
    if source_type == "xlsx":
        return ["document_parse", "code_execution"]
    if source_type == "pdf":
        return ["document_parse"]
    if source_type == "image":
        return ["vision"]
    return []
