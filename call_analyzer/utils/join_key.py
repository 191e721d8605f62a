"""
Recording reference (call_log join key) derivation.

Documents are titled like "Call retaildatasystems_rec-20240101_1234.mp3" by
the ingestion process, but only some of them carry an indexed RECORDING_URL
metadata entry. When the entry is missing, the reference is recovered from
the title. This is a lossy heuristic: a title that does not match yields no
reference, which is not an error.
"""

import re
from typing import Optional, Tuple

RECORDING_PREFIX = "retaildatasystems_"

TITLE_RECORDING_RE = re.compile(
    r"Call ((?:retaildatasystems_)?rec-[\w\d_.-]+\.mp3)",
    re.IGNORECASE,
)


def extract_recording_ref_from_title(title: Optional[str]) -> Optional[str]:
    """
    Extract the recording file name from a document title.

    Bare "rec-..." names get the account prefix so they match call_log keys.

    Examples:
        "Call retaildatasystems_rec-1.mp3" -> "retaildatasystems_rec-1.mp3"
        "Call rec-1.mp3 (Tuesday)" -> "retaildatasystems_rec-1.mp3"
        "Weekly notes" -> None
    """
    if not title:
        return None
    match = TITLE_RECORDING_RE.search(title)
    if not match:
        return None
    ref = match.group(1)
    if ref.lower().startswith("rec-"):
        ref = RECORDING_PREFIX + ref
    return ref


def fallback_recording_ref(document_id: str) -> str:
    """Synthetic reference for documents whose title carries no recording name."""
    return f"document_{document_id}"


def derive_recording_ref(
    document_id: str,
    title: Optional[str],
    indexed_ref: Optional[str] = None,
) -> Tuple[str, bool]:
    """
    Resolve the call_log join key for a document.

    Args:
        document_id: Document id, used for the synthetic fallback
        title: Document title to extract from
        indexed_ref: RECORDING_URL metadata value, if one exists

    Returns:
        (reference, derived) where derived is False only when the indexed
        value was used
    """
    if indexed_ref:
        return indexed_ref, False
    ref = extract_recording_ref_from_title(title)
    if ref:
        return ref, True
    return fallback_recording_ref(document_id), True
