"""Utility modules for call_analyzer."""

from .join_key import (
    derive_recording_ref,
    extract_recording_ref_from_title,
    fallback_recording_ref,
    RECORDING_PREFIX,
)

__all__ = [
    "derive_recording_ref",
    "extract_recording_ref_from_title",
    "fallback_recording_ref",
    "RECORDING_PREFIX",
]
