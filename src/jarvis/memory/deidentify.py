"""De-identification and tag extraction for episodic memory.

Best-effort, regex-based scrubbing of direct identifiers (patient name,
record numbers, phone numbers, dates) so that text can be embedded and
stored. This is not a certified de-identification algorithm.
"""

from __future__ import annotations

import hashlib
import hmac
import re

PATIENT_PLACEHOLDER = "[PATIENT]"
# Used when the patient name itself occurs inside the default placeholder
FALLBACK_PLACEHOLDER = "[#]"

# (compiled pattern, placeholder) applied in order, before the name pass.
# Record identifiers need at least one digit so ordinary words like
# "identified" survive.
_IDENTIFIER_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(?:MRN|UHID|ID)\s*[:#]?\s*[\w-]*\d[\w-]*", re.IGNORECASE), "[MRN]"),
    (re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), "[DATE]"),
    (re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"), "[DATE]"),
    (re.compile(r"\+?\d{10,}"), "[PHONE]"),
]

MEDICAL_TAGS: tuple[str, ...] = (
    "sepsis", "fever", "infection", "diabetes", "hypertension", "cardiac",
    "respiratory", "renal", "hepatic", "neurological", "cbc", "electrolytes",
    "imaging", "ct", "mri", "x-ray", "xray", "ecg", "discharge", "admission",
    "antibiotic", "pain", "surgery", "emergency", "critical", "stable",
    "medication", "dosage", "allergy", "vitals", "blood pressure", "oxygen",
)


def deidentify(text: str, patient_name: str = "") -> str:
    """Replace identifiers in *text* with category placeholders.

    The patient name pass runs last so no placeholder written by the earlier
    passes can reintroduce the name.
    """
    if not text:
        return ""

    result = text
    for pattern, placeholder in _IDENTIFIER_PATTERNS:
        result = pattern.sub(placeholder, result)

    name = patient_name.strip()
    if not name:
        return result

    for placeholder in (PATIENT_PLACEHOLDER, FALLBACK_PLACEHOLDER, ""):
        if name.casefold() not in placeholder.casefold():
            break
    name_pattern = re.compile(re.escape(name), re.IGNORECASE)
    result = name_pattern.sub(placeholder, result)
    # A replacement can splice a new occurrence across its edges; deleting
    # always shrinks the text, so this terminates.
    while name_pattern.search(result):
        result = name_pattern.sub("", result)

    return result


def extract_tags(text: str) -> list[str]:
    """Vocabulary terms found in *text*, in vocabulary order."""
    if not text:
        return []
    lower = text.lower()
    return [tag for tag in MEDICAL_TAGS if tag in lower]


def hash_patient_id(patient_id: str, key: str = "") -> str:
    """Display-safe reference for a raw patient ID.

    With a *key* this is a truncated HMAC-SHA256 and resists guessing.
    Without one it is a 32-bit rolling hash that only prevents accidental
    exposure in logs and UI; it is trivially brute-forced.
    """
    if key:
        digest = hmac.new(key.encode(), patient_id.encode(), hashlib.sha256).hexdigest()
        return f"PH-{digest[:16]}"

    h = 0
    for ch in patient_id:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    # Interpret as signed 32-bit, matching the classic string hash
    if h >= 0x80000000:
        h -= 0x100000000
    return f"PH-{abs(h):x}"
