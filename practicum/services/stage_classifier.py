"""Keyword heuristic mapping a session to one of the three curriculum stages.

    stage 1 - safe place, rapport, stabilisation
    stage 2 - trauma processing: targets, bilateral stimulation, SUD
    stage 3 - integration: VoC, closure, future template

Only `classify(transcript, memory)` is public; the aggregator never looks
at keywords. Stages are checked in order and the first match wins.
"""

from typing import Any, Dict, Iterable, Optional

from practicum.services.memory_client import patient_memory

STAGE_1_KEYWORDS = ("safe place", "lieu sûr", "lieu sécurisant")
STAGE_2_KEYWORDS = ("bilateral", "stimulation", "trauma", "sud", "souvenir traumatique")
STAGE_3_KEYWORDS = (
    "voc",
    "cognition positive",
    "clôture",
    "closure",
    "intégration",
    "future template",
)

# Safe-place memory only counts as stage 1 early in the patient's history
EARLY_SESSION_LIMIT = 2


def transcript_text(messages: Iterable[Dict[str, Any]]) -> str:
    return " ".join((m.get("content") or "").lower() for m in messages or [])


def _contains_any(text: str, keywords) -> bool:
    return any(k in text for k in keywords)


def classify(messages: Iterable[Dict[str, Any]], memory: Optional[Dict[str, Any]] = None) -> int:
    text = transcript_text(messages)
    techniques = patient_memory(memory).get("techniques_learned") or []
    prior_sessions = (memory or {}).get("total_sessions") or 0

    if _contains_any(text, STAGE_1_KEYWORDS) or (
        "safe_place" in techniques and prior_sessions <= EARLY_SESSION_LIMIT
    ):
        return 1
    if _contains_any(text, STAGE_2_KEYWORDS) or "bilateral_stimulation" in techniques:
        return 2
    if _contains_any(text, STAGE_3_KEYWORDS):
        return 3
    return 1


TECHNIQUE_KEYWORDS = {
    "safe_place": STAGE_1_KEYWORDS,
    "bilateral_stimulation": ("bilateral", "stimulation bilatérale"),
    "sud_scale": ("sud",),
    "voc_scale": ("voc",),
    "future_template": ("future template",),
}


def detect_techniques(messages: Iterable[Dict[str, Any]]) -> list[str]:
    """Techniques mentioned in a transcript, for the continuity store."""
    text = transcript_text(messages)
    return [name for name, keywords in TECHNIQUE_KEYWORDS.items() if _contains_any(text, keywords)]
