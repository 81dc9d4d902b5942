"""
Tag name normalization and deduplication of scanner observations.
"""

from typing import TYPE_CHECKING, Dict, Iterable

if TYPE_CHECKING:
    from .models import TagObservation


def normalize_tag_name(raw: str) -> str:
    """Canonical form of a tag name: trimmed and lower-cased."""
    return raw.strip().lower()


def dedupe_observations(observations: Iterable["TagObservation"]) -> Dict[str, "TagObservation"]:
    """Collapse repeated tags, keeping the highest confidence for each name.

    Names are compared in canonical form. On equal confidence the earliest
    observation is kept. The returned mapping preserves first-seen order.
    """
    best: Dict[str, "TagObservation"] = {}
    for observation in observations:
        name = normalize_tag_name(observation.tag)
        current = best.get(name)
        if current is None or current.confidence < observation.confidence:
            best[name] = observation
    return best
