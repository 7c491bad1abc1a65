"""
Inter-reviewer agreement for one screening phase.

Pairs the first two decisions of every study that has at least two, then
computes Cohen's κ with sklearn.metrics.cohen_kappa_score.
κ is None when undefined (< 2 pairs or only one class present).
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sklearn.metrics import cohen_kappa_score

from app.services.screening_types import DecisionRecord, ScreeningDecision

LABEL_ORDER = [d.value for d in ScreeningDecision]

# Landis & Koch (1977)
_KAPPA_BANDS = [
    (0.0, "poor", "Less than chance agreement"),
    (0.2, "slight", "Slight agreement"),
    (0.4, "fair", "Fair agreement"),
    (0.6, "moderate", "Moderate agreement"),
    (0.8, "substantial", "Substantial agreement"),
]


def decision_pairs(
    decisions_by_study: Mapping[uuid.UUID, Sequence[DecisionRecord]],
) -> List[Tuple[str, str]]:
    """(first reviewer, second reviewer) labels per double-screened study."""
    pairs = []
    for decisions in decisions_by_study.values():
        if len(decisions) >= 2:
            first, second = decisions[0], decisions[1]
            pairs.append((ScreeningDecision(first.decision).value, ScreeningDecision(second.decision).value))
    return pairs


def compute_kappa(
    reviewer1_labels: List[str],
    reviewer2_labels: List[str],
) -> Optional[float]:
    """
    Return Cohen's κ for the two label lists, or None if undefined.
    Both lists must have the same length.
    """
    if len(reviewer1_labels) < 2:
        return None
    # Need at least 2 distinct values across both lists combined
    combined = set(reviewer1_labels) | set(reviewer2_labels)
    if len(combined) < 2:
        return None
    kappa = cohen_kappa_score(reviewer1_labels, reviewer2_labels, labels=LABEL_ORDER)
    return round(float(kappa), 3)


def interpret_kappa(kappa: Optional[float]) -> Dict[str, str]:
    if kappa is None:
        return {"level": "undefined", "description": "Not enough double-screened studies"}
    level, description = "almost_perfect", "Almost perfect agreement"
    for upper, band_level, band_description in reversed(_KAPPA_BANDS):
        if kappa < upper:
            level, description = band_level, band_description
    return {"level": level, "description": description}


def agreement_rate(pairs: Sequence[Tuple[str, str]]) -> Optional[float]:
    if not pairs:
        return None
    agreed = sum(1 for a, b in pairs if a == b)
    return round(agreed / len(pairs), 3)


def agreement_summary(
    decisions_by_study: Mapping[uuid.UUID, Sequence[DecisionRecord]],
) -> Dict[str, Any]:
    pairs = decision_pairs(decisions_by_study)
    kappa = compute_kappa([a for a, _ in pairs], [b for _, b in pairs])
    return {
        "pairs": len(pairs),
        "agreement_rate": agreement_rate(pairs),
        "cohen_kappa": kappa,
        "interpretation": interpret_kappa(kappa),
    }
