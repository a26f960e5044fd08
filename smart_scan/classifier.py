"""Exclusive classification of one embedding against destination prototypes.

A prototype wins only when it is both confident (best >= match_threshold)
and unambiguous (best - second >= min_margin). Tagging deliberately does
not share this gate: a photo goes to exactly one folder but may carry any
number of tags.
"""

from typing import Sequence

import numpy as np

from config import ORGANISER_MATCH_THRESHOLD, ORGANISER_MIN_MARGIN
from repository import PrototypeEmbedding
from vectors import similarities, top_n


def decide(
    scores: Sequence[float],
    match_threshold: float = ORGANISER_MATCH_THRESHOLD,
    min_margin: float = ORGANISER_MIN_MARGIN,
) -> int | None:
    """Index of the winning score, or None.

    Equal scores keep their input order, so an exact tie has margin 0.
    """
    scores = np.asarray(scores, dtype=np.float64)
    ranked = top_n(scores, 2)
    if not ranked:
        return None
    best = float(scores[ranked[0]])
    second = float(scores[ranked[1]]) if len(ranked) > 1 else 0.0
    if best < match_threshold:
        return None
    if best - second < min_margin:
        return None
    return ranked[0]


def classify(
    embedding: np.ndarray,
    prototypes: list[PrototypeEmbedding],
    match_threshold: float = ORGANISER_MATCH_THRESHOLD,
    min_margin: float = ORGANISER_MIN_MARGIN,
) -> str | None:
    """category_id of the matching prototype, or None for no match."""
    if not prototypes:
        return None
    scores = similarities(embedding, [p.vector for p in prototypes])
    winner = decide(scores, match_threshold, min_margin)
    return None if winner is None else prototypes[winner].category_id
