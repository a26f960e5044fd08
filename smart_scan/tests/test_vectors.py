import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import DimensionMismatch
from vectors import average_embedding, cosine_similarity, normalize, similarities, top_n


def test_cosine_similarity_symmetric():
    rng = np.random.default_rng(0)
    for _ in range(20):
        a = rng.normal(size=8).astype(np.float32)
        b = rng.normal(size=8).astype(np.float32)
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))


def test_cosine_similarity_self_is_one():
    a = np.array([0.3, -2.0, 5.0, 0.1], dtype=np.float32)
    assert cosine_similarity(a, a) == pytest.approx(1.0, abs=1e-6)


def test_cosine_similarity_zero_vector_is_zero():
    assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0


def test_cosine_similarity_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        cosine_similarity([1, 0], [1, 0, 0])


def test_similarities_matches_pairwise():
    query = np.array([1.0, 2.0, 0.5], dtype=np.float32)
    candidates = np.array([[1, 0, 0], [0, 1, 0], [1, 2, 0.5], [0, 0, 0]], dtype=np.float32)
    scores = similarities(query, candidates)
    assert scores.shape == (4,)
    for i, c in enumerate(candidates):
        assert scores[i] == pytest.approx(cosine_similarity(query, c), abs=1e-6)


def test_similarities_empty():
    assert similarities([1, 0], []).shape == (0,)


def test_similarities_ragged_candidates():
    with pytest.raises(DimensionMismatch):
        similarities([1, 0], [[1, 0], [1, 0, 0]])


def test_top_n_orders_and_thresholds():
    scores = np.array([0.1, 0.9, 0.5, 0.3])
    assert top_n(scores, 2) == [1, 2]
    assert top_n(scores, 10, threshold=0.3) == [1, 2, 3]
    assert top_n(scores, 0) == []


def test_top_n_ties_keep_input_order():
    assert top_n(np.array([0.5, 0.7, 0.7, 0.5]), 4) == [1, 2, 0, 3]


def test_normalize_unit_length_and_zero():
    v = normalize([3.0, 4.0])
    assert np.linalg.norm(v) == pytest.approx(1.0)
    assert np.all(normalize([0.0, 0.0]) == 0)


def test_average_embedding_is_normalized_mean():
    avg = average_embedding([[1, 0], [0, 1]])
    np.testing.assert_allclose(avg, [2 ** -0.5, 2 ** -0.5], rtol=1e-6)


def test_average_embedding_empty():
    with pytest.raises(ValueError):
        average_embedding([])
