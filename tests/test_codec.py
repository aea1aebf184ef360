from __future__ import annotations

import math

import pytest

from studyrag.embeddings.codec import BYTES_PER_VALUE, deserialize_embedding, serialize_embedding
from studyrag.embeddings.similarity import cosine_similarity, normalize
from studyrag.errors import EmbeddingCodecError


def test_serialized_size_is_four_bytes_per_value():
    payload = serialize_embedding([0.0] * 1536)
    assert BYTES_PER_VALUE == 4
    assert len(payload) == 6144


def test_values_are_little_endian_float32():
    assert serialize_embedding([1.0]) == b"\x00\x00\x80\x3f"
    assert deserialize_embedding(b"\x00\x00\x80\x3f\x00\x00\x00\xc0") == [1.0, -2.0]


def test_decoding_preserves_float32_precision():
    decoded = deserialize_embedding(serialize_embedding([0.1, -0.25, 3.5]))
    assert decoded[1:] == [-0.25, 3.5]
    assert decoded[0] == pytest.approx(0.1, rel=1e-6)


@pytest.mark.parametrize("length", [0, 1, 1536])
def test_round_trip_within_float32_precision(length):
    vector = [math.sin(index + 0.5) * 3.0 for index in range(length)]
    decoded = deserialize_embedding(serialize_embedding(vector))
    assert len(decoded) == length
    assert decoded == pytest.approx(vector, rel=1e-6, abs=1e-7)


def test_empty_payload_decodes_to_empty_vector():
    assert deserialize_embedding(b"") == []


def test_truncated_payload_is_rejected():
    with pytest.raises(EmbeddingCodecError):
        deserialize_embedding(b"\x00\x00\x80")


def test_cosine_similarity_basics():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([3.0, 4.0], [6.0, 8.0]) == pytest.approx(1.0)


def test_cosine_similarity_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_cosine_similarity_length_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_normalize_returns_unit_vector():
    vector = normalize([3.0, 4.0])
    assert vector == pytest.approx((0.6, 0.8))
    assert math.isclose(sum(v * v for v in vector), 1.0)
    assert normalize([0.0, 0.0]) == (0.0, 0.0)
