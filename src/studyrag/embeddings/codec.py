"""Binary encoding for stored embedding vectors.

Vectors are stored as packed little-endian float32 values, 4 bytes per
component, with no header. A 1536-dimension vector therefore occupies 6144
bytes.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from studyrag.errors import EmbeddingCodecError

_DTYPE = np.dtype("<f4")
BYTES_PER_VALUE = _DTYPE.itemsize


def serialize_embedding(vector: Sequence[float]) -> bytes:
    """Pack ``vector`` into little-endian float32 bytes."""

    return np.asarray(vector, dtype=_DTYPE).tobytes()


def deserialize_embedding(data: bytes | bytearray | memoryview) -> list[float]:
    """Unpack bytes produced by :func:`serialize_embedding`."""

    raw = bytes(data)
    if len(raw) % BYTES_PER_VALUE:
        raise EmbeddingCodecError(
            f"Embedding payload of {len(raw)} bytes is not a multiple of {BYTES_PER_VALUE}"
        )
    return np.frombuffer(raw, dtype=_DTYPE).astype(float).tolist()


__all__ = ["BYTES_PER_VALUE", "deserialize_embedding", "serialize_embedding"]
