"""
Opaque payload compression for persisted artifacts.

Large chart payloads (deep period trees, full divisional sets) are stored
gzip-compressed and base64-encoded inside a small JSON marker object.
Callers never see the marker: ``decompress_payload`` returns the original
value, and values that were never compressed pass through unchanged.
"""

import base64
import binascii
import gzip
import json
import logging
import zlib

from typing import Any

logger = logging.getLogger(__name__)

COMPRESSION_MARKER = "__GZIP__"
MARKER_KEY = "__compressed"

# Only keep compressed form when it saves at least 20%
MAX_COMPRESSION_RATIO = 0.8

DEFAULT_THRESHOLD_BYTES = 10 * 1024


def is_compressed(value: Any) -> bool:
    return isinstance(value, dict) and value.get(MARKER_KEY) == COMPRESSION_MARKER


def compress_payload(value: Any, threshold_bytes: int = DEFAULT_THRESHOLD_BYTES) -> Any:
    """
    Compress a JSON-serializable value when it is large enough to benefit.

    Args:
        value: Artifact payload
        threshold_bytes: Minimum serialized size before compression is tried

    Returns:
        The marker object, or ``value`` itself when compression is not worth it
    """
    if value is None or is_compressed(value):
        return value

    raw = json.dumps(value, separators=(",", ":")).encode("utf-8")
    if len(raw) < threshold_bytes:
        return value

    packed = gzip.compress(raw)
    ratio = len(packed) / len(raw)
    if ratio > MAX_COMPRESSION_RATIO:
        return value

    logger.debug(f"Compressed payload {len(raw)} -> {len(packed)} bytes ({ratio:.2f})")
    return {
        MARKER_KEY: COMPRESSION_MARKER,
        "data": base64.b64encode(packed).decode("ascii"),
        "originalSize": len(raw),
        "compressedSize": len(packed),
    }


def decompress_payload(value: Any) -> Any:
    """Inverse of compress_payload; corrupt markers are returned as stored"""
    if not is_compressed(value):
        return value
    try:
        raw = gzip.decompress(base64.b64decode(value["data"]))
        return json.loads(raw.decode("utf-8"))
    except (KeyError, TypeError, ValueError, binascii.Error, OSError, zlib.error) as e:
        logger.error(f"Failed to decompress payload: {e}")
        return value
