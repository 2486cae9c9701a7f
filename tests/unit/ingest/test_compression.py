"""Tests for dictionary + zlib text compression."""

from __future__ import annotations

import zlib
from unittest.mock import patch

import pytest

from harvester.errors import CompressionError
from harvester.ingest.compression import (
    DEFAULT_TAG,
    RAW_TAG,
    CompressionService,
    content_hash,
)

PRIVACY = (
    "Read the privacy policy for more information about cookies and how the services "
    "and products you use will handle your information. " * 20
)


@pytest.fixture
def service():
    return CompressionService()


@pytest.mark.parametrize("text", [
    PRIVACY,
    "",
    "Unicode: café, 東京, emoji 🚀 and the end.",
    "Control chars \x01\x02 and escape \x00 survive with the words the and that.",
    "thesis other-wise theory: partial words are untouched",
])
def test_roundtrip(service, text):
    assert service.decompress(service.compress(text)) == text


def test_blob_carries_tag(service):
    blob = service.compress("hello")
    tag, _, payload = blob.partition(b"\0")
    assert tag == DEFAULT_TAG.encode()
    zlib.decompress(payload)


def test_repetitive_text_shrinks(service):
    stored = service.pack(PRIVACY)
    assert stored.tag == DEFAULT_TAG
    assert stored.content is None
    assert stored.stored_size < stored.original_size
    assert 0 < stored.ratio < 1


def test_decompress_rejects_mismatched_tag(service):
    with pytest.raises(CompressionError, match="expected"):
        service.decompress(service.compress("hello"), expected_tag="dict-v2")


@pytest.mark.parametrize("blob", [b"no-separator", b"dict-v9\0" + zlib.compress(b"x"), b"dict-v1\0not zlib"])
def test_decompress_rejects_bad_blobs(service, blob):
    with pytest.raises(CompressionError):
        service.decompress(blob)


def test_pack_falls_back_to_raw(service):
    with patch.object(CompressionService, "compress", side_effect=CompressionError("boom")):
        stored = service.pack("plain text")
    assert stored.tag == RAW_TAG
    assert stored.content == "plain text"
    assert stored.blob is None
    assert stored.ratio == 1.0
    assert service.unpack(stored.content, stored.blob, stored.tag) == "plain text"


def test_unpack_compressed(service):
    stored = service.pack(PRIVACY)
    assert service.unpack(stored.content, stored.blob, stored.tag) == PRIVACY


def test_unpack_missing_blob(service):
    with pytest.raises(CompressionError):
        service.unpack(None, None, DEFAULT_TAG)


def test_unknown_dictionary():
    with pytest.raises(ValueError):
        CompressionService(tag="dict-v9")


def test_content_hash_normalises():
    assert content_hash("  Hello World ") == content_hash("hello world")
    assert content_hash("a") != content_hash("b")
    assert CompressionService.content_hash("x") == content_hash("x")


def test_empty_text_ratio(service):
    assert service.pack("").ratio == 0.0
