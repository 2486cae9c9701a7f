"""Two-stage text compression for stored page and chunk content.

Stage 1 replaces high-frequency words with single control-character markers
from a versioned dictionary. Stage 2 runs zlib over the UTF-8 result.

Blob layout::

    <tag> b"\\0" <zlib stream>

The tag names the dictionary. A blob is only ever decoded with the
dictionary named in its own header; anything else raises CompressionError.
Compression is an optimisation: callers use ``pack`` which falls back to
storing the raw text when anything goes wrong.
"""

from __future__ import annotations

import hashlib
import logging
import re
import zlib
from dataclasses import dataclass

from harvester.errors import CompressionError

logger = logging.getLogger("Harvester.Compression")

RAW_TAG = "none"
DEFAULT_TAG = "dict-v1"

_ESCAPE = "\x00"
# Control characters usable as markers (tab, newline, CR and NUL excluded).
_MARKERS = [chr(c) for c in (*range(1, 9), 11, 12, *range(14, 32))]

_DICT_V1_WORDS = [
    "the", "and", "that", "with", "for", "this", "from", "your", "have", "are",
    "you", "will", "our", "more", "can", "about", "which", "their", "other",
    "when", "information", "privacy", "policy", "contact", "cookies",
    "services", "products", "read",
]


class _Dictionary:
    """Reversible word <-> marker substitution."""

    def __init__(self, words: list[str]) -> None:
        self._to_marker = dict(zip(words, _MARKERS, strict=True))
        self._to_word = {m: w for w, m in self._to_marker.items()}
        ordered = sorted(words, key=len, reverse=True)
        self._word_re = re.compile(r"\b(?:" + "|".join(map(re.escape, ordered)) + r")\b")
        special = re.escape(_ESCAPE + "".join(_MARKERS))
        self._escape_re = re.compile(f"[{special}]")
        self._decode_re = re.compile(
            re.escape(_ESCAPE) + r"(.)|([" + re.escape("".join(self._to_word)) + "])",
            re.DOTALL,
        )

    def encode(self, text: str) -> str:
        escaped = self._escape_re.sub(lambda m: _ESCAPE + m.group(0), text)
        return self._word_re.sub(lambda m: self._to_marker[m.group(0)], escaped)

    def decode(self, text: str) -> str:
        def _restore(m: re.Match[str]) -> str:
            if m.group(1) is not None:
                return m.group(1)
            return self._to_word[m.group(2)]

        return self._decode_re.sub(_restore, text)


_DICTIONARIES: dict[str, _Dictionary] = {DEFAULT_TAG: _Dictionary(_DICT_V1_WORDS)}


@dataclass
class StoredText:
    """Text ready for storage.

    Exactly one of ``content`` (raw fallback, tag ``none``) and ``blob`` is set.
    ``ratio`` is stored size over original UTF-8 size.
    """

    content: str | None
    blob: bytes | None
    tag: str
    original_size: int
    stored_size: int

    @property
    def ratio(self) -> float:
        if self.original_size == 0:
            return 0.0
        return round(self.stored_size / self.original_size, 4)


def content_hash(text: str) -> str:
    """SHA-256 of the trimmed, lowercased text (the dedup key for chunks)."""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


class CompressionService:
    """Compress and decompress text with a tagged dictionary.

    Args:
        tag: Dictionary used for new blobs.
        level: zlib compression level.
    """

    def __init__(self, tag: str = DEFAULT_TAG, level: int = 6) -> None:
        if tag not in _DICTIONARIES:
            raise ValueError(f"Unknown compression dictionary '{tag}'")
        self.tag = tag
        self.level = level

    def compress(self, text: str) -> bytes:
        """Return a tagged blob for *text*.

        Raises:
            CompressionError: If encoding or zlib fails.
        """
        try:
            encoded = _DICTIONARIES[self.tag].encode(text).encode("utf-8")
            return self.tag.encode("ascii") + b"\0" + zlib.compress(encoded, self.level)
        except (zlib.error, UnicodeError, ValueError) as exc:
            raise CompressionError(f"Compression failed: {exc}") from exc

    def decompress(self, blob: bytes, expected_tag: str | None = None) -> str:
        """Reverse ``compress``.

        Args:
            blob: Tagged blob.
            expected_tag: When given, the blob header must carry this tag.

        Raises:
            CompressionError: Missing header, unknown or mismatched tag, or
                corrupt data.
        """
        header, sep, payload = bytes(blob).partition(b"\0")
        if not sep:
            raise CompressionError("Compressed blob has no dictionary tag")
        tag = header.decode("ascii", errors="replace")
        if expected_tag is not None and tag != expected_tag:
            raise CompressionError(f"Blob tagged '{tag}' but '{expected_tag}' was expected")
        dictionary = _DICTIONARIES.get(tag)
        if dictionary is None:
            raise CompressionError(f"Unknown compression dictionary '{tag}'")
        try:
            return dictionary.decode(zlib.decompress(payload).decode("utf-8"))
        except (zlib.error, UnicodeError) as exc:
            raise CompressionError(f"Decompression failed: {exc}") from exc

    def pack(self, text: str) -> StoredText:
        """Compress *text* for storage, falling back to raw text on failure."""
        original = len(text.encode("utf-8", errors="replace"))
        try:
            blob = self.compress(text)
        except CompressionError as exc:
            logger.warning("Storing raw text: %s", exc)
            return StoredText(
                content=text, blob=None, tag=RAW_TAG, original_size=original, stored_size=original
            )
        return StoredText(
            content=None, blob=blob, tag=self.tag, original_size=original, stored_size=len(blob)
        )

    def unpack(self, content: str | None, blob: bytes | None, tag: str) -> str:
        """Return the original text of a stored (content, blob, tag) triple."""
        if tag == RAW_TAG:
            return content or ""
        if blob is None:
            raise CompressionError(f"Missing blob for '{tag}' content")
        return self.decompress(blob, expected_tag=tag)

    @staticmethod
    def content_hash(text: str) -> str:
        return content_hash(text)
