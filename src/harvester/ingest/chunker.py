"""Semantic chunker: token-bounded, overlapping chunks that follow text structure.

Segmentation works on character spans of the preprocessed text so every
chunk keeps exact offsets. The budget applies to a chunk's own (core)
segment; overlap copied in from neighbours comes on top of it.

Split hierarchy for prose: paragraph -> sentence -> word -> characters.
Code skips paragraph and sentence splitting and packs whole lines instead.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Iterable

from bs4 import BeautifulSoup

from harvester.ingest.compression import content_hash

CONTENT_TYPES = ("text", "code", "markdown", "html")

_PRESETS = {
    "text": (500, 50),
    "code": (800, 100),
    "markdown": (600, 75),
    "html": (400, 40),
}

_PARAGRAPH_RE = re.compile(r"(?:[^\n]|\n(?![ \t]*\n))+")
_SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"\S+")
_LINE_RE = re.compile(r"[^\n]+")
_MD_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$")
_MAX_LABEL_LINE = 80


def estimate_tokens(text: str) -> int:
    """Approximate token count: ceil(chars / 4)."""
    return math.ceil(len(text) / 4)


@dataclass
class ChunkingOptions:
    max_tokens: int = 500
    overlap_tokens: int = 50
    preserve_paragraphs: bool = True
    min_chunk_size: int = 0
    content_type: str = "text"

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if self.overlap_tokens < 0:
            raise ValueError("overlap_tokens must be >= 0")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must be >= 0")
        if self.content_type not in CONTENT_TYPES:
            raise ValueError(
                f"Unknown content_type '{self.content_type}'. Expected one of: {', '.join(CONTENT_TYPES)}"
            )


def options_for_content_type(content_type: str, **overrides: object) -> ChunkingOptions:
    """Preset options for *content_type*; keyword arguments override fields."""
    if content_type not in _PRESETS:
        raise ValueError(f"Unknown content_type '{content_type}'")
    max_tokens, overlap = _PRESETS[content_type]
    values: dict[str, object] = {
        "max_tokens": max_tokens,
        "overlap_tokens": overlap,
        "content_type": content_type,
    }
    values.update(overrides)
    return ChunkingOptions(**values)  # type: ignore[arg-type]


@dataclass
class ChunkDraft:
    """A chunk produced by the chunker, before it is stored.

    Attributes:
        index: Position in the result.
        core: The chunk's own segment (bounded by ``max_tokens``).
        overlap_before: Suffix of the previous chunk's core.
        overlap_after: Prefix of the next chunk's core.
        content: ``overlap_before + core + overlap_after`` as stored/embedded.
        token_count: Estimated tokens of ``content``.
        content_hash: SHA-256 of the normalised content.
        start_offset: Start of ``core`` in the preprocessed text.
        end_offset: End of ``core`` in the preprocessed text.
        heading: Heading that opens this chunk, if any.
        section: Nearest heading at or before this chunk.
        is_duplicate: Hash already known or seen earlier in the result.
    """

    index: int
    core: str
    overlap_before: str
    overlap_after: str
    content: str
    token_count: int
    content_hash: str
    start_offset: int
    end_offset: int
    heading: str | None = None
    section: str | None = None
    is_duplicate: bool = False
    content_type: str = "text"

    @property
    def core_tokens(self) -> int:
        return estimate_tokens(self.core)

    @property
    def metadata(self) -> dict[str, object]:
        return {
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "heading": self.heading,
            "section": self.section,
            "content_type": self.content_type,
            "is_duplicate": self.is_duplicate,
        }


@dataclass
class ChunkingResult:
    chunks: list[ChunkDraft] = field(default_factory=list)
    total_tokens: int = 0
    duplicates_found: int = 0
    compression_ratio: float = 0.0


@dataclass
class _Segment:
    start: int
    end: int
    text: str
    heading: str | None = None
    section: str | None = None


class SemanticChunker:
    """Split text into overlapping, token-bounded chunks.

    Args:
        options: Default options for ``chunk`` calls.
    """

    def __init__(self, options: ChunkingOptions | None = None) -> None:
        self.options = options or ChunkingOptions()

    def chunk(
        self,
        text: str,
        options: ChunkingOptions | None = None,
        known_hashes: Iterable[str] = (),
    ) -> ChunkingResult:
        """Chunk *text*.

        Args:
            text: Raw input.
            options: Overrides the chunker's default options for this call.
            known_hashes: Hashes already stored for the same corpus; matching
                chunks are counted as duplicates (they are still returned).

        Returns:
            ChunkingResult. Empty or whitespace-only input yields no chunks.
        """
        opts = options or self.options
        if not text or not text.strip():
            return ChunkingResult()

        prepared = _preprocess(text, opts.content_type)
        budget = _Budget(opts.max_tokens)
        if opts.content_type == "code":
            spans = budget.pack_lines(prepared)
        elif opts.preserve_paragraphs:
            spans = budget.pack_paragraphs(prepared)
        else:
            spans = budget.fit(prepared, 0, len(prepared), "word")

        segments = [
            _Segment(s, e, prepared[s:e]) for s, e in spans if prepared[s:e].strip()
        ]
        segments = [seg for seg in segments if len(seg.text) >= opts.min_chunk_size]
        _label_sections(segments)

        seen = set(known_hashes)
        result = ChunkingResult()
        is_code = opts.content_type == "code"
        for i, seg in enumerate(segments):
            before = after = ""
            if i > 0:
                before = _overlap(segments[i - 1].text, opts.overlap_tokens, is_code, tail=True)
            if i + 1 < len(segments):
                after = _overlap(segments[i + 1].text, opts.overlap_tokens, is_code, tail=False)
            joiner = "\n" if is_code else " "
            content = joiner.join(part for part in (before, seg.text, after) if part)
            digest = content_hash(content)
            duplicate = digest in seen
            seen.add(digest)
            draft = ChunkDraft(
                index=i,
                core=seg.text,
                overlap_before=before,
                overlap_after=after,
                content=content,
                token_count=estimate_tokens(content),
                content_hash=digest,
                start_offset=seg.start,
                end_offset=seg.end,
                heading=seg.heading,
                section=seg.section,
                is_duplicate=duplicate,
                content_type=opts.content_type,
            )
            result.chunks.append(draft)
            result.total_tokens += draft.token_count
            result.duplicates_found += int(duplicate)

        result.compression_ratio = round(
            sum(len(seg.text) for seg in segments) / len(text), 4
        )
        return result


def chunk_text(
    text: str,
    options: ChunkingOptions | None = None,
    known_hashes: Iterable[str] = (),
) -> ChunkingResult:
    """Chunk *text* with *options* (defaults when None)."""
    return SemanticChunker().chunk(text, options, known_hashes)


# ------------------------------------------------------------------
# Preprocessing
# ------------------------------------------------------------------

def _preprocess(text: str, content_type: str) -> str:
    if content_type == "code":
        return text
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if content_type == "html":
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup.find_all(["script", "style"]):
            tag.decompose()
        text = soup.get_text("\n\n")
        text = "\n".join(line.strip() for line in text.split("\n"))
    elif content_type == "text":
        text = re.sub(r"[ \t\f\v]+", " ", text)
        text = "\n".join(line.strip() for line in text.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


# ------------------------------------------------------------------
# Segmentation
# ------------------------------------------------------------------

class _Budget:
    """Greedy span packing under a token budget."""

    def __init__(self, max_tokens: int) -> None:
        self.max_tokens = max_tokens

    def fits(self, text: str, start: int, end: int) -> bool:
        return estimate_tokens(text[start:end]) <= self.max_tokens

    def pack_paragraphs(self, text: str) -> list[tuple[int, int]]:
        units: list[tuple[int, int]] = []
        for m in _PARAGRAPH_RE.finditer(text):
            start, end = _trim(text, m.start(), m.end())
            if start < end:
                units.append((start, end))

        spans: list[tuple[int, int]] = []
        current: tuple[int, int] | None = None
        for start, end in units:
            if not self.fits(text, start, end):
                if current:
                    spans.append(current)
                    current = None
                spans.extend(self.fit(text, start, end, "sentence"))
                continue
            starts_section = _heading_of(text[start:end]) is not None
            if current and (starts_section or not self.fits(text, current[0], end)):
                spans.append(current)
                current = None
            current = (current[0], end) if current else (start, end)
        if current:
            spans.append(current)
        return spans

    def fit(self, text: str, start: int, end: int, level: str) -> list[tuple[int, int]]:
        """Split text[start:end] into spans within budget, starting at *level*."""
        if self.fits(text, start, end):
            return [(start, end)]
        if level == "char":
            step = self.max_tokens * 4
            return [(s, min(s + step, end)) for s in range(start, end, step)]

        if level == "sentence":
            units = _split_spans(text, start, end, _SENTENCE_BREAK_RE)
            lower = "word"
        else:
            units = [(start + m.start(), start + m.end()) for m in _WORD_RE.finditer(text[start:end])]
            lower = "char"
        if len(units) <= 1:
            return self.fit(text, start, end, lower)
        return self._pack(text, units, lower)

    def pack_lines(self, text: str) -> list[tuple[int, int]]:
        units = [(m.start(), m.end()) for m in _LINE_RE.finditer(text) if m.group().strip()]
        return self._pack(text, units, "char")

    def _pack(self, text: str, units: list[tuple[int, int]], lower: str) -> list[tuple[int, int]]:
        spans: list[tuple[int, int]] = []
        current: tuple[int, int] | None = None
        for start, end in units:
            if not self.fits(text, start, end):
                if current:
                    spans.append(current)
                    current = None
                spans.extend(self.fit(text, start, end, lower))
            elif current and self.fits(text, current[0], end):
                current = (current[0], end)
            else:
                if current:
                    spans.append(current)
                current = (start, end)
        if current:
            spans.append(current)
        return spans


def _trim(text: str, start: int, end: int) -> tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _split_spans(text: str, start: int, end: int, pattern: re.Pattern[str]) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    pos = start
    for m in pattern.finditer(text, start, end):
        piece = _trim(text, pos, m.start())
        if piece[0] < piece[1]:
            spans.append(piece)
        pos = m.end()
    piece = _trim(text, pos, end)
    if piece[0] < piece[1]:
        spans.append(piece)
    return spans


# ------------------------------------------------------------------
# Overlap and labels
# ------------------------------------------------------------------

def _overlap(core: str, overlap_tokens: int, is_code: bool, *, tail: bool) -> str:
    """Prefix (or suffix when *tail*) of a neighbour's core used as shared context."""
    if overlap_tokens <= 0:
        return ""
    if is_code:
        lines = core.split("\n")
        limit = max(1, len(lines) // 2)
        picked: list[str] = []
        source = reversed(lines) if tail else iter(lines)
        for line in source:
            if picked and (
                len(picked) >= limit
                or estimate_tokens("\n".join([*picked, line])) > overlap_tokens
            ):
                break
            picked.append(line)
        if tail:
            picked.reverse()
        return "\n".join(picked)

    words = list(_WORD_RE.finditer(core))
    if not words:
        return ""
    count = min(overlap_tokens, max(1, len(words) // 2))
    if tail:
        return core[words[-count].start():]
    return core[: words[count - 1].end()]


def _heading_of(block: str) -> str | None:
    first = block.lstrip().split("\n", 1)[0].strip()
    m = _MD_HEADING_RE.match(first)
    if m:
        return m.group(1)
    if first.endswith(":") and len(first) <= _MAX_LABEL_LINE and len(first) > 1:
        return first[:-1].strip()
    return None


def _label_sections(segments: list[_Segment]) -> None:
    section: str | None = None
    for seg in segments:
        seg.heading = _heading_of(seg.text)
        if seg.heading is not None:
            section = seg.heading
        seg.section = section
        for line in seg.text.split("\n")[1:]:
            inner = _heading_of(line)
            if inner is not None:
                section = inner
