"""
Citation Grounding
==================

Chunks source documents, sends them to the citations backend as
custom-content documents, and maps the returned citations back to checkable
source spans.

Chunks are character ranges into the supplied content (`content[start:end]`),
so re-chunking the same text yields the same boundaries and every quoted span
is a substring of what was sent.

Chunk boundaries:
- Blank lines
- Lines ending with a colon (section headers such as 診斷病名：)
- Numbering markers: 壹、 / 一、 / (一) / 1. / 1、 / markdown headings
- Oversized chunks are split at sentence ends
- A header chunk ending with a colon is merged into the chunk after it
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .law_refs import repair_quoted_text
from .llm.citations_client import CitationsClient
from .schemas import Citation, CitationLocation, CitationStatus, SourceKind, TextSegment

logger = logging.getLogger(__name__)

MAX_CHUNK_LENGTH = 500

_STRUCTURAL_BREAKS = [
    re.compile(r"[：:]$"),
    re.compile(r"^[壹貳參肆伍陸柒捌玖拾]+、"),
    re.compile(r"^[一二三四五六七八九十]+、"),
    re.compile(r"^[（(][一二三四五六七八九十]+[）)]"),
    re.compile(r"^\d+[.、]"),
    re.compile(r"^#{1,6}\s"),
]

_SENTENCE_END = re.compile(r"(?<=[。！？!?])|(?<=\.)\s")


@dataclass(frozen=True)
class Chunk:
    index: int
    start: int
    end: int
    text: str


@dataclass
class SourceDocument:
    """One document supplied to a grounded generation call"""
    source_id: str
    title: str
    content: str
    kind: SourceKind = SourceKind.FILE


@dataclass
class GroundedText:
    text: str
    segments: List[TextSegment] = field(default_factory=list)
    citations: List[Citation] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    truncated: bool = False


# =============================================================================
# Chunking
# =============================================================================

def is_structural_break(line: str) -> bool:
    return any(pattern.search(line) for pattern in _STRUCTURAL_BREAKS)


def _trimmed(content: str, start: int, end: int) -> Tuple[int, int]:
    while start < end and content[start].isspace():
        start += 1
    while end > start and content[end - 1].isspace():
        end -= 1
    return start, end


def _line_spans(content: str) -> List[Tuple[int, int]]:
    """(start, end) of every stripped non-blank line; blank lines as (-1, -1)"""
    spans = []
    position = 0
    for line in content.split("\n"):
        start, end = _trimmed(content, position, position + len(line))
        spans.append((start, end) if end > start else (-1, -1))
        position += len(line) + 1
    return spans


def _split_by_sentence(content: str, start: int, end: int, max_length: int) -> List[Tuple[int, int]]:
    bounds = sorted(
        {start, end} | {m.end() for m in _SENTENCE_END.finditer(content, start, end) if start < m.end() < end}
    )

    # Greedy: extend a piece sentence by sentence while it fits
    pieces: List[Tuple[int, int]] = []
    piece_start = previous = start
    for bound in bounds[1:]:
        if bound - piece_start > max_length and previous > piece_start:
            pieces.append((piece_start, previous))
            piece_start = previous
        previous = bound
    pieces.append((piece_start, end))

    # A single sentence longer than the ceiling is cut at the ceiling
    bounded: List[Tuple[int, int]] = []
    for piece_start, piece_end in pieces:
        while piece_end - piece_start > max_length:
            bounded.append((piece_start, piece_start + max_length))
            piece_start += max_length
        bounded.append((piece_start, piece_end))

    spans = [_trimmed(content, s, e) for s, e in bounded]
    return [(s, e) for s, e in spans if e > s]


def chunk_document(content: str, max_chunk_length: int = MAX_CHUNK_LENGTH) -> List[Chunk]:
    """Split `content` into citation-granularity chunks (see module docstring)"""
    if not content or not content.strip():
        return []

    groups: List[Tuple[int, int]] = []
    group_start: Optional[int] = None
    group_end = 0

    for start, end in _line_spans(content):
        if start < 0:
            if group_start is not None:
                groups.append((group_start, group_end))
                group_start = None
            continue
        if group_start is not None and is_structural_break(content[start:end]):
            groups.append((group_start, group_end))
            group_start = None
        if group_start is None:
            group_start = start
        group_end = end
    if group_start is not None:
        groups.append((group_start, group_end))

    spans: List[Tuple[int, int]] = []
    for start, end in groups:
        if end - start <= max_chunk_length:
            spans.append((start, end))
        else:
            spans.extend(_split_by_sentence(content, start, end, max_chunk_length))

    merged: List[Tuple[int, int]] = []
    i = 0
    while i < len(spans):
        start, end = spans[i]
        if content[end - 1] in "：:" and i + 1 < len(spans):
            merged.append((start, spans[i + 1][1]))
            i += 2
        else:
            merged.append((start, end))
            i += 1

    return [Chunk(index=n, start=s, end=e, text=content[s:e]) for n, (s, e) in enumerate(merged)]


# =============================================================================
# Request documents
# =============================================================================

def build_document_blocks(
    documents: Sequence[SourceDocument],
    max_chunk_length: int = MAX_CHUNK_LENGTH,
) -> Tuple[List[Dict[str, Any]], List[List[Chunk]]]:
    """Document blocks for the citations backend plus the chunk map of each document"""
    blocks: List[Dict[str, Any]] = []
    chunk_maps: List[List[Chunk]] = []
    for document in documents:
        chunks = chunk_document(document.content, max_chunk_length)
        chunk_maps.append(chunks)
        blocks.append({
            "type": "document",
            "source": {
                "type": "content",
                "content": [{"type": "text", "text": chunk.text} for chunk in chunks],
            },
            "title": document.title,
            "context": "Legal authority" if document.kind == SourceKind.LAW else "Case document",
            "citations": {"enabled": True},
        })
    return blocks, chunk_maps


# =============================================================================
# Response assembly
# =============================================================================

def _clamp(value: Any, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return low
    return max(low, min(high, number))


def resolve_citation(
    raw: Dict[str, Any],
    documents: Sequence[SourceDocument],
    chunk_maps: Sequence[Sequence[Chunk]],
) -> Optional[Citation]:
    """
    Map one backend citation to a Citation, or None when it points at a
    document that was not supplied.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Dropping malformed citation of type {type(raw).__name__}")
        return None
    index = raw.get("document_index")
    if not isinstance(index, int) or not 0 <= index < len(documents):
        logger.warning(f"Dropping citation with out-of-range document index {index!r}")
        return None

    document = documents[index]
    chunks = chunk_maps[index]
    content = document.content

    if raw.get("type") == "content_block_location":
        if not chunks:
            return None
        first = _clamp(raw.get("start_block_index"), 0, len(chunks) - 1)
        # end_block_index is exclusive
        last = _clamp(raw.get("end_block_index", first + 1), first + 1, len(chunks)) - 1
        start, end = chunks[first].start, chunks[last].end
        location = CitationLocation(block_index=first, char_start=start, char_end=end)
    else:
        start = _clamp(raw.get("start_char_index"), 0, len(content))
        end = _clamp(raw.get("end_char_index"), start, len(content))
        location = CitationLocation(char_start=start, char_end=end)

    span = content[start:end]
    cited = repair_quoted_text(str(raw.get("cited_text") or ""), span).strip()
    quoted = cited if cited and cited in content else span

    return Citation(
        label=document.title,
        kind=document.kind,
        source_id=document.source_id,
        location=location,
        quoted_text=quoted,
        status=CitationStatus.CONFIRMED,
    )


def assemble_grounded_text(
    content_blocks: Sequence[Dict[str, Any]],
    documents: Sequence[SourceDocument],
    chunk_maps: Sequence[Sequence[Chunk]],
) -> GroundedText:
    """One segment per text block, carrying the citations anchored in it"""
    grounded = GroundedText(text="")
    for block in content_blocks:
        if not isinstance(block, dict):
            logger.warning(f"Skipping malformed content block of type {type(block).__name__}")
            continue
        if block.get("type") != "text":
            continue
        text = block.get("text") or ""
        if not text:
            continue
        citations = []
        for raw in block.get("citations") or []:
            citation = resolve_citation(raw, documents, chunk_maps)
            if citation is not None:
                citations.append(citation)
        grounded.text += text
        grounded.segments.append(TextSegment(text=text, citations=citations))
        grounded.citations.extend(citations)
    return grounded


def strip_leading_headings(grounded: GroundedText, headings: Sequence[Optional[str]]) -> GroundedText:
    """
    Remove headings the model re-emitted at the start of the text.

    Each heading may carry markdown `#` markup and must sit on its own line.
    Segments are trimmed by the removed character count and citations whose
    segment disappeared are dropped.
    """
    text = grounded.text
    removed = 0
    for heading in headings:
        if not heading or not heading.strip():
            continue
        pattern = re.compile(rf"^\s*#{{0,6}}\s*{re.escape(heading.strip())}[ \t]*(?:\n|$)")
        match = pattern.match(text[removed:])
        if match:
            removed += match.end()

    blanks = re.match(r"(?:[ \t]*\n)+", text[removed:])
    if blanks:
        removed += blanks.end()

    if removed == 0:
        return grounded

    to_skip = removed
    segments: List[TextSegment] = []
    for segment in grounded.segments:
        if to_skip >= len(segment.text):
            to_skip -= len(segment.text)
            continue
        if to_skip:
            segment = TextSegment(text=segment.text[to_skip:], citations=segment.citations)
            to_skip = 0
        segments.append(segment)

    kept_ids = {c.id for segment in segments for c in segment.citations}
    return GroundedText(
        text=text[removed:],
        segments=segments,
        citations=[c for c in grounded.citations if c.id in kept_ids],
        input_tokens=grounded.input_tokens,
        output_tokens=grounded.output_tokens,
        truncated=grounded.truncated,
    )


async def ground_with_citations(
    client: CitationsClient,
    documents: Sequence[SourceDocument],
    instruction: str,
    max_chunk_length: int = MAX_CHUNK_LENGTH,
    system: Optional[str] = None,
    max_tokens: int = 8192,
    cancel: Optional[asyncio.Event] = None,
) -> GroundedText:
    """Generate text for `instruction` with citations into `documents`"""
    blocks, chunk_maps = build_document_blocks(documents, max_chunk_length)
    logger.info(
        f"Grounded call: {len(documents)} documents, "
        f"{sum(len(m) for m in chunk_maps)} chunks"
    )
    response = await client.create(blocks, instruction, system=system, max_tokens=max_tokens, cancel=cancel)
    grounded = assemble_grounded_text(response.content_blocks, documents, chunk_maps)
    grounded.input_tokens = response.input_tokens
    grounded.output_tokens = response.output_tokens
    grounded.truncated = response.truncated
    return grounded
