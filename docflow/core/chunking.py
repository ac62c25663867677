"""Paragraph-aware text chunking for semantic indexing."""

import re

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_JOINER = "\n\n"


def chunk_text(text: str, max_chunk_length: int = 1000) -> list[str]:
    """
    Split text into chunks of at most ``max_chunk_length`` characters.

    Paragraphs (separated by blank lines) are accumulated into a chunk until
    the next one would not fit. A paragraph longer than the limit flushes the
    pending chunk and is hard-split into fixed-size slices.

    Args:
        text: Text to chunk
        max_chunk_length: Maximum characters per chunk

    Returns:
        Non-empty chunks in document order ([] for blank input)

    Raises:
        ValueError: If max_chunk_length is not positive
    """
    if max_chunk_length <= 0:
        raise ValueError(f"max_chunk_length must be positive, got {max_chunk_length}")

    if not text or not text.strip():
        return []

    chunks: list[str] = []
    current = ""

    for paragraph in _PARAGRAPH_BREAK.split(text):
        p = paragraph.strip()
        if not p:
            continue

        if len(p) > max_chunk_length:
            if current:
                chunks.append(current.strip())
                current = ""
            for start in range(0, len(p), max_chunk_length):
                chunks.append(p[start : start + max_chunk_length])
            continue

        if current and len(current) + len(_JOINER) + len(p) > max_chunk_length:
            chunks.append(current.strip())
            current = ""

        current = f"{current}{_JOINER}{p}" if current else p

    if current.strip():
        chunks.append(current.strip())

    return chunks
