"""Triage router: fast path (direct text) vs heavy path (OCR/vision).

Plain-text formats are always fast path. PDFs are parsed with PyMuPDF and
must pass four text-quality signals to stay on the fast path; anything else
is deferred to the external OCR/vision worker.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from docflow.core.logging import get_logger

logger = get_logger(__name__)

# Lazy import to avoid loading heavy libraries at module load
fitz = None


def _get_fitz():
    """Lazy load PyMuPDF."""
    global fitz
    if fitz is None:
        try:
            import fitz as _fitz
            fitz = _fitz
        except ImportError:
            raise ImportError(
                "PyMuPDF (fitz) is required for PDF triage. "
                "Install with: pip install pymupdf"
            )
    return fitz


FAST_PATH_EXTENSIONS = frozenset({"txt", "md", "csv", "json"})

MIN_CONTENT_CHARS = 100
MIN_WORD_RUNS = 20
MAX_GARBAGE_RATIO = 0.02
PAGE_COVERAGE_MIN_PAGES = 2  # signal applies only above this page count
MIN_PAGE_COVERAGE = 0.4
MIN_PAGE_CHARS = 30

_WHITESPACE_RUN = re.compile(r"\s+")
# Runs of 2+ Unicode letters (\w minus digits and underscore)
_WORD_RUN = re.compile(r"[^\W\d_]{2,}")
# C0 controls except tab/newline/CR, DEL, C1 controls, replacement char
_GARBAGE_CHAR = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufffd]")


@dataclass
class TriageSignals:
    content_length: int
    word_runs: int
    garbage_ratio: float
    page_count: int
    page_coverage: float | None
    passed: dict[str, bool] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(self.passed.values())

    def as_dict(self) -> dict[str, Any]:
        return {
            "content_length": self.content_length,
            "word_runs": self.word_runs,
            "garbage_ratio": round(self.garbage_ratio, 4),
            "page_count": self.page_count,
            "page_coverage": None if self.page_coverage is None else round(self.page_coverage, 3),
            "passed": dict(self.passed),
        }


@dataclass
class TriageResult:
    fast_path: bool
    text: str = ""
    page_texts: list[str] = field(default_factory=list)
    reason: str = ""
    signals: TriageSignals | None = None


def triage_signals(text: str, page_texts: list[str] | None = None) -> TriageSignals:
    """Compute the four text-quality signals for extracted PDF text."""
    collapsed = _WHITESPACE_RUN.sub(" ", text).strip()
    word_runs = len(_WORD_RUN.findall(text))
    garbage = len(_GARBAGE_CHAR.findall(text))
    garbage_ratio = garbage / len(text) if text else 1.0

    pages = page_texts or []
    coverage = None
    if len(pages) > PAGE_COVERAGE_MIN_PAGES:
        covered = sum(1 for p in pages if len(_WHITESPACE_RUN.sub("", p)) > MIN_PAGE_CHARS)
        coverage = covered / len(pages)

    return TriageSignals(
        content_length=len(collapsed),
        word_runs=word_runs,
        garbage_ratio=garbage_ratio,
        page_count=len(pages),
        page_coverage=coverage,
        passed={
            "min_content": len(collapsed) >= MIN_CONTENT_CHARS,
            "word_density": word_runs >= MIN_WORD_RUNS,
            "garbage_ratio": garbage_ratio <= MAX_GARBAGE_RATIO,
            "page_coverage": coverage is None or coverage >= MIN_PAGE_COVERAGE,
        },
    )


def is_pdf_text_extractable(text: str, page_texts: list[str] | None = None) -> bool:
    """True only if all four signals pass. Pure and deterministic."""
    return triage_signals(text, page_texts).ok


def extract_pdf_pages(raw_bytes: bytes) -> list[str]:
    """Return the text layer of every page.

    Raises:
        ImportError: If PyMuPDF is not installed
        Exception: Whatever PyMuPDF raises for a corrupt document
    """
    fitz_lib = _get_fitz()
    doc = fitz_lib.open(stream=raw_bytes, filetype="pdf")
    try:
        return [page.get_text("text") for page in doc]
    finally:
        doc.close()


def normalize_extension(filename: str, extension: str | None = None) -> str:
    ext = extension or (filename.rsplit(".", 1)[-1] if "." in filename else "")
    return ext.lower().lstrip(".")


def triage(
    filename: str,
    extension: str | None = None,
    raw_bytes: bytes | None = None,
    raw_text: str | None = None,
) -> TriageResult:
    """
    Decide whether a document can be processed from its text layer.

    Args:
        filename: Original filename
        extension: File extension (derived from filename when omitted)
        raw_bytes: File content, required for PDFs
        raw_text: Decoded text for plain formats

    Returns:
        TriageResult; on the fast path ``text`` holds the document text
    """
    ext = normalize_extension(filename, extension)

    if ext in FAST_PATH_EXTENSIONS:
        text = raw_text
        if text is None and raw_bytes is not None:
            text = raw_bytes.decode("utf-8", errors="replace")
        return TriageResult(fast_path=True, text=text or "", reason="plain_text")

    if ext != "pdf":
        return TriageResult(fast_path=False, reason=f"unsupported_for_fast_path:{ext or 'none'}")

    if not raw_bytes:
        return TriageResult(fast_path=False, reason="pdf_missing_bytes")

    try:
        page_texts = extract_pdf_pages(raw_bytes)
    except Exception as e:
        logger.warning(f"PDF text extraction failed for {filename}: {e}")
        return TriageResult(fast_path=False, reason="pdf_parse_failed")

    text = "\n\n".join(page_texts)
    signals = triage_signals(text, page_texts)
    if not signals.ok:
        failed = [name for name, ok in signals.passed.items() if not ok]
        logger.info(f"PDF {filename} routed to heavy path (failed: {', '.join(failed)})")
        return TriageResult(
            fast_path=False,
            page_texts=page_texts,
            reason=f"pdf_signals_failed:{','.join(failed)}",
            signals=signals,
        )

    return TriageResult(
        fast_path=True,
        text=text,
        page_texts=page_texts,
        reason="pdf_text_layer",
        signals=signals,
    )
