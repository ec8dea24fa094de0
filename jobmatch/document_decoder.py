"""
Document decoding: raw resume bytes plus a MIME type in, plain text out.

Supported formats:
  text/plain                                   decoded verbatim
  application/pdf                              page-by-page text via PyMuPDF, empty pages skipped
  application/vnd.openxmlformats-...document   paragraph and table text via python-docx

Any other MIME type raises DOC_FORMAT_UNSUPPORTED. Decode failures are
deterministic, so callers never retry them.
"""

from __future__ import annotations

import io

from jobmatch.errors import PipelineError

MIME_TEXT = "text/plain"
MIME_PDF = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

SUPPORTED_MIME_TYPES = (MIME_TEXT, MIME_PDF, MIME_DOCX)


def _permanent(code: str, message: str) -> PipelineError:
    return PipelineError(code=code, message=message, error_class="permanent", retryable=False)


def normalize_mime(mime: str) -> str:
    return mime.split(";", 1)[0].strip().lower()


def decode_plain_text(data: bytes) -> str:
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise _permanent("TEXT_ENCODING_UNSUPPORTED", "text encoding unsupported")


def extract_pdf_text(data: bytes) -> str:
    import pymupdf

    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise _permanent("DOC_PARSE_PDF_CORRUPT", f"failed to read pdf: {exc}") from exc
    if doc.page_count == 0:
        doc.close()
        raise _permanent("DOC_PARSE_PDF_CORRUPT", "failed to read pdf: no pages")

    pages: list[str] = []
    try:
        for page in doc:
            text = page.get_text("text")
            if text and text.strip():
                pages.append(text)
    finally:
        doc.close()
    return "\n".join(pages)


def extract_docx_text(data: bytes) -> str:
    import docx

    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:
        raise _permanent("DOC_PARSE_DOCX_CORRUPT", f"failed to parse docx: {exc}") from exc

    lines = [para.text for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append(" | ".join(cells))
    return "\n".join(lines)


def decode_document(mime: str, data: bytes) -> str:
    kind = normalize_mime(mime)
    if kind == MIME_TEXT:
        return decode_plain_text(data)
    if kind == MIME_PDF:
        return extract_pdf_text(data)
    if kind == MIME_DOCX:
        return extract_docx_text(data)
    raise _permanent("DOC_FORMAT_UNSUPPORTED", f"unsupported file type: {mime}")
