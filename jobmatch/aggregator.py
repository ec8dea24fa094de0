from __future__ import annotations

import re

from pydantic import ValidationError

from jobmatch.models import DocumentVerdict, SessionResultSet

EMPTY_RESPONSE_MESSAGE = "empty response"

_OPENING_FENCE = re.compile(r"^```[A-Za-z0-9_+.-]*[ \t]*(?:\r?\n)?")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ``` / ```json fence and outer whitespace."""
    cleaned = text.strip()
    cleaned = _OPENING_FENCE.sub("", cleaned, count=1)
    if cleaned.endswith("```"):
        cleaned = cleaned[: -len("```")]
    return cleaned.strip()


def parse_verdict(text: str) -> DocumentVerdict:
    verdict = DocumentVerdict.model_validate_json(strip_code_fence(text))
    return verdict.model_copy(update={"is_error": False, "error_message": ""})


def record_result(
    results: SessionResultSet,
    text: str,
    *,
    is_error: bool = False,
    error_message: str = "",
) -> DocumentVerdict:
    """Append exactly one verdict for a document outcome and return it."""
    if is_error or not text.strip():
        verdict = DocumentVerdict.failure(error_message or EMPTY_RESPONSE_MESSAGE)
    else:
        try:
            verdict = parse_verdict(text)
        except ValidationError as exc:
            verdict = DocumentVerdict.failure(f"verdict parse error: {_first_error(exc)}")
    results.results.append(verdict)
    return verdict


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    msg = str(first.get("msg", "invalid"))
    return f"{loc}: {msg}" if loc else msg
