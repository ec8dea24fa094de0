from __future__ import annotations

import json

from jobmatch.aggregator import EMPTY_RESPONSE_MESSAGE, parse_verdict, record_result, strip_code_fence
from jobmatch.models import DocumentVerdict, SessionResultSet

VERDICT = {
    "candidate_email": "ada@example.com",
    "match_score": 82,
    "relevant_experiences": ["5 years of Python services"],
    "relevant_skills": ["python", "postgresql"],
    "missing_skills": ["kubernetes"],
    "summary": "Strong backend profile.",
    "recommendation": "Shortlist",
}


def test_strip_code_fence_variants():
    plain = json.dumps(VERDICT)
    assert strip_code_fence(plain) == plain
    assert strip_code_fence(f"```json\n{plain}\n```") == plain
    assert strip_code_fence(f"```\n{plain}\n```") == plain
    assert strip_code_fence(f"  \n```json {plain}```  ") == plain


def test_strip_code_fence_is_idempotent():
    fenced = "```json\n{\"match_score\": 1}\n```"
    once = strip_code_fence(fenced)
    assert strip_code_fence(once) == once


def test_fenced_and_plain_parse_to_same_verdict():
    plain = json.dumps(VERDICT)
    assert parse_verdict(plain) == parse_verdict(f"```json\n{plain}\n```")


def test_record_result_parses_success():
    results = SessionResultSet(session_id="s1")
    verdict = record_result(results, json.dumps(VERDICT))
    assert len(results) == 1
    assert verdict.is_error is False
    assert verdict.match_score == 82
    assert verdict.relevant_skills == ["python", "postgresql"]


def test_oracle_cannot_set_error_fields():
    payload = dict(VERDICT, is_error_result=True, error="made up")
    verdict = parse_verdict(json.dumps(payload))
    assert verdict.is_error is False
    assert verdict.error_message == ""


def test_record_result_error_keeps_message():
    results = SessionResultSet(session_id="s1")
    verdict = record_result(results, "", is_error=True, error_message="file download error: timeout")
    assert verdict.is_error is True
    assert verdict.error_message == "file download error: timeout"
    assert verdict.match_score == 0


def test_record_result_empty_message_defaults():
    results = SessionResultSet(session_id="s1")
    assert record_result(results, "", is_error=True).error_message == EMPTY_RESPONSE_MESSAGE
    assert record_result(results, "   ").error_message == EMPTY_RESPONSE_MESSAGE
    assert len(results) == 2


def test_record_result_invalid_json_becomes_error_entry():
    results = SessionResultSet(session_id="s1")
    verdict = record_result(results, "```json\n{not json\n```")
    assert verdict.is_error is True
    assert verdict.error_message.startswith("verdict parse error")


def test_record_result_wrong_type_becomes_error_entry():
    results = SessionResultSet(session_id="s1")
    verdict = record_result(results, json.dumps(dict(VERDICT, match_score="high")))
    assert verdict.is_error is True
    assert "match_score" in verdict.error_message


def test_null_fields_fall_back_to_defaults():
    verdict = parse_verdict(json.dumps(dict(VERDICT, missing_skills=None, summary=None)))
    assert verdict.missing_skills == []
    assert verdict.summary == ""


def test_one_entry_per_outcome_in_order():
    results = SessionResultSet(session_id="s1")
    record_result(results, json.dumps(VERDICT))
    record_result(results, "", is_error=True, error_message="text extraction error: bad pdf")
    record_result(results, "garbage")
    assert [v.is_error for v in results.results] == [False, True, True]


def test_wire_format_uses_producer_field_names():
    results = SessionResultSet(session_id="s1")
    record_result(results, json.dumps(VERDICT))
    record_result(results, "", is_error=True, error_message="oracle stream error: down")
    wire = json.loads(results.to_json())
    assert wire[0]["is_error_result"] is False
    assert "error" not in wire[0]
    assert wire[1] == {
        **DocumentVerdict().model_dump(by_alias=True),
        "is_error_result": True,
        "error": "oracle stream error: down",
    }
