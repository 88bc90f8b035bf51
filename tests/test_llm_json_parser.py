import pytest

from pipelines.lib.errors import PlanningError
from pipelines.lib.llm_json import extract_json_candidates, parse_json_dict_from_llm, strip_llm_reasoning_sections


def test_parse_llm_json_plain_dict() -> None:
    text = '{"formula":"len(df)","explanation":"ok"}'
    parsed = parse_json_dict_from_llm(text)
    assert parsed["formula"] == "len(df)"


def test_parse_llm_json_fenced_block() -> None:
    text = "```json\n{\"formula\":\"df['Amount'].sum()\",\"explanation\":\"ok\"}\n```"
    parsed = parse_json_dict_from_llm(text)
    assert parsed["formula"] == "df['Amount'].sum()"


def test_parse_llm_json_with_noise() -> None:
    text = "Here is JSON:\n{\"aggregation\":\"average\",\"filters\":[]}\nThanks"
    parsed = parse_json_dict_from_llm(text)
    assert parsed["aggregation"] == "average"


def test_parse_llm_json_rejects_non_object() -> None:
    with pytest.raises(PlanningError):
        parse_json_dict_from_llm("[1, 2, 3]")


def test_parse_llm_json_rejects_empty_text() -> None:
    with pytest.raises(PlanningError, match="did not return JSON"):
        parse_json_dict_from_llm("   ")


def test_planning_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        parse_json_dict_from_llm("no json here at all")


def test_parse_llm_json_with_think_and_invalid_braces_before_valid_object() -> None:
    text = (
        "<think>\n"
        "I will answer with JSON. {not_json_here}\n"
        "</think>\n"
        '{"formula":"len(df)","explanation":"ok"}'
    )
    parsed = parse_json_dict_from_llm(text)
    assert parsed["formula"] == "len(df)"


def test_parse_llm_json_ignores_thinking_fence_with_broken_braces() -> None:
    text = (
        "```thinking\n"
        "{not_json_here\n"
        "```\n"
        '{"formula":"df.shape[0]","explanation":"ok"}'
    )
    parsed = parse_json_dict_from_llm(text)
    assert parsed["formula"] == "df.shape[0]"


def test_parse_llm_json_braces_inside_strings() -> None:
    text = 'prefix {"formula":"\'{x}\'.format(x=1)","explanation":"uses {braces}"} suffix'
    parsed = parse_json_dict_from_llm(text)
    assert parsed["explanation"] == "uses {braces}"


def test_strip_reasoning_sections_removes_tags() -> None:
    assert strip_llm_reasoning_sections("<reasoning>hmm</reasoning>{}") == "{}"


def test_extract_json_candidates_nested_objects() -> None:
    cands = extract_json_candidates('x {"a": {"b": 1}} y')
    assert cands[0] == '{"a": {"b": 1}}'
