import pytest

from jobflow.models import StageCondition, StageExecution, StageStatus
from jobflow.substitution import evaluate_stage_condition, parse_typed_value, substitute


def stage(status: StageStatus) -> StageExecution:
    return StageExecution(stage_id="prev", status=status)


def test_substitute_parameter_value() -> None:
    assert substitute("Qty: ${n}", {"n": 5}, {}) == "Qty: 5"


def test_unresolved_token_is_left_alone() -> None:
    assert substitute("${missing}", {}, {}) == "${missing}"
    assert substitute("a ${x} b ${y}", {"x": 1}, None) == "a 1 b ${y}"


def test_variable_shadows_parameter_with_same_id() -> None:
    assert substitute("${k}", {"k": "param"}, {"k": "var"}) == "var"


def test_empty_and_none_text_returned_unchanged() -> None:
    assert substitute("", {"n": 1}, {}) == ""
    assert substitute(None, {"n": 1}, {}) is None


def test_values_render_like_json() -> None:
    text = "${b} ${none} ${f} ${items}"
    values = {"b": True, "none": None, "f": 3.0, "items": [1, 2]}
    assert substitute(text, values, {}) == "true null 3 [1,2]"


def test_repeated_tokens_all_replaced() -> None:
    assert substitute("${n}-${n}", {"n": 7}, {}) == "7-7"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", ""),
        ("42", 42),
        ("-3", -3),
        ("2.5", 2.5),
        (" 7 ", 7),
        ("TRUE", True),
        ("false", False),
        ('{"a": 1}', {"a": 1}),
        ("[1, 2]", [1, 2]),
        ("hello", "hello"),
        ("{not json", "{not json"),
        ('"quoted"', '"quoted"'),
    ],
)
def test_parse_typed_value(raw, expected) -> None:
    assert parse_typed_value(raw) == expected


def test_parse_typed_value_keeps_empty_string_non_numeric() -> None:
    value = parse_typed_value("")
    assert value == "" and isinstance(value, str)


def test_parse_typed_value_passes_non_strings_through() -> None:
    assert parse_typed_value(5) == 5


def test_always_condition() -> None:
    assert evaluate_stage_condition("always()", None) is True
    assert evaluate_stage_condition(StageCondition.ALWAYS, stage(StageStatus.PENDING)) is True


def test_succeeded_condition() -> None:
    assert evaluate_stage_condition("succeeded()", None) is True
    assert evaluate_stage_condition("succeeded()", stage(StageStatus.COMPLETED)) is True
    assert evaluate_stage_condition("succeeded()", stage(StageStatus.PENDING)) is False


def test_failed_condition() -> None:
    assert evaluate_stage_condition("failed()", None) is False
    assert evaluate_stage_condition("failed()", stage(StageStatus.COMPLETED)) is False
    assert evaluate_stage_condition(" FAILED() ", stage(StageStatus.FAILED)) is True


def test_unknown_condition_fails_open() -> None:
    assert evaluate_stage_condition("bogus()", stage(StageStatus.PENDING)) is True
    assert evaluate_stage_condition("", None) is True
    assert evaluate_stage_condition(None, stage(StageStatus.PENDING)) is True
