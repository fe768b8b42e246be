import asyncio
import json

import pytest
from conftest import FakeInvoker, FakeProfileStore, make_profile

from quickbot.core.field_generation import (
    DEFAULT_QUICK_QUESTIONS,
    DISABLED_FIELDS,
    FIELD_TEMPERATURE,
    FieldContext,
    FieldGenerationError,
    FieldGenerator,
    FieldKind,
    build_field_prompt,
    parse_field_kind,
)
from quickbot.core.llm import ModelInvocationError


def _generate(invoker, field, **kwargs):
    generator = FieldGenerator(invoker, FakeProfileStore({"bot-1": make_profile()}), "llama3.1:8b")
    return asyncio.run(generator.generate("bot-1", field, **kwargs))


def _generate_error(invoker, field, **kwargs) -> FieldGenerationError:
    with pytest.raises(FieldGenerationError) as excinfo:
        _generate(invoker, field, **kwargs)
    return excinfo.value


def test_every_enabled_kind_has_prompt_and_temperature():
    ctx = FieldContext(business_name="Acme")
    for kind in FieldKind:
        if kind in DISABLED_FIELDS:
            continue
        assert "Business name: Acme" in build_field_prompt(kind, ctx)
        assert 0.0 < FIELD_TEMPERATURE[kind] <= 1.0


def test_parse_field_kind():
    assert parse_field_kind("botthesis") is FieldKind.MISSION
    with pytest.raises(FieldGenerationError) as excinfo:
        parse_field_kind("favourite_colour")
    assert excinfo.value.status_code == 400


def test_generates_mission_with_profile_context():
    invoker = FakeInvoker("  We help customers keep their widgets running.  ")
    value = _generate(invoker, "botthesis", user_hint="focus on maintenance", current_value="old text")

    assert value == "We help customers keep their widgets running."
    call = invoker.generate_calls[0]
    assert call["temperature"] == FIELD_TEMPERATURE[FieldKind.MISSION]
    assert "Business name: Acme Widgets" in call["prompt"]
    assert "focus on maintenance" in call["prompt"]
    assert "old text" in call["prompt"]


@pytest.mark.parametrize("field", ["business_name", "business_type", "product_name"])
def test_disabled_fields_are_rejected(field):
    invoker = FakeInvoker("anything")
    error = _generate_error(invoker, field)
    assert error.status_code == 400
    assert invoker.generate_calls == []


def test_vague_hint_is_rejected():
    error = _generate_error(FakeInvoker("x"), "persona", user_hint="zxcvbnmqwrt")
    assert error.status_code == 400
    assert error.message == "Input is too vague to generate meaningful content."


def test_reject_token_is_400():
    assert _generate_error(FakeInvoker("[REJECT]"), "greetings").status_code == 400


def test_persona_with_labels_is_422():
    error = _generate_error(FakeInvoker("Name: Widget Bot\nRole: helper"), "persona")
    assert error.status_code == 422


def test_persona_prose_is_accepted():
    text = "You greet customers warmly and explain widget care in plain language."
    assert _generate(FakeInvoker(text), "persona") == text


def test_quick_questions_parsed_from_json_array():
    questions = ["Q1?", "Q2?", "Q3?", "Q4?", "Q5?"]
    assert _generate(FakeInvoker(json.dumps(questions)), "quick_questions") == questions


@pytest.mark.parametrize("output", ["not json", '["only one?"]', '{"q": 1}', '["a?", "b?", "c?", "d?", 5]'])
def test_quick_questions_fall_back_to_defaults(output):
    assert _generate(FakeInvoker(output), "quick_questions") == DEFAULT_QUICK_QUESTIONS


def test_model_failure_is_500():
    error = _generate_error(FakeInvoker(error=ModelInvocationError("timeout")), "welcome_message")
    assert error.status_code == 500


def test_unknown_bot_still_generates():
    invoker = FakeInvoker("Welcome aboard!")
    generator = FieldGenerator(invoker, FakeProfileStore(), "llama3.1:8b")
    assert asyncio.run(generator.generate("ghost", "welcome_message")) == "Welcome aboard!"
    assert "Business name: N/A" in invoker.generate_calls[0]["prompt"]
