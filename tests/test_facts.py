import pytest

from config import FACTS_MODEL
from exceptions import ConfigError, ModelCallError
from facts import DEFAULT_FACT_COUNT, FALLBACK_FACTS, MAX_FACT_COUNT, clamp_count, generate_facts, parse_facts


@pytest.mark.parametrize("raw, expected", [
    ("3", 3),
    (5, 5),
    ("0", 1),
    ("-4", 1),
    ("99", MAX_FACT_COUNT),
    ("2.7", 2),
    ("lots", DEFAULT_FACT_COUNT),
    (None, DEFAULT_FACT_COUNT),
])
def test_clamp_count(raw, expected):
    assert clamp_count(raw) == expected


def test_json_array_is_preferred():
    assert parse_facts('["a fact", " ", "another"]', 5) == ["a fact", "another"]


def test_fenced_json_is_unwrapped():
    assert parse_facts('```json\n["one", "two", "three"]\n```', 2) == ["one", "two"]


def test_lines_lose_bullets_and_numbering():
    text = "1. Git was written in 2005.\n- HTTP is stateless.\n\n* Unicode has emoji."
    assert parse_facts(text, 10) == ["Git was written in 2005.", "HTTP is stateless.", "Unicode has emoji."]


def test_model_facts_are_returned(model_client):
    model_client.content_responses = ['["Lisp dates from 1958."]']
    assert generate_facts(3, client=model_client) == {"facts": ["Lisp dates from 1958."], "source": "gemini"}
    assert model_client.content_calls[0].model == FACTS_MODEL
    assert "exactly 3" in model_client.content_calls[0].parts[0].text


def test_missing_key_serves_the_built_in_list(mocker):
    mocker.patch("facts.create_model_client", side_effect=ConfigError("GEMINI_API_KEY is not set."))
    assert generate_facts(4) == {"facts": FALLBACK_FACTS[:4], "source": "fallback"}


def test_model_error_serves_the_built_in_list_with_the_error(model_client):
    model_client.content_responses = [ModelCallError("quota exceeded")]
    result = generate_facts(2, client=model_client)
    assert result == {"facts": FALLBACK_FACTS[:2], "source": "error-fallback", "error": "quota exceeded"}


def test_unparseable_answer_serves_the_built_in_list(model_client):
    model_client.content_responses = ["   "]
    assert generate_facts(2, client=model_client)["source"] == "fallback"
