"""Tests for question generation: profile selection, prompts, and output parsing."""

import asyncio

import pytest
from langchain_core.messages import AIMessage

from apprep.errors import GenerationError
from apprep.services.question_generator import (
    GenerationProfile,
    QuestionGenerator,
    parse_structured_result,
    select_profile,
)
from apprep.services.questions import GeneratedQuestion


def sample_output() -> GeneratedQuestion:
    return GeneratedQuestion(
        question="What is $\\frac{d}{dx} x^2$?",
        optionA="$x$",
        optionB="$2x$",
        optionC="$x^2$",
        optionD="$2$",
        correctAnswer="B",
        explanation="By the power rule the derivative is $2x$.",
    )


class FakeLLM:
    """Mimics ChatOpenAI.with_structured_output(..., include_raw=True)."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.prompts = []
        self.structured_kwargs = None

    def with_structured_output(self, schema, include_raw=False):
        assert schema is GeneratedQuestion
        self.structured_kwargs = {"include_raw": include_raw}

        async def respond(prompt_value):
            self.prompts.append(prompt_value.to_string())
            if self.error:
                raise self.error
            return self.result

        return respond


def make_generator(llm):
    profiles = []

    def factory(profile):
        profiles.append(profile)
        return llm

    return QuestionGenerator(llm_factory=factory), profiles


def test_select_profile():
    """Humanities and social science courses use the humanities profile."""
    assert select_profile("AP United States History") == GenerationProfile.HUMANITIES
    assert select_profile("AP English Literature and Composition") == GenerationProfile.HUMANITIES
    assert select_profile("AP Macroeconomics") == GenerationProfile.HUMANITIES
    assert select_profile("AP Human Geography") == GenerationProfile.HUMANITIES
    assert select_profile("AP Computer Science Principles") == GenerationProfile.HUMANITIES
    assert select_profile("AP Computer Science A") == GenerationProfile.STEM
    assert select_profile("AP Biology") == GenerationProfile.STEM
    assert select_profile("AP Calculus BC") == GenerationProfile.STEM
    assert select_profile("") == GenerationProfile.STEM


def test_build_llm_uses_profile_models(monkeypatch):
    from apprep.services.question_generator import build_llm

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    stem = build_llm(GenerationProfile.STEM)
    humanities = build_llm(GenerationProfile.HUMANITIES)

    assert stem.model_name == "gpt-5-mini"
    assert stem.reasoning_effort == "low"
    assert humanities.model_name == "gpt-4.1-mini"
    assert humanities.temperature == 0.7


def test_generate_returns_parsed_question():
    llm = FakeLLM(result={"raw": AIMessage(content=""), "parsed": sample_output(), "parsing_error": None})
    generator, profiles = make_generator(llm)

    question = asyncio.run(generator.generate("AP Calculus AB", "Unit 2"))

    assert question.correctAnswer == "B"
    assert profiles == [GenerationProfile.STEM]
    assert llm.structured_kwargs == {"include_raw": True}


def test_prompt_includes_unit_context_and_biology_calibration():
    llm = FakeLLM(result={"raw": AIMessage(content=""), "parsed": sample_output(), "parsing_error": None})
    generator, _ = make_generator(llm)

    asyncio.run(generator.generate("AP Biology", "Unit 1: Chemistry of Life"))

    prompt = llm.prompts[0]
    assert "UNIT CONTEXT: Unit 1: Chemistry of Life" in prompt
    assert "hydrogen bonding" in prompt, "Unit keywords should be in the prompt"
    assert "DIFFICULTY CALIBRATION FOR AP BIOLOGY" in prompt
    assert "COURSE GUIDANCE" in prompt
    assert "Create an AP-level practice question for AP Biology covering Unit 1" in prompt


def test_prompt_without_catalog_match_has_no_unit_context():
    llm = FakeLLM(result={"raw": AIMessage(content=""), "parsed": sample_output(), "parsing_error": None})
    generator, profiles = make_generator(llm)

    asyncio.run(generator.generate("AP Art History", "Unit 3"))

    assert "UNIT CONTEXT" not in llm.prompts[0]
    assert "DIFFICULTY CALIBRATION" not in llm.prompts[0]
    assert profiles == [GenerationProfile.HUMANITIES]


def test_chain_is_built_once_per_profile():
    llm = FakeLLM(result={"raw": AIMessage(content=""), "parsed": sample_output(), "parsing_error": None})
    generator, profiles = make_generator(llm)

    async def scenario():
        await generator.generate("AP Biology", "Unit 1")
        await generator.generate("AP Chemistry", "Unit 2")
        await generator.generate("AP Psychology", "Unit 1")

    asyncio.run(scenario())

    assert profiles == [GenerationProfile.STEM, GenerationProfile.HUMANITIES]


def test_provider_failure_is_generation_error():
    generator, _ = make_generator(FakeLLM(error=RuntimeError("connection reset")))

    with pytest.raises(GenerationError, match="connection reset"):
        asyncio.run(generator.generate("AP Biology", "Unit 1"))


def test_refusal_is_generation_error():
    raw = AIMessage(content="", additional_kwargs={"refusal": "I can't help with that."})

    with pytest.raises(GenerationError, match="refused"):
        parse_structured_result({"raw": raw, "parsed": None, "parsing_error": None})


def test_parsing_error_is_generation_error():
    with pytest.raises(GenerationError):
        parse_structured_result({
            "raw": AIMessage(content="not json"),
            "parsed": None,
            "parsing_error": ValueError("Invalid JSON"),
        })


def test_missing_parsed_output_is_generation_error():
    with pytest.raises(GenerationError):
        parse_structured_result({"raw": AIMessage(content=""), "parsed": None, "parsing_error": None})


def test_dict_output_is_validated():
    parsed = sample_output().model_dump()

    assert parse_structured_result({"raw": None, "parsed": parsed, "parsing_error": None}) == sample_output()

    parsed["correctAnswer"] = "E"
    with pytest.raises(GenerationError):
        parse_structured_result({"raw": None, "parsed": parsed, "parsing_error": None})
