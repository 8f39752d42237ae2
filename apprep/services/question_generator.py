"""Question generator for apprep.

Builds an AP-style prompt for a (course, unit) pair and asks the model for
one structured multiple choice question. Humanities and social science
courses go to a fast non-reasoning model; everything else goes to a
reasoning model with low effort.
"""

import logging
import os
from enum import Enum
from typing import Callable, Optional

from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from pydantic import ValidationError as SchemaError

from apprep.errors import GenerationError
from apprep.services.catalog import UnitContext, get_unit_context
from apprep.services.questions import GeneratedQuestion

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL")
HUMANITIES_MODEL = os.environ.get("HUMANITIES_MODEL", "gpt-4.1-mini")
STEM_MODEL = os.environ.get("STEM_MODEL", "gpt-5-mini")

HUMANITIES_KEYWORDS = (
    "history",
    "government",
    "economics",
    "psychology",
    "sociology",
    "human geography",
    "world studies",
    "english",
    "literature",
    "computer science principles",
)


class GenerationProfile(str, Enum):
    HUMANITIES = "humanities"
    STEM = "stem"


def select_profile(subject: str) -> GenerationProfile:
    """Pick the generation profile for a course name."""
    normalized = (subject or "").lower()
    if any(keyword in normalized for keyword in HUMANITIES_KEYWORDS):
        return GenerationProfile.HUMANITIES
    return GenerationProfile.STEM


def model_for_profile(profile: GenerationProfile) -> str:
    if profile == GenerationProfile.HUMANITIES:
        return HUMANITIES_MODEL
    return STEM_MODEL


def build_llm(profile: GenerationProfile) -> ChatOpenAI:
    """Create the chat model for a profile."""
    kwargs = {"model": model_for_profile(profile)}
    if OPENAI_BASE_URL:
        kwargs["base_url"] = OPENAI_BASE_URL
    if profile == GenerationProfile.STEM:
        kwargs["reasoning_effort"] = "low"
    else:
        kwargs["temperature"] = 0.7
    return ChatOpenAI(**kwargs)


BIOLOGY_CALIBRATION = """
DIFFICULTY CALIBRATION FOR AP BIOLOGY:
- Focus on conceptual understanding and application, not memorization of obscure details
- Questions should test core biological principles and connections between concepts
- Avoid overly specific terminology or advanced research-level content
- Match the difficulty of questions in the official AP Biology Course and Exam Description
- Emphasize scientific practices (data analysis, experimental design, reasoning) over pure recall
- Use straightforward language - AP Bio questions test biology, not reading comprehension"""


SYSTEM_PROMPT = """You are an expert AP exam question writer with deep knowledge of College Board standards. Create high-quality, authentic practice questions that closely mirror real AP exam questions.
{unit_context}{difficulty_guidance}

UNIT SCOPE:
- Your question MUST stay strictly within the unit's keywords and topics listed above
- DO NOT incorporate concepts from other units, even if they seem related
- If keywords specify constraints (e.g., "concepts only, not equations"), follow them exactly

QUESTION QUALITY:
- Match actual AP exam difficulty and style, but do not overestimate difficulty
- Test understanding, not just memorization
- Vary question types (data analysis, experimental design, conceptual application)
- Include real-world scenarios or experimental contexts
- Plausible distractors reflecting common misconceptions
- Options should be roughly equal in length
- Avoid "all of the above" or "none of the above"

FORMATTING:
- Use proper markdown for math/science notation and code
- Use tables or lists where they make a complex question clearer

EXPLANATION:
- Explain why the correct answer is right and why each distractor is wrong
- Use a newline before each option letter (A, B, C, D) when discussing them
- Keep it concise (1-2 sentences per option)"""


USER_PROMPT = """Create an AP-level practice question for {subject} covering {topic}.

Return the question, the four answer choices, the letter of the correct answer, and the explanation."""


QUESTION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", SYSTEM_PROMPT),
    ("human", USER_PROMPT),
])


def format_unit_context(topic: str, context: Optional[UnitContext]) -> str:
    """Render catalog context for the system prompt."""
    if context is None:
        return ""

    sections = []
    if context.description or context.topics:
        sections.append(
            f"\nUNIT CONTEXT: {topic}\n{context.description}\n"
            f"Key Topics: {', '.join(context.topics)}"
        )
    if context.keywords:
        sections.append(
            f"\nREQUIRED KEYWORDS/CONSTRAINTS: {'; '.join(context.keywords)}\n"
            "Your question MUST focus ONLY on these keywords and topics."
        )
    if context.course_notes:
        sections.append(f"\nCOURSE GUIDANCE: {context.course_notes}")
    return "\n".join(sections)


def build_prompt_inputs(subject: str, topic: str, context: Optional[UnitContext]) -> dict:
    is_biology = "biology" in subject.lower()
    return {
        "subject": subject,
        "topic": topic,
        "unit_context": format_unit_context(topic, context),
        "difficulty_guidance": BIOLOGY_CALIBRATION if is_biology else "",
    }


def parse_structured_result(result) -> GeneratedQuestion:
    """Turn an include_raw structured output into a GeneratedQuestion.

    Raises GenerationError on parse errors, refusals, and empty output.
    """
    if not isinstance(result, dict):
        raise GenerationError("Model returned an unexpected response shape")

    if result.get("parsing_error") is not None:
        raise GenerationError(f"Model output did not match the question schema: {result['parsing_error']}")

    raw = result.get("raw")
    refusal = getattr(raw, "additional_kwargs", {}).get("refusal")
    if refusal:
        raise GenerationError(f"Content refused by provider: {refusal}")

    parsed = result.get("parsed")
    if parsed is None:
        raise GenerationError("No parsed output from structured response")
    if isinstance(parsed, GeneratedQuestion):
        return parsed

    try:
        return GeneratedQuestion.model_validate(parsed)
    except SchemaError as e:
        raise GenerationError(f"Model output did not match the question schema: {e}") from e


class QuestionGenerator:
    """Generates one structured AP question per call.

    Args:
        llm_factory: Builds the chat model for a profile. Defaults to
            ChatOpenAI; tests pass a scripted stand-in.
        context_lookup: Returns catalog context for (subject, topic).
    """

    def __init__(
        self,
        llm_factory: Optional[Callable] = None,
        context_lookup: Callable = get_unit_context,
    ):
        self._llm_factory = llm_factory or build_llm
        self._context_lookup = context_lookup
        self._chains = {}

    def _chain(self, profile: GenerationProfile):
        chain = self._chains.get(profile)
        if chain is None:
            llm = self._llm_factory(profile)
            structured_llm = llm.with_structured_output(GeneratedQuestion, include_raw=True)
            chain = QUESTION_PROMPT | structured_llm
            self._chains[profile] = chain
        return chain

    async def generate(self, subject: str, topic: str) -> GeneratedQuestion:
        """Generate a question for a course unit.

        Raises:
            GenerationError: If the provider call fails, the model refuses,
                or the output does not match the schema.
        """
        profile = select_profile(subject)
        inputs = build_prompt_inputs(subject, topic, self._context_lookup(subject, topic))

        try:
            result = await self._chain(profile).ainvoke(inputs)
        except Exception as e:
            logger.error(f"Question generation failed for {subject} / {topic}: {e}")
            raise GenerationError(f"Question generation failed: {e}") from e

        question = parse_structured_result(result)
        logger.info(f"Generated question for {subject} / {topic} ({model_for_profile(profile)})")
        return question
