"""Question types.

GeneratedQuestion is the structured output schema the model is asked to fill.
Question is the immutable record that gets a fresh ID, is written to the blob
store, and is served from the cache.
"""

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OptionLabel = Literal["A", "B", "C", "D"]
OPTION_LABELS = ("A", "B", "C", "D")


class GeneratedQuestion(BaseModel):
    """One AP-style multiple choice question as returned by the model."""

    question: str = Field(
        description=(
            "The AP-level practice question with proper LaTeX formatting for ALL "
            'math/science notation (e.g., "$f(x) = \\sqrt{3x+1}$")'
        )
    )
    optionA: str = Field(
        description=(
            "First answer choice as a single line; if it is a math expression, "
            "return ONLY the LaTeX expression wrapped in $...$ with no label like "
            '"A.". For code, use triple backticks notation and newlines as needed.'
        )
    )
    optionB: str = Field(description="Second answer choice; same rules as optionA")
    optionC: str = Field(description="Third answer choice; same rules as optionA")
    optionD: str = Field(description="Fourth answer choice; same rules as optionA")
    correctAnswer: OptionLabel = Field(description="The letter of the correct answer")
    explanation: str = Field(
        description=(
            "Detailed explanation of why the correct answer is right and why "
            "distractors are wrong, using proper LaTeX for any math. Use a newline "
            "before each option letter (A, B, C, D) when discussing them."
        )
    )


class Question(BaseModel):
    """A stored practice question. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    subject: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    option_a: str = Field(min_length=1)
    option_b: str = Field(min_length=1)
    option_c: str = Field(min_length=1)
    option_d: str = Field(min_length=1)
    correct_option: OptionLabel
    explanation: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_generated(
        cls, generated: GeneratedQuestion, subject: str, topic: str
    ) -> "Question":
        """Build a Question with a fresh unique ID from model output.

        Raises pydantic.ValidationError if any field is blank.
        """
        return cls(
            id=str(uuid.uuid4()),
            subject=subject,
            topic=topic,
            prompt=generated.question.strip(),
            option_a=generated.optionA.strip(),
            option_b=generated.optionB.strip(),
            option_c=generated.optionC.strip(),
            option_d=generated.optionD.strip(),
            correct_option=generated.correctAnswer,
            explanation=generated.explanation.strip(),
        )

    @property
    def options(self) -> dict[str, str]:
        return {
            "A": self.option_a,
            "B": self.option_b,
            "C": self.option_c,
            "D": self.option_d,
        }
