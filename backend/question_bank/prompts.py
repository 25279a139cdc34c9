"""Prompt builders for the submission pipeline and parsers for the AI replies.

Replies are expected to be JSON (validation, refinement) or plain text
(enrichment). Models like to wrap JSON in Markdown fences, so fences are
stripped before the reply is checked against its schema.
"""

from __future__ import annotations

import re
from textwrap import dedent
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, ValidationError, field_validator

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


class MalformedReply(ValueError):
    """The AI reply does not match the expected structure."""


class ValidationJudgment(BaseModel):
    verdict: Literal["VALID", "INVALID"]
    reason: Optional[str] = None

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalise_verdict(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @property
    def is_valid(self) -> bool:
        return self.verdict == "VALID"


class Refinement(BaseModel):
    refined_question: str
    refined_answer: str

    @field_validator("refined_question", "refined_answer")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("refined text must not be empty")
        return value


def _quote(text: str) -> str:
    return text.replace('"', '\\"')


def build_validation_prompt(question: str, answer: str) -> str:
    return dedent(
        f"""
        You are the validator for a competition question bank.
        Decide whether the given answer is correct, or at least very plausible, for the given question.
        Tolerate small typos, but reject answers that are clearly wrong or unrelated.

        Respond ONLY with JSON in this format:
        {{"verdict": "VALID" | "INVALID", "reason": "short reason when INVALID"}}

        Question: "{_quote(question)}"
        Answer: "{_quote(answer)}"
        """
    ).strip()


def build_refinement_prompt(question: str, answer: str) -> str:
    return dedent(
        f"""
        You are the text editor for a question bank.
        Fix typing, spelling and grammar mistakes in the question and answer below.
        Do not change their meaning or substance.

        Respond ONLY with JSON in this format:
        {{"refined_question": "corrected question", "refined_answer": "corrected answer"}}

        Original question: "{_quote(question)}"
        Original answer: "{_quote(answer)}"
        """
    ).strip()


def build_enrichment_prompt(question: str, master_answer: str, answers: Sequence[str]) -> str:
    answer_lines = "\n".join(f"{idx}. {text}" for idx, text in enumerate(answers, start=1))
    return dedent(
        """
        You maintain the master answers of a question bank.
        Several users answered the same question. Merge their answers into the single best,
        complete and correct answer. Drop anything that is wrong and keep it concise.

        Respond ONLY with the final answer text, without commentary or formatting.

        Question: "{question}"
        Current master answer: "{master}"
        Submitted answers:
        {answers}
        """
    ).strip().format(
        question=_quote(question),
        master=_quote(master_answer),
        answers=answer_lines,
    )


def _strip_fences(raw: str) -> str:
    text = (raw or "").strip()
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def parse_validation(raw: str) -> ValidationJudgment:
    try:
        return ValidationJudgment.model_validate_json(_strip_fences(raw))
    except ValidationError as exc:
        raise MalformedReply(f"Validation reply did not match schema: {exc.error_count()} error(s)") from exc


def parse_refinement(raw: str) -> Refinement:
    try:
        return Refinement.model_validate_json(_strip_fences(raw))
    except ValidationError as exc:
        raise MalformedReply(f"Refinement reply did not match schema: {exc.error_count()} error(s)") from exc


def parse_enrichment(raw: str) -> str:
    text = _strip_fences(raw)
    if not text:
        raise MalformedReply("Enrichment reply was empty.")
    return text
