"""Builds the provider-facing system text from persona, bank and question context."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .config import PersonaSettings

DEFAULT_ROLE = "You are a helpful computer science teacher."

# Question type -> answer field holding the correct answer.
_ANSWER_FIELDS = {
    "single_choice": "correct_option_key",
    "multiple_choice": "correct_option_keys",
    "true_false": "correct_boolean",
    "fill_blank": "expected_answers",
}


@dataclass
class BankMeta:
    title: str
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class QuestionContext:
    question_id: str
    stem: str
    options: List[Dict[str, str]] = field(default_factory=list)  # [{"key", "text"}]
    user_answer: Any = None
    correct_answer: Any = None
    is_correct: Optional[bool] = None
    analysis: Optional[str] = None


def question_context_from_question(
    question: Mapping[str, Any],
    user_answer: Any = None,
    is_correct: Optional[bool] = None,
) -> QuestionContext:
    """Derive a :class:`QuestionContext` from a question-bank entry.

    The correct answer is read from the answer field that matches the
    question type; unknown types leave it unset.
    """
    answer = question.get("answer") or {}
    answer_field = _ANSWER_FIELDS.get(str(question.get("type", "")))
    return QuestionContext(
        question_id=str(question.get("id", "")),
        stem=str(question.get("content", "")),
        options=[
            {"key": str(o.get("key", "")), "text": str(o.get("text", ""))}
            for o in (question.get("options") or [])
        ],
        user_answer=user_answer,
        correct_answer=answer.get(answer_field) if answer_field else None,
        is_correct=is_correct,
        analysis=question.get("explanation") or None,
    )


def _json(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False)


def build_system_prompt(
    bank_meta: Optional[BankMeta] = None,
    question_context: Optional[QuestionContext] = None,
    persona: Optional[PersonaSettings] = None,
) -> str:
    """Return the system instruction for one exchange.

    Deterministic for identical inputs. Sections whose source is absent are
    left out entirely; the closing instruction is always present.
    """
    persona = persona or PersonaSettings()
    lines: List[str] = []

    lines.append(f"Your role is: {persona.role_name}." if persona.role_name else DEFAULT_ROLE)
    if persona.custom_prompt:
        lines.append(f"Additional instructions: {persona.custom_prompt}")
    lines.append("")

    if bank_meta is not None:
        lines.append("[Question bank]")
        lines.append(f"Title: {bank_meta.title}")
        if bank_meta.description:
            lines.append(f"Description: {bank_meta.description}")
        if bank_meta.tags:
            lines.append(f"Tags: {', '.join(bank_meta.tags)}")
        lines.append("")

    q = question_context
    if q is not None:
        lines.append("[Question]")
        lines.append(f"Question ID: {q.question_id}")
        lines.append(f"Stem: {q.stem}")
        if q.options:
            lines.append("Options:")
            for opt in q.options:
                lines.append(f"  {opt.get('key', '')}. {opt.get('text', '')}")
        if q.user_answer is not None:
            lines.append(f"User answer: {_json(q.user_answer)}")
        if q.correct_answer is not None:
            lines.append(f"Correct answer: {_json(q.correct_answer)}")
        if q.is_correct is not None:
            lines.append(f"Grading result: {'correct' if q.is_correct else 'incorrect'}")
        if q.analysis:
            lines.append(f"Analysis: {q.analysis}")
        lines.append("")

    lines.append(
        f"Answer the user's questions in {persona.language}, clearly and accessibly. "
        "Be encouraging towards the user."
    )
    return "\n".join(lines)


def build_greeting(
    persona: Optional[PersonaSettings] = None,
    is_correct: Optional[bool] = None,
    has_analysis: bool = False,
) -> str:
    """Opening assistant message shown when a conversation is first opened."""
    persona = persona or PersonaSettings()
    name = persona.role_name or "AI tutor"
    if is_correct is None:
        verdict = ""
    elif is_correct:
        verdict = " I see you got this question right, great job!"
    else:
        verdict = " I see you got this question wrong."
    topic = "key concepts" if has_analysis else "content"
    return f"Hi! I'm your {name}.{verdict} What would you like to ask about the **{topic}** of this question?"
