from __future__ import annotations

from tutor_chat.config import PersonaSettings
from tutor_chat.context import (
    DEFAULT_ROLE,
    BankMeta,
    QuestionContext,
    build_greeting,
    build_system_prompt,
    question_context_from_question,
)


QUESTION = {
    "id": "q1",
    "type": "single_choice",
    "content": "Which hook handles side effects?",
    "options": [{"key": "A", "text": "useState"}, {"key": "B", "text": "useEffect"}],
    "answer": {"correct_option_key": "B"},
    "explanation": "useEffect is for side effects.",
}


def test_minimal_prompt_has_role_and_closing_only():
    text = build_system_prompt()
    assert text.startswith(DEFAULT_ROLE)
    assert "[Question bank]" not in text
    assert "[Question]" not in text
    assert "Additional instructions" not in text
    assert text.rstrip().endswith("Be encouraging towards the user.")


def test_full_prompt_is_deterministic_and_complete():
    bank = BankMeta(title="Frontend basics", description="React and web", tags=["react", "css"])
    q = question_context_from_question(QUESTION, user_answer="A", is_correct=False)
    persona = PersonaSettings(role_name="Socratic mentor", custom_prompt="Ask guiding questions.", language="German")

    text = build_system_prompt(bank, q, persona)
    assert text == build_system_prompt(bank, q, persona)
    assert "Your role is: Socratic mentor." in text
    assert "Additional instructions: Ask guiding questions." in text
    assert "Title: Frontend basics" in text
    assert "Tags: react, css" in text
    assert "  B. useEffect" in text
    assert 'User answer: "A"' in text
    assert 'Correct answer: "B"' in text
    assert "Grading result: incorrect" in text
    assert "Analysis: useEffect is for side effects." in text
    assert "in German" in text


def test_optional_question_fields_are_omitted():
    q = QuestionContext(question_id="q2", stem="2 + 2?")
    text = build_system_prompt(question_context=q)
    assert "Stem: 2 + 2?" in text
    for label in ("Options:", "User answer", "Correct answer", "Grading result", "Analysis"):
        assert label not in text


def test_correct_answer_follows_question_type():
    multi = dict(QUESTION, type="multiple_choice", answer={"correct_option_keys": ["A", "B"]})
    tf = dict(QUESTION, type="true_false", answer={"correct_boolean": False})
    blank = dict(QUESTION, type="fill_blank", answer={"expected_answers": ["4"]})
    assert question_context_from_question(multi).correct_answer == ["A", "B"]
    assert question_context_from_question(tf).correct_answer is False
    assert question_context_from_question(blank).correct_answer == ["4"]
    assert question_context_from_question(dict(QUESTION, type="essay")).correct_answer is None


def test_greeting_mentions_persona_and_verdict():
    g = build_greeting(PersonaSettings(role_name="TA"), is_correct=True, has_analysis=True)
    assert "your TA" in g
    assert "right" in g
    assert "key concepts" in g
    assert "wrong" in build_greeting(is_correct=False)
