from __future__ import annotations

import allure
import pytest

from scan_orchestrator.orchestrator.models import QueryType
from scan_orchestrator.orchestrator.prompts import (
    PROBE_SYSTEM_PROMPT,
    build_evaluation_prompt,
    effective_follow_up_depth,
    follow_up_question,
    follow_up_questions,
    probe_system_prompt,
)

pytestmark = [
    allure.epic("Chunk Executor"),
    allure.feature("Prompts"),
]


def test_probe_system_prompt_adds_language_instruction() -> None:
    assert probe_system_prompt() == PROBE_SYSTEM_PROMPT
    assert probe_system_prompt("en-US") == PROBE_SYSTEM_PROMPT

    czech = probe_system_prompt("cs")
    assert czech.startswith(PROBE_SYSTEM_PROMPT)
    assert "You MUST respond in Czech (Čeština)" in czech


def test_follow_up_questions_depend_on_query_type_and_level() -> None:
    assert follow_up_question(QueryType.TRANSACTIONAL, 2) == (
        "What should I consider before making a purchase?"
    )
    assert follow_up_question("comparison", 1, "cs") == (
        "Můžeš seřadit tyto možnosti a vysvětlit své pořadí?"
    )


@pytest.mark.parametrize(
    ("query_type", "level"),
    [
        (QueryType.INFORMATIONAL, 4),
        ("navigational", 1),
    ],
)
def test_follow_up_falls_back_to_generic_question(query_type: str, level: int) -> None:
    assert follow_up_question(query_type, level) == "Can you tell me more?"


def test_follow_up_depth_is_capped() -> None:
    questions = follow_up_questions(QueryType.INFORMATIONAL, 5)

    assert len(questions) == 3
    assert follow_up_questions(QueryType.INFORMATIONAL, 0) == []
    assert effective_follow_up_depth(-2) == 0


def test_follow_up_questions_never_name_the_brand() -> None:
    for query_type in QueryType:
        for question in follow_up_questions(query_type, 3):
            assert "{" not in question
            assert "Acme" not in question


def test_evaluation_prompt_embeds_brand_and_content() -> None:
    prompt = build_evaluation_prompt("Acme rocks", ["Acme", "Acme Corp"], "acme.com")

    assert "Brand names: Acme, Acme Corp" in prompt
    assert "Domain: acme.com" in prompt
    assert '"""\nAcme rocks\n"""' in prompt
