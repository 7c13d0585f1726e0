"""
Tests for PromptAssembler
"""
import pytest

from config.settings import PromptBudgetConfig
from schemas.memory import RetrievalPayload
from services.prompt_assembler import (
    MEMORY_HEADER,
    USER_TRUNCATION_NOTE,
    PromptAssembler,
    truncate_to_tokens,
)
from services.tokens import estimate_tokens


@pytest.fixture
def assembler():
    return PromptAssembler(PromptBudgetConfig(system=200, memory=1500, user=2000))


@pytest.fixture
def payload(make_entry):
    return RetrievalPayload(memories=[
        make_entry("a", "Prefers window seats."),
        make_entry("b", "Allergic to peanuts."),
    ])


class TestTruncate:

    def test_short_text_unchanged(self):
        assert truncate_to_tokens("hello world", 10) == "hello world"

    def test_prefers_word_boundary(self):
        text = "word " * 200
        cut = truncate_to_tokens(text, 200)
        assert len(cut) == 799
        assert not cut.endswith(" ")

    def test_hard_cut_without_late_space(self):
        assert truncate_to_tokens("a" * 100, 10) == "a" * 40


class TestAssemble:

    def test_layout(self, assembler, payload):
        prompt, report = assembler.assemble("You are helpful.", payload, "Book me a flight")

        system, user = prompt.messages
        assert system["role"] == "system"
        assert system["content"] == (
            "You are helpful.\n\n"
            f"{MEMORY_HEADER}\n"
            "- Prefers window seats.\n"
            "- Allergic to peanuts."
        )
        assert user == {"role": "user", "content": "Book me a flight"}
        assert report.included_ids == ["a", "b"]
        assert report.excluded_ids == []

    def test_no_memory(self, assembler):
        prompt, report = assembler.assemble("You are helpful.", None, "hi")

        assert prompt.messages[0]["content"] == "You are helpful."
        assert prompt.memory_tokens == 0
        assert report.summary()["items_included"] == 0

    def test_memory_only_system_message(self, assembler, payload):
        prompt, _ = assembler.assemble("", payload, "hi")
        assert prompt.messages[0]["content"].startswith(MEMORY_HEADER)

    def test_no_system_message_when_empty(self, assembler):
        prompt, _ = assembler.assemble("", None, "hi")
        assert prompt.messages == [{"role": "user", "content": "hi"}]

    def test_memory_budget_stops_at_first_misfit(self, make_entry):
        assembler = PromptAssembler(PromptBudgetConfig(system=200, memory=20, user=2000))
        payload = RetrievalPayload(memories=[
            make_entry("a", "x" * 30),
            make_entry("b", "y" * 30),
            make_entry("c", "z"),
        ])

        prompt, report = assembler.assemble("sys", payload, "hi")

        assert report.included_ids == ["a"]
        assert report.excluded_ids == ["b", "c"]
        assert prompt.memory_tokens <= 20
        assert any("excluded" in reason for reason in report.reasons)

    def test_memory_header_alone_is_dropped(self, make_entry):
        assembler = PromptAssembler(PromptBudgetConfig(system=200, memory=5, user=2000))
        payload = RetrievalPayload(memories=[make_entry("a", "too long for the tiny budget")])

        prompt, report = assembler.assemble("sys", payload, "hi")

        assert prompt.messages[0]["content"] == "sys"
        assert report.excluded_ids == ["a"]

    def test_system_truncated(self, assembler):
        prompt, report = assembler.assemble("word " * 200, None, "hi")

        assert report.system_truncated
        assert prompt.system_tokens <= 200

    def test_user_truncated_with_note(self, assembler):
        prompt, report = assembler.assemble("sys", None, "a" * 10000)

        user = prompt.messages[-1]["content"]
        assert report.user_truncated
        assert user.endswith(USER_TRUNCATION_NOTE)
        assert estimate_tokens(user) <= 2000
        assert prompt.user_tokens <= 2000

    def test_user_cap_smaller_than_note(self):
        prompt, report = PromptAssembler(PromptBudgetConfig(user=5)).assemble("sys", None, "a" * 100)

        user = prompt.messages[-1]["content"]
        assert report.user_truncated
        assert USER_TRUNCATION_NOTE not in user
        assert estimate_tokens(user) <= 5

    def test_segments_never_exceed_caps(self, assembler, make_entry):
        payload = RetrievalPayload(memories=[make_entry(str(i), "m" * 400) for i in range(30)])
        prompt, _ = assembler.assemble("s" * 5000, payload, "u" * 20000)

        assert prompt.system_tokens <= 200
        assert prompt.memory_tokens <= 1500
        assert prompt.user_tokens <= 2000
        assert prompt.total_tokens <= 3700

    def test_per_call_budget_override(self, assembler, payload):
        _, report = assembler.assemble("sys", payload, "hi", budgets=PromptBudgetConfig(memory=12))
        assert report.included_ids == ["a"]
