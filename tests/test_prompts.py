"""Tests for prompt construction and handoff extraction."""

import pytest

from review_loop.core.errors import PromptFormattingError
from review_loop.core.prompts import (
    INCOMPLETE_RESPONSE,
    extract_handoff,
    format_implementer_prompt,
    format_reviewer_prompt,
    reviewer_signaled_completion,
)
from review_loop.db.models import AgentResult


class TestImplementerPrompt:
    def test_first_iteration(self):
        prompt = format_implementer_prompt("Build a parser")
        assert "## Specification\nBuild a parser" in prompt
        assert "Reviewer Feedback" not in prompt

    def test_revision_leads_with_feedback(self):
        prompt = format_implementer_prompt("Build a parser", "Missing error handling")
        assert prompt.index("Missing error handling") < prompt.index("Build a parser")

    def test_empty_spec(self):
        with pytest.raises(PromptFormattingError):
            format_implementer_prompt("  ")


class TestReviewerPrompt:
    def test_contains_spec_and_handoff(self):
        prompt = format_reviewer_prompt("Build a parser", "Implemented parse()")
        assert "Build a parser" in prompt
        assert "Implemented parse()" in prompt
        assert "gh pr create" in prompt

    @pytest.mark.parametrize("spec, handoff", [("", "done"), ("spec", ""), ("spec", "\n")])
    def test_empty_inputs(self, spec, handoff):
        with pytest.raises(PromptFormattingError):
            format_reviewer_prompt(spec, handoff)


class TestExtractHandoff:
    def test_final_response(self):
        assert extract_handoff(AgentResult(final_response="All done")) == "All done"

    def test_result_event(self):
        result = AgentResult(transcript=[
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}},
            {"type": "result", "result": "Summary of work"},
        ])
        assert extract_handoff(result) == "Summary of work"

    def test_last_assistant_message(self):
        result = AgentResult(transcript=[
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "first"}]}},
            {"type": "assistant", "message": {"content": [
                {"type": "tool_use", "name": "Bash"},
                {"type": "text", "text": "second"},
            ]}},
            {"type": "user", "message": {"content": "tool output"}},
        ])
        assert extract_handoff(result) == "second"

    def test_nothing_usable(self):
        assert extract_handoff(AgentResult()) == INCOMPLETE_RESPONSE


class TestReviewerSignal:
    @pytest.mark.parametrize("text", [
        "APPROVED: https://github.com/acme/widgets/pull/4",
        "LGTM, ready to merge",
        "Pull request created.",
    ])
    def test_approval(self, text):
        assert reviewer_signaled_completion(text)

    @pytest.mark.parametrize("text", [
        "CHANGES REQUESTED: tests fail",
        "This is not approved yet",
        "Approved parts look fine but it is not ready",
        "I cannot approve this; tests fail.",
        "I can't approve this until the migration is reverted.",
        "Won't approve: the endpoint returns 500.",
        "",
        None,
    ])
    def test_no_approval(self, text):
        assert not reviewer_signaled_completion(text)
