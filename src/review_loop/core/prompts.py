"""Prompt construction for the implementer and reviewer agents."""

import re

from review_loop.core.errors import PromptFormattingError
from review_loop.db.models import AgentResult

INCOMPLETE_RESPONSE = "[Agent conversation incomplete - no response content available]"

_APPROVAL_PATTERNS = [
    r"\bapproved?\b",
    r"\bready (?:for|to) (?:merge|review)\b",
    r"\blgtm\b",
    r"\b(?:pr|pull request) (?:has been |was )?(?:created|opened)\b",
    r"\bgh pr create\b",
]
_REJECTION_PATTERNS = [
    r"\bnot (?:yet )?(?:be )?approved?\b",
    r"\bchanges requested\b",
    r"\brequest(?:ing)? changes\b",
    r"\bnot ready\b",
    r"\b(?:cannot|can[’']t|won[’']t|will not|unable to) approve\b",
]


def format_implementer_prompt(spec: str, feedback: str | None = None) -> str:
    """Build the implementer prompt; revision runs lead with reviewer feedback."""
    if not spec or not spec.strip():
        raise PromptFormattingError("Specification content cannot be empty")

    parts = [
        "You are an IMPLEMENTER agent. You work iteratively with a REVIEWER agent, "
        "which reads your final message as your handoff.",
    ]

    if feedback:
        parts.append("\n## Reviewer Feedback From The Previous Iteration\n" + feedback)
        parts.append("\n## Original Specification\n" + spec)
        parts.append(
            "\n## Your Task\n"
            "1. Address every point of the reviewer feedback; do not skip any.\n"
            "2. Write failing tests first, then the minimal code that passes them.\n"
            "3. Run the project's test, lint and build commands until they all pass."
        )
    else:
        parts.append("\n## Specification\n" + spec)
        parts.append(
            "\n## Workflow\n"
            "1. Explore: read the specification and the existing code, its patterns and tests.\n"
            "2. Plan: list the functions and interfaces to implement and the test scenarios.\n"
            "3. Implement test-first: failing test, minimal passing code, refactor.\n"
            "4. Verify: run the project's test, lint and build commands until they all pass."
        )

    parts.append(
        "\n## Completion\n"
        "Do NOT claim the work is finished unless every quality gate passes. "
        "Do NOT open a pull request; the reviewer decides that.\n"
        "End with a handoff report: what was implemented, files changed, "
        "commands run with their results, and open issues."
    )
    return "\n".join(parts)


def format_reviewer_prompt(spec: str, handoff: str) -> str:
    """Build the reviewer prompt from the original spec and the implementer handoff."""
    if not spec or not spec.strip():
        raise PromptFormattingError("Original specification cannot be empty")
    if not handoff or not handoff.strip():
        raise PromptFormattingError("Implementer handoff cannot be empty")

    parts = [
        "You are a REVIEWER agent and the quality gatekeeper for an IMPLEMENTER agent.",
        "\n## Original Specification\n" + spec,
        "\n## Implementer Handoff\n" + handoff,
        "\n## Review\n"
        "1. Verify the implementer's claims: run the tests, linters and build yourself.\n"
        "2. Check the implementation against every requirement of the specification.\n"
        "3. Check the tests cover both happy paths and error scenarios.",
        "\n## Decision\n"
        "If EVERYTHING passes and the implementation is complete, commit the work, push "
        "the branch and open a pull request with `gh pr create`, then reply APPROVED "
        "with the pull request URL.\n"
        "Otherwise reply CHANGES REQUESTED followed by specific, actionable feedback "
        "with file:line references. That feedback is handed to the implementer "
        "verbatim. Never approve a partial implementation.",
    ]
    return "\n".join(parts)


def extract_handoff(result: AgentResult) -> str:
    """Pick the most useful text an agent produced."""
    if result.final_response and result.final_response.strip():
        return result.final_response

    for message in reversed(result.transcript):
        if message.get("type") == "result":
            text = message.get("result")
            if isinstance(text, str) and text.strip():
                return text
            break

    for message in reversed(result.transcript):
        if message.get("type") != "assistant":
            continue
        text = assistant_text(message)
        if text.strip():
            return text

    return INCOMPLETE_RESPONSE


def assistant_text(message: dict) -> str:
    """Join the text blocks of an assistant transcript message."""
    content = message.get("message", {}).get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        blocks = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text", "").strip()
        ]
        return "\n".join(blocks)
    return ""


def reviewer_signaled_completion(text: str | None) -> bool:
    """Whether a reviewer response claims the work is done."""
    if not text:
        return False
    lowered = text.lower()
    if any(re.search(p, lowered) for p in _REJECTION_PATTERNS):
        return False
    return any(re.search(p, lowered) for p in _APPROVAL_PATTERNS)


class DefaultPromptFormatter:
    def format_implementer(self, spec: str, feedback: str | None = None) -> str:
        return format_implementer_prompt(spec, feedback)

    def format_reviewer(self, spec: str, handoff: str) -> str:
        return format_reviewer_prompt(spec, handoff)

    def extract_handoff(self, result: AgentResult) -> str:
        return extract_handoff(result)

    def reviewer_signaled_completion(self, text: str | None) -> bool:
        return reviewer_signaled_completion(text)
