"""Claude CLI agent runner."""

import json
import logging
import shutil
import subprocess
import time
from pathlib import Path

from review_loop.core.errors import AgentError
from review_loop.core.prompts import assistant_text
from review_loop.db.models import AgentResult

logger = logging.getLogger(__name__)


def parse_stream_output(output: str) -> tuple[list[dict], str, dict | None]:
    """Parse ``--output-format stream-json`` output.

    Returns the transcript, the last assistant text and the ``result`` event
    (or None when the stream ended without one).
    """
    transcript: list[dict] = []
    final_response = ""
    result_event = None

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON agent output: %s", line[:200])
            continue
        if not isinstance(event, dict):
            continue

        transcript.append(event)
        event_type = event.get("type")
        if event_type == "assistant":
            text = assistant_text(event)
            if text.strip():
                final_response = text
        elif event_type == "result":
            result_event = event

    return transcript, final_response, result_event


class ClaudeAgentRunner:
    """Runs one bounded-turn ``claude -p`` invocation per call."""

    def __init__(
        self,
        model: str | None = "sonnet",
        max_budget: float | None = None,
        permission_mode: str | None = "acceptEdits",
        timeout: float | None = 1800,
        executable: str = "claude",
        mcp_config_path: str | None = None,
    ):
        self.model = model
        self.max_budget = max_budget
        self.permission_mode = permission_mode
        self.timeout = timeout
        self.executable = executable
        self.mcp_config_path = mcp_config_path

    def build_command(self, prompt: str, max_turns: int) -> list[str]:
        cmd = [self.executable, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            cmd += ["--model", self.model]
        if self.max_budget:
            cmd += ["--max-budget-usd", str(self.max_budget)]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if max_turns:
            cmd += ["--max-turns", str(max_turns)]
        if self.mcp_config_path:
            cmd += ["--mcp-config", self.mcp_config_path]
        return cmd

    def run(self, prompt: str, cwd: str | Path, max_turns: int) -> AgentResult:
        """Run the agent in ``cwd``. Raises AgentError when it cannot produce a result."""
        if shutil.which(self.executable) is None:
            raise AgentError(f"Claude CLI not found: {self.executable}")

        cmd = self.build_command(prompt, max_turns)
        started = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(cwd),
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise AgentError(f"Agent timed out after {self.timeout}s") from e
        except OSError as e:
            raise AgentError(f"Failed to start agent: {e}") from e
        duration = time.monotonic() - started

        transcript, final_response, result_event = parse_stream_output(proc.stdout)

        if result_event is None:
            if proc.returncode != 0:
                raise AgentError(
                    f"Agent exited with code {proc.returncode}: {proc.stderr.strip()[:500]}"
                )
            success = True
            cost = 0.0
            num_turns = None
            session_id = None
        else:
            success = not result_event.get("is_error", False) and proc.returncode == 0
            cost = float(result_event.get("total_cost_usd") or 0.0)
            num_turns = result_event.get("num_turns")
            session_id = result_event.get("session_id")
            if not final_response and isinstance(result_event.get("result"), str):
                final_response = result_event["result"]

        logger.debug(
            "Agent finished in %.1fs (success=%s, cost=$%.4f, turns=%s)",
            duration, success, cost, num_turns,
        )
        return AgentResult(
            transcript=transcript,
            final_response=final_response,
            success=success,
            cost=cost,
            duration=duration,
            num_turns=num_turns,
            session_id=session_id,
        )
