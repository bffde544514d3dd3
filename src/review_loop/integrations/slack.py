"""Slack Web API integration for workflow notifications."""

import logging
from dataclasses import dataclass

from review_loop.db.models import Task, WorkflowResult

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_workflow_notification(task_id: str, branch: str, result: WorkflowResult) -> list[dict]:
    """Format a workflow result as Slack blocks."""
    plural = "" if result.iterations == 1 else "s"
    if result.success:
        text = (
            f":white_check_mark: *Review loop converged*\n"
            f"Task `{task_id}` on branch `{branch}`\n"
            f"{result.iterations} iteration{plural} | <{result.pr_url}|View Pull Request>"
        )
    else:
        text = (
            f":x: *Review loop failed*\n"
            f"Task `{task_id}` on branch `{branch}`\n"
            f"{result.iterations} iteration{plural} | {result.error_kind}: {result.error}"
        )
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Posts the final workflow result; failures are logged, never raised."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    def notify(self, task: Task | None, result: WorkflowResult) -> None:
        if not self.token or not self.channel:
            return
        branch = task.branch_name if task else "?"
        status = "converged" if result.success else "failed"
        try:
            send_message(
                self.token,
                self.channel,
                f"Review loop {status}: {result.task_id}",
                format_workflow_notification(result.task_id, branch, result),
            )
        except Exception:
            logger.exception("Failed to send Slack notification for task %s", result.task_id)
