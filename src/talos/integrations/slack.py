"""Slack notifications for bean run outcomes."""

from dataclasses import dataclass

from talos.models import CompletionResult


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


OUTCOME_EMOJI = {
    "completed": ":white_check_mark:",
    "blocked": ":red_circle:",
    "failed": ":x:",
}


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
    """Post to a channel. API failures surface as SlackError."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Posting to {channel} failed: {e.response.get('error', e)}") from e
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_outcome_text(
    bean_id: str,
    title: str,
    outcome: str,
    commit_sha: str | None = None,
    blocker_bean_id: str | None = None,
    merge_conflict: bool = False,
    error: str | None = None,
) -> str:
    lines = [f"{OUTCOME_EMOJI.get(outcome, ':grey_question:')} Bean {outcome}: *{title}* (`{bean_id}`)"]
    if commit_sha:
        lines.append(f"Commit: `{commit_sha[:10]}`")
    if blocker_bean_id:
        lines.append(f"Blocked by: `{blocker_bean_id}`")
    if merge_conflict:
        lines.append(":warning: Merge conflict, branch kept for manual resolution")
    if error:
        lines.append(f"Error: {error}")
    return "\n".join(lines)


def format_outcome_blocks(text: str) -> list[dict]:
    """Wrap outcome text as a single mrkdwn section block."""
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def notify_outcome(
    token: str | None,
    channel: str,
    bean_id: str,
    title: str,
    result: CompletionResult,
) -> SlackMessage:
    text = format_outcome_text(
        bean_id,
        title,
        result.outcome,
        commit_sha=result.commit_sha,
        blocker_bean_id=result.blocker_bean_id,
        merge_conflict=result.merge_conflict,
        error=result.error,
    )
    return send_message(token, channel, text, blocks=format_outcome_blocks(text))
