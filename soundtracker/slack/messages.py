"""Slack message texts and the inbound event filter.

WHY: The bot's replies are short and fixed: a caption on the result and
a one-line notice naming the failure class. The decision "does this
event become work?" is a pure function of the event payload, so it
lives here too and can be tested without Slack or the pipeline.

HOW: ``requests_from_event`` reads the event dict that Slack delivers
for app_mention / message events and returns one MediaRequest per
supported file. The text builders return plain mrkdwn strings.

RULES:
- The filter has no side effects: no network, no filesystem, no logging of payloads
- Messages from bots (including ourselves) are ignored
- Without a <@bot> mention nothing is accepted (unless require_mention=False)
- Only files whose mimetype maps to a MediaKind are accepted, in order, capped
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from soundtracker.config import MAX_ATTACHMENTS_PER_MESSAGE
from soundtracker.core.media import media_kind_for
from soundtracker.core.pipeline import Attachment, MediaRequest

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")

# Output filename base for uploaded results
RESULT_BASENAME = "soundtrack"


def mentions(text: str, user_id: str) -> bool:
    """True if the Slack-formatted text contains <@user_id>."""
    return any(m.group(1) == user_id for m in _MENTION_RE.finditer(text or ""))


def strip_mentions(text: str) -> str:
    """Remove all <@U...> user mentions and collapse whitespace."""
    return " ".join(_MENTION_RE.sub(" ", text or "").split())


def _attachment_from_file(file_data: Dict[str, Any]) -> Optional[Attachment]:
    mimetype = file_data.get("mimetype") or ""
    url = file_data.get("url_private_download") or file_data.get("url_private") or ""
    if not url or media_kind_for(mimetype) is None:
        return None
    return Attachment(
        name=file_data.get("name") or file_data.get("id") or "attachment",
        content_type=mimetype,
        url=url,
    )


def requests_from_event(
    event: Dict[str, Any],
    bot_user_id: Optional[str],
    require_mention: bool = True,
    max_attachments: int = MAX_ATTACHMENTS_PER_MESSAGE,
) -> List[MediaRequest]:
    """Turn a Slack message-shaped event into zero or more MediaRequests.

    WHY: Every attachment becomes an independent request with its own
    audio and its own reply, so one bad file cannot sink the others.

    RULES:
    - bot_message subtype, bot_id, or author == bot_user_id → []
    - require_mention and no <@bot_user_id> in text → []
    - Replies go into the message's thread (thread_ts, else its own ts)
    """
    if event.get("subtype") == "bot_message" or event.get("bot_id"):
        return []
    author = event.get("user") or ""
    if bot_user_id and author == bot_user_id:
        return []

    text = event.get("text") or ""
    if require_mention and not (bot_user_id and mentions(text, bot_user_id)):
        return []

    attachments = []
    for file_data in event.get("files") or []:
        attachment = _attachment_from_file(file_data)
        if attachment is not None:
            attachments.append(attachment)
        if len(attachments) >= max_attachments:
            break
    if not attachments:
        return []

    message_ts = event.get("ts") or ""
    thread_ts = event.get("thread_ts") or message_ts
    channel = event.get("channel") or ""
    clean_text = strip_mentions(text)

    return [
        MediaRequest(
            channel=channel,
            thread_ts=thread_ts,
            message_ts=message_ts,
            author=author,
            text=clean_text,
            attachment=attachment,
        )
        for attachment in attachments
    ]


# ---------------------------------------------------------------------------
# Reply texts
# ---------------------------------------------------------------------------


def format_result_comment(audio_label: str) -> str:
    """Caption posted with the merged video."""
    if audio_label:
        return ":notes: {}".format(audio_label)
    return ":notes:"


def format_failure_notice(failure: str) -> str:
    """One-line notice naming the failure class, without internal detail."""
    return ":warning: {}. Sorry, I couldn't add music to that one.".format(failure)


def result_filename(attachment_name: str, suffix: str) -> str:
    """Upload filename: '<original stem>-soundtrack<suffix>'."""
    stem = attachment_name.rsplit(".", 1)[0] if "." in attachment_name else attachment_name
    stem = stem.strip() or RESULT_BASENAME
    return "{}-{}{}".format(stem, RESULT_BASENAME, suffix)
