"""Construction of the notice the bot sends back with the corrected text."""

from typing import Optional

from matrix_sed.core.types import MessageEvent

HTML_FORMAT = "org.matrix.custom.html"


def build_correction(
    target: MessageEvent,
    new_text: str,
    markup: str,
    command_thread: Optional[str] = None,
) -> dict:
    """Return ``m.room.message`` content replying to *target*.

    When the command was sent inside a thread, or the target lives in one,
    the notice is posted into that thread; a plain reply to a thread message
    would otherwise land in the main timeline.
    """
    content: dict = {
        "msgtype": "m.notice",
        "body": new_text,
        "format": HTML_FORMAT,
        "formatted_body": markup,
    }

    thread_root = target.thread_root or command_thread
    if thread_root:
        content["m.relates_to"] = {
            "rel_type": "m.thread",
            "event_id": thread_root,
            "is_falling_back": False,
            "m.in_reply_to": {"event_id": target.event_id},
        }
    else:
        content["m.relates_to"] = {
            "m.in_reply_to": {"event_id": target.event_id},
        }
    return content
