"""
Command detection for incoming message bodies.

A message triggers the bot in one of two ways:

  please sed s/teh/the/     - "sed " mentioned anywhere, followed by the command
  s#teh#the#                - the whole message is a substitution command

The matched command string is compiled by :mod:`matrix_sed.core.substitution`.
"""

import logging
import re
from typing import Optional

from matrix_sed.core.substitution import compile_command
from matrix_sed.core.types import Command

logger = logging.getLogger(__name__)

_MATCH_COMMAND = re.compile(r"(?:^|[^a-zA-Z0-9])sed (s.+)")
_MATCH_PATTERN = re.compile(r"^(s[#/].+[#/].+)$")


def strip_reply_fallback(body: str) -> str:
    """Remove the plain-text reply fallback that clients prepend to replies.

    A fallback starts with ``> <@sender>`` and continues over every line
    beginning with ``> ``; the blank separator line after it goes too.
    """
    if not body.startswith("> <"):
        return body
    while body.startswith("> "):
        _line, sep, rest = body.partition("\n")
        if not sep:
            return ""
        body = rest
    if body.startswith("\n"):
        body = body[1:]
    return body


def extract_command(body: str) -> Optional[str]:
    """Return the raw command string embedded in *body*, or None."""
    text = strip_reply_fallback(body)
    m = _MATCH_COMMAND.search(text) or _MATCH_PATTERN.search(text)
    if m is None:
        return None
    return m.group(1)


def parse(body: str) -> Optional[Command]:
    """Detect and compile a substitution command in a message body.

    Returns None when the message does not look like a command at all.
    Raises :class:`~matrix_sed.core.types.MalformedCommand` when it does but
    the command cannot be compiled.
    """
    raw = extract_command(body)
    if raw is None:
        return None
    return compile_command(raw)
