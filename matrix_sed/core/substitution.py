"""
sed-style substitution commands: ``s<d>pattern<d>replacement<d>flags``.

The delimiter ``<d>`` is whatever character follows the leading ``s``; it may
appear inside the pattern or replacement when escaped with a backslash.
Patterns use Python regular expression syntax (run by the ``regex`` module,
which can abort a runaway match), replacements use Python group references
(``\\1``, ``\\g<name>``).

Supported flags:
  g  replace every occurrence instead of the first one
  i  ignore case
  m  ``^``/``$`` match at line boundaries
  s  ``.`` matches newlines
  x  verbose pattern (whitespace and comments ignored)
"""

import re

import regex

from matrix_sed.core.types import Command, MalformedCommand

_FLAG_BITS = {
    "i": regex.IGNORECASE,
    "m": regex.MULTILINE,
    "s": regex.DOTALL,
    "x": regex.VERBOSE,
}

# Upper bound for one substitution; patterns are user input and the
# backtracking engine can take exponential time on them.
SUBSTITUTION_TIMEOUT = 1.0  # seconds

# \N, \g<name> or any other escape, so an escaped backslash is skipped.
_TEMPLATE_ESCAPE = re.compile(r"\\(?:g<([^>]*)>|(\d+)|.)", re.DOTALL)


def _split_unescaped(text: str, delimiter: str) -> list[str]:
    """Split *text* on unescaped *delimiter*, turning ``\\<d>`` into ``<d>``.

    Other escape sequences are kept verbatim so the regex engine sees them.
    """
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt == delimiter:
                current.append(delimiter)
            else:
                current.append(ch + nxt)
            i += 2
            continue
        if ch == delimiter:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


def compile_command(text: str) -> Command:
    """Parse and validate a substitution command.

    Raises :class:`MalformedCommand` with a short reason on any syntax error.
    """
    if len(text) < 2 or text[0] != "s":
        raise MalformedCommand(f"not a substitution command: {text!r}")

    delimiter = text[1]
    if delimiter.isalnum() or delimiter.isspace() or delimiter == "\\":
        raise MalformedCommand(f"invalid delimiter {delimiter!r}")

    parts = _split_unescaped(text[2:], delimiter)
    if len(parts) != 3:
        raise MalformedCommand(
            f"expected 2 unescaped {delimiter!r} after the pattern start, found {len(parts) - 1}"
        )
    pattern, replacement, flags = parts

    bits = 0
    count = 1
    for flag in flags:
        if flag == "g":
            count = 0
        elif flag in _FLAG_BITS:
            bits |= _FLAG_BITS[flag]
        else:
            raise MalformedCommand(f"unknown flag {flag!r}")

    try:
        compiled = regex.compile(pattern, bits)
    except regex.error as exc:
        raise MalformedCommand(str(exc)) from exc
    _check_template(compiled, replacement)

    return Command(
        delimiter=delimiter,
        pattern=pattern,
        replacement=replacement,
        flags=flags,
        regex=compiled,
        count=count,
    )


def _check_template(compiled: regex.Pattern, replacement: str) -> None:
    """Reject group references the pattern cannot satisfy."""
    for m in _TEMPLATE_ESCAPE.finditer(replacement):
        name, number = m.group(1), m.group(2)
        if number is not None:
            if int(number) > compiled.groups:
                raise MalformedCommand(f"invalid group reference {number}")
        elif name is not None:
            if name.isdigit():
                if int(name) > compiled.groups:
                    raise MalformedCommand(f"invalid group reference {name}")
            elif name not in compiled.groupindex:
                raise MalformedCommand(f"unknown group name {name!r}")


def execute(command: Command, text: str) -> str:
    """Apply *command* to *text* and return the result.

    Raises :class:`MalformedCommand` when the substitution fails or runs
    longer than :data:`SUBSTITUTION_TIMEOUT`.
    """
    try:
        return command.regex.sub(
            command.replacement, text, count=command.count, timeout=SUBSTITUTION_TIMEOUT,
        )
    except TimeoutError as exc:
        raise MalformedCommand(
            f"pattern {command.pattern!r} took longer than {SUBSTITUTION_TIMEOUT}s"
        ) from exc
    except (regex.error, IndexError) as exc:
        raise MalformedCommand(str(exc)) from exc
