"""Word-level diff rendering for corrected messages."""

import difflib
import html
import re

from matrix_sed.core.types import DELETED, EQUAL, INSERTED, DiffSegment

_TOKEN_RE = re.compile(r"\s+|\S+")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)


def diff_words(old: str, new: str) -> list[DiffSegment]:
    """Diff *old* against *new* on word and whitespace boundaries.

    Adjacent tokens with the same tag are merged into one segment.
    """
    a = _tokenize(old)
    b = _tokenize(new)
    matcher = difflib.SequenceMatcher(a=a, b=b, autojunk=False)

    segments: list[DiffSegment] = []

    def _emit(tag: str, tokens: list[str]) -> None:
        if not tokens:
            return
        text = "".join(tokens)
        if segments and segments[-1].tag == tag:
            segments[-1] = DiffSegment(tag, segments[-1].text + text)
        else:
            segments.append(DiffSegment(tag, text))

    for op, i1, i2, j1, j2 in matcher.get_opcodes():
        if op == "equal":
            _emit(EQUAL, a[i1:i2])
        else:
            _emit(DELETED, a[i1:i2])
            _emit(INSERTED, b[j1:j2])
    return segments


def render_diff(old: str, new: str) -> str:
    """HTML for *new* with the words that differ from *old* underlined.

    Deleted text is dropped, so the markup reads as the corrected message.
    """
    out: list[str] = []
    for seg in diff_words(old, new):
        if seg.tag == EQUAL:
            out.append(html.escape(seg.text, quote=False))
        elif seg.tag == INSERTED:
            out.append(f"<u>{html.escape(seg.text, quote=False)}</u>")
    return "".join(out)
