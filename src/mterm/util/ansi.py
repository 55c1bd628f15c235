"""Terminal output sanitizing.

Raw PTY chunks carry colour codes, cursor movement, mode toggles and a lot of
TUI chrome. `clean()` reduces a chunk to plain text; `sanitize()` additionally
drops lines that carry no meaning for a reader (prompts, banners, spinners,
box borders). Both are idempotent.
"""
from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern


# OSC: ESC ] ... BEL  or  ESC ] ... ESC \
_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?")
# CSI: ESC [ params intermediates final (covers SGR, cursor moves, ?2004h/l, 200~/201~)
_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
# Charset selection and other two-byte escapes (ESC ( B, ESC =, ESC 7, ...)
_ESC_CHARSET = re.compile(r"\x1b[()*+][0-9A-Za-z]")
_ESC_SHORT = re.compile(r"\x1b[0-9<=>@-Z\\-_]")
_ESC_LONE = re.compile(r"\x1b")
# Residue left behind when the ESC byte was lost upstream (e.g. split chunks).
_CSI_RESIDUE = re.compile(r"\[\??[\d;]+[A-Za-z~]")
_MODE_RESIDUE = re.compile(r"(?<![\w?])\?\d{1,4}[lh](?![\w])")
_C0 = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

_STRIP_STEPS: List[Pattern[str]] = [
    _OSC,
    _CSI,
    _ESC_CHARSET,
    _ESC_SHORT,
    _ESC_LONE,
    _CSI_RESIDUE,
    _MODE_RESIDUE,
    _C0,
]

MIN_LINE_LENGTH = 4

# Lines that are pure formatting or prompt chrome.
_STRUCTURAL_NOISE: List[Pattern[str]] = [
    re.compile(r"^[\s\r\n]*$"),
    re.compile(r"^[%$#\s]*$"),
    re.compile(r"^[K\s]*$"),
    re.compile(r"^[\d;]*[mGKH]$"),
    re.compile(r"^[│┃║╭╮╯╰┌┐└┘─━═┤├┬┴┼\s]*$"),
    re.compile(r"^[│┃\s]*>\s*[│┃\s]*$"),
    # Bare interactive shell prompt: user@host dir %
    re.compile(r"^[\w.-]+@[\w.-]+(?:\s+\S+)?\s*[%$#]\s*$"),
]

# Known noise from the assistant CLI and its installer.
_PHRASE_NOISE: List[Pattern[str]] = [
    re.compile(r"^Terminal output:"),
    re.compile(r"^Auto-update failed"),
    re.compile(r"^Try claude doctor"),
    re.compile(r"^(?:or )?npm i -g"),
    re.compile(r"^\s*using Sonnet"),
    re.compile(r"anthropic-ai/claude-code"),
    re.compile(r"esc to interrupt"),
    re.compile(r"Claude Opus"),
    re.compile(r"Claude Sonnet"),
    re.compile(r"limit reached"),
    re.compile(r"now using"),
    re.compile(r"^(?:claude-code|aude-code)$"),
]


def _strip_once(text: str) -> str:
    s = text.replace("\r\n", "\n").replace("\r", "\n")
    for pat in _STRIP_STEPS:
        s = pat.sub("", s)
    return s


def strip_control(text: str) -> str:
    """Remove escape sequences and control bytes (keeps newlines and tabs).

    Applied until nothing changes, since removing one sequence can expose
    residue of another.
    """
    s = text or ""
    while True:
        nxt = _strip_once(s)
        if nxt == s:
            return s
        s = nxt


def clean(text: str) -> str:
    return strip_control(text).strip()


def is_noise(line: str, *, extra: Iterable[Pattern[str]] = ()) -> bool:
    if len(line) < MIN_LINE_LENGTH:
        return True
    for pat in _STRUCTURAL_NOISE:
        if pat.match(line):
            return True
    for pat in _PHRASE_NOISE:
        if pat.search(line):
            return True
    for pat in extra:
        if pat.search(line):
            return True
    return False


def sanitize(raw: str, *, extra_noise: Iterable[Pattern[str]] = ()) -> Optional[str]:
    """Return the meaningful text of `raw`, or None when it should be discarded."""
    line = clean(raw)
    if not line or is_noise(line, extra=extra_noise):
        return None
    return line


def sanitize_lines(chunk: str, *, extra_noise: Iterable[Pattern[str]] = ()) -> List[str]:
    """Split a chunk into lines and keep the ones that survive `sanitize`."""
    noise = list(extra_noise)
    out: List[str] = []
    for raw in strip_control(chunk).split("\n"):
        line = sanitize(raw, extra_noise=noise)
        if line is not None:
            out.append(line)
    return out
