"""Interactive prompt detection over streaming terminal output.

The assistant CLI renders multi-choice prompts ("Do you want to make this
edit? 1. Yes 2. No") and re-renders the same box many times while it waits.
`classify` is a pure transition function over one chunk of cleaned text:

    Idle --(options + question)--> Active     (unless a recent duplicate)
    Active --(resolution marker)--> Idle
    Active --(auto-clear expiry)--> Idle      (see `expire`)

`PromptDetector` wraps it with a clock and a scheduler for the auto-clear
timer. Marker lists live in `PromptPolicy` and can be swapped per assistant.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Pattern, Tuple

from ..util.timers import Scheduler, TimerHandle


_BOX_CHARS = re.compile(r"[│┃║╭╮╯╰┌┐└┘─━═┤├┬┴┼]")
_WS = re.compile(r"\s+")
_SHELL_PROMPT_LINE = re.compile(r"^[\w.-]+@[\w.-]+\b.*[%$#]\s*$", re.MULTILINE)


def normalize_prompt(text: str) -> str:
    s = (text or "").replace("\r\n", " ")
    s = _BOX_CHARS.sub("", s)
    s = _WS.sub(" ", s)
    return s.strip().lower()


@dataclass(frozen=True)
class PromptPolicy:
    option_pattern: Pattern[str] = re.compile(r"(?:^|[\s❯>›])(\d{1,2})\.\s+\S")
    min_options: int = 2
    interrogatives: Tuple[str, ...] = (
        "do you want",
        "should i",
        "would you like",
        "make this edit",
        "continue?",
        "proceed?",
    )
    resolutions: Tuple[str, ...] = (
        "edit applied",
        "changes saved",
        "file updated",
        "edit complete",
        "successfully",
        "continuing…",
        "done",
    )
    success_glyph: Pattern[str] = re.compile(r"^\s*[✓✅]", re.MULTILINE)
    shell_prompt: Pattern[str] = _SHELL_PROMPT_LINE
    # Lines highlighted in the output window.
    highlight_markers: Tuple[str, ...] = (
        "Do you want to",
        "❯ 1. Yes",
        "❯ 2. Yes",
        "❯ 3. No",
        "shift+tab",
        "(esc)",
        "Edit file",
        "make this edit",
    )
    highlight_pattern: Pattern[str] = re.compile(r"^\s*\d+\.\s+(?:Yes|No)")
    # Assistant lifecycle banners (raw chunk text).
    start_banners: Tuple[str, ...] = ("Welcome to Claude Code", "claude-code", "Claude Opus", "Claude Sonnet")
    assistant_name: str = "claude"
    dedup_window: float = 15.0
    dedup_prefix: int = 20
    dedup_min_length: int = 10
    auto_clear: float = 30.0

    def count_options(self, text: str) -> int:
        return len({m.group(1) for m in self.option_pattern.finditer(text)})

    def is_new_prompt(self, text: str) -> bool:
        if self.count_options(text) < self.min_options:
            return False
        norm = normalize_prompt(text)
        return any(q in norm for q in self.interrogatives)

    def is_resolution(self, text: str) -> bool:
        norm = normalize_prompt(text)
        if any(r in norm for r in self.resolutions):
            return True
        if self.success_glyph.search(text):
            return True
        return bool(self.shell_prompt.search(text))

    def is_highlight(self, line: str) -> bool:
        if any(m in line for m in self.highlight_markers):
            return True
        return bool(self.highlight_pattern.match(line))

    def is_duplicate(self, current: str, previous: str) -> bool:
        n = self.dedup_prefix
        if len(current) <= self.dedup_min_length or len(previous) <= self.dedup_min_length:
            return False
        return previous[:n] in current or current[:n] in previous

    def assistant_started(self, raw: str) -> bool:
        return any(b in raw for b in self.start_banners)

    def assistant_stopped(self, text: str) -> bool:
        return bool(self.shell_prompt.search(text)) and self.assistant_name not in text.lower()


DEFAULT_POLICY = PromptPolicy()


@dataclass(frozen=True)
class PromptState:
    active: bool = False
    last_prompt_text: str = ""
    last_hide_at: Optional[float] = None
    clear_deadline: Optional[float] = None


@dataclass(frozen=True)
class PromptEvent:
    kind: str  # prompt_shown | prompt_resolved | prompt_suppressed | prompt_expired
    at: float
    text: str = ""


def classify(
    text: str,
    state: PromptState,
    now: float,
    policy: PromptPolicy = DEFAULT_POLICY,
) -> Tuple[PromptState, List[PromptEvent]]:
    """Advance the prompt state by one chunk of cleaned terminal text."""
    if state.active:
        if policy.is_resolution(text):
            nxt = replace(state, active=False, last_hide_at=now, clear_deadline=None)
            return nxt, [PromptEvent("prompt_resolved", now, state.last_prompt_text)]
        return state, []

    if not policy.is_new_prompt(text):
        return state, []

    norm = normalize_prompt(text)
    if state.last_hide_at is not None and (now - state.last_hide_at) < policy.dedup_window:
        if policy.is_duplicate(norm, state.last_prompt_text):
            return state, [PromptEvent("prompt_suppressed", now, norm)]

    nxt = PromptState(
        active=True,
        last_prompt_text=norm,
        last_hide_at=state.last_hide_at,
        clear_deadline=now + policy.auto_clear,
    )
    return nxt, [PromptEvent("prompt_shown", now, norm)]


def expire(state: PromptState, now: float) -> Tuple[PromptState, List[PromptEvent]]:
    """Auto-clear an unanswered prompt; keeps the text for the next dedup check."""
    if not state.active:
        return state, []
    nxt = replace(state, active=False, last_hide_at=now, clear_deadline=None)
    return nxt, [PromptEvent("prompt_expired", now, state.last_prompt_text)]


PromptListener = Callable[[PromptEvent], None]


@dataclass
class PromptDetector:
    """Per-client prompt state with a cancellable auto-clear timer."""

    scheduler: Scheduler
    policy: PromptPolicy = DEFAULT_POLICY
    clock: Callable[[], float] = time.monotonic
    listeners: List[PromptListener] = field(default_factory=list)
    state: PromptState = field(default_factory=PromptState)
    _timer: Optional[TimerHandle] = field(default=None, init=False, repr=False)

    @property
    def active(self) -> bool:
        return self.state.active

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def feed(self, text: str) -> List[PromptEvent]:
        was_active = self.state.active
        self.state, events = classify(text, self.state, self.clock(), self.policy)
        if was_active and not self.state.active:
            self._cancel_timer()
        elif self.state.active and not was_active:
            self._arm_timer()
        self._emit(events)
        return events

    def _arm_timer(self) -> None:
        self._cancel_timer()
        self._timer = self.scheduler.call_later(self.policy.auto_clear, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        self.state, events = expire(self.state, self.clock())
        self._emit(events)

    def _emit(self, events: List[PromptEvent]) -> None:
        for ev in events:
            for cb in list(self.listeners):
                cb(ev)

    def close(self) -> None:
        self._cancel_timer()
        if self.state.active:
            self.state = replace(self.state, active=False, clear_deadline=None)
