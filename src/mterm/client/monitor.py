"""Client-side view of a terminal stream.

`SessionMonitor` turns raw `terminal` chunks into what a user needs to see at
a glance: the last few meaningful lines, whether the assistant is running and
whether it is waiting on a multi-choice prompt.
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from ..kernel.prompt import DEFAULT_POLICY, PromptDetector, PromptEvent, PromptPolicy
from ..util.ansi import clean, sanitize_lines
from ..util.timers import Scheduler


OUTPUT_WINDOW_SIZE = 5


@dataclass(frozen=True)
class OutputLine:
    text: str
    is_prompt: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "isPrompt": self.is_prompt}


class OutputWindow:
    """Bounded tail of sanitized lines, newest last."""

    def __init__(self, size: int = OUTPUT_WINDOW_SIZE) -> None:
        self._lines: Deque[OutputLine] = deque(maxlen=max(1, int(size)))

    def push(self, line: OutputLine) -> None:
        self._lines.append(line)

    def extend(self, lines: List[OutputLine]) -> None:
        for line in lines:
            self.push(line)

    @property
    def lines(self) -> List[OutputLine]:
        return list(self._lines)

    def to_list(self) -> List[Dict[str, Any]]:
        return [x.to_dict() for x in self._lines]

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)


MonitorListener = Callable[[PromptEvent], None]


class SessionMonitor:
    def __init__(
        self,
        scheduler: Scheduler,
        *,
        policy: PromptPolicy = DEFAULT_POLICY,
        clock: Callable[[], float] = time.monotonic,
        window_size: int = OUTPUT_WINDOW_SIZE,
        on_event: Optional[MonitorListener] = None,
    ) -> None:
        self.policy = policy
        self._clock = clock
        self.window = OutputWindow(window_size)
        self.detector = PromptDetector(scheduler, policy=policy, clock=clock)
        self.assistant_running = False
        self._listeners: List[MonitorListener] = []
        if on_event is not None:
            self.add_listener(on_event)

    def add_listener(self, cb: MonitorListener) -> None:
        self._listeners.append(cb)
        self.detector.listeners.append(cb)

    @property
    def prompt_active(self) -> bool:
        return self.detector.active

    def feed(self, raw: str) -> List[PromptEvent]:
        """Process one `terminal` chunk in arrival order."""
        lines = sanitize_lines(raw)
        self.window.extend([OutputLine(line, self.policy.is_highlight(line)) for line in lines])

        text = clean(raw)
        events: List[PromptEvent] = []
        if self.policy.assistant_started(raw):
            if not self.assistant_running:
                self.assistant_running = True
                events.append(PromptEvent("assistant_started", self._clock()))
        elif self.assistant_running and self.policy.assistant_stopped(text):
            self.assistant_running = False
            events.append(PromptEvent("assistant_stopped", self._clock()))
        for ev in events:
            for cb in list(self._listeners):
                cb(ev)

        if text:
            events.extend(self.detector.feed(text))
        return events

    def close(self) -> None:
        self.detector.close()
