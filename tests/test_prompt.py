import unittest
from typing import List

from fakes import PROMPT, FakeScheduler


class TestClassify(unittest.TestCase):
    def test_prompt_needs_options_and_question(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        state, events = classify("Do you want to continue?", PromptState(), 0.0)
        self.assertFalse(state.active)
        self.assertEqual(events, [])

        state, events = classify("1. apples 2. pears", PromptState(), 0.0)
        self.assertFalse(state.active)

        state, events = classify(PROMPT, PromptState(), 0.0)
        self.assertTrue(state.active)
        self.assertEqual([e.kind for e in events], ["prompt_shown"])
        self.assertEqual(state.clear_deadline, 30.0)

    def test_resolution_markers_return_to_idle(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        for marker in ("Edit applied to app.py", "✓ Updated app.py", "Changes saved", "continuing…"):
            state, _ = classify(PROMPT, PromptState(), 0.0)
            state, events = classify(marker, state, 3.0)
            self.assertFalse(state.active, marker)
            self.assertIsNone(state.clear_deadline)
            self.assertEqual(state.last_hide_at, 3.0)
            self.assertEqual([e.kind for e in events], ["prompt_resolved"])

    def test_shell_prompt_resolves(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        state, _ = classify(PROMPT, PromptState(), 0.0)
        state, _ = classify("max@laptop demo %", state, 1.0)
        self.assertFalse(state.active)

    def test_other_output_keeps_prompt_active(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        state, _ = classify(PROMPT, PromptState(), 0.0)
        state, events = classify("reading app.py", state, 1.0)
        self.assertTrue(state.active)
        self.assertEqual(events, [])

    def test_duplicate_within_window_is_suppressed(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        t = 100.0
        state, _ = classify(PROMPT, PromptState(), t)
        state, _ = classify("Edit applied", state, t)

        echo = "│ " + PROMPT.upper() + " │"
        suppressed, events = classify(echo, state, t + 5)
        self.assertFalse(suppressed.active)
        self.assertEqual([e.kind for e in events], ["prompt_suppressed"])

        shown, events = classify(echo, state, t + 20)
        self.assertTrue(shown.active)
        self.assertEqual([e.kind for e in events], ["prompt_shown"])

    def test_different_prompt_within_window_is_shown(self) -> None:
        from mterm.kernel.prompt import PromptState, classify

        state, _ = classify(PROMPT, PromptState(), 0.0)
        state, _ = classify("done", state, 1.0)
        other = "Would you like to run the tests now?\n❯ 1. Yes\n  2. No"
        state, events = classify(other, state, 2.0)
        self.assertTrue(state.active)
        self.assertEqual([e.kind for e in events], ["prompt_shown"])

    def test_expire_keeps_text_for_dedup(self) -> None:
        from mterm.kernel.prompt import PromptState, classify, expire, normalize_prompt

        state, _ = classify(PROMPT, PromptState(), 0.0)
        state, events = expire(state, 30.0)
        self.assertFalse(state.active)
        self.assertEqual(state.last_hide_at, 30.0)
        self.assertEqual(state.last_prompt_text, normalize_prompt(PROMPT))
        self.assertEqual([e.kind for e in events], ["prompt_expired"])

        again, events = classify(PROMPT, state, 35.0)
        self.assertFalse(again.active)
        self.assertEqual([e.kind for e in events], ["prompt_suppressed"])

    def test_expire_is_noop_when_idle(self) -> None:
        from mterm.kernel.prompt import PromptState, expire

        state = PromptState()
        self.assertEqual(expire(state, 10.0), (state, []))


class TestPromptDetector(unittest.TestCase):
    def test_auto_clear_fires_once_at_thirty_seconds(self) -> None:
        from mterm.kernel.prompt import PromptDetector

        sched = FakeScheduler()
        seen: List[str] = []
        det = PromptDetector(sched, clock=sched.clock, listeners=[lambda e: seen.append(e.kind)])

        det.feed(PROMPT)
        self.assertTrue(det.active)
        self.assertTrue(det.timer_armed)

        sched.advance(29.0)
        self.assertTrue(det.active)
        sched.advance(1.0)
        self.assertFalse(det.active)
        self.assertEqual(det.state.last_hide_at, 30.0)

        sched.advance(120.0)
        self.assertEqual(seen, ["prompt_shown", "prompt_expired"])
        self.assertEqual(sched.pending(), [])

    def test_repeated_prompt_does_not_rearm_timer(self) -> None:
        from mterm.kernel.prompt import PromptDetector

        sched = FakeScheduler()
        det = PromptDetector(sched, clock=sched.clock)
        det.feed(PROMPT)
        sched.advance(10.0)
        det.feed(PROMPT)
        self.assertEqual(len(sched.handles), 1)
        sched.advance(20.0)
        self.assertFalse(det.active)

    def test_resolution_cancels_timer(self) -> None:
        from mterm.kernel.prompt import PromptDetector

        sched = FakeScheduler()
        det = PromptDetector(sched, clock=sched.clock)
        det.feed(PROMPT)
        sched.advance(2.0)
        events = det.feed("Edit applied")
        self.assertEqual([e.kind for e in events], ["prompt_resolved"])
        self.assertFalse(det.timer_armed)
        self.assertEqual(sched.pending(), [])

    def test_close_cancels_timer(self) -> None:
        from mterm.kernel.prompt import PromptDetector

        sched = FakeScheduler()
        det = PromptDetector(sched, clock=sched.clock)
        det.feed(PROMPT)
        det.close()
        self.assertFalse(det.active)
        self.assertEqual(sched.pending(), [])


class TestPolicy(unittest.TestCase):
    def test_assistant_lifecycle_markers(self) -> None:
        from mterm.kernel.prompt import DEFAULT_POLICY

        self.assertTrue(DEFAULT_POLICY.assistant_started("✻ Welcome to Claude Code!"))
        self.assertFalse(DEFAULT_POLICY.assistant_started("ls -la"))
        self.assertTrue(DEFAULT_POLICY.assistant_stopped("max@laptop demo %"))
        self.assertFalse(DEFAULT_POLICY.assistant_stopped("max@laptop demo % claude"))

    def test_highlight_lines(self) -> None:
        from mterm.kernel.prompt import DEFAULT_POLICY

        self.assertTrue(DEFAULT_POLICY.is_highlight("Do you want to make this edit?"))
        self.assertTrue(DEFAULT_POLICY.is_highlight("  2. No, keep it"))
        self.assertFalse(DEFAULT_POLICY.is_highlight("file1.txt"))


if __name__ == "__main__":
    unittest.main()
