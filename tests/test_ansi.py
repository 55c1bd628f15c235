import unittest


class TestStripControl(unittest.TestCase):
    def test_removes_colour_cursor_and_mode_sequences(self) -> None:
        from mterm.util.ansi import strip_control

        raw = "\x1b[?2004h\x1b[1;32mhello\x1b[0m \x1b[2K\x1b[10;5Hworld\x1b[?2004l"
        self.assertEqual(strip_control(raw), "hello world")

    def test_removes_osc_titles_and_bracketed_paste(self) -> None:
        from mterm.util.ansi import strip_control

        raw = "\x1b]0;user@host: ~\x07\x1b[200~pasted\x1b[201~"
        self.assertEqual(strip_control(raw), "pasted")

    def test_removes_residue_without_escape_byte(self) -> None:
        from mterm.util.ansi import strip_control

        self.assertEqual(strip_control("[1;31mred[0m text ?2004h"), "red text ")

    def test_keeps_newlines_and_tabs(self) -> None:
        from mterm.util.ansi import strip_control

        self.assertEqual(strip_control("a\r\nb\tc\rd\x07"), "a\nb\tc\nd")


class TestSanitize(unittest.TestCase):
    def test_meaningful_line_survives(self) -> None:
        from mterm.util.ansi import sanitize

        self.assertEqual(sanitize("  \x1b[32mBuilding project...\x1b[0m  "), "Building project...")

    def test_short_and_empty_lines_are_discarded(self) -> None:
        from mterm.util.ansi import sanitize

        self.assertIsNone(sanitize(""))
        self.assertIsNone(sanitize("\x1b[0m\x1b[K"))
        self.assertIsNone(sanitize("ok"))
        self.assertIsNone(sanitize("abc"))
        self.assertEqual(sanitize("abcd"), "abcd")

    def test_shell_prompt_and_box_lines_are_discarded(self) -> None:
        from mterm.util.ansi import sanitize

        self.assertIsNone(sanitize("max@laptop demo %"))
        self.assertIsNone(sanitize("╭──────────────╮"))
        self.assertIsNone(sanitize("│ >            │"))

    def test_known_noise_phrases_are_discarded(self) -> None:
        from mterm.util.ansi import sanitize

        for line in (
            "Auto-update failed · Try claude doctor",
            "npm i -g @anthropic-ai/claude-code",
            "✻ Thinking… (esc to interrupt)",
            "Claude Opus 4 limit reached, now using Sonnet 4",
            "claude-code",
        ):
            self.assertIsNone(sanitize(line), line)

    def test_extra_noise_patterns(self) -> None:
        import re

        from mterm.util.ansi import sanitize

        self.assertEqual(sanitize("compiling module"), "compiling module")
        self.assertIsNone(sanitize("compiling module", extra_noise=[re.compile(r"^compiling")]))

    def test_output_has_no_control_bytes_and_is_idempotent(self) -> None:
        from mterm.util.ansi import sanitize

        samples = [
            "\x1b[1m\x1b[33mWarning:\x1b[0m disk almost full\x1b[K",
            "\x1b]0;title\x1b\\\x1b[?25lProgress 50%\x1b[?25h",
            "\x1b[\x1b[31mnested\x1b[0m sequence text",
            "\x1b(Bplain after charset\x1b=",
            "tab\tseparated value\x00\x7f",
        ]
        for raw in samples:
            once = sanitize(raw)
            self.assertIsNotNone(once, raw)
            assert once is not None
            self.assertNotIn("\x1b", once)
            self.assertFalse(any(ord(c) < 32 and c not in "\t\n" for c in once), repr(once))
            self.assertEqual(sanitize(once), once)

    def test_sanitize_lines_splits_and_filters(self) -> None:
        from mterm.util.ansi import sanitize_lines

        chunk = "\x1b[32mfile1.txt\x1b[0m\r\nab\r\nmax@host ~ %\r\nfile2.txt\r\n"
        self.assertEqual(sanitize_lines(chunk), ["file1.txt", "file2.txt"])


if __name__ == "__main__":
    unittest.main()
