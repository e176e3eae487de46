import unittest

from agent_continuity.util import (
    byte_length,
    clamp_by_bytes,
    extract_keywords,
    first_non_blank_line,
    normalize_prompt,
    redact,
    redact_with_audit,
    sha256_hex,
)


class TestPromptNormalization(unittest.TestCase):
    def test_normalize_collapses_whitespace_and_case(self):
        self.assertEqual(normalize_prompt("  Fix   the\n\tLogin Bug  "), "fix the login bug")

    def test_equivalent_prompts_share_fingerprint(self):
        a = sha256_hex(normalize_prompt("Refactor  Parser"))
        b = sha256_hex(normalize_prompt("refactor parser\n"))
        self.assertEqual(a, b)
        self.assertEqual(len(a), 64)


class TestExtractKeywords(unittest.TestCase):
    def test_drops_stopwords_and_short_tokens(self):
        words = extract_keywords("Please fix the auth flow in src/auth/login.ts with tests")
        self.assertEqual(words, ["auth", "flow", "src/auth/login.ts", "tests"])

    def test_caps_at_six_in_first_seen_order(self):
        words = extract_keywords("alpha bravo charlie delta alpha echo foxtrot golf hotel")
        self.assertEqual(words, ["alpha", "bravo", "charlie", "delta", "echo", "foxtrot"])

    def test_custom_stopwords(self):
        self.assertEqual(extract_keywords("parser cache", stopwords={"parser"}), ["cache"])

    def test_empty_prompt(self):
        self.assertEqual(extract_keywords(""), [])
        self.assertEqual(extract_keywords("the and of"), [])


class TestClampByBytes(unittest.TestCase):
    def test_short_value_untouched(self):
        self.assertEqual(clamp_by_bytes("hello", 10), "hello")

    def test_long_value_fits_budget(self):
        out = clamp_by_bytes("x" * 1000, 100)
        self.assertLessEqual(byte_length(out), 100)
        self.assertTrue(out)
        self.assertEqual(set(out), {"x"})

    def test_multibyte_counts_bytes(self):
        text = "é" * 100  # 200 bytes
        out = clamp_by_bytes(text, 50)
        self.assertLessEqual(byte_length(out), 50)
        out.encode("utf-8")

    def test_first_non_blank_line(self):
        self.assertEqual(first_non_blank_line("\n\n   \n  title  \nbody"), "title")
        self.assertEqual(first_non_blank_line(""), "")


class TestRedaction(unittest.TestCase):
    def test_redacts_api_keys(self):
        result = redact_with_audit("token=abc123 and sk-abcdefghijklmnop")
        self.assertTrue(result.redacted)
        self.assertNotIn("abc123", result.text)
        self.assertNotIn("sk-abcdefghijklmnop", result.text)
        self.assertGreaterEqual(result.replacements, 2)

    def test_plain_text_unchanged(self):
        self.assertEqual(redact("diff_lines: 42"), "diff_lines: 42")


if __name__ == "__main__":
    unittest.main()
