import hashlib
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"github_pat_[A-Za-z0-9_]{20,}", "github_pat_REDACTED"),
    (r"AKIA[0-9A-Z]{16}", "AKIA_REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*\b", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"

_KEYWORD_SPLIT_RE = re.compile(r"[^a-z0-9_./-]+")
_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_STOPWORDS = frozenset([
    "the",
    "this",
    "that",
    "with",
    "from",
    "into",
    "about",
    "would",
    "could",
    "should",
    "there",
    "their",
    "your",
    "need",
    "have",
    "please",
    "just",
    "when",
    "what",
    "where",
    "which",
    "while",
    "after",
    "before",
    "code",
    "repo",
    "project",
])

MAX_KEYWORDS = 6
MIN_KEYWORD_LENGTH = 4


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_prompt(prompt: str) -> str:
    """Trim, lowercase and collapse whitespace runs to single spaces."""
    return _WHITESPACE_RE.sub(" ", (prompt or "").strip().lower())


def extract_keywords(prompt: str, stopwords: Optional[Iterable[str]] = None) -> List[str]:
    """Return up to six search keywords in first-seen order.

    Tokens are split on anything that is not alphanumeric or a path
    character (``_ . / -``); short tokens and stopwords are dropped.
    """
    blocked = DEFAULT_STOPWORDS if stopwords is None else frozenset(stopwords)
    out: List[str] = []
    seen = set()
    for part in _KEYWORD_SPLIT_RE.split((prompt or "").lower()):
        token = part.strip()
        if len(token) < MIN_KEYWORD_LENGTH or token in blocked or token in seen:
            continue
        seen.add(token)
        out.append(token)
        if len(out) >= MAX_KEYWORDS:
            break
    return out


def byte_length(value: str) -> int:
    return len((value or "").encode("utf-8"))


def clamp_by_bytes(value: str, max_bytes: int) -> str:
    """Shrink ``value`` to 85% of its length until it fits in ``max_bytes``.

    Length is measured in UTF-8 bytes; slicing happens on characters so the
    result is always valid text.
    """
    current = value or ""
    if byte_length(current) <= max_bytes:
        return current
    while current and byte_length(current) > max_bytes:
        current = current[: int(len(current) * 0.85)]
    return current


def first_non_blank_line(text: str) -> str:
    for line in (text or "").split("\n"):
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
