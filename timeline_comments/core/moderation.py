"""Text hygiene checks applied to every comment and reply before it is written.

The engine is a pure function over text: no I/O, no state beyond the static
rule sets it is built with. All checks run independently and are unioned
into one verdict.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class ModerationAction(str, Enum):
    """What the caller should do with the text."""

    ALLOW = "allow"
    WARN = "warn"  # Reserved; evaluate() never produces it
    BLOCK = "block"


@dataclass(frozen=True)
class ModerationVerdict:
    """Outcome of evaluating one piece of text."""

    clean: bool
    action: ModerationAction
    violations: tuple[str, ...] = ()
    sanitized_text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "isClean": self.clean,
            "action": self.action.value,
            "violations": list(self.violations),
            "filteredText": self.sanitized_text,
        }


MIN_TEXT_LENGTH = 2
MAX_TEXT_LENGTH = 500

BLOCKED_TERMS: tuple[str, ...] = (
    # Explicit words
    "fuck", "shit", "bitch", "ass", "damn", "cunt",
    "crap", "piss", "bastard", "slut", "whore",
    # Slurs, stored pre-masked
    "n***a", "f****t", "r****d",
)

OBFUSCATION_PATTERNS: tuple[str, ...] = (
    # Stretched letters
    r"f+u+c+k+",
    r"s+h+i+t+",
    r"b+i+t+c+h+",
    r"a+s+s+h+o+l+e+",
    r"d+a+m+n+",
    # Symbol substitution
    r"f[u*@]ck",
    r"sh[i*]t",
    r"b[*i]tch",
    # Separators between letters
    r"f\s*u\s*c\s*k",
    r"s\s*h\s*i\s*t",
)


@dataclass(frozen=True)
class SpamRule:
    pattern: re.Pattern[str]
    reason: str


SPAM_RULES: tuple[SpamRule, ...] = (
    SpamRule(re.compile(r"(.)\1{10,}", re.IGNORECASE), "Excessive repeated characters"),
    SpamRule(re.compile(r"https?://\S+", re.IGNORECASE), "URLs not allowed"),
    SpamRule(re.compile(r"\b(\w+)\b(?:\s+\1\b){3,}", re.IGNORECASE), "Excessive repeated words"),
    SpamRule(re.compile(r"[A-Z]{20,}"), "Excessive capital letters"),
)


def _mark(redacted: list[bool], matches: Iterable[re.Match[str]]) -> None:
    for match in matches:
        for i in range(match.start(), match.end()):
            redacted[i] = True


def _apply(text: str, redacted: list[bool]) -> str:
    return "".join("*" if hit else ch for ch, hit in zip(text, redacted))


@dataclass
class ModerationEngine:
    """Evaluates text against a block list, evasion patterns and spam heuristics."""

    blocked_terms: Iterable[str] = BLOCKED_TERMS
    obfuscation_patterns: Iterable[str] = OBFUSCATION_PATTERNS
    spam_rules: Iterable[SpamRule] = SPAM_RULES
    min_length: int = MIN_TEXT_LENGTH
    max_length: int = MAX_TEXT_LENGTH
    _terms: list[tuple[str, re.Pattern[str]]] = field(init=False, repr=False)
    _masked_terms: list[re.Pattern[str]] = field(init=False, repr=False)
    _patterns: list[re.Pattern[str]] = field(init=False, repr=False)
    _spam: list[SpamRule] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._terms = [
            (term.lower(), re.compile(re.escape(term), re.IGNORECASE))
            for term in self.blocked_terms
        ]
        self._masked_terms = [pattern for term, pattern in self._terms if "*" in term]
        self._patterns = [re.compile(p, re.IGNORECASE) for p in self.obfuscation_patterns]
        self._spam = list(self.spam_rules)

    def evaluate(self, text: str) -> ModerationVerdict:
        """Classify ``text``.

        Every check is evaluated independently on the original text. Any
        failure blocks; the sanitized text carries every redaction even when
        the verdict blocks.
        """
        violations: list[str] = []
        redacted = [False] * len(text)

        lowered = text.lower()
        for term, pattern in self._terms:
            if term in lowered:
                violations.append(f"Inappropriate language: {term}")
                _mark(redacted, pattern.finditer(text))

        for pattern in self._patterns:
            if pattern.search(text):
                violations.append("Inappropriate language detected")
                _mark(redacted, pattern.finditer(text))

        for rule in self._spam:
            if rule.pattern.search(text):
                violations.append(rule.reason)

        if len(text) > self.max_length:
            violations.append(f"Text too long (max {self.max_length} characters)")

        if len(text.strip()) < self.min_length:
            violations.append("Text too short")

        sanitized = self._sanitize(text, redacted)
        if violations:
            return ModerationVerdict(
                clean=False,
                action=ModerationAction.BLOCK,
                violations=tuple(violations),
                sanitized_text=sanitized,
            )
        return ModerationVerdict(
            clean=True,
            action=ModerationAction.ALLOW,
            sanitized_text=sanitized,
        )

    def _sanitize(self, text: str, redacted: list[bool]) -> str:
        """Mask redacted characters.

        A mask next to leftover letters can spell a pre-masked term
        ("nassa" -> "n***a"); such matches are widened to the whole term.
        """
        sanitized = _apply(text, redacted)
        widened = True
        while widened:
            widened = False
            for pattern in self._masked_terms:
                for match in pattern.finditer(sanitized):
                    span = range(match.start(), match.end())
                    if any(redacted[i] for i in span) and not all(redacted[i] for i in span):
                        for i in span:
                            redacted[i] = True
                        widened = True
            if widened:
                sanitized = _apply(text, redacted)
        return sanitized

    def is_appropriate(self, text: str) -> bool:
        return self.evaluate(text).clean

    def safe_version(self, text: str) -> str:
        return self.evaluate(text).sanitized_text
