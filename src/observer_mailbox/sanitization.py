"""Neutralize observer text before it is spliced into a prompt.

Observer output is untrusted: it may carry role markers, wrapper tags or
"ignore previous instructions" payloads. ``sanitize`` rewrites those into
inert forms; ``validate`` reports what it would have changed.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, List, Literal, Pattern, Sequence, Tuple

DEFAULT_MAX_LENGTH = 10_000

# (pattern, replacement) pairs applied in order
DANGEROUS_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    # tags that could break the <observer-context> wrapper
    (re.compile(r"</?observer-context[^>]*>", re.I), "[observer-context]"),
    (re.compile(r"</?system[^>]*>", re.I), "[system]"),
    (re.compile(r"</?assistant[^>]*>", re.I), "[assistant]"),
    (re.compile(r"</?user[^>]*>", re.I), "[user]"),
    (re.compile(r"</?tool[^>]*>", re.I), "[tool]"),
    # chat-template markers
    (re.compile(r"\[INST\]", re.I), "[inst]"),
    (re.compile(r"\[/INST\]", re.I), "[/inst]"),
    (re.compile(r"<<SYS>>", re.I), "[[SYS]]"),
    (re.compile(r"<</SYS>>", re.I), "[[/SYS]]"),
    # turn prefixes
    (re.compile(r"Human:", re.I), "human:"),
    (re.compile(r"Assistant:", re.I), "assistant:"),
    # instruction overrides
    (re.compile(r"ignore (?:all )?(?:previous |prior |above )?instructions", re.I), "[filtered]"),
    (re.compile(r"disregard (?:all )?(?:previous |prior |above )?instructions", re.I), "[filtered]"),
)

# control characters except \t \n \r
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


@dataclass(frozen=True)
class SanitizeOptions:
    max_length: int = DEFAULT_MAX_LENGTH
    escape_xml_tags: bool = True
    strip_control_chars: bool = True
    extra_patterns: Sequence[Tuple[Pattern[str], str]] = ()


@dataclass(frozen=True)
class SanitizationIssue:
    kind: Literal["length", "pattern", "encoding"]
    message: str
    severity: Literal["warning", "error"] = "warning"


@dataclass
class SanitizationReport:
    is_valid: bool = True
    issues: List[SanitizationIssue] = field(default_factory=list)


def sanitize(text: str, options: SanitizeOptions = SanitizeOptions()) -> str:
    out = text
    if options.strip_control_chars:
        out = CONTROL_CHARS.sub("", out)
    if options.escape_xml_tags:
        for pattern, replacement in DANGEROUS_PATTERNS:
            out = pattern.sub(replacement, out)
    for pattern, replacement in options.extra_patterns:
        out = pattern.sub(replacement, out)
    if len(out) > options.max_length:
        out = out[: max(options.max_length - 3, 0)] + "..."
    return out


def validate(text: str, options: SanitizeOptions = SanitizeOptions()) -> SanitizationReport:
    issues: List[SanitizationIssue] = []
    if len(text) > options.max_length:
        issues.append(SanitizationIssue(
            "length", f"Content exceeds maximum length of {options.max_length} characters (got {len(text)})"
        ))
    if CONTROL_CHARS.search(text):
        issues.append(SanitizationIssue("encoding", "Content contains control characters"))
    if options.escape_xml_tags:
        for pattern, _ in DANGEROUS_PATTERNS:
            if pattern.search(text):
                issues.append(SanitizationIssue(
                    "pattern", f"Content contains potentially dangerous pattern: {pattern.pattern}"
                ))
    return SanitizationReport(
        is_valid=not any(i.severity == "error" for i in issues),
        issues=issues,
    )


def make_sanitizer(**defaults) -> Callable[[str], str]:
    """Return a ``text -> text`` sanitizer with fixed options."""
    return partial(sanitize, options=SanitizeOptions(**defaults))


def escape_xml(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )
