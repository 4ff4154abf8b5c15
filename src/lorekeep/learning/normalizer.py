"""
Learning rule normalization and storability checks.

A learning is only worth keeping when it reads as a reusable instruction
("Always use snake_case for variables"), not a one-off task request or a
remark about the tooling itself.
"""

import re

from lorekeep.models.db import LearningType

TRAILING_PUNCTUATION = ".,;:!? \t\n"

BLOCKED_PREFIXES = (
    "i need",
    "i want",
    "i think",
    "can you",
    "could you",
    "what is",
    "how do",
    "explain",
    "please help",
)

HARD_PREFIXES = ("always ", "never ", "only ")

MIN_ACTIONABLE_LENGTH = 8
MIN_SOFT_CONFIDENCE = 0.6

PREFERENCE_MARKERS = [
    re.compile(p)
    for p in (
        r"\bprefer\b",
        r"\bpreferred\b",
        r"\balways\b",
        r"\bnever\b",
        r"\bavoid\b",
        r"\bdo not\b",
        r"\bdon't\b",
        r"\bmust\b",
        r"\bshould\b",
        r"\buse\b.+\binstead\b",
        r"\binstead of\b",
        r"\bbetter to\b",
    )
]

_PATH_EXTENSIONS = (
    r"\.(html|css|js|ts|tsx|jsx|swift|py|rb|go|rs|java|kt|json|yaml|yml|toml|md|sql|csv|xml|graphql|sh)\b"
)

PATH_OR_URI_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?:^|\s)(~?/|\.{1,2}/)[^\s]+",  # unix paths
        r"\b[a-zA-Z]:\\[^\s]+",  # windows paths
        r"(?:https?://|www\.)\S+",
        r"\b[a-z][a-z0-9+.-]*://\S+",  # any URI scheme
        r"\btemplateuri\b\s*[:=]",
        r"\bhtml\s*/\s*css\b",
        _PATH_EXTENSIONS,
    )
]

SYSTEM_INTERNAL_PATTERNS = [
    re.compile(p)
    for p in (
        r"\bgemini\b",
        r"\bclaude\b",
        r"\bcodex\b",
        r"\bsemantic\b",
        r"\bdeterministic\b",
        r"\bembedding(?:s)?\b",
        r"\bindex(?:ing)?\b",
        r"\bsqlite\b",
        r"\bdatabase\b",
        r"\bmigration\b",
        r"\bschema\b",
        r"\bsync\b",
        r"\bapi error\b",
        r"\bnetwork error\b",
        r"\bsetupcomplete\b",
        r"\btooling\b",
    )
]


def _collapse(rule: str) -> str:
    return re.sub(r"\s+", " ", rule.strip().lower())


def normalize_rule(rule: str) -> str:
    """
    Canonical form used for dedup: case-folded, whitespace collapsed,
    trailing punctuation stripped.

    >>> normalize_rule("  Always use   snake_case. ")
    'always use snake_case'
    """
    return _collapse(rule.casefold()).rstrip(TRAILING_PUNCTUATION)


def _matches_any(patterns: list[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def is_system_internal(rule: str) -> bool:
    """True for remarks about the assistant or the storage machinery."""
    return _matches_any(SYSTEM_INTERNAL_PATTERNS, _collapse(rule))


def _should_drop_task_specific(rule: str) -> bool:
    collapsed = _collapse(rule)
    if not collapsed.startswith(HARD_PREFIXES):
        return False
    return _matches_any(PATH_OR_URI_PATTERNS, collapsed)


def should_drop_rule(rule: str) -> bool:
    """Rules about internals, or absolute rules pinned to a path or URL."""
    return is_system_internal(rule) or _should_drop_task_specific(rule)


def is_actionable(rule: str) -> bool:
    normalized = _collapse(rule)
    if len(normalized) < MIN_ACTIONABLE_LENGTH:
        return False
    if normalized.startswith(BLOCKED_PREFIXES):
        return False
    return not should_drop_rule(rule)


def has_preference_marker(rule: str) -> bool:
    """True when the rule states a preference rather than asking a question."""
    collapsed = _collapse(rule)
    if collapsed.endswith("?"):
        return False
    return _matches_any(PREFERENCE_MARKERS, collapsed)


def should_store(rule: str, learning_type: LearningType | str, confidence: float) -> bool:
    """
    Decide whether a candidate rule is worth a pending learning.

    Corrections only need to be actionable. Positive and implicit
    learnings are weaker signals and also need a preference marker and
    confidence of at least 0.6.
    """
    if not is_actionable(rule):
        return False

    if LearningType(learning_type) == LearningType.CORRECTION:
        return True

    if confidence < MIN_SOFT_CONFIDENCE:
        return False
    return has_preference_marker(rule)
