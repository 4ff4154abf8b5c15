"""Detects conversations about the work process rather than the work itself."""

import re
from typing import Iterable, Optional, Sequence

from lorekeep.models.db import Conversation, Message, MessageRole

META_PATTERNS = [
    re.compile(p)
    for p in (
        r"\baudit\b",
        r"\breview\b",
        r"\bplan\b",
        r"\bplanning\b",
        r"\blearning extraction\b",
        r"\broadmap\b",
        r"\bchangelog\b",
        r"\bcommit\b",
        r"\bpr\b",
        r"\bpull request\b",
        r"\bbugfix\b",
        r"\bbug fix\b",
        r"\brelease notes\b",
        r"\bpostmortem\b",
        r"\bretrospective\b",
    )
]


def is_meta_text(parts: Iterable[Optional[str]]) -> bool:
    """True when any non-empty part mentions a meta topic."""
    combined = " ".join(p.strip() for p in parts if p and p.strip()).lower()
    if not combined:
        return False
    return any(pattern.search(combined) for pattern in META_PATTERNS)


def is_meta(conversation: Conversation, messages: Sequence[Message]) -> bool:
    """
    Check whether a conversation is about reviews, plans, commits and the like.

    Rules and workflows mined from such conversations describe the process
    of shipping work, so learning and workflow analysis skip them.
    """
    first_user = next(
        (m.content for m in messages if m.role == MessageRole.USER.value), None
    )
    return is_meta_text(
        [conversation.title, conversation.summary, conversation.preview_text, first_user]
    )
