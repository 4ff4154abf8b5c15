"""Pattern-based correction detector.

Finds user messages that correct the assistant or state a standing
preference, and turns them into short imperative rules. Fast, free and
deterministic; runs without any model.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from lorekeep.analysis.base import (
    SOURCE_PATTERN,
    AnalysisResult,
    Analyzer,
    LearningCandidate,
)
from lorekeep.learning.normalizer import is_actionable
from lorekeep.models.db import AnalysisType, Conversation, LearningType, Message, MessageRole

logger = logging.getLogger(__name__)


# (pattern, confidence) - the first matching pattern wins
CORRECTION_PATTERNS = [
    # Direct corrections
    (r"(?i)no,?\s*(actually|instead|use|it'?s?|that'?s?)", 0.95),
    (r"(?i)that'?s?\s*(not|wrong|incorrect)", 0.9),
    (r"(?i)you'?re?\s*(wrong|mistaken|incorrect)", 0.9),
    (r"(?i)that\s*doesn'?t?\s*(work|compile|run)", 0.85),
    # Explicit preferences
    (r"(?i)i\s*(?:would\s+)?prefer\s+(?:to\s+|that\s+)?", 0.85),
    (r"(?i)please\s*(use|don't|always|never)", 0.85),
    (r"(?i)(always|never)\s+(use|do|add|include|avoid|keep)", 0.9),
    # Style
    (r"(?i)(don't|do\s*not)\s*(add|include|use)\s*(comments|docstrings|type\s*hints)", 0.9),
    (r"(?i)keep\s*(it|things|code)\s*(simple|minimal|clean)", 0.8),
    (r"(?i)too\s*(verbose|complex|complicated)", 0.8),
    # Technical
    (r"(?i)use\s+(\w+)\s+instead\s+of\s+(\w+)", 0.95),
    (r"(?i)should\s*(be|use|have)\s+(\w+)", 0.85),
    (r"(?i)the\s*(correct|right|proper)\s*(way|approach|method)", 0.85),
]

# (keyword, rule, confidence)
POSITIVE_KEYWORDS = [
    ("concise", "Keep responses concise", 0.8),
    ("brief", "Keep responses brief", 0.75),
    ("step by step", "Explain step by step", 0.8),
    ("examples", "Include examples", 0.75),
    ("tests", "Include tests when relevant", 0.75),
    ("no comments", "Avoid unnecessary comments", 0.8),
    ("clean", "Keep output clean and uncluttered", 0.7),
]

# Matched case-sensitively against raw content
SYSTEM_MESSAGE_MARKERS = [
    "Hello! I'm Claude Code",
    "I'm Claude Code, Anthropic's",
    "I'm ready to help",
    "I'm in read-only mode",
    "This session is being continued from a previous conversation",
    "The conversation is summarized below",
    "session-continuation",
    "local-command-caveat",
    "Caveat: The messages below were generated",
    "<command-name>",
    "<command-message>",
    "<command-args>",
    "<system-reminder>",
    "Analysis:\nLet me analyze",
]

GENERIC_MARKERS = [
    "ready to help you",
    "ready to assist",
    "how can i help",
    "what would you like",
    "let me analyze this",
    "i understand you want",
]

STANDALONE_PREFIXES = ("always", "never", "please")
VALID_RULE_PREFIXES = ("use ", "never ", "always ", "keep ", "avoid ", "prefer ", "user prefers")

_STRIP_CAPTURE = " \t\n.,!?:;"

# Rule extraction cascade, tried in order
_USE_INSTEAD_OF = re.compile(r"use\s+(.+?)\s+instead\s+of\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE)
_USE_INSTEAD = re.compile(r"use\s+(.+?)\s+instead(?:\.|$)", re.IGNORECASE | re.MULTILINE)
_INSTEAD_USE = re.compile(r"instead\s+use\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE)
_NEVER = re.compile(r"(?:don't|do not|never)\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE)
_ALWAYS = re.compile(r"always\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE)
_KEEP = re.compile(
    r"(?:keep|make)\s+(?:it|things|code|responses?)\s+(simple|minimal|clean|shorter?|concise|brief)",
    re.IGNORECASE,
)
_PREFER = re.compile(r"(?:i\s+(?:would\s+)?)?prefer\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE)


def sanitize_rule(rule: str) -> Optional[str]:
    """Collapse whitespace and reject extractions that picked up markup or code."""
    cleaned = re.sub(r"\s+", " ", rule.strip()).strip(' .,:;"')
    if not cleaned or "\n" in cleaned or "->" in cleaned:
        return None
    if cleaned.count("(") != cleaned.count(")"):
        return None
    if cleaned.count('"') % 2:
        return None
    return cleaned


def extract_rule(content: str) -> Optional[str]:
    """Turn a correction message into an imperative rule, or None."""
    match = _USE_INSTEAD_OF.search(content)
    if match:
        preferred = match.group(1).strip(_STRIP_CAPTURE)
        avoid = match.group(2).strip(_STRIP_CAPTURE)
        return sanitize_rule(f"Use '{preferred}' instead of '{avoid}'")

    for pattern in (_USE_INSTEAD, _INSTEAD_USE):
        match = pattern.search(content)
        if match:
            return sanitize_rule(f"Use '{match.group(1).strip(_STRIP_CAPTURE)}' instead")

    match = _NEVER.search(content)
    if match:
        return sanitize_rule(f"Never {match.group(1).strip()}")

    match = _ALWAYS.search(content)
    if match:
        return sanitize_rule(f"Always {match.group(1).strip()}")

    match = _KEEP.search(content)
    if match:
        preference = match.group(1).strip().lower()
        if preference in ("short", "shorter"):
            preference = "concise"
        return sanitize_rule(f"Keep responses {preference}")

    lowered = content.lower()
    if "too verbose" in lowered or "keep it short" in lowered:
        return sanitize_rule("Keep responses concise")

    match = _PREFER.search(content)
    if match:
        return sanitize_rule(f"User prefers {match.group(1).strip()}")

    return None


def is_valid_extracted_rule(rule: str) -> bool:
    trimmed = rule.strip()
    if not 10 <= len(trimmed) <= 160:
        return False
    sentences = [s for s in re.split(r"[.!?]", trimmed) if s]
    if len(sentences) > 2:
        return False
    if "<" in trimmed and ">" in trimmed:
        return False
    return trimmed.lower().startswith(VALID_RULE_PREFIXES)


def evidence_snippet(content: str, max_length: int = 220) -> str:
    trimmed = content.strip()
    if len(trimmed) <= max_length:
        return trimmed
    return trimmed[:max_length] + "..."


@dataclass
class Detection:
    """One correction found in a message, before it becomes a candidate."""

    type: LearningType
    pattern: str
    rule: str
    confidence: float
    context: str
    evidence: str


class CorrectionDetector(Analyzer):
    """
    Detects corrections and stated preferences in user messages.

    Args:
        min_confidence: Detections below this are dropped
        context_window: Previous messages included in a detection's context
        enable_positive_feedback: Also turn praise keywords into learnings
    """

    name = "correction_detector"
    analysis_type = AnalysisType.LEARNING
    requires_cloud = False

    def __init__(
        self,
        min_confidence: float = 0.7,
        context_window: int = 3,
        enable_positive_feedback: bool = False,
    ):
        self.min_confidence = min_confidence
        self.context_window = context_window
        self.enable_positive_feedback = enable_positive_feedback
        self._patterns = [(re.compile(p), w) for p, w in CORRECTION_PATTERNS]

    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        return AnalysisResult(
            learnings=[
                LearningCandidate(
                    rule_text=d.rule,
                    type=d.type,
                    confidence=d.confidence,
                    evidence=d.evidence,
                    source=SOURCE_PATTERN,
                )
                for d in self.detect(messages)
            ]
        )

    def detect(self, messages: Sequence[Message]) -> list[Detection]:
        """Run detection over messages already in conversation order."""
        detections = []
        for index, message in enumerate(messages):
            if message.role != MessageRole.USER.value:
                continue
            if len(message.content.strip()) < 6:
                continue
            if self._is_excluded(message.content):
                continue

            previous = messages[:index]
            has_assistant_context = any(
                m.role == MessageRole.ASSISTANT.value for m in previous
            )

            detection = self._detect_correction(message, previous, has_assistant_context)
            if detection and detection.confidence >= self.min_confidence:
                detections.append(detection)

            if self.enable_positive_feedback:
                detection = self._detect_positive(message, previous, has_assistant_context)
                if detection and detection.confidence >= self.min_confidence:
                    detections.append(detection)

        return detections

    def _detect_correction(
        self, message: Message, previous: Sequence[Message], has_assistant_context: bool
    ) -> Optional[Detection]:
        content = message.content
        standalone = content.strip().lower().startswith(STANDALONE_PREFIXES)
        if not (has_assistant_context or standalone):
            return None

        for regex, weight in self._patterns:
            match = regex.search(content)
            if not match:
                continue

            context = self._build_context(previous, message)
            if self._context_has_system_markers(context):
                continue

            rule = extract_rule(content)
            if rule is None or not is_valid_extracted_rule(rule) or not is_actionable(rule):
                continue

            return Detection(
                type=LearningType.CORRECTION,
                pattern=match.group(0),
                rule=rule,
                confidence=weight,
                context=context,
                evidence=evidence_snippet(content),
            )
        return None

    def _detect_positive(
        self, message: Message, previous: Sequence[Message], has_assistant_context: bool
    ) -> Optional[Detection]:
        if not has_assistant_context:
            return None
        content = message.content
        if len(content.strip()) < 10:
            return None

        lowered = content.lower()
        for keyword, rule, weight in POSITIVE_KEYWORDS:
            if keyword not in lowered:
                continue
            context = self._build_context(previous, message)
            if self._context_has_system_markers(context):
                continue
            return Detection(
                type=LearningType.POSITIVE,
                pattern=keyword,
                rule=rule,
                confidence=weight,
                context=context,
                evidence=evidence_snippet(content),
            )
        return None

    def _build_context(self, previous: Sequence[Message], current: Message) -> str:
        window = previous[max(0, len(previous) - self.context_window):]
        lines = [f"{m.role.capitalize()}: {m.content[:200]}" for m in window]
        lines.append(f"User: {current.content[:240]}")
        return "\n".join(lines)

    @staticmethod
    def _is_excluded(content: str) -> bool:
        if any(marker in content for marker in SYSTEM_MESSAGE_MARKERS):
            return True
        lowered = content.lower()
        return any(marker in lowered for marker in GENERIC_MARKERS)

    @staticmethod
    def _context_has_system_markers(context: str) -> bool:
        return any(marker in context for marker in SYSTEM_MESSAGE_MARKERS)
