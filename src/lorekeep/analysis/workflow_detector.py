"""Rule-based workflow detector for repeatable task requests."""

import logging
import re
from typing import Optional, Sequence

from lorekeep.analysis.base import SOURCE_PATTERN, AnalysisResult, Analyzer, WorkflowCandidate
from lorekeep.models.db import AnalysisType, Conversation, Message, MessageRole

logger = logging.getLogger(__name__)


# Action patterns, matched against the user's opening requests
ACTION_PATTERNS = {
    "summarize": r"\b(summari[sz]e|summary of|tl;?dr|recap)\b",
    "translate": r"\b(translate|translation)\b",
    "extract": r"\b(extract|transcribe|pull out)\b",
    "write": r"\b(write|draft|compose)\b",
    "prepare": r"\b(prepare|prep)\b",
    "organize": r"\b(organi[sz]e|categori[sz]e|sort)\b",
    "analyze": r"\b(analy[sz]e|break down|compare)\b",
    "research": r"\b(research|look into|find sources)\b",
    "design": r"\b(design|mock ?up|wireframe)\b",
    "debug": r"\b(debug|troubleshoot)\b",
    "fix": r"\bfix\b",
}

ARTIFACT_PATTERNS = {
    "notes": r"\b(notes|minutes)\b",
    "deck": r"\b(deck|slides|presentation)\b",
    "documentation": r"\b(docs|documentation|readme)\b",
    "report": r"\breport\b",
    "proposal": r"\bproposal\b",
    "spec": r"\b(spec|specification|requirements)\b",
    "post": r"\b(blog post|linkedin post|post|tweet|thread)\b",
    "transcript": r"\btranscripts?\b",
    "timestamps": r"\b(timestamps|chapters)\b",
    "checklist": r"\b(checklist|to-?do list)\b",
    "summary": r"\b(summary|overview)\b",
    "workflow": r"\b(workflow|process|pipeline)\b",
}

DOMAIN_PATTERNS = {
    "meeting": r"\b(meeting|standup|stand-up|call|sync)\b",
    "marketing": r"\b(marketing|campaign|seo|newsletter|audience)\b",
    "sales": r"\b(sales|prospect|lead|deal|customer outreach)\b",
    "support": r"\b(support|ticket|customer issue|helpdesk)\b",
    "engineering": r"\b(code|api|function|deploy|bug|endpoint|repository)\b",
    "product": r"\b(product|feature|user story|launch)\b",
    "research": r"\b(paper|study|literature|survey)\b",
    "content": r"\b(blog|article|video|podcast|youtube)\b",
    "translation": r"\b(spanish|french|german|japanese|chinese|portuguese)\b",
}

# Openers that ask about something rather than asking for something
QUESTION_OPENERS = ("what is", "what are", "why ", "how does", "how do", "explain")

BASE_CONFIDENCE = 0.6
ARTIFACT_BONUS = 0.1
DOMAIN_BONUS = 0.05
MAX_CONFIDENCE = 0.9

SNIPPET_LENGTH = 200


def _earliest(patterns: dict[str, re.Pattern], text: str) -> Optional[str]:
    best: Optional[tuple[int, str]] = None
    for name, pattern in patterns.items():
        match = pattern.search(text)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), name)
    return best[1] if best else None


class WorkflowDetector(Analyzer):
    """Detects the kind of repeatable task a conversation asks for.

    Looks only at the title and the first few user messages: the request
    defines the workflow, the rest of the conversation is execution.
    """

    name = "workflow_detector"
    analysis_type = AnalysisType.WORKFLOW
    requires_cloud = False

    def __init__(self, request_messages: int = 3):
        self.request_messages = request_messages
        self._actions = {k: re.compile(p) for k, p in ACTION_PATTERNS.items()}
        self._artifacts = {k: re.compile(p) for k, p in ARTIFACT_PATTERNS.items()}
        self._domains = {k: re.compile(p) for k, p in DOMAIN_PATTERNS.items()}

    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        candidate = self.detect(conversation, messages)
        return AnalysisResult(workflows=[candidate] if candidate else [])

    def detect(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> Optional[WorkflowCandidate]:
        requests = [
            m.content.strip()
            for m in messages
            if m.role == MessageRole.USER.value and m.content.strip()
        ][: self.request_messages]
        if not requests:
            return None
        if requests[0].lower().startswith(QUESTION_OPENERS):
            return None

        request_text = " ".join(requests).lower()
        action = _earliest(self._actions, request_text)
        if action is None:
            return None

        text = f"{(conversation.title or '').lower()} {request_text}"
        artifact = _earliest(self._artifacts, text)
        domains = sorted(name for name, p in self._domains.items() if p.search(text))

        confidence = BASE_CONFIDENCE
        if artifact:
            confidence += ARTIFACT_BONUS
        confidence = min(MAX_CONFIDENCE, confidence + DOMAIN_BONUS * len(domains))

        logger.debug(
            f"Workflow candidate for {conversation.id}: "
            f"{action}|{artifact}|{','.join(domains)} ({confidence:.2f})"
        )
        return WorkflowCandidate(
            action=action,
            artifact=artifact,
            domains=domains,
            confidence=round(confidence, 2),
            snippet=requests[0][:SNIPPET_LENGTH],
            source=SOURCE_PATTERN,
        )
