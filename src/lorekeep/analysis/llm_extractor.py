"""
Model-backed learning and workflow extraction.

Both extractors send a redacted, truncated transcript to an LLMProvider
and validate the JSON reply with pydantic. Whether they count as cloud
analyzers depends on the provider they wrap.
"""

import json
import logging
import re
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from lorekeep.analysis.base import (
    SOURCE_LLM,
    AnalysisResult,
    Analyzer,
    LearningCandidate,
    WorkflowCandidate,
)
from lorekeep.analysis.providers.base import LLMProvider
from lorekeep.analysis.workflow_taxonomy import (
    ALLOWED_ACTIONS,
    ALLOWED_ARTIFACTS,
    ALLOWED_DOMAINS,
)
from lorekeep.exceptions import AnalyzerError
from lorekeep.models.db import AnalysisType, Conversation, LearningType, Message

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 1_000
MAX_TRANSCRIPT_MESSAGES = 10
MAX_EVIDENCE_CHARS = 220

# (pattern, replacement) applied to every message before it leaves the process
REDACTIONS = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "[PHONE]"),
    (re.compile(r"sk-[a-zA-Z0-9_-]{20,}"), "[API_KEY]"),
    (re.compile(r"ghp_[a-zA-Z0-9]{36}"), "[GITHUB_TOKEN]"),
    (re.compile(r"AKIA[A-Z0-9]{16}"), "[AWS_ACCESS_KEY]"),
    (
        re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
        "[SSH_KEY_REDACTED]",
    ),
    (re.compile(r"(?i)(password|passwd|pwd)\s*[:=]\s*\S+"), "[PASSWORD_REDACTED]"),
]

SYSTEM_PROMPT = "You are an expert at analyzing conversations between a user and an AI assistant. Return only valid JSON."

LEARNING_PROMPT = """Extract reusable learnings from this conversation.

Look for user corrections, stated preferences, and implicit preferences that
would apply to future conversations. Ignore one-off task instructions.

Each learning MUST include:
- type: one of correction, positive, implicit
- rule: a short imperative rule ("Always ...", "Never ...", "Use X instead of Y")
- confidence: 0.0 to 1.0
- evidence: a short exact quote (5-25 words) from the conversation that supports the rule
If you cannot find a supporting quote, leave the learning out.

# Conversation
Title: {title}

{transcript}

Return ONLY valid JSON in this exact format:
{{"learnings": [{{"type": "correction", "rule": "...", "confidence": 0.8, "evidence": "..."}}]}}"""

WORKFLOW_PROMPT = """Decide whether this conversation is an instance of a repeatable workflow
that could be automated.

Choose action from: [{actions}]
Choose artifact from: [{artifacts}]
Choose domains from: [{domains}]
If there is no automation candidate, set action to "none" and leave artifact and domains empty.

# Conversation
Title: {title}

{transcript}

Return ONLY valid JSON in this exact format:
{{"action": "...", "artifact": "...", "domains": ["..."], "confidence": 0.8, "reasoning": "..."}}"""


class ExtractedLearning(BaseModel):
    type: str = LearningType.IMPLICIT.value
    rule: str = Field(min_length=1)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    evidence: Optional[str] = None


class LearningReply(BaseModel):
    learnings: list[ExtractedLearning] = Field(default_factory=list)


class WorkflowReply(BaseModel):
    action: str = "none"
    artifact: Optional[str] = None
    domains: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: Optional[str] = None


def redact(text: str) -> str:
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def build_transcript(messages: Sequence[Message]) -> str:
    """Redacted transcript; long conversations keep the first message and the last nine."""
    selected = list(messages)
    if len(selected) > MAX_TRANSCRIPT_MESSAGES:
        selected = [selected[0]] + selected[-(MAX_TRANSCRIPT_MESSAGES - 1):]
    lines = []
    for message in selected:
        content = message.content[:MAX_MESSAGE_CHARS]
        if len(message.content) > MAX_MESSAGE_CHARS:
            content += "..."
        lines.append(f"[{message.role}]: {redact(content)}")
    return "\n\n".join(lines)


def extract_json_payload(raw: str) -> str:
    """Strip code fences and surrounding prose from a model reply."""
    trimmed = raw.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", trimmed, re.DOTALL)
    if fenced:
        return fenced.group(1).strip()

    start = next((i for i, ch in enumerate(trimmed) if ch in "{["), None)
    if start is None:
        return trimmed
    open_char = trimmed[start]
    close_char = "}" if open_char == "{" else "]"
    depth = 0
    for index in range(start, len(trimmed)):
        if trimmed[index] == open_char:
            depth += 1
        elif trimmed[index] == close_char:
            depth -= 1
            if depth == 0:
                return trimmed[start : index + 1]
    return trimmed


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


class _LLMAnalyzer(Analyzer):
    """Shared request and parsing for model-backed analyzers."""

    def __init__(self, provider: LLMProvider, max_tokens: int = 800):
        self.provider = provider
        self.max_tokens = max_tokens
        self.requires_cloud = provider.is_cloud

    def _request(self, prompt: str, reply_model: type[BaseModel]) -> Any:
        try:
            response = self.provider.complete(
                system_prompt=SYSTEM_PROMPT,
                user_prompt=prompt,
                max_tokens=self.max_tokens,
                json_output=True,
            )
        except Exception as e:
            raise AnalyzerError(self.name, f"{self.provider.provider_name} request failed: {e}") from e

        cost = self.provider.calculate_cost(response.prompt_tokens, response.completion_tokens)
        logger.debug(
            f"{self.name}: {response.total_tokens} tokens in {response.duration_ms:.0f}ms "
            f"({response.model}, ${cost:.4f})"
        )
        if not response.content.strip():
            raise AnalyzerError(self.name, "empty response from model")

        try:
            data = json.loads(extract_json_payload(response.content))
            return reply_model.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise AnalyzerError(self.name, f"unparseable model output: {e}") from e


class LLMLearningExtractor(_LLMAnalyzer):
    """Extracts learnings with a model; only evidence-backed rules survive."""

    name = "llm_learning_extractor"
    analysis_type = AnalysisType.LEARNING

    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        if not messages:
            return AnalysisResult()

        prompt = LEARNING_PROMPT.format(
            title=conversation.title or "(untitled)",
            transcript=build_transcript(messages),
        )
        reply: LearningReply = self._request(prompt, LearningReply)

        haystack = [_collapse(redact(m.content)) for m in messages]
        candidates = []
        for item in reply.learnings:
            evidence = (item.evidence or "").strip()
            if not evidence or not any(_collapse(evidence) in text for text in haystack):
                logger.debug(f"Dropping unsupported learning: {item.rule!r}")
                continue
            try:
                learning_type = LearningType(item.type.strip().lower())
            except ValueError:
                learning_type = LearningType.IMPLICIT
            candidates.append(
                LearningCandidate(
                    rule_text=item.rule.strip(),
                    type=learning_type,
                    confidence=item.confidence,
                    evidence=evidence[:MAX_EVIDENCE_CHARS],
                    source=SOURCE_LLM,
                )
            )
        return AnalysisResult(learnings=candidates)


class LLMWorkflowExtractor(_LLMAnalyzer):
    name = "llm_workflow_extractor"
    analysis_type = AnalysisType.WORKFLOW

    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        if not messages:
            return AnalysisResult()

        prompt = WORKFLOW_PROMPT.format(
            actions=", ".join(sorted(ALLOWED_ACTIONS)),
            artifacts=", ".join(sorted(ALLOWED_ARTIFACTS)),
            domains=", ".join(sorted(ALLOWED_DOMAINS)),
            title=conversation.title or "(untitled)",
            transcript=build_transcript(messages),
        )
        reply: WorkflowReply = self._request(prompt, WorkflowReply)
        if reply.action.strip().lower() in ("", "none"):
            return AnalysisResult()

        return AnalysisResult(
            workflows=[
                WorkflowCandidate(
                    action=reply.action,
                    artifact=reply.artifact,
                    domains=reply.domains,
                    confidence=reply.confidence,
                    snippet=(reply.reasoning or "")[:MAX_EVIDENCE_CHARS] or None,
                    source=SOURCE_LLM,
                )
            ]
        )
