"""
Analyzer capability interface and candidate types.

Analyzers read a conversation and its messages and propose candidates.
They never write learnings or signatures themselves; the lifecycle
manager decides what gets stored.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from lorekeep.analysis.workflow_taxonomy import build_signature
from lorekeep.models.db import AnalysisType, Conversation, LearningType, Message

SOURCE_PATTERN = "pattern"
SOURCE_LLM = "llm"


@dataclass
class LearningCandidate:
    """An unconfirmed rule proposed by an analyzer."""

    rule_text: str
    type: LearningType
    confidence: float
    evidence: Optional[str] = None
    source: str = SOURCE_PATTERN


@dataclass
class WorkflowCandidate:
    """An unconfirmed workflow signature proposed by an analyzer."""

    action: str
    artifact: Optional[str]
    domains: list[str]
    confidence: float
    snippet: Optional[str] = None
    source: str = SOURCE_PATTERN

    @property
    def signature(self) -> str:
        """action|artifact|domain,domain"""
        return build_signature(self.action, self.artifact, self.domains)


@dataclass
class DuplicateMatch:
    """A learning that restates an older one."""

    learning_id: uuid.UUID
    duplicate_of_id: uuid.UUID
    similarity: float


@dataclass
class AnalysisResult:
    learnings: list[LearningCandidate] = field(default_factory=list)
    workflows: list[WorkflowCandidate] = field(default_factory=list)
    duplicates: list[DuplicateMatch] = field(default_factory=list)

    def extend(self, other: "AnalysisResult") -> None:
        self.learnings.extend(other.learnings)
        self.workflows.extend(other.workflows)
        self.duplicates.extend(other.duplicates)

    @property
    def empty(self) -> bool:
        return not (self.learnings or self.workflows or self.duplicates)


class Analyzer(ABC):
    """
    One kind of analysis over a conversation.

    Attributes:
        name: Identifier used in logs and queue errors
        analysis_type: Queue type this analyzer serves
        requires_cloud: True when conversation content leaves the machine;
            such analyzers only run with cloud consent
    """

    name: str
    analysis_type: AnalysisType
    requires_cloud: bool = False

    @abstractmethod
    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        """
        Analyze one conversation.

        Args:
            conversation: Detached conversation row
            messages: Its messages in ordering-key order

        Returns:
            Candidates found (possibly none)

        Raises:
            AnalyzerError: If the analysis could not be performed
        """
        ...
