"""
Workflow taxonomy.

A workflow signature is an (action, artifact, domains) triple drawn from a
closed vocabulary. Candidates from any analyzer, pattern or model, pass
through sanitize() so that signatures from different sources collide on
the same key.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

ALLOWED_ACTIONS = frozenset(
    {
        "analyze",
        "debug",
        "design",
        "extract",
        "fix",
        "organize",
        "plan",
        "prepare",
        "research",
        "review",
        "summarize",
        "translate",
        "write",
        "none",
    }
)

ALLOWED_ARTIFACTS = frozenset(
    {
        "analysis",
        "checklist",
        "deck",
        "documentation",
        "notes",
        "plan",
        "post",
        "proposal",
        "report",
        "spec",
        "summary",
        "timestamps",
        "transcript",
        "workflow",
        "none",
    }
)

ALLOWED_DOMAINS = frozenset(
    {
        "content",
        "engineering",
        "marketing",
        "meeting",
        "product",
        "research",
        "sales",
        "support",
        "translation",
    }
)

ACTION_ALIASES = {
    "summarization": "summarize",
    "summary": "summarize",
    "analyse": "analyze",
    "analysis": "analyze",
    "draft": "write",
    "compose": "write",
    "create": "write",
    "generate": "write",
    "prep": "prepare",
    "organise": "organize",
    "transcribe": "extract",
    "extract_information": "extract",
    "skip": "none",
    "candidate": "none",
}

ARTIFACT_ALIASES = {
    "presentation": "deck",
    "slide_deck": "deck",
    "docs": "documentation",
    "doc": "documentation",
    "requirements": "spec",
    "transcripts": "transcript",
    "minutes": "notes",
}

DOMAIN_ALIASES = {
    "eng": "engineering",
    "dev": "engineering",
    "product_management": "product",
    "bizdev": "sales",
    "customer_support": "support",
}

MIN_CONFIDENCE = 0.65

# Refinement
TOPIC_ACTIONS = frozenset({"prepare", "organize"})
GENERIC_ARTIFACTS = frozenset({"workflow", "plan", "materials"})
WEAK_ARTIFACT_ACTIONS = frozenset({"fix", "debug"})

ONE_OFF_PHRASES = (
    "one-off",
    "one off",
    "one-time",
    "one time",
    "single use",
    "single-use",
    "not repeatable",
    "not reusable",
    "quick fix",
    "hotfix",
    "temporary",
    "ad hoc",
    "just once",
    "only once",
)

TOPIC_STOPWORDS = frozenset(
    """
    a an and or the to for of in on with from at by as
    is are was were be been being
    i you we they he she it my our your their
    this that these those please help
    create make build write draft generate compose summarize summarise
    review fix debug analyze analyse analysis workflow plan planning
    organize organise prepare research design extract report notes summary
    proposal deck spec documentation docs prompt post message messages
    request requests project projects context learning extraction
    engineering product marketing sales meeting content support translation
    """.split()
)


@dataclass(frozen=True)
class SanitizedWorkflow:
    action: str
    artifact: Optional[str]
    domains: tuple[str, ...]


def normalize_token(value: str) -> str:
    """
    >>> normalize_token(" Slide Deck ")
    'slide_deck'
    """
    return value.strip().lower().replace(" ", "_").replace("-", "_")


def canonical_action(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = normalize_token(value)
    if not normalized:
        return None
    mapped = ACTION_ALIASES.get(normalized, normalized)
    return mapped if mapped in ALLOWED_ACTIONS else None


def canonical_artifact(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = normalize_token(value)
    if not normalized:
        return None
    mapped = ARTIFACT_ALIASES.get(normalized, normalized)
    if mapped == "none":
        return None
    return mapped if mapped in ALLOWED_ARTIFACTS else None


def canonical_domains(values: Optional[Iterable[str]]) -> tuple[str, ...]:
    if not values:
        return ()
    output = set()
    for value in values:
        normalized = normalize_token(value)
        if not normalized:
            continue
        mapped = DOMAIN_ALIASES.get(normalized, normalized)
        if mapped in ALLOWED_DOMAINS:
            output.add(mapped)
    return tuple(sorted(output))


def sanitize(
    action: Optional[str],
    artifact: Optional[str],
    domains: Optional[Iterable[str]],
    confidence: Optional[float] = None,
    min_confidence: float = MIN_CONFIDENCE,
) -> Optional[SanitizedWorkflow]:
    """
    Map a raw (action, artifact, domains) triple onto the taxonomy.

    Returns None for unknown or "none" actions, confidence below the
    threshold, or a triple with neither an artifact nor a domain.
    """
    normalized_action = canonical_action(action)
    if normalized_action is None or normalized_action == "none":
        return None
    if confidence is not None and confidence < min_confidence:
        return None

    normalized_artifact = canonical_artifact(artifact)
    normalized_domains = canonical_domains(domains)
    if normalized_artifact is None and not normalized_domains:
        return None

    return SanitizedWorkflow(
        action=normalized_action,
        artifact=normalized_artifact,
        domains=normalized_domains,
    )


def _tokenize(text: str) -> list[str]:
    return [t for t in re.split(r"[^0-9a-z]+", text.lower()) if t]


def _topic_token(context: str, domains: Iterable[str], action: str, artifact: str) -> Optional[str]:
    domain_set = {normalize_token(d) for d in domains}
    for token in _tokenize(context):
        if len(token) < 3 or token in TOPIC_STOPWORDS:
            continue
        if token in (action, artifact) or token in domain_set:
            continue
        return token
    return None


def should_exclude(
    action: str, artifact: Optional[str], snippet: Optional[str], context: str
) -> bool:
    """Drop fixes with nothing to show for them, and anything called one-off."""
    if normalize_token(action) in WEAK_ARTIFACT_ACTIONS and not (artifact and artifact.strip()):
        return True
    combined = " ".join(p for p in (snippet, context) if p).lower()
    return any(phrase in combined for phrase in ONE_OFF_PHRASES)


def refine_artifact(
    action: str, artifact: Optional[str], domains: Iterable[str], context: str
) -> Optional[str]:
    """
    Specialize a generic artifact with the conversation's topic.

    "prepare|workflow" says little on its own; "prepare|workflow_onboarding"
    groups conversations that prepare the same thing.
    """
    if artifact is None:
        return None
    normalized_action = normalize_token(action)
    normalized_artifact = normalize_token(artifact)
    if normalized_action not in TOPIC_ACTIONS or normalized_artifact not in GENERIC_ARTIFACTS:
        return artifact

    topic = _topic_token(context, domains, normalized_action, normalized_artifact)
    if topic is None:
        return artifact
    return f"{normalized_artifact}_{topic}"


def build_signature(action: str, artifact: Optional[str], domains: Iterable[str]) -> str:
    """
    >>> build_signature("summarize", "notes", ["meeting", "content"])
    'summarize|notes|content,meeting'
    """
    return f"{action}|{artifact or 'none'}|{','.join(sorted(domains))}"
