"""
Component wiring.

build_components() turns a Settings instance into the running object graph:
adapters, orchestrator, upsert engine, analyzers, dispatcher and search.
Every CLI command and the watch daemon start from here, so consent and
provider selection are decided in one place.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

from lorekeep.analysis.base import Analyzer
from lorekeep.analysis.correction_detector import CorrectionDetector
from lorekeep.analysis.dispatcher import AnalysisDispatcher
from lorekeep.analysis.duplicate_detector import DuplicateLearningDetector
from lorekeep.analysis.llm_extractor import LLMLearningExtractor, LLMWorkflowExtractor
from lorekeep.analysis.providers import create_provider
from lorekeep.analysis.registry import AnalyzerRegistry
from lorekeep.analysis.workflow_detector import WorkflowDetector
from lorekeep.db.connection import configure, db_session, init_db
from lorekeep.exceptions import ConsentRequiredError
from lorekeep.learning.lifecycle import LearningLifecycleManager
from lorekeep.pipeline.upsert import UpsertEngine
from lorekeep.search.embeddings import EmbeddingProvider, create_embedding_provider
from lorekeep.search.engine import HybridSearchEngine
from lorekeep.search.index import SearchIndexer
from lorekeep.sync.adapters import build_adapters
from lorekeep.sync.orchestrator import SyncOrchestrator
from lorekeep.sync.progress import ProgressReporter
from lorekeep.sync.watch import WatchDaemon

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """The wired object graph for one process."""

    settings: Any
    shutdown_event: threading.Event
    progress: ProgressReporter
    indexer: SearchIndexer
    upsert_engine: UpsertEngine
    orchestrator: SyncOrchestrator
    registry: AnalyzerRegistry
    lifecycle: LearningLifecycleManager
    dispatcher: AnalysisDispatcher
    search: HybridSearchEngine

    def watch_daemon(self) -> WatchDaemon:
        return WatchDaemon(
            self.orchestrator,
            dispatcher=self.dispatcher,
            debounce_seconds=self.settings.watch_debounce_seconds,
            retry_interval=self.settings.watch_retry_interval,
            max_retries=self.settings.watch_max_retries,
        )

    def close(self) -> None:
        self.shutdown_event.set()
        self.orchestrator.close()


def _llm_api_key(settings: Any) -> str:
    if settings.llm_provider == "openai":
        return settings.openai_api_key
    if settings.llm_provider == "anthropic":
        return settings.anthropic_api_key
    return ""


def _llm_model(settings: Any) -> Optional[str]:
    return {
        "openai": settings.openai_model,
        "anthropic": settings.anthropic_model,
        "ollama": settings.ollama_model,
    }.get(settings.llm_provider)


def build_analyzers(settings: Any, allow_cloud: bool) -> list[Analyzer]:
    """
    Local analyzers always; model-backed extractors when an LLM is configured.

    A cloud LLM without consent is left out with a warning rather than
    failing startup.
    """
    analyzers: list[Analyzer] = [
        CorrectionDetector(min_confidence=settings.learning_min_confidence),
        WorkflowDetector(),
        DuplicateLearningDetector(threshold=settings.dedupe_similarity_threshold),
    ]

    if settings.llm_provider in ("", "none"):
        return analyzers

    try:
        provider = create_provider(
            settings.llm_provider,
            allow_cloud=allow_cloud,
            api_key=_llm_api_key(settings),
            model=_llm_model(settings),
            base_url=settings.ollama_base_url,
            timeout=settings.http_timeout,
        )
    except ConsentRequiredError as e:
        logger.warning(f"LLM extraction disabled: {e}")
        return analyzers

    logger.info(f"LLM extraction enabled with {provider.provider_name}:{provider.model_name}")
    analyzers.append(LLMLearningExtractor(provider, max_tokens=settings.llm_max_tokens))
    analyzers.append(LLMWorkflowExtractor(provider, max_tokens=settings.llm_max_tokens))
    return analyzers


def build_embedding_provider(settings: Any, allow_cloud: bool) -> Optional[EmbeddingProvider]:
    if not settings.semantic_search_enabled:
        return None
    model = {
        "openai": settings.openai_embedding_model,
        "ollama": settings.ollama_embedding_model,
    }.get(settings.embedding_provider)
    try:
        return create_embedding_provider(
            settings.embedding_provider,
            allow_cloud=allow_cloud,
            api_key=settings.openai_api_key,
            model=model,
            base_url=settings.ollama_base_url,
            timeout=settings.http_timeout,
        )
    except ConsentRequiredError as e:
        logger.warning(f"Semantic search disabled: {e}")
        return None


def build_components(
    settings: Any,
    database_url: Optional[str] = None,
    allow_cloud: Optional[bool] = None,
) -> Components:
    """
    Wire every component from settings.

    Args:
        settings: A Settings instance
        database_url: Overrides settings.database_url
        allow_cloud: Overrides settings.allow_cloud_analysis

    Raises:
        ValueError: On an unknown provider or analysis type
    """
    configure(database_url or settings.database_url)
    init_db()

    consent = settings.allow_cloud_analysis if allow_cloud is None else allow_cloud
    shutdown_event = threading.Event()

    progress = ProgressReporter(
        step_items=settings.sync_progress_step_items,
        step_percent=settings.sync_progress_step_percent,
    )
    indexer = SearchIndexer()
    upsert_engine = UpsertEngine(db_session, indexer)
    orchestrator = SyncOrchestrator(
        build_adapters(settings),
        upsert_engine,
        session_factory=db_session,
        max_retries=settings.sync_max_retries,
        backoff_seconds=settings.sync_backoff_seconds,
        max_workers=settings.sync_max_workers,
        shutdown_event=shutdown_event,
        progress=progress,
    )

    registry = AnalyzerRegistry(build_analyzers(settings, consent))
    lifecycle = LearningLifecycleManager(
        db_session,
        min_confidence=settings.learning_min_confidence,
        workflow_min_confidence=settings.workflow_min_confidence,
    )
    dispatcher = AnalysisDispatcher(
        registry,
        lifecycle,
        session_factory=db_session,
        analysis_types=settings.analysis_types,
        allow_cloud=consent,
        batch_size=settings.analysis_batch_size,
        concurrency=settings.analysis_concurrency,
        max_attempts=settings.analysis_max_attempts,
        poll_interval=settings.analysis_poll_interval,
        stale_timeout_seconds=settings.analysis_stale_timeout_seconds,
        shutdown_event=shutdown_event,
    )
    upsert_engine.add_listener(dispatcher.on_change)

    search = HybridSearchEngine(
        db_session,
        indexer,
        embedding_provider=build_embedding_provider(settings, consent),
        semantic_enabled=settings.semantic_search_enabled,
        fts_weight=settings.search_fts_weight,
        semantic_weight=settings.search_semantic_weight,
        min_semantic_score=settings.search_min_semantic_score,
        max_results=settings.search_max_results,
    )

    logger.debug(
        f"Components ready: {len(orchestrator.adapters)} provider(s), "
        f"{len(registry)} analyzer(s), cloud consent={consent}"
    )
    return Components(
        settings=settings,
        shutdown_event=shutdown_event,
        progress=progress,
        indexer=indexer,
        upsert_engine=upsert_engine,
        orchestrator=orchestrator,
        registry=registry,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        search=search,
    )
