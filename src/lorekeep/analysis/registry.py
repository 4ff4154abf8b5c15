"""Analyzer lookup by analysis type, with the cloud consent gate."""

import logging
from collections import defaultdict
from typing import Iterable

from lorekeep.analysis.base import Analyzer
from lorekeep.models.db import AnalysisType

logger = logging.getLogger(__name__)


class AnalyzerRegistry:
    """
    Maps each analysis type to the analyzers that serve it.

    Registration order is run order. for_type() is the single place where
    cloud analyzers are filtered out.
    """

    def __init__(self, analyzers: Iterable[Analyzer] = ()):
        self._analyzers: dict[AnalysisType, list[Analyzer]] = defaultdict(list)
        for analyzer in analyzers:
            self.register(analyzer)

    def register(self, analyzer: Analyzer) -> None:
        self._analyzers[AnalysisType(analyzer.analysis_type)].append(analyzer)
        logger.debug(
            f"Registered {analyzer.name} for {AnalysisType(analyzer.analysis_type).value}"
            f"{' (cloud)' if analyzer.requires_cloud else ''}"
        )

    def for_type(self, analysis_type: AnalysisType | str, allow_cloud: bool) -> list[Analyzer]:
        """Analyzers for a type; cloud analyzers only with consent."""
        analyzers = self._analyzers.get(AnalysisType(analysis_type), [])
        if allow_cloud:
            return list(analyzers)
        return [a for a in analyzers if not a.requires_cloud]

    @property
    def types(self) -> list[AnalysisType]:
        return [t for t, analyzers in self._analyzers.items() if analyzers]

    def __len__(self) -> int:
        return sum(len(a) for a in self._analyzers.values())
