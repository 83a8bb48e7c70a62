"""Content analyzers run against every email."""

from mailsift.analyzers.analyzer_set import ANALYZER_CLASSES, AnalyzerSet, build_default_analyzer_set
from mailsift.analyzers.base import AnalyzerConfig, BaseAnalyzer

__all__ = [
    "ANALYZER_CLASSES",
    "AnalyzerConfig",
    "AnalyzerSet",
    "BaseAnalyzer",
    "build_default_analyzer_set",
]
