from storia.analysis.base import ContentAnalyzer
from storia.analysis.extractor import DescriptorExtractor, Spread, SpreadAnalysis, SpreadOutcome
from storia.analysis.models import AnalysisResponse, Descriptor, Intensity, ModelConfig
from storia.analysis.router import AnalyzerRouter

__all__ = [
    "ContentAnalyzer",
    "DescriptorExtractor",
    "Spread",
    "SpreadAnalysis",
    "SpreadOutcome",
    "AnalysisResponse",
    "Descriptor",
    "Intensity",
    "ModelConfig",
    "AnalyzerRouter",
]
