"""SubWatch - Detect recurring subscriptions from billing receipt emails"""

from __future__ import annotations

__version__ = "0.3.0"


# Lazy imports so lightweight modules load without the provider SDKs
def __getattr__(name: str):
    """
    Lazy imports to avoid loading heavy dependencies when only importing lightweight modules.
    """
    if name == "Pipeline":
        from subwatch.pipeline import Pipeline

        return Pipeline

    if name == "SignalExtractor":
        from subwatch.detection.signals import SignalExtractor

        return SignalExtractor

    if name == "ExtractionRouter":
        from subwatch.detection.extraction_router import ExtractionRouter

        return ExtractionRouter

    if name == "CandidateEngine":
        from subwatch.detection.candidate_engine import CandidateEngine

        return CandidateEngine

    if name == "Governor":
        from subwatch.detection.governor import Governor

        return Governor

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "CandidateEngine",
    "ExtractionRouter",
    "Governor",
    "Pipeline",
    "SignalExtractor",
]
