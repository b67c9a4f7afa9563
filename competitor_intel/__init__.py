"""
Competitor Intelligence Pipeline.

An asynchronous, resumable Search -> Analyze -> Save pipeline that gathers
competitor pricing from web search, analyzes it with an LLM and records
price history and price-drop alerts.
"""

__version__ = "1.0.0"
__author__ = "Competitor Intelligence Team"

# Lazy imports to avoid circular dependencies
def get_scheduler():
    """Get the PipelineScheduler class (lazy import)."""
    from competitor_intel.pipeline.scheduler import PipelineScheduler
    return PipelineScheduler


def get_sync_runner():
    """Get the SyncAnalysisRunner class (lazy import)."""
    from competitor_intel.pipeline.orchestrator import SyncAnalysisRunner
    return SyncAnalysisRunner


__all__ = ["get_scheduler", "get_sync_runner", "__version__"]
