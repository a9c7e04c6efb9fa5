"""
Error taxonomy for the context pipeline.

EmbeddingFailure and SearchUnavailable are transient dependency failures;
the orchestrator converts them into fallback context. ConfigurationInvalid
is only raised at construction time.
"""

from __future__ import annotations

from typing import List


class PipelineError(Exception):
    """Base exception for context pipeline errors."""

    pass


class EmbeddingFailure(PipelineError):
    """Embedding provider unreachable or returned a malformed vector."""

    pass


class SearchUnavailable(PipelineError):
    """Vector index transport or query error. Distinct from zero results."""

    pass


class ContextUnavailable(PipelineError):
    """No usable context could be produced and fallback is disabled."""

    pass


class ConfigurationInvalid(PipelineError):
    """Raised when a pipeline is built from an inconsistent configuration."""

    def __init__(self, issues: List[str]) -> None:
        self.issues = list(issues)
        super().__init__("Invalid pipeline configuration: " + "; ".join(self.issues))
