"""Exceptions raised by the pipeline store and repositories."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class PipelineLoadError(PipelineError):
    """Raised when the initial stage or deal fetch fails."""


class DealNotFoundError(PipelineError, LookupError):
    """Raised when a deal id does not exist in the remote store."""

    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


class InvalidStageError(PipelineError, ValueError):
    """Raised when a deal would reference a stage that is not in the catalog."""

    def __init__(self, stage_id: str) -> None:
        self.stage_id = stage_id
        super().__init__(f"Unknown pipeline stage: {stage_id}")
