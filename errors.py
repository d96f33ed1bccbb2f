from __future__ import annotations
from typing import Any, Dict, Optional


class WorkerError(Exception):
    """Base class for everything the worker raises on purpose."""


class AdmissionRejection(WorkerError):
    """Worker refuses new work right now; the caller should retry later."""

    def __init__(self, message: str, stage: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stage = stage
        self.details = details or {}

    def to_json(self) -> Dict[str, Any]:
        return {'error': str(self), 'stage': self.stage, **self.details}


class ValidationError(WorkerError):
    """Missing or malformed tradeData. Not worth retrying."""


class ResolutionFailure(WorkerError):
    """An external collaborator returned nothing usable."""


class PipelineFailure(WorkerError):
    """Rendering aborted."""


class ResourceBreach(WorkerError):
    """Memory went over the limit. Used as the reason of a scheduled restart."""

    def __init__(self, message: str, ram_mb: int, limit_mb: int):
        super().__init__(message)
        self.ram_mb = ram_mb
        self.limit_mb = limit_mb
