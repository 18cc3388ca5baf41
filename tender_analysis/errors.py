"""
errors.py — Exception taxonomy for the analysis pipeline.

Window-level failures (BackendFailure, MalformedOutput) are absorbed by
the analyzer; invocation-level ones (ConfigurationError, UnsupportedFormat,
ExtractionFailure) reach the caller. KnowledgeBaseUnavailable never
leaves knowledge_base.py.
"""


class TenderAnalysisError(Exception):
    """Base class for everything this package raises on purpose."""


class ConfigurationError(TenderAnalysisError):
    """Invalid windowing or pipeline parameters."""


class UnsupportedFormat(TenderAnalysisError):
    """The text extractor cannot handle this file type."""


class BackendError(TenderAnalysisError):
    """A text-generation backend call failed."""

    def __init__(self, message: str, status_code: int = None, request_id: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.request_id = request_id


class BackendTransientError(BackendError):
    """Rate-limit or 5xx. Worth retrying."""


class BackendFailure(BackendError):
    """Non-retryable error, or the retry budget ran out."""


class MalformedOutput(TenderAnalysisError):
    """Backend output could not be repaired into a record."""


class ExtractionFailure(TenderAnalysisError):
    """Nothing usable came back for the whole document."""


class KnowledgeBaseUnavailable(TenderAnalysisError):
    """Capability knowledge-base missing, unreadable or not valid JSON."""


class PublishError(TenderAnalysisError):
    """The workspace publisher rejected the page."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class QueueFull(TenderAnalysisError):
    """The job queue is at capacity; try again later."""
