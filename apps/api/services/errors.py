"""Processing pipeline error taxonomy."""


class ProcessingError(RuntimeError):
    """Base class for failures that abort a processing run."""


class SourceMissing(ProcessingError):
    """Raised when a video's backing file is gone before or during processing."""


class DecodeError(ProcessingError):
    """Raised when the media container cannot be probed or decoded."""


class AnalyzerError(ProcessingError):
    """Raised when a sampled frame cannot be read during analysis."""


class ProcessingTimeout(ProcessingError):
    """Raised when a run exceeds PROCESSING_TIMEOUT_SECONDS."""
