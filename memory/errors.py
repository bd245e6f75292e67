from __future__ import annotations


class MemoryEngineError(Exception):
    """Base class for every error raised by the memory engine."""


class ModelCallError(MemoryEngineError):
    """A single model call did not produce a usable result. Retryable."""


class TransientModelFailure(ModelCallError):
    """Network, timeout, rate-limit or provider-side failure."""


class MalformedOutput(ModelCallError):
    """The model answered, but not in the expected shape."""


class OperationFailed(MemoryEngineError):
    """Terminal failure of one operation after its retry budget was spent."""


class ChapterIndexError(MemoryEngineError):
    """Contract violation against the chapter index. Never retried."""


class NotFound(ChapterIndexError):
    pass


class InvalidRange(ChapterIndexError):
    pass


class OutOfSequence(ChapterIndexError):
    pass
