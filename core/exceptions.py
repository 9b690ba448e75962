"""
Scan engine exceptions.

Only InputTooLargeError is ever surfaced to callers of the engine; the other
errors are raised inside analyzers and cache backends and degraded to soft
failures by the engine and the result cache.
"""

__all__ = [
    "ScanEngineError",
    "InputTooLargeError",
    "AnalyzerError",
    "CacheUnavailableError",
]


class ScanEngineError(Exception):
    """Base exception for all scan engine errors"""
    pass


class InputTooLargeError(ScanEngineError):
    """Raised when submitted source exceeds the configured size cap"""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Source too large: {size} bytes exceeds limit of {limit} bytes")


class AnalyzerError(ScanEngineError):
    """Raised when an analyzer strategy fails"""

    def __init__(self, analyzer: str, message: str):
        self.analyzer = analyzer
        super().__init__(f"{analyzer} analysis failed: {message}")


class CacheUnavailableError(ScanEngineError):
    """Raised by cache backends when the store cannot be read or written"""
    pass
