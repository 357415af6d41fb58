"""Exception types raised by studygraph."""


class StudyGraphError(Exception):
    """Base exception for all studygraph errors."""


class ConfigError(StudyGraphError):
    """Raised when a configuration file is missing or invalid."""


class IngestionError(StudyGraphError):
    """Raised when a document yields nothing worth indexing."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Ingestion failed for '{source}': {reason}")


class GraphBuildError(StudyGraphError):
    """Raised when a concept graph cannot be built at all."""
