"""
Exceptions raised by the sepsis cohort pipeline.

All of them are fatal for the step that raises them; nothing in the pipeline
retries or falls back.
"""


class SepsisCohortError(Exception):
    """Base class for pipeline errors."""


class SourceUnavailableError(SepsisCohortError):
    """The database could not be opened or rejected a query."""


class CacheMissingError(SepsisCohortError):
    """A cached table was requested but nothing is stored under its key."""


class CacheCorruptError(SepsisCohortError):
    """A cached blob could not be deserialized into a raw event table."""


class SampleSizeExceedsPopulationError(SepsisCohortError):
    """The requested cohort is larger than the subject population."""

    def __init__(self, size: int, population: int):
        super().__init__(f"Cannot sample {size} subjects from a population of {population}")
        self.size = size
        self.population = population


class UnknownEventTableError(SepsisCohortError, ValueError):
    """Event table name is not one the extractor knows how to query."""
