"""
Failure taxonomy for the twin heritability pipeline.

Only ConfigurationError is fatal for a run. The other three are raised for a
single phenotype (or a single model) and are turned into warnings by the
pipeline so the remaining phenotypes still get analysed.
"""

from __future__ import annotations

from typing import Optional


class TwinAnalysisError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(TwinAnalysisError, ValueError):
    """Missing data file, missing structural column or an invalid option."""


class DataQualityError(TwinAnalysisError, ValueError):
    """A phenotype cannot be analysed with the data at hand."""

    def __init__(self, message: str, phenotype: Optional[str] = None):
        super().__init__(message)
        self.phenotype = phenotype


class OptimizationFailure(TwinAnalysisError, RuntimeError):
    """The optimizer raised or never produced a finite objective."""

    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


class ReportingError(TwinAnalysisError, OSError):
    """Writing a log or a results table failed."""
