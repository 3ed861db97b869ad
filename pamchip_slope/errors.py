"""Exception types raised by the slope pipeline.

Structural problems (``SchemaMismatch``, ``UnknownGroup``) abort a run.
Per-peptide problems (``MissingExposure``, ``DegenerateFit``) are caught by the
stage that raises them and the affected peptide/sample is dropped and recorded.
``UnpairedChip`` skips one chip of a comparison, and propagates only when no
chip pair is left.
"""

from __future__ import annotations


class PamChipError(Exception):
    """Base class for pipeline errors."""


class SchemaMismatch(PamChipError, ValueError):
    """Input crosstab files are malformed or disagree with each other."""


class UnknownGroup(PamChipError, ValueError):
    """One or more samples could not be assigned to a group."""

    def __init__(self, samples: list[str], message: str | None = None):
        self.samples = list(samples)
        if message is None:
            message = f"Could not assign a group to samples: {self.samples}"
        super().__init__(message)


class MissingExposure(PamChipError):
    """A peptide/sample series lacks the chip's maximum exposure time."""

    def __init__(self, peptide: str, sample_id: str, exposure_ms: int):
        self.peptide = peptide
        self.sample_id = sample_id
        self.exposure_ms = exposure_ms
        super().__init__(
            f"No {exposure_ms} ms reading for peptide '{peptide}' in sample '{sample_id}'"
        )


class DegenerateFit(PamChipError):
    """A regression cannot be fit (too few distinct exposure times)."""


class UnpairedChip(PamChipError):
    """A chip does not carry both groups of a comparison."""

    def __init__(self, message: str, barcodes: list[str] | None = None):
        self.barcodes = list(barcodes or [])
        super().__init__(message)
