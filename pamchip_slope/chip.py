"""PamChip array types and their fixed layout constants."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class ChipType(str, Enum):
    """Supported PamChip array types."""

    STK = 'STK'  # serine/threonine kinase
    PTK = 'PTK'  # protein tyrosine kinase


@dataclass(frozen=True)
class ChipSpec:
    """Layout constants for one chip type.

    Attributes:
        chip_type: Chip type this spec describes
        n_peptides: Number of reporter peptides printed on the array
        exposure_times: Camera exposure times (ms) recorded by the PamStation
        max_exposure_ms: Exposure used for the end-point signal filter
        reference_peptides: Internal control spots excluded from comparisons
        peptides: Known peptide identifiers of the array layout, when supplied

    """

    chip_type: ChipType
    n_peptides: int
    exposure_times: tuple[int, ...]
    max_exposure_ms: int
    reference_peptides: frozenset[str]
    peptides: frozenset[str] | None = None

    def with_overrides(
        self,
        max_exposure_ms: int | None = None,
        reference_peptides: list[str] | None = None,
        peptides: list[str] | None = None,
    ) -> ChipSpec:
        """Return a copy with run-specific overrides applied.

        Raises:
            ValueError: If max_exposure_ms is not one of the chip's exposure times,
                or more peptides are listed than the chip carries

        """
        changes = {}
        if max_exposure_ms is not None:
            if int(max_exposure_ms) not in self.exposure_times:
                raise ValueError(
                    f"max_exposure_ms {max_exposure_ms} is not a {self.chip_type.value} "
                    f"exposure time {list(self.exposure_times)}"
                )
            changes['max_exposure_ms'] = int(max_exposure_ms)
        if reference_peptides is not None:
            changes['reference_peptides'] = frozenset(reference_peptides)
        if peptides is not None:
            if len(set(peptides)) > self.n_peptides:
                raise ValueError(
                    f"{len(set(peptides))} peptides listed but {self.chip_type.value} chips "
                    f"carry {self.n_peptides}"
                )
            changes['peptides'] = frozenset(peptides)
        return replace(self, **changes) if changes else self


EXPOSURE_TIMES_MS = (10, 20, 50, 100, 200)

CHIP_SPECS: dict[ChipType, ChipSpec] = {
    ChipType.STK: ChipSpec(
        chip_type=ChipType.STK,
        n_peptides=144,
        exposure_times=EXPOSURE_TIMES_MS,
        max_exposure_ms=200,
        reference_peptides=frozenset({'ART_025_CXGGKGRKLT'}),
    ),
    ChipType.PTK: ChipSpec(
        chip_type=ChipType.PTK,
        n_peptides=196,
        exposure_times=EXPOSURE_TIMES_MS,
        max_exposure_ms=200,
        reference_peptides=frozenset({'pVASP_150_164', 'pTY3H_64_78'}),
    ),
}


def chip_spec(chip_type: ChipSpec | ChipType | str) -> ChipSpec:
    """Look up the layout constants for a chip type.

    Args:
        chip_type: ChipSpec (returned as is), ChipType member or its name
            (case-insensitive)

    Returns:
        ChipSpec for the chip type

    Raises:
        ValueError: If the chip type is not STK or PTK

    """
    if isinstance(chip_type, ChipSpec):
        return chip_type
    if isinstance(chip_type, ChipType):
        return CHIP_SPECS[chip_type]
    try:
        return CHIP_SPECS[ChipType(str(chip_type).strip().upper())]
    except ValueError:
        valid = [c.value for c in ChipType]
        raise ValueError(f"Unknown chip type '{chip_type}'. Must be one of: {valid}") from None
