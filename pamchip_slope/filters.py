"""Peptide filters applied chip-wide.

A peptide is only kept when it passes in every sample under consideration:
one weak sample excludes the peptide for all of them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import pandas as pd

from .chip import ChipType, chip_spec

logger = logging.getLogger(__name__)

DEFAULT_MIN_SIGNAL = 5.0
DEFAULT_MIN_R2 = 0.8


@dataclass
class PeptideFilterResult:
    """Surviving peptides plus the reason each removed peptide was dropped."""

    kept: list[str]
    dropped: pd.DataFrame  # columns: stage, peptide, sample_id, reason
    method_log: list[str] = field(default_factory=list)

    @property
    def n_dropped(self) -> int:
        return self.dropped['peptide'].nunique()


def _restrict(df: pd.DataFrame, samples: Iterable[str] | None) -> pd.DataFrame:
    if samples is None:
        return df
    return df[df['sample_id'].isin(set(samples))]


def _dropped_frame(stage: str, rows: list[dict]) -> pd.DataFrame:
    dropped = pd.DataFrame(rows, columns=['peptide', 'sample_id', 'reason'])
    dropped.insert(0, 'stage', stage)
    return dropped


def filter_low_signal(
    max_exposure: pd.DataFrame,
    threshold: float = DEFAULT_MIN_SIGNAL,
    samples: Iterable[str] | None = None,
) -> PeptideFilterResult:
    """Keep peptides whose max-exposure signal is >= threshold in all samples.

    A peptide without an end point in one of the considered samples cannot
    pass there and is dropped as well.

    Args:
        max_exposure: End-point table from ``extract_endpoints``
        threshold: Minimum max-exposure signal (inclusive)
        samples: Restrict the check to these sample_ids (default: all in the table)

    Returns:
        PeptideFilterResult; the input table is not modified

    """
    considered = _restrict(max_exposure, samples)
    sample_set = set(samples) if samples is not None else set(max_exposure['sample_id'])
    weak = considered[considered['signal'] < threshold]

    rows = [
        {'peptide': r.peptide, 'sample_id': r.sample_id, 'reason': 'low_signal'}
        for r in weak.itertuples()
    ]

    present = considered.groupby('peptide')['sample_id'].apply(set)
    incomplete = set()
    for peptide, seen in present.items():
        missing = sample_set - seen
        if missing:
            incomplete.add(peptide)
            rows.extend(
                {'peptide': peptide, 'sample_id': s, 'reason': 'missing_endpoint'}
                for s in sorted(missing)
            )

    weak_peptides = set(weak['peptide'])
    kept = sorted(set(considered['peptide']) - weak_peptides - incomplete)

    method_log = [
        f"Signal filter (max-exposure signal >= {threshold}): kept {len(kept)} peptides, "
        f"dropped {len(weak_peptides)} for low signal, "
        f"{len(incomplete - weak_peptides)} lacking an end point"
    ]
    logger.info(method_log[0])

    return PeptideFilterResult(kept=kept, dropped=_dropped_frame('signal_filter', rows),
                               method_log=method_log)


def filter_nonlinear(
    fits: pd.DataFrame,
    r2_threshold: float = DEFAULT_MIN_R2,
    samples: Iterable[str] | None = None,
    peptides: Iterable[str] | None = None,
) -> PeptideFilterResult:
    """Keep peptides whose fit R² is >= threshold in all samples.

    A peptide without a valid fit in one of the considered samples (its series
    went to ``SlopeModelResult.invalid``) is dropped as well.

    Args:
        fits: Valid fits from ``fit_slopes``
        r2_threshold: Minimum R² (inclusive)
        samples: Restrict the check to these sample_ids (default: all in fits)
        peptides: Candidate peptides (default: all in fits)

    Returns:
        PeptideFilterResult

    """
    considered = _restrict(fits, samples)
    if peptides is not None:
        candidates = set(peptides)
        considered = considered[considered['peptide'].isin(candidates)]
    else:
        candidates = set(considered['peptide'])

    sample_set = set(samples) if samples is not None else set(fits['sample_id'])

    rows = []
    poor = considered[considered['r2'] < r2_threshold]
    rows.extend(
        {'peptide': r.peptide, 'sample_id': r.sample_id, 'reason': 'low_r2'}
        for r in poor.itertuples()
    )

    # Peptides that are not fit in every considered sample
    present = considered.groupby('peptide')['sample_id'].apply(set)
    incomplete = set()
    for peptide in candidates:
        missing = sample_set - present.get(peptide, set())
        if missing:
            incomplete.add(peptide)
            rows.extend(
                {'peptide': peptide, 'sample_id': s, 'reason': 'invalid_fit'}
                for s in sorted(missing)
            )

    removed = set(poor['peptide']) | incomplete
    kept = sorted(candidates - removed)

    method_log = [
        f"Fit filter (R² >= {r2_threshold}): kept {len(kept)} peptides, "
        f"dropped {len(set(poor['peptide']))} for low R², "
        f"{len(incomplete - set(poor['peptide']))} lacking a valid fit"
    ]
    logger.info(method_log[0])

    return PeptideFilterResult(kept=kept, dropped=_dropped_frame('fit_filter', rows),
                               method_log=method_log)


def filter_reference_peptides(
    peptides: Iterable[str],
    chip_type: ChipType | str,
    reference_peptides: Iterable[str] | None = None,
) -> PeptideFilterResult:
    """Remove the chip's internal reference/control peptides.

    Args:
        peptides: Candidate peptides
        chip_type: Chip type of the run
        reference_peptides: Override for the chip's reference set

    Returns:
        PeptideFilterResult

    """
    reference = (
        set(reference_peptides) if reference_peptides is not None
        else set(chip_spec(chip_type).reference_peptides)
    )
    peptides = list(peptides)
    removed = [p for p in peptides if p in reference]
    kept = [p for p in peptides if p not in reference]

    rows = [{'peptide': p, 'sample_id': None, 'reason': 'reference_peptide'} for p in removed]
    method_log = [f"Removed {len(removed)} reference peptides: {sorted(removed)}"]
    logger.info(method_log[0])

    return PeptideFilterResult(kept=kept, dropped=_dropped_frame('reference_filter', rows),
                               method_log=method_log)
