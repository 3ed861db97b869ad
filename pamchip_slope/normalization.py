"""Normalization of transformed slopes across chips and groups.

Three views are produced from the same surviving peptide set:

- scaled: log2(100 * slope) as fit, keyed by (peptide, sample_id)
- normalized: scaled values centered per chip (barcode), removing chip-to-chip
  technical offsets while keeping relative peptide signal within a chip
- grouped: mean of the scaled values per (peptide, group)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import pandas as pd

logger = logging.getLogger(__name__)

VALUE_COL = 'slope_transformed'
NORMALIZATION_METHODS = ('median', 'mean')


@dataclass
class NormalizationResult:
    """Scaled, chip-normalized and group-mean views of the transformed slopes."""

    scaled: pd.DataFrame
    normalized: pd.DataFrame
    grouped: pd.DataFrame
    chip_factors: pd.Series  # barcode -> value subtracted from that chip
    method_log: list[str] = field(default_factory=list)

    @property
    def peptides(self) -> list[str]:
        return sorted(self.scaled['peptide'].unique())


def to_wide(view: pd.DataFrame, columns: str | None = None) -> pd.DataFrame:
    """Pivot a long view to a peptide x sample (or group) matrix.

    Args:
        view: One of the NormalizationResult views
        columns: Column to spread (default: 'group' when no sample_id column)

    Returns:
        Wide DataFrame indexed by peptide

    """
    if columns is None:
        columns = 'sample_id' if 'sample_id' in view.columns else 'group'
    return view.pivot(index='peptide', columns=columns, values=VALUE_COL).sort_index()


def chip_center(
    scaled: pd.DataFrame,
    method: str = 'median',
) -> tuple[pd.DataFrame, pd.Series]:
    """Subtract each chip's median (or mean) transformed slope.

    The center is taken over every surviving peptide and every sample on the
    chip, so all peptides on one barcode share a normalization factor.

    Returns:
        Tuple of (normalized long table, per-barcode factors)

    """
    if method not in NORMALIZATION_METHODS:
        raise ValueError(
            f"Unknown normalization method '{method}'. Must be one of: {NORMALIZATION_METHODS}"
        )

    factors = scaled.groupby('barcode')[VALUE_COL].agg(method)
    normalized = scaled.copy()
    normalized[VALUE_COL] = scaled[VALUE_COL] - scaled['barcode'].map(factors)
    return normalized, factors


def group_means(scaled: pd.DataFrame) -> pd.DataFrame:
    """Mean transformed slope per (peptide, group) with replicate counts."""
    grouped = (
        scaled.groupby(['peptide', 'group'], sort=True)[VALUE_COL]
        .agg(['mean', 'count'])
        .reset_index()
        .rename(columns={'mean': VALUE_COL, 'count': 'n_samples'})
    )
    grouped['n_samples'] = grouped['n_samples'].astype(int)
    return grouped


def normalize_slopes(
    fits: pd.DataFrame,
    peptides: Iterable[str],
    method: str = 'median',
) -> NormalizationResult:
    """Build the scaled, normalized and grouped views.

    Args:
        fits: Valid fits from ``fit_slopes``
        peptides: Surviving peptides after the signal, fit and reference filters
        method: Chip centering statistic, 'median' or 'mean'

    Returns:
        NormalizationResult

    """
    keep = set(peptides)
    scaled = fits.loc[
        fits['peptide'].isin(keep),
        ['peptide', 'sample_id', 'group', 'barcode', VALUE_COL],
    ].sort_values(['peptide', 'sample_id'], kind='mergesort').reset_index(drop=True)

    missing = keep - set(scaled['peptide'])
    if missing:
        logger.warning(f"{len(missing)} surviving peptides have no fits: {sorted(missing)[:5]}")

    normalized, factors = chip_center(scaled, method=method)
    grouped = group_means(scaled)

    method_log = [
        f"Normalization: {scaled['peptide'].nunique()} peptides x "
        f"{scaled['sample_id'].nunique()} samples, chip {method} centering over "
        f"{len(factors)} barcodes, {grouped['group'].nunique()} group means"
    ]
    logger.info(method_log[0])

    return NormalizationResult(
        scaled=scaled,
        normalized=normalized,
        grouped=grouped,
        chip_factors=factors,
        method_log=method_log,
    )
