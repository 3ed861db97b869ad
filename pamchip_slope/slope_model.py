"""Slope model: signal vs. exposure time regression per peptide and sample.

Each (peptide, sample) series of signal-minus-background against camera
exposure time is fit by ordinary least squares. The slope is the kinase
activity readout; it is reported on a log scale as

    slope_transformed = log2(100 * slope)

which is only defined for positive slopes. A series whose signal does not
increase with exposure has no meaningful activity and is recorded as invalid
instead of receiving a transformed value.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .errors import DegenerateFit

logger = logging.getLogger(__name__)

SLOPE_SCALE = 100.0

FIT_COLUMNS = [
    'peptide', 'sample_id', 'group', 'barcode',
    'slope', 'intercept', 'r2', 'n_points', 'slope_transformed',
]
INVALID_COLUMNS = [
    'peptide', 'sample_id', 'group', 'barcode', 'slope', 'r2', 'reason',
]


@dataclass(frozen=True)
class LinearFit:
    slope: float
    intercept: float
    r2: float
    n: int


@dataclass
class SlopeModelResult:
    """Result of fitting every (peptide, sample) series.

    ``fits`` holds only positive-slope fits and every value in it is finite.
    ``invalid`` holds the series that could not be fit or had slope <= 0.
    """

    fits: pd.DataFrame
    invalid: pd.DataFrame
    method_log: list[str] = field(default_factory=list)

    def drop_counts(self) -> dict[str, int]:
        return self.invalid['reason'].value_counts().to_dict()


def fit_linear(exposure, signal) -> LinearFit:
    """Closed-form ordinary least squares of signal on exposure time.

    Args:
        exposure: Exposure times (ms)
        signal: Signal values, same length

    Returns:
        LinearFit with slope, intercept and coefficient of determination

    Raises:
        DegenerateFit: With fewer than two distinct exposure times

    """
    x = np.asarray(exposure, dtype=float)
    y = np.asarray(signal, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"exposure and signal lengths differ: {x.size} vs {y.size}")

    if np.unique(x).size < 2:
        raise DegenerateFit(f"Need at least 2 distinct exposure times, got {np.unique(x).size}")

    x_mean = x.mean()
    y_mean = y.mean()
    sxx = np.sum((x - x_mean) ** 2)
    if not sxx > 0:
        raise DegenerateFit("Exposure times have zero variance")

    slope = np.sum((x - x_mean) * (y - y_mean)) / sxx
    intercept = y_mean - slope * x_mean

    ss_res = np.sum((y - (intercept + slope * x)) ** 2)
    ss_tot = np.sum((y - y_mean) ** 2)
    # Constant signal: the flat line explains nothing
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return LinearFit(slope=float(slope), intercept=float(intercept), r2=float(r2), n=int(x.size))


def transform_slope(slope: float) -> float:
    """Return log2(100 * slope).

    Raises:
        ValueError: If slope is not positive

    """
    if not slope > 0:
        raise ValueError(f"Slope must be positive to transform, got {slope}")
    return float(np.log2(SLOPE_SCALE * slope))


def _fit_series_frame(series: pd.DataFrame) -> tuple[list[dict], list[dict]]:
    """Fit every (peptide, sample) in a series table. Worker entry point."""
    fits = []
    invalid = []

    for (peptide, sample_id), group in series.groupby(['peptide', 'sample_id'], sort=True):
        base = {
            'peptide': peptide,
            'sample_id': sample_id,
            'group': group['group'].iloc[0],
            'barcode': group['barcode'].iloc[0],
        }
        try:
            fit = fit_linear(group['exposure_ms'].to_numpy(), group['signal'].to_numpy())
        except DegenerateFit as e:
            logger.debug(f"{peptide}/{sample_id}: {e}")
            invalid.append({**base, 'slope': np.nan, 'r2': np.nan, 'reason': 'degenerate_fit'})
            continue

        if fit.slope <= 0:
            invalid.append({
                **base, 'slope': fit.slope, 'r2': fit.r2, 'reason': 'non_positive_slope',
            })
            continue

        fits.append({
            **base,
            'slope': fit.slope,
            'intercept': fit.intercept,
            'r2': fit.r2,
            'n_points': fit.n,
            'slope_transformed': transform_slope(fit.slope),
        })

    return fits, invalid


def _partition_by_peptide(series: pd.DataFrame, n_parts: int) -> list[pd.DataFrame]:
    peptides = np.array(sorted(series['peptide'].unique()))
    chunks = [c for c in np.array_split(peptides, n_parts) if len(c)]
    return [series[series['peptide'].isin(chunk)] for chunk in chunks]


def fit_slopes(series: pd.DataFrame, n_workers: int = 1) -> SlopeModelResult:
    """Fit signal vs. exposure time for every (peptide, sample).

    Args:
        series: Full exposure series from ``extract_endpoints``
        n_workers: Worker processes; peptides are partitioned across them

    Returns:
        SlopeModelResult with valid fits and the invalid series

    """
    if n_workers > 1 and series['peptide'].nunique() > 1:
        parts = _partition_by_peptide(series, n_workers)
        logger.info(f"Fitting slopes with {len(parts)} parallel workers")
        fit_rows, invalid_rows = [], []
        with ProcessPoolExecutor(max_workers=len(parts)) as executor:
            for part_fits, part_invalid in executor.map(_fit_series_frame, parts):
                fit_rows.extend(part_fits)
                invalid_rows.extend(part_invalid)
    else:
        fit_rows, invalid_rows = _fit_series_frame(series)

    fits = pd.DataFrame(fit_rows, columns=FIT_COLUMNS)
    fits = fits.sort_values(['peptide', 'sample_id'], kind='mergesort').reset_index(drop=True)
    fits['n_points'] = fits['n_points'].astype(int)

    invalid = pd.DataFrame(invalid_rows, columns=INVALID_COLUMNS)
    invalid = invalid.sort_values(['peptide', 'sample_id'], kind='mergesort').reset_index(drop=True)

    counts = invalid['reason'].value_counts()
    method_log = [
        f"Fit {len(fits) + len(invalid)} exposure series: {len(fits)} valid, "
        f"{counts.get('non_positive_slope', 0)} non-positive slopes, "
        f"{counts.get('degenerate_fit', 0)} degenerate"
    ]
    for step in method_log:
        logger.info(step)

    return SlopeModelResult(fits=fits, invalid=invalid, method_log=method_log)
