"""End-point extraction: max-exposure signal and full exposure series."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pandas as pd

from .chip import ChipType, chip_spec
from .errors import MissingExposure
from .quality import DROPPED_COLUMNS

logger = logging.getLogger(__name__)

KEY_COLUMNS = ['peptide', 'sample_id']
SAMPLE_COLUMNS = ['group', 'barcode']


@dataclass
class EndpointResult:
    """Per (peptide, sample) views of the exposure series.

    ``max_exposure`` has one row per (peptide, sample_id) with the signal at
    the chip's maximum exposure time. ``series`` has every exposure for the
    same (peptide, sample_id) pairs, ordered by exposure time.
    """

    max_exposure: pd.DataFrame
    series: pd.DataFrame
    max_exposure_ms: int
    dropped: pd.DataFrame
    method_log: list[str] = field(default_factory=list)


def require_endpoint(group: pd.DataFrame, max_exposure_ms: int) -> pd.Series:
    """Return the max-exposure reading of one (peptide, sample) series.

    Raises:
        MissingExposure: If the series has no reading at ``max_exposure_ms``

    """
    rows = group[group['exposure_ms'] == max_exposure_ms]
    if rows.empty:
        first = group.iloc[0]
        raise MissingExposure(first['peptide'], first['sample_id'], max_exposure_ms)
    return rows.iloc[0]


def extract_endpoints(
    data: pd.DataFrame,
    chip_type: ChipType | str,
    max_exposure_ms: int | None = None,
) -> EndpointResult:
    """Split QC'd readings into the max-exposure view and the full series.

    A (peptide, sample) without a reading at the max exposure time is left out
    of both views and recorded in ``dropped``.

    Args:
        data: Reading table after ``apply_qc_steps``
        chip_type: Chip type of the run
        max_exposure_ms: Override for the chip's max exposure time

    Returns:
        EndpointResult

    Raises:
        ValueError: If max_exposure_ms is not one of the chip's exposure times

    """
    spec = chip_spec(chip_type).with_overrides(max_exposure_ms=max_exposure_ms)
    max_exposure_ms = spec.max_exposure_ms

    series = data.sort_values(KEY_COLUMNS + ['exposure_ms'], kind='mergesort')

    endpoints = []
    missing = []
    for (peptide, sample_id), group in series.groupby(KEY_COLUMNS, sort=True):
        try:
            row = require_endpoint(group, max_exposure_ms)
        except MissingExposure as e:
            logger.debug(str(e))
            missing.append((peptide, sample_id))
            continue
        endpoints.append({
            'peptide': peptide,
            'sample_id': sample_id,
            'group': row['group'],
            'barcode': row['barcode'],
            'signal': float(row['signal']),
        })

    max_exposure = pd.DataFrame(
        endpoints, columns=KEY_COLUMNS + SAMPLE_COLUMNS + ['signal']
    )

    dropped = pd.DataFrame(missing, columns=KEY_COLUMNS)
    dropped.insert(0, 'stage', 'endpoint')
    dropped['exposure_ms'] = max_exposure_ms
    dropped['reason'] = 'missing_exposure'
    dropped = dropped[DROPPED_COLUMNS]

    if missing:
        missing_idx = pd.MultiIndex.from_tuples(missing, names=KEY_COLUMNS)
        keep = ~series.set_index(KEY_COLUMNS).index.isin(missing_idx)
        series = series.loc[keep]

    series = series[
        KEY_COLUMNS + SAMPLE_COLUMNS + ['exposure_ms', 'signal']
    ].reset_index(drop=True)

    method_log = [
        f"Extracted {len(max_exposure)} end points at {max_exposure_ms} ms "
        f"({len(missing)} peptide/sample series missing that exposure)"
    ]
    for step in method_log:
        logger.info(step)

    return EndpointResult(
        max_exposure=max_exposure,
        series=series,
        max_exposure_ms=max_exposure_ms,
        dropped=dropped,
        method_log=method_log,
    )
