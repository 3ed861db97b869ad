"""Shared fixtures: synthetic PamStation readings and crosstab files."""

from pathlib import Path

import pandas as pd
import pytest

EXPOSURES = [10, 20, 50, 100, 200]


def make_readings(series, exposures=EXPOSURES):
    """Build a tidy reading table.

    Args:
        series: Iterable of (peptide, barcode, array, sample_name, values) where
            values has one signal per exposure time
        exposures: Exposure times matching ``values``

    """
    rows = []
    for peptide, barcode, array, sample_name, values in series:
        for exposure, value in zip(exposures, values):
            rows.append({
                'peptide': peptide,
                'exposure_ms': exposure,
                'barcode': barcode,
                'array': str(array),
                'sample_name': sample_name,
                'signal': float(value),
                'saturated': False,
            })
    return pd.DataFrame(rows)


def linear_values(intercept, slope, exposures=EXPOSURES):
    return [intercept + slope * e for e in exposures]


def write_crosstab(path: Path, readings: pd.DataFrame, value_col: str, sep: str = '\t') -> Path:
    """Write a reading table back out in crosstab layout."""
    samples = readings[['barcode', 'array', 'sample_name']].drop_duplicates()
    keys = list(samples.itertuples(index=False, name=None))
    rows_index = readings[['peptide', 'exposure_ms']].drop_duplicates()

    lookup = {
        (r.peptide, r.exposure_ms, r.barcode, r.array, r.sample_name): getattr(r, value_col)
        for r in readings.itertuples()
    }

    lines = [
        sep.join(['Barcode', ''] + [k[0] for k in keys]),
        sep.join(['Array', ''] + [k[1] for k in keys]),
        sep.join(['Sample name', ''] + [k[2] for k in keys]),
        sep.join(['ID', 'Exposure time'] + [''] * len(keys)),
    ]
    for peptide, exposure in rows_index.itertuples(index=False, name=None):
        cells = []
        for key in keys:
            value = lookup.get((peptide, exposure) + key, '')
            if isinstance(value, bool):
                value = int(value)
            cells.append(str(value))
        lines.append(sep.join([peptide, str(exposure)] + cells))

    path.write_text('\n'.join(lines) + '\n')
    return path


@pytest.fixture
def two_chip_readings():
    """Two groups (KO, WT) on two chips with three peptides.

    PEP_STRONG: KO clearly more active than WT on both chips
    PEP_WEAK: end-point signal below 5 in one sample
    ART_025_CXGGKGRKLT: STK reference peptide, strong and linear
    """
    series = []
    for barcode, offset in [('650001', 0.0), ('650002', 0.05)]:
        series += [
            ('PEP_STRONG', barcode, 1, 'KO', linear_values(2, 0.8 + offset)),
            ('PEP_STRONG', barcode, 2, 'WT', linear_values(2, 0.4 + offset)),
            ('PEP_WEAK', barcode, 1, 'KO', linear_values(0.5, 0.05)),
            ('PEP_WEAK', barcode, 2, 'WT', linear_values(0.5, 0.01)),
            ('ART_025_CXGGKGRKLT', barcode, 1, 'KO', linear_values(5, 1.0)),
            ('ART_025_CXGGKGRKLT', barcode, 2, 'WT', linear_values(5, 1.0)),
        ]
    return make_readings(series)


@pytest.fixture
def crosstab_files(tmp_path, two_chip_readings):
    """Signal and saturation crosstab files for ``two_chip_readings``."""
    signal = write_crosstab(tmp_path / 'signal.txt', two_chip_readings, 'signal')
    saturation = write_crosstab(tmp_path / 'saturation.txt', two_chip_readings, 'saturated')
    return signal, saturation
