"""End-to-end slope pipeline.

Stages:
1. Read signal and saturation crosstabs
2. Quality gate (negative signal, saturation, grouping)
3. End-point extraction
4. Low-signal filter
5. Slope model
6. Fit filter, then reference peptide removal
7. Normalization (scaled, chip-normalized, group means)
8. Group comparisons
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from .chip import chip_spec
from .comparison import Comparison, ComparisonResult, run_comparisons
from .data_io import load_pamstation_crosstabs
from .endpoints import extract_endpoints
from .filters import filter_low_signal, filter_nonlinear, filter_reference_peptides
from .normalization import NormalizationResult, normalize_slopes
from .quality import DROPPED_COLUMNS, GroupingRule, apply_qc_steps
from .slope_model import fit_slopes

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Results from the full slope pipeline."""

    readings: pd.DataFrame
    samples: pd.DataFrame
    max_exposure: pd.DataFrame
    fits: pd.DataFrame
    invalid_fits: pd.DataFrame
    peptides: list[str]
    normalization: NormalizationResult
    comparisons: dict[str, ComparisonResult]
    failed_comparisons: dict[str, str]
    dropped: pd.DataFrame
    method_log: list[str] = field(default_factory=list)

    def drop_summary(self) -> pd.DataFrame:
        """Number of distinct peptides and records dropped per stage and reason."""
        if self.dropped.empty:
            return pd.DataFrame(columns=['stage', 'reason', 'n_peptides', 'n_records'])
        return (
            self.dropped.groupby(['stage', 'reason'], sort=False)
            .agg(n_peptides=('peptide', 'nunique'), n_records=('peptide', 'size'))
            .reset_index()
        )


def _invalid_as_dropped(invalid: pd.DataFrame) -> pd.DataFrame:
    dropped = invalid[['peptide', 'sample_id', 'reason']].copy()
    dropped.insert(0, 'stage', 'slope_model')
    dropped['exposure_ms'] = pd.NA
    return dropped[DROPPED_COLUMNS]


def run_pipeline(
    signal_path: Path,
    saturation_path: Path,
    config: dict,
    comparisons: list | None = None,
) -> PipelineResult:
    """Run every stage from crosstab files to comparison tables.

    Args:
        signal_path: Signal crosstab export
        saturation_path: Saturation crosstab export
        config: Configuration dict (see ``cli.load_config``)
        comparisons: Comparisons to run; defaults to config['comparisons']['pairs']

    Returns:
        PipelineResult

    """
    method_log = []

    chip_cfg = config.get('chip', {})
    spec = chip_spec(chip_cfg.get('type', 'STK')).with_overrides(
        max_exposure_ms=chip_cfg.get('max_exposure_ms'),
        reference_peptides=chip_cfg.get('reference_peptides'),
        peptides=chip_cfg.get('peptides'),
    )
    quality_cfg = config.get('quality', {})
    filter_cfg = config.get('filters', {})
    min_signal = float(filter_cfg.get('min_signal', 5.0))
    min_r2 = float(filter_cfg.get('min_r2', 0.8))
    n_workers = int(config.get('processing', {}).get('n_workers', 1))

    # =========================================================================
    # Stage 1-2: Read and quality gate
    # =========================================================================
    readings = load_pamstation_crosstabs(signal_path, saturation_path, spec)
    method_log.append(
        f"Loaded {spec.chip_type.value} crosstabs: {Path(signal_path).name}, "
        f"{Path(saturation_path).name} ({len(readings)} readings)"
    )

    qc = apply_qc_steps(
        readings,
        spec.chip_type,
        grouping=GroupingRule.from_config(config.get('grouping')),
        negative_policy=quality_cfg.get('negative_signal', 'clip'),
        saturation_policy=quality_cfg.get('saturation', 'exclude'),
    )
    method_log.extend(qc.method_log)
    all_samples = qc.samples['sample_id'].tolist()

    # =========================================================================
    # Stage 3-4: End points and low-signal filter
    # =========================================================================
    endpoints = extract_endpoints(qc.data, spec.chip_type, max_exposure_ms=spec.max_exposure_ms)
    method_log.extend(endpoints.method_log)

    signal_filter = filter_low_signal(endpoints.max_exposure, min_signal, samples=all_samples)
    method_log.extend(signal_filter.method_log)

    # =========================================================================
    # Stage 5-6: Slope model and fit filters
    # =========================================================================
    slopes = fit_slopes(endpoints.series, n_workers=n_workers)
    method_log.extend(slopes.method_log)

    fit_filter = filter_nonlinear(
        slopes.fits, min_r2, samples=all_samples, peptides=signal_filter.kept,
    )
    method_log.extend(fit_filter.method_log)

    reference_filter = filter_reference_peptides(
        fit_filter.kept, spec.chip_type, reference_peptides=spec.reference_peptides,
    )
    method_log.extend(reference_filter.method_log)
    peptides = reference_filter.kept

    # =========================================================================
    # Stage 7: Normalization
    # =========================================================================
    normalization = normalize_slopes(
        slopes.fits, peptides, method=config.get('normalization', {}).get('method', 'median'),
    )
    method_log.extend(normalization.method_log)

    # =========================================================================
    # Stage 8: Comparisons
    # =========================================================================
    comparison_cfg = config.get('comparisons', {})
    if comparisons is None:
        comparisons = comparison_cfg.get('pairs') or []
    comparisons = [Comparison.parse(c) for c in comparisons]

    results, failures = run_comparisons(
        slopes.fits,
        endpoints.max_exposure,
        comparisons,
        lfc_cutoffs=comparison_cfg.get('lfc_cutoffs', [0.2, 0.3, 0.4]),
        min_signal=min_signal,
        min_r2=min_r2,
        reference_peptides=spec.reference_peptides,
        n_workers=n_workers,
    )
    for result in results.values():
        method_log.extend(result.method_log)
    for name, message in failures.items():
        method_log.append(f"Comparison {name} FAILED: {message}")

    dropped = pd.concat(
        [
            qc.dropped,
            endpoints.dropped,
            signal_filter.dropped.assign(exposure_ms=pd.NA)[DROPPED_COLUMNS],
            _invalid_as_dropped(slopes.invalid),
            fit_filter.dropped.assign(exposure_ms=pd.NA)[DROPPED_COLUMNS],
            reference_filter.dropped.assign(exposure_ms=pd.NA)[DROPPED_COLUMNS],
        ],
        ignore_index=True,
    )

    return PipelineResult(
        readings=qc.data,
        samples=qc.samples,
        max_exposure=endpoints.max_exposure,
        fits=slopes.fits,
        invalid_fits=slopes.invalid,
        peptides=peptides,
        normalization=normalization,
        comparisons=results,
        failed_comparisons=failures,
        dropped=dropped,
        method_log=method_log,
    )
