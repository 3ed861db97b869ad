"""
Validation module for assessing chip normalization quality.

Compares the scaled and chip-normalized views:
- Chip effect: share of peptide-centered variance explained by barcode,
  which normalization should reduce
- Within-group spread: replicate SD within each group
- Group separation: distance between group centroids in PCA space, which
  normalization should not collapse
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import List

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

logger = logging.getLogger(__name__)

VALUE_COL = 'slope_transformed'


@dataclass
class NormalizationMetrics:
    """Metrics for assessing chip normalization."""

    chip_effect_before: float
    chip_effect_after: float
    within_group_sd_before: float
    within_group_sd_after: float
    pca_group_distance_before: float
    pca_group_distance_after: float
    pca_distance_ratio: float  # after / before (should be ~1, not << 1)

    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """Check if validation passed basic criteria."""
        chip_ok = self.chip_effect_after <= self.chip_effect_before + 1e-9
        separation_ok = np.isnan(self.pca_distance_ratio) or self.pca_distance_ratio > 0.5
        return bool(chip_ok and separation_ok)

    def to_dict(self) -> dict:
        return {
            'chip_effect_before': self.chip_effect_before,
            'chip_effect_after': self.chip_effect_after,
            'within_group_sd_before': self.within_group_sd_before,
            'within_group_sd_after': self.within_group_sd_after,
            'pca_group_distance_before': self.pca_group_distance_before,
            'pca_group_distance_after': self.pca_group_distance_after,
            'pca_distance_ratio': self.pca_distance_ratio,
            'passed': self.passed,
            'warnings': list(self.warnings),
        }


def calculate_chip_effect(view: pd.DataFrame) -> float:
    """
    Fraction of peptide-centered variance explained by chip (barcode).

    Args:
        view: Long table with peptide, barcode and slope_transformed columns

    Returns:
        Value in [0, 1]; 0 when there is no residual variance
    """
    centered = view[VALUE_COL] - view.groupby('peptide')[VALUE_COL].transform('mean')
    total = float(np.var(centered))
    if total <= 0:
        return 0.0
    between = centered.groupby(view['barcode']).transform('mean')
    return float(np.var(between) / total)


def calculate_within_group_sd(view: pd.DataFrame) -> float:
    """Median replicate SD across (peptide, group) cells with >= 2 samples."""
    sd = view.groupby(['peptide', 'group'])[VALUE_COL].std(ddof=1).dropna()
    return float(sd.median()) if len(sd) else np.nan


def calculate_pca_group_distance(view: pd.DataFrame, n_components: int = 2) -> float:
    """
    Mean pairwise distance between group centroids in PCA space.

    Args:
        view: Long table with peptide, sample_id, group and slope_transformed
        n_components: Number of PCA components

    Returns:
        Mean Euclidean distance between group centroids, NaN if undefined
    """
    matrix = view.pivot(index='sample_id', columns='peptide', values=VALUE_COL)
    matrix = matrix.dropna(axis=1)
    groups = view.drop_duplicates('sample_id').set_index('sample_id')['group'].reindex(matrix.index)

    n_components = min(n_components, matrix.shape[0], matrix.shape[1])
    if groups.nunique() < 2 or n_components < 1:
        logger.warning("Too few groups, samples or peptides for PCA")
        return np.nan

    pca = PCA(n_components=n_components)
    scores = pd.DataFrame(pca.fit_transform(matrix.values), index=matrix.index)
    centroids = scores.groupby(groups).mean()

    distances = [
        np.sqrt(((centroids.loc[a] - centroids.loc[b]) ** 2).sum())
        for a, b in combinations(centroids.index, 2)
    ]
    return float(np.mean(distances))


def validate_normalization(
    scaled: pd.DataFrame,
    normalized: pd.DataFrame,
) -> NormalizationMetrics:
    """
    Assess whether chip normalization reduced chip effects without
    collapsing group differences.

    Args:
        scaled: Scaled view from ``normalize_slopes``
        normalized: Normalized view from ``normalize_slopes``

    Returns:
        NormalizationMetrics with assessment results
    """
    logger.info("Validating chip normalization")

    warnings = []

    chip_before = calculate_chip_effect(scaled)
    chip_after = calculate_chip_effect(normalized)
    sd_before = calculate_within_group_sd(scaled)
    sd_after = calculate_within_group_sd(normalized)
    pca_before = calculate_pca_group_distance(scaled)
    pca_after = calculate_pca_group_distance(normalized)

    pca_ratio = pca_after / pca_before if pca_before and pca_before > 0 else np.nan

    if chip_after > chip_before + 1e-9:
        warnings.append(
            f"Chip effect increased after normalization ({chip_before:.3f} -> {chip_after:.3f})"
        )
    if not np.isnan(pca_ratio) and pca_ratio < 0.5:
        warnings.append(f"Group PCA distance decreased by {(1 - pca_ratio) * 100:.1f}% - "
                        "groups may be collapsing together")

    metrics = NormalizationMetrics(
        chip_effect_before=chip_before,
        chip_effect_after=chip_after,
        within_group_sd_before=sd_before,
        within_group_sd_after=sd_after,
        pca_group_distance_before=pca_before,
        pca_group_distance_after=pca_after,
        pca_distance_ratio=pca_ratio,
        warnings=warnings,
    )

    logger.info(f"Chip effect: {chip_before:.3f} -> {chip_after:.3f}")
    logger.info(f"Within-group SD: {sd_before:.3f} -> {sd_after:.3f}")
    logger.info(f"PCA distance ratio: {pca_ratio:.2f}")

    for w in warnings:
        logger.warning(w)

    if metrics.passed:
        logger.info("Validation PASSED")
    else:
        logger.warning("Validation FAILED - review warnings")

    return metrics


def generate_qc_report(
    metrics: NormalizationMetrics,
    method_log: List[str],
    output_path: str,
) -> None:
    """
    Generate HTML QC report.

    Args:
        metrics: NormalizationMetrics from validate_normalization
        method_log: List of processing steps applied
        output_path: Path to save HTML report
    """
    html = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Chip Normalization QC Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 40px; }}
            h1 {{ color: #333; }}
            h2 {{ color: #666; border-bottom: 1px solid #ccc; }}
            .warning {{ color: #cc6600; background: #fff3e0; padding: 10px; margin: 5px 0; }}
            .passed {{ color: #006600; background: #e0ffe0; padding: 10px; }}
            .failed {{ color: #cc0000; background: #ffe0e0; padding: 10px; }}
            table {{ border-collapse: collapse; margin: 20px 0; }}
            th, td {{ border: 1px solid #ccc; padding: 8px; text-align: left; }}
            th {{ background: #f0f0f0; }}
        </style>
    </head>
    <body>
        <h1>Chip Normalization QC Report</h1>

        <h2>Validation Status</h2>
        <div class="{'passed' if metrics.passed else 'failed'}">
            {'PASSED' if metrics.passed else 'FAILED'} -
            {'All validation criteria met' if metrics.passed else 'Review warnings below'}
        </div>

        <h2>Metrics</h2>
        <table>
            <tr><th>Metric</th><th>Scaled</th><th>Normalized</th></tr>
            <tr>
                <td>Chip effect (variance fraction)</td>
                <td>{metrics.chip_effect_before:.3f}</td>
                <td>{metrics.chip_effect_after:.3f}</td>
            </tr>
            <tr>
                <td>Within-group SD</td>
                <td>{metrics.within_group_sd_before:.3f}</td>
                <td>{metrics.within_group_sd_after:.3f}</td>
            </tr>
            <tr>
                <td>Group PCA distance</td>
                <td>{metrics.pca_group_distance_before:.2f}</td>
                <td>{metrics.pca_group_distance_after:.2f}</td>
            </tr>
        </table>

        <h2>Warnings</h2>
        {''.join(f'<div class="warning">{w}</div>' for w in metrics.warnings) if metrics.warnings else '<p>No warnings</p>'}

        <h2>Processing Steps</h2>
        <ol>
            {''.join(f'<li>{step}</li>' for step in method_log)}
        </ol>

    </body>
    </html>
    """

    with open(output_path, 'w') as f:
        f.write(html)

    logger.info(f"QC report saved to {output_path}")
