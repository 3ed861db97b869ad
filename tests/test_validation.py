"""Tests for normalization validation."""

import numpy as np
import pandas as pd
import pytest

from pamchip_slope.normalization import normalize_slopes
from pamchip_slope.validation import (
    calculate_chip_effect,
    calculate_pca_group_distance,
    generate_qc_report,
    validate_normalization,
)


@pytest.fixture
def normalization():
    """Two chips with a constant offset of 1 and a KO shift of 0.5."""
    rows = []
    for barcode, offset in [('650001', 0.0), ('650002', 1.0)]:
        for group, shift in [('KO', 0.5), ('WT', 0.0)]:
            for peptide, base in [('PEP_A', 4.0), ('PEP_B', 5.0), ('PEP_C', 6.0)]:
                rows.append({
                    'peptide': peptide,
                    'sample_id': f'{group}_{barcode}',
                    'group': group,
                    'barcode': barcode,
                    'slope_transformed': base + shift + offset,
                })
    return normalize_slopes(pd.DataFrame(rows), ['PEP_A', 'PEP_B', 'PEP_C'])


class TestValidateNormalization:
    """Tests for normalization metrics."""

    def test_chip_effect_removed(self, normalization):
        """Test that chip centering removes a constant chip offset."""
        metrics = validate_normalization(normalization.scaled, normalization.normalized)

        assert metrics.chip_effect_before == pytest.approx(0.8)
        assert metrics.chip_effect_after == pytest.approx(0.0, abs=1e-12)
        assert metrics.within_group_sd_before == pytest.approx(np.sqrt(0.5))
        assert metrics.within_group_sd_after == pytest.approx(0.0, abs=1e-12)

    def test_group_separation_kept(self, normalization):
        """Test that group separation survives normalization."""
        metrics = validate_normalization(normalization.scaled, normalization.normalized)

        assert metrics.pca_distance_ratio == pytest.approx(1.0, rel=1e-6)
        assert metrics.passed
        assert metrics.warnings == []
        assert metrics.to_dict()['passed'] is True

    def test_single_group(self, normalization):
        """Test that PCA distance is undefined with a single group."""
        scaled = normalization.scaled[normalization.scaled['group'] == 'KO']

        assert np.isnan(calculate_pca_group_distance(scaled))

    def test_no_variance(self):
        """Test that a view without residual variance has no chip effect."""
        view = pd.DataFrame({
            'peptide': ['A', 'A'],
            'barcode': ['1', '2'],
            'slope_transformed': [3.0, 3.0],
        })

        assert calculate_chip_effect(view) == 0.0

    def test_qc_report(self, normalization, tmp_path):
        """Test that the HTML report is written."""
        metrics = validate_normalization(normalization.scaled, normalization.normalized)
        report = tmp_path / 'qc.html'

        generate_qc_report(metrics, ['step one', 'step two'], str(report))

        html = report.read_text()
        assert 'PASSED' in html
        assert '<li>step two</li>' in html
