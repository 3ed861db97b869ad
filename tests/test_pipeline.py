"""End-to-end tests for the slope pipeline."""

import copy
import math

import numpy as np
import pytest

from pamchip_slope.cli import DEFAULT_CONFIG
from pamchip_slope.errors import UnknownGroup
from pamchip_slope.pipeline import run_pipeline


@pytest.fixture
def config():
    return copy.deepcopy(DEFAULT_CONFIG)


class TestRunPipeline:
    """Tests for the full pipeline on synthetic crosstabs."""

    def test_surviving_peptides(self, crosstab_files, config):
        """Test that weak and reference peptides are removed."""
        signal, saturation = crosstab_files

        result = run_pipeline(signal, saturation, config)

        assert result.peptides == ['PEP_STRONG']
        assert result.normalization.peptides == ['PEP_STRONG']
        assert len(result.normalization.scaled) == 4
        assert len(result.normalization.grouped) == 2

        stages = result.dropped.groupby('peptide')['stage'].apply(set).to_dict()
        assert stages['PEP_WEAK'] == {'signal_filter'}
        assert stages['ART_025_CXGGKGRKLT'] == {'reference_filter'}

    def test_fits_are_finite(self, crosstab_files, config):
        """Test that every reported transformed slope is finite."""
        signal, saturation = crosstab_files

        result = run_pipeline(signal, saturation, config)

        for view in [result.fits, result.normalization.scaled, result.normalization.normalized]:
            assert np.isfinite(view['slope_transformed']).all()

    def test_comparison(self, crosstab_files, config):
        """Test the chip-paired KO vs WT comparison."""
        signal, saturation = crosstab_files

        result = run_pipeline(signal, saturation, config, comparisons=['KO:WT'])

        table = result.comparisons['KO_vs_WT'].table
        assert list(table['peptide']) == ['PEP_STRONG']
        expected = (1.0 + math.log2(0.85 / 0.45)) / 2
        assert table['lfc'].iloc[0] == pytest.approx(expected)
        assert table['significant_0.4'].iloc[0]
        assert result.failed_comparisons == {}
        assert any('KO_vs_WT' in step for step in result.method_log)

    def test_comparisons_from_config(self, crosstab_files, config):
        """Test that comparison pairs are read from the config."""
        signal, saturation = crosstab_files
        config['comparisons']['pairs'] = [{'case': 'WT', 'control': 'KO'}]

        result = run_pipeline(signal, saturation, config)

        assert list(result.comparisons) == ['WT_vs_KO']
        assert result.comparisons['WT_vs_KO'].table['lfc'].iloc[0] < 0

    def test_parallel_workers(self, crosstab_files, config):
        """Test that worker count does not change the results."""
        signal, saturation = crosstab_files
        serial = run_pipeline(signal, saturation, config, comparisons=['KO:WT'])

        config['processing']['n_workers'] = 2
        parallel = run_pipeline(signal, saturation, config, comparisons=['KO:WT'])

        assert parallel.peptides == serial.peptides
        assert parallel.fits.equals(serial.fits)

    def test_config_overrides(self, crosstab_files, config):
        """Test max exposure and threshold overrides."""
        signal, saturation = crosstab_files
        config['chip']['reference_peptides'] = []
        config['filters']['min_signal'] = 1.0

        result = run_pipeline(signal, saturation, config)

        assert result.peptides == ['ART_025_CXGGKGRKLT', 'PEP_STRONG', 'PEP_WEAK']

    def test_unknown_group_aborts(self, crosstab_files, config):
        """Test that an unclassifiable sample aborts the run."""
        signal, saturation = crosstab_files
        config['grouping'] = {'method': 'mapping', 'mapping': {'KO': 'KO'}}

        with pytest.raises(UnknownGroup):
            run_pipeline(signal, saturation, config)

    def test_drop_summary(self, crosstab_files, config):
        """Test the per-stage drop summary."""
        signal, saturation = crosstab_files

        result = run_pipeline(signal, saturation, config)
        summary = result.drop_summary().set_index(['stage', 'reason'])

        assert summary.loc[('signal_filter', 'low_signal'), 'n_peptides'] == 1
        assert summary.loc[('signal_filter', 'low_signal'), 'n_records'] == 2
        assert summary.loc[('reference_filter', 'reference_peptide'), 'n_peptides'] == 1
