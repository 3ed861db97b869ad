"""Tests for CLI module."""

import json
import tempfile
from pathlib import Path

import pandas as pd
import pytest

from pamchip_slope.cli import (
    _deep_merge,
    build_parser,
    load_config,
    load_config_from_provenance,
    main,
)


class TestDeepMerge:
    """Tests for deep merge utility."""

    def test_simple_merge(self):
        """Test merging flat dictionaries."""
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        result = _deep_merge(base, override)
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        """Test merging nested dictionaries."""
        base = {
            "section1": {"a": 1, "b": 2},
            "section2": {"c": 3},
        }
        override = {
            "section1": {"b": 20, "d": 4},
            "section3": {"e": 5},
        }
        result = _deep_merge(base, override)
        assert result["section1"] == {"a": 1, "b": 20, "d": 4}
        assert result["section2"] == {"c": 3}
        assert result["section3"] == {"e": 5}

    def test_override_non_dict_with_dict(self):
        """Test that dict values replace non-dict values."""
        base = {"a": 1}
        override = {"a": {"nested": True}}
        result = _deep_merge(base, override)
        assert result["a"] == {"nested": True}


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_default_config(self):
        """Test loading default configuration."""
        config = load_config(None)

        # Check key defaults
        assert config["chip"]["type"] == "STK"
        assert config["quality"]["negative_signal"] == "clip"
        assert config["quality"]["saturation"] == "exclude"
        assert config["filters"] == {"min_signal": 5.0, "min_r2": 0.8}
        assert config["comparisons"]["lfc_cutoffs"] == [0.2, 0.3, 0.4]

    def test_defaults_not_shared(self):
        """Test that modifying a loaded config leaves the defaults untouched."""
        config = load_config(None)
        config["filters"]["min_signal"] = 100.0

        assert load_config(None)["filters"]["min_signal"] == 5.0

    def test_yaml_override(self):
        """Test loading config from YAML file."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write("""
chip:
  type: PTK
  max_exposure_ms: 100
filters:
  min_r2: 0.9
comparisons:
  pairs:
    - case: KO
      control: WT
""")
            f.flush()
            config_path = Path(f.name)

        try:
            config = load_config(config_path)
            assert config["chip"]["type"] == "PTK"
            assert config["chip"]["max_exposure_ms"] == 100
            assert config["filters"]["min_r2"] == 0.9
            assert config["comparisons"]["pairs"] == [{"case": "KO", "control": "WT"}]
            # Defaults should be preserved
            assert config["filters"]["min_signal"] == 5.0
            assert config["comparisons"]["lfc_cutoffs"] == [0.2, 0.3, 0.4]
        finally:
            config_path.unlink()


class TestLoadConfigFromProvenance:
    """Tests for loading configuration from provenance JSON."""

    def test_load_from_provenance(self):
        """Test loading configuration from metadata.json provenance file."""
        provenance = {
            "pipeline_version": "0.1.0",
            "processing_date": "2024-01-15T10:30:00Z",
            "processing_parameters": {
                "chip": {"type": "PTK", "max_exposure_ms": 100},
                "quality": {"negative_signal": "exclude"},
                "grouping": {"method": "split", "separator": "-"},
            },
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(provenance, f)
            f.flush()
            provenance_path = Path(f.name)

        try:
            config, provenance_data = load_config_from_provenance(provenance_path)

            # Check that provenance values are loaded
            assert config["chip"]["type"] == "PTK"
            assert config["chip"]["max_exposure_ms"] == 100
            assert config["quality"]["negative_signal"] == "exclude"
            assert config["grouping"]["separator"] == "-"
            assert provenance_data["pipeline_version"] == "0.1.0"

            # Check that defaults are preserved for unspecified settings
            assert config["quality"]["saturation"] == "exclude"
            assert config["filters"]["min_r2"] == 0.8
        finally:
            provenance_path.unlink()

    def test_missing_processing_parameters_raises(self):
        """Test that missing processing_parameters raises ValueError."""
        provenance = {
            "pipeline_version": "0.1.0",
            "processing_date": "2024-01-15T10:30:00Z",
            # Missing 'processing_parameters'
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(provenance, f)
            f.flush()
            provenance_path = Path(f.name)

        try:
            with pytest.raises(ValueError, match="processing_parameters"):
                load_config_from_provenance(provenance_path)
        finally:
            provenance_path.unlink()

    def test_provenance_preserves_output_settings(self):
        """Test that output settings are preserved from provenance."""
        provenance = {
            "pipeline_version": "0.1.0",
            "processing_date": "2024-01-15T10:30:00Z",
            "processing_parameters": {
                "output": {
                    "format": "csv",
                    "include_dropped": False,
                },
            },
        }

        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(provenance, f)
            f.flush()
            provenance_path = Path(f.name)

        try:
            config, provenance_data = load_config_from_provenance(provenance_path)
            assert config["output"]["format"] == "csv"
            assert config["output"]["include_dropped"] is False
        finally:
            provenance_path.unlink()


class TestParser:
    """Tests for argument parsing."""

    def test_run_arguments(self):
        """Test parsing of the run subcommand."""
        args = build_parser().parse_args([
            "run", "-s", "sig.txt", "-t", "sat.txt", "-o", "out",
            "--chip", "PTK", "--compare", "KO:WT", "HET:WT",
        ])
        assert args.command == "run"
        assert args.chip == "PTK"
        assert args.compare == ["KO:WT", "HET:WT"]

    def test_invalid_chip(self):
        """Test that an unknown chip type is rejected."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "-s", "a", "-t", "b", "-o", "c", "--chip", "XYZ"])

    def test_no_command(self):
        """Test that running without a command prints help and fails."""
        assert main([]) == 1


class TestRunCommand:
    """End-to-end tests of the run and validate commands."""

    def test_run_writes_outputs(self, crosstab_files, tmp_path):
        """Test that a run writes tables and provenance metadata."""
        signal, saturation = crosstab_files
        output_dir = tmp_path / "out"

        code = main([
            "run", "-s", str(signal), "-t", str(saturation), "-o", str(output_dir),
            "--compare", "KO:WT",
        ])

        assert code == 0
        for name in [
            "scaled", "normalized", "grouped", "scaled_wide", "fits", "dropped",
            "comparison_KO_vs_WT", "comparison_KO_vs_WT_qc", "comparison_KO_vs_WT_per_chip",
        ]:
            assert (output_dir / f"{name}.tsv").exists(), name

        comparison = pd.read_csv(output_dir / "comparison_KO_vs_WT.tsv", sep="\t")
        assert list(comparison["peptide"]) == ["PEP_STRONG"]

        metadata = json.loads((output_dir / "metadata.json").read_text())
        assert metadata["n_peptides_surviving"] == 1
        assert metadata["processing_parameters"]["chip"]["type"] == "STK"
        assert metadata["comparisons"]["KO_vs_WT"]["paired_chips"] == ["650001", "650002"]
        assert "passed" in metadata["validation_metrics"]

    def test_rerun_from_provenance(self, crosstab_files, tmp_path):
        """Test that a previous run's metadata reproduces its configuration."""
        signal, saturation = crosstab_files
        config_path = tmp_path / "config.yaml"
        config_path.write_text("output:\n  format: csv\n")

        first = tmp_path / "first"
        main(["run", "-s", str(signal), "-t", str(saturation), "-o", str(first),
              "-c", str(config_path)])
        second = tmp_path / "second"
        code = main(["run", "-s", str(signal), "-t", str(saturation), "-o", str(second),
                     "--from-provenance", str(first / "metadata.json")])

        assert code == 0
        assert (second / "scaled.csv").exists()

    def test_group_mapping_file(self, crosstab_files, tmp_path):
        """Test assigning groups from a mapping file."""
        signal, saturation = crosstab_files
        groups = tmp_path / "groups.tsv"
        groups.write_text("sample_name\tgroup\nKO\tMutant\nWT\tControl\n")
        output_dir = tmp_path / "out"

        code = main([
            "run", "-s", str(signal), "-t", str(saturation), "-o", str(output_dir),
            "-g", str(groups), "--compare", "Mutant:Control",
        ])

        assert code == 0
        assert (output_dir / "comparison_Mutant_vs_Control.tsv").exists()

    def test_failed_comparison_exit_code(self, crosstab_files, tmp_path):
        """Test that an unknown comparison group fails the run."""
        signal, saturation = crosstab_files

        code = main([
            "run", "-s", str(signal), "-t", str(saturation), "-o", str(tmp_path / "out"),
            "--compare", "KO:NOPE",
        ])

        assert code == 1

    def test_malformed_input_exit_code(self, crosstab_files, tmp_path):
        """Test that an untokenizable crosstab is logged and fails the run."""
        signal, saturation = crosstab_files
        with open(signal, "a") as f:
            f.write("PEP_EXTRA\t10\t1\t2\t3\t4\t5\n")

        code = main([
            "run", "-s", str(signal), "-t", str(saturation), "-o", str(tmp_path / "out"),
        ])

        assert code == 1

    def test_invalid_max_exposure_exit_code(self, crosstab_files, tmp_path):
        """Test that a max exposure the chip never records fails the run."""
        signal, saturation = crosstab_files
        config_path = tmp_path / "config.yaml"
        config_path.write_text("chip:\n  max_exposure_ms: 150\n")

        code = main([
            "run", "-s", str(signal), "-t", str(saturation), "-o", str(tmp_path / "out"),
            "-c", str(config_path),
        ])

        assert code == 1

    def test_validate_command(self, crosstab_files, tmp_path):
        """Test validating the tables written by a run."""
        signal, saturation = crosstab_files
        output_dir = tmp_path / "out"
        main(["run", "-s", str(signal), "-t", str(saturation), "-o", str(output_dir)])
        report = tmp_path / "qc.html"

        code = main([
            "validate",
            "--scaled", str(output_dir / "scaled.tsv"),
            "--normalized", str(output_dir / "normalized.tsv"),
            "--report", str(report),
        ])

        assert code == 0
        assert report.exists()
