"""Command-line interface for the PamChip slope pipeline.

Turns PamStation signal/saturation crosstab exports into per-peptide kinase
activity slopes, normalized views and chip-paired group comparisons.
"""

from __future__ import annotations

import argparse
import copy
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .data_io import describe_readings, load_sample_groups, load_table, write_table
from .errors import PamChipError
from .normalization import to_wide
from .pipeline import PipelineResult, run_pipeline
from .validation import generate_qc_report, validate_normalization

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'chip': {
        'type': 'STK',
        'max_exposure_ms': None,  # None = chip default (200 ms)
        'reference_peptides': None,  # None = chip default set
        'peptides': None,  # known peptide IDs of the layout; None = unchecked
    },
    'quality': {
        'negative_signal': 'clip',  # clip | exclude
        'saturation': 'exclude',  # exclude | keep
    },
    'grouping': {
        'method': 'sample_name',  # sample_name | split | pattern | mapping
        'separator': '_',
        'patterns': {},
        'mapping': {},
    },
    'filters': {
        'min_signal': 5.0,
        'min_r2': 0.8,
    },
    'normalization': {
        'method': 'median',
    },
    'comparisons': {
        'lfc_cutoffs': [0.2, 0.3, 0.4],
        'pairs': [],
    },
    'processing': {
        'n_workers': 1,
    },
    'output': {
        'format': 'tsv',
        'include_dropped': True,
    },
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None, base: dict | None = None) -> dict:
    """Load configuration from YAML file or return defaults.

    Args:
        config_path: YAML file merged over ``base``
        base: Starting configuration (defaults when None)

    """
    config = copy.deepcopy(base if base is not None else DEFAULT_CONFIG)

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        config = _deep_merge(config, user_config)

    return config


def load_config_from_provenance(provenance_path: Path) -> tuple[dict, dict]:
    """Rebuild a run configuration from a previous run's metadata.json.

    Returns:
        Tuple of (config merged over defaults, full provenance dict)

    Raises:
        ValueError: If the file has no processing_parameters

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    params = provenance.get('processing_parameters')
    if not isinstance(params, dict):
        raise ValueError(f"No processing_parameters in provenance file {provenance_path}")

    return _deep_merge(copy.deepcopy(DEFAULT_CONFIG), params), provenance


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    input_files: list[str],
    validation_metrics: dict | None = None,
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Args:
        config: Pipeline configuration dictionary
        result: Completed pipeline result
        input_files: List of input file paths
        validation_metrics: Optional normalization validation metrics

    Returns:
        Dictionary with complete pipeline metadata

    """
    samples = result.samples
    sample_metadata = {
        'n_samples': len(samples),
        'n_barcodes': int(samples['barcode'].nunique()),
        'groups': samples['group'].value_counts().sort_index().to_dict(),
        'samples': samples['sample_id'].tolist(),
    }

    comparisons = {
        name: {
            'paired_chips': r.paired_chips,
            'skipped_chips': r.skipped_chips,
            'n_peptides': len(r.table),
            'n_significant': {
                f"{c:g}": len(r.hits(c)) for c in r.lfc_cutoffs
            },
        }
        for name, r in result.comparisons.items()
    }

    return {
        'pipeline_version': __version__,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'readings': describe_readings(result.readings),
        'sample_metadata': sample_metadata,
        'n_peptides_surviving': len(result.peptides),
        'dropped_summary': result.drop_summary().to_dict(orient='records'),
        'comparisons': comparisons,
        'failed_comparisons': result.failed_comparisons,
        'processing_parameters': config,
        'method_log': result.method_log,
        'validation_metrics': validation_metrics or {},
    }


def write_outputs(result: PipelineResult, output_dir: Path, config: dict) -> list[Path]:
    """Write every pipeline table to ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    fmt = config['output'].get('format', 'tsv')
    written = []

    norm = result.normalization
    for name, view in [
        ('scaled', norm.scaled),
        ('normalized', norm.normalized),
        ('grouped', norm.grouped),
    ]:
        written.append(write_table(view, output_dir / name, fmt))
        written.append(write_table(to_wide(view), output_dir / f"{name}_wide", fmt, index=True))

    written.append(write_table(result.fits, output_dir / 'fits', fmt))

    for name, comparison in result.comparisons.items():
        written.append(write_table(comparison.table, output_dir / f"comparison_{name}", fmt))
        written.append(write_table(comparison.qc, output_dir / f"comparison_{name}_qc", fmt))
        written.append(
            write_table(comparison.per_chip, output_dir / f"comparison_{name}_per_chip", fmt)
        )

    if config['output'].get('include_dropped', True):
        written.append(write_table(result.dropped, output_dir / 'dropped', fmt))

    for path in written:
        logger.info(f"Saved {path}")
    return written


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full slope pipeline."""
    if getattr(args, 'from_provenance', None):
        config, _ = load_config_from_provenance(Path(args.from_provenance))
        logger.info(f"Configuration loaded from provenance: {args.from_provenance}")
        if args.config:
            config = load_config(Path(args.config), base=config)
    else:
        config = load_config(Path(args.config) if args.config else None)

    # Command-line overrides
    if args.chip:
        config['chip']['type'] = args.chip
    if args.groups:
        config['grouping'] = {
            'method': 'mapping',
            'mapping': load_sample_groups(Path(args.groups)),
        }
    comparisons = args.compare if args.compare else None

    try:
        result = run_pipeline(
            Path(args.signal), Path(args.saturation), config, comparisons=comparisons,
        )
    except (PamChipError, ValueError) as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    output_dir = Path(args.output_dir)
    write_outputs(result, output_dir, config)

    metrics = validate_normalization(result.normalization.scaled, result.normalization.normalized)

    metadata = generate_pipeline_metadata(
        config=config,
        result=result,
        input_files=[str(args.signal), str(args.saturation)],
        validation_metrics=metrics.to_dict(),
    )
    metadata_output = output_dir / 'metadata.json'
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("Slope pipeline complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 1 if result.failed_comparisons else 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate chip normalization quality."""
    scaled = load_table(Path(args.scaled))
    normalized = load_table(Path(args.normalized))

    metrics = validate_normalization(scaled, normalized)

    if args.report:
        generate_qc_report(
            metrics,
            method_log=[f"Scaled: {args.scaled}", f"Normalized: {args.normalized}"],
            output_path=args.report,
        )

    return 0 if metrics.passed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pamslope',
        description='PamChip kinase activity slopes from PamStation crosstab exports\n\n'
                    'Primary usage:\n'
                    '  pamslope run -s signal.txt -t saturation.txt -o output_dir/ '
                    '-c config.yaml --compare KO:WT',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full slope pipeline',
        description='Read crosstabs, apply QC, fit slopes, normalize and compare groups.',
    )
    run_parser.add_argument('-s', '--signal', required=True, help='Signal crosstab export')
    run_parser.add_argument('-t', '--saturation', required=True,
                            help='Saturation crosstab export')
    run_parser.add_argument('-o', '--output-dir', required=True,
                            help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--chip', choices=['STK', 'PTK'], help='Chip type (overrides config)')
    run_parser.add_argument('-g', '--groups',
                            help='Sample name -> group TSV (columns: sample_name, group)')
    run_parser.add_argument('--compare', nargs='+', metavar='CASE:CONTROL',
                            help='Comparisons to run (overrides config)')
    run_parser.add_argument('--from-provenance',
                            help='Reuse processing parameters from a previous metadata.json')

    val_parser = subparsers.add_parser('validate', help='Validate chip normalization quality')
    val_parser.add_argument('--scaled', required=True, help='Scaled table from a run')
    val_parser.add_argument('--normalized', required=True, help='Normalized table from a run')
    val_parser.add_argument('--report', help='Output HTML report path')

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    elif args.command == 'validate':
        return cmd_validate(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
