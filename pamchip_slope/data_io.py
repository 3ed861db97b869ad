"""Data I/O module for loading PamStation crosstab exports."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from .chip import ChipSpec, ChipType, chip_spec
from .errors import SchemaMismatch

logger = logging.getLogger(__name__)

# Column-annotation row labels used by BioNavigator crosstab exports
ANNOTATION_MAP = {
    'barcode': 'barcode',
    'array': 'array',
    'well': 'array',
    'sample name': 'sample_name',
    'samplename': 'sample_name',
    'sample': 'sample_name',
}

REQUIRED_ANNOTATIONS = ['barcode', 'array', 'sample_name']

# Row-label header cells
ROW_HEADER_ID = 'ID'
ROW_HEADER_EXPOSURE = 'Exposure time'

# Tidy reading table
READING_COLUMNS = [
    'peptide',
    'exposure_ms',
    'barcode',
    'array',
    'sample_name',
    'signal',
    'saturated',
]

SATURATION_TRUE = {'true', 'yes', '1', '1.0'}
SATURATION_FALSE = {'false', 'no', '0', '0.0'}


@dataclass
class Crosstab:
    """One parsed crosstab file before conversion to long form.

    ``samples`` has one row per value column (barcode, array, sample_name),
    ``values`` is indexed by (peptide, exposure_ms) with one string column
    per sample position.
    """

    filepath: Path
    samples: pd.DataFrame
    values: pd.DataFrame

    @property
    def peptides(self) -> list[str]:
        return list(dict.fromkeys(self.values.index.get_level_values('peptide')))

    @property
    def exposure_times(self) -> list[int]:
        return sorted(set(self.values.index.get_level_values('exposure_ms')))


@dataclass
class CrosstabValidation:
    """Result of validating a crosstab export."""

    is_valid: bool
    filepath: Path
    missing_annotations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_peptides: int = 0
    n_samples: int = 0
    exposure_times: list[int] = field(default_factory=list)

    def __str__(self) -> str:
        if self.is_valid:
            return (
                f"Valid: {self.filepath.name} ({self.n_peptides} peptides, "
                f"{self.n_samples} samples, exposures {self.exposure_times})"
            )
        issues = []
        if self.missing_annotations:
            issues.append(f"Missing annotations: {self.missing_annotations}")
        issues.extend(self.warnings)
        return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _detect_sep(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return '\t' if suffix in ['.tsv', '.txt'] else ','


def read_crosstab(filepath: Path) -> Crosstab:
    """Parse a PamStation crosstab export.

    Args:
        filepath: Path to the crosstab (CSV, or TSV for .tsv/.txt)

    Returns:
        Crosstab with sample annotations and the raw value matrix

    Raises:
        SchemaMismatch: If the layout cannot be parsed

    """
    filepath = Path(filepath)
    try:
        raw = pd.read_csv(
            filepath, sep=_detect_sep(filepath), header=None, dtype=str,
            keep_default_na=False, skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise SchemaMismatch(f"{filepath.name}: {e}") from e
    raw = raw.fillna('').apply(lambda col: col.str.strip())

    if raw.shape[1] < 3:
        raise SchemaMismatch(f"{filepath.name}: expected ID, exposure and sample columns")

    header_rows = raw.index[raw.iloc[:, 0].str.lower() == ROW_HEADER_ID.lower()]
    if len(header_rows) == 0:
        raise SchemaMismatch(f"{filepath.name}: no '{ROW_HEADER_ID}' header row found")
    header_pos = raw.index.get_loc(header_rows[0])
    if not raw.iloc[header_pos, 1].lower().startswith('exposure'):
        raise SchemaMismatch(
            f"{filepath.name}: second row-label column must be '{ROW_HEADER_EXPOSURE}', "
            f"found '{raw.iloc[header_pos, 1]}'"
        )

    # Drop trailing columns that carry nothing (trailing delimiters)
    value_block = raw.iloc[:, 2:]
    keep = (value_block != '').any(axis=0)
    value_block = value_block.loc[:, keep]
    if value_block.shape[1] == 0:
        raise SchemaMismatch(f"{filepath.name}: no sample columns found")

    # Column annotations live above the header row; the label may sit in
    # either of the two row-label columns
    annotations = {}
    for pos in range(header_pos):
        label = raw.iloc[pos, 0] or raw.iloc[pos, 1]
        key = ANNOTATION_MAP.get(label.lower())
        if key is None:
            logger.debug(f"Ignoring column annotation '{label}' in {filepath.name}")
            continue
        annotations[key] = value_block.iloc[pos].tolist()

    missing = [a for a in REQUIRED_ANNOTATIONS if a not in annotations]
    if missing:
        raise SchemaMismatch(f"{filepath.name}: missing column annotations {missing}")

    samples = pd.DataFrame({key: annotations[key] for key in REQUIRED_ANNOTATIONS})
    samples.index = range(len(samples))

    body = raw.iloc[header_pos + 1:]
    body = body[(body.iloc[:, 0] != '') | (body.iloc[:, 1] != '')]
    exposure = pd.to_numeric(body.iloc[:, 1], errors='coerce')
    if exposure.isna().any():
        bad = body.loc[exposure.isna(), body.columns[1]].unique().tolist()
        raise SchemaMismatch(f"{filepath.name}: non-numeric exposure times {bad}")

    values = value_block.loc[body.index].copy()
    values.columns = samples.index
    values.index = pd.MultiIndex.from_arrays(
        [body.iloc[:, 0].tolist(), exposure.astype(int).tolist()],
        names=['peptide', 'exposure_ms'],
    )

    duplicated = values.index[values.index.duplicated()].unique().tolist()
    if duplicated:
        raise SchemaMismatch(f"{filepath.name}: duplicated peptide/exposure rows {duplicated[:5]}")

    return Crosstab(filepath=filepath, samples=samples, values=values)


def validate_crosstab(filepath: Path) -> CrosstabValidation:
    """Validate that a crosstab export has the expected layout.

    Args:
        filepath: Path to the crosstab file

    Returns:
        CrosstabValidation with validation details

    """
    filepath = Path(filepath)
    result = CrosstabValidation(is_valid=True, filepath=filepath)

    try:
        crosstab = read_crosstab(filepath)
    except SchemaMismatch as e:
        result.is_valid = False
        message = str(e)
        if 'missing column annotations' in message:
            result.missing_annotations = [
                a for a in REQUIRED_ANNOTATIONS if a in message
            ]
        result.warnings.append(message)
        return result
    except OSError as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {str(e)}")
        return result

    result.n_peptides = len(crosstab.peptides)
    result.n_samples = len(crosstab.samples)
    result.exposure_times = crosstab.exposure_times

    empty_cells = int((crosstab.values == '').sum().sum())
    if empty_cells:
        result.warnings.append(f"{empty_cells} empty value cells")

    return result


def _crosstab_to_long(crosstab: Crosstab, value_name: str) -> pd.DataFrame:
    return crosstab.values.reset_index().melt(
        id_vars=['peptide', 'exposure_ms'], var_name='position', value_name=value_name,
    )


def _parse_saturation(values: pd.Series, filepath: Path) -> pd.Series:
    lowered = values.str.lower()
    unknown = ~lowered.isin(SATURATION_TRUE | SATURATION_FALSE | {''})
    if unknown.any():
        bad = values[unknown].unique().tolist()[:5]
        raise SchemaMismatch(f"{filepath.name}: unrecognised saturation flags {bad}")
    return lowered.isin(SATURATION_TRUE)


def _check_same_layout(signal: Crosstab, saturation: Crosstab) -> None:
    if len(signal.samples) != len(saturation.samples):
        raise SchemaMismatch(
            f"Signal file has {len(signal.samples)} sample columns, "
            f"saturation file has {len(saturation.samples)}"
        )
    if not signal.samples.equals(saturation.samples):
        diff = signal.samples.ne(saturation.samples).any(axis=1)
        positions = diff[diff].index.tolist()
        raise SchemaMismatch(
            f"Sample annotations differ between signal and saturation files "
            f"at columns {positions}"
        )
    if set(signal.values.index) != set(saturation.values.index):
        only_signal = set(signal.values.index) - set(saturation.values.index)
        only_sat = set(saturation.values.index) - set(signal.values.index)
        raise SchemaMismatch(
            f"Peptide/exposure rows differ: {len(only_signal)} only in signal file, "
            f"{len(only_sat)} only in saturation file"
        )


def _check_chip_layout(crosstab: Crosstab, chip_type: ChipSpec | ChipType | str) -> None:
    spec = chip_spec(chip_type)

    unknown_exposures = set(crosstab.exposure_times) - set(spec.exposure_times)
    if unknown_exposures:
        raise SchemaMismatch(
            f"Exposure times {sorted(unknown_exposures)} are not valid for "
            f"{spec.chip_type.value} chips {list(spec.exposure_times)}"
        )

    n_peptides = len(crosstab.peptides)
    if n_peptides > spec.n_peptides:
        raise SchemaMismatch(
            f"{n_peptides} peptides found but {spec.chip_type.value} chips carry "
            f"{spec.n_peptides}"
        )
    if n_peptides < spec.n_peptides:
        logger.warning(
            f"{n_peptides} of {spec.n_peptides} {spec.chip_type.value} peptides present"
        )

    if spec.peptides is not None:
        unknown_peptides = sorted(set(crosstab.peptides) - spec.peptides)
        if unknown_peptides:
            raise SchemaMismatch(
                f"{len(unknown_peptides)} peptides are not on the {spec.chip_type.value} "
                f"layout: {unknown_peptides[:5]}"
            )

    duplicated = crosstab.samples.duplicated(subset=['barcode', 'array'])
    if duplicated.any():
        dup = crosstab.samples.loc[duplicated, ['barcode', 'array']].values.tolist()
        raise SchemaMismatch(f"Duplicated barcode/array columns: {dup}")


def load_pamstation_crosstabs(
    signal_path: Path,
    saturation_path: Path,
    chip_type: ChipSpec | ChipType | str,
) -> pd.DataFrame:
    """Load a signal and a saturation crosstab into one tidy reading table.

    Args:
        signal_path: Crosstab of signal-minus-background values
        saturation_path: Crosstab of saturation flags with the same layout
        chip_type: Chip type of the run (STK or PTK), or a ChipSpec carrying
            run overrides such as the known peptide table

    Returns:
        DataFrame with READING_COLUMNS, one row per peptide/exposure/sample

    Raises:
        SchemaMismatch: If the files are malformed or describe different layouts

    """
    signal = read_crosstab(Path(signal_path))
    saturation = read_crosstab(Path(saturation_path))

    _check_same_layout(signal, saturation)
    _check_chip_layout(signal, chip_type)

    sig_long = _crosstab_to_long(signal, 'signal_raw')
    sat_long = _crosstab_to_long(saturation, 'saturated_raw')

    keys = ['peptide', 'exposure_ms', 'position']
    df = sig_long.merge(sat_long, on=keys, how='left')

    # Empty cells are absent readings
    empty = df['signal_raw'] == ''
    if empty.any():
        logger.warning(f"{int(empty.sum())} empty signal cells in {signal.filepath.name}")
        df = df.loc[~empty]

    df['signal'] = pd.to_numeric(df['signal_raw'], errors='coerce')
    if df['signal'].isna().any():
        bad = df.loc[df['signal'].isna(), 'signal_raw'].unique().tolist()[:5]
        raise SchemaMismatch(f"{signal.filepath.name}: non-numeric signal values {bad}")
    df['saturated'] = _parse_saturation(df['saturated_raw'].fillna(''), saturation.filepath)

    df = df.merge(signal.samples, left_on='position', right_index=True, how='left')
    df['exposure_ms'] = df['exposure_ms'].astype(int)
    df = df[READING_COLUMNS].sort_values(
        ['barcode', 'array', 'peptide', 'exposure_ms'], kind='mergesort'
    ).reset_index(drop=True)

    logger.info(
        f"Loaded {len(df)} readings: {df['peptide'].nunique()} peptides, "
        f"{signal.samples.shape[0]} samples, exposures {signal.exposure_times}"
    )
    return df


def write_table(df: pd.DataFrame, path: Path, fmt: str = 'tsv', index: bool = False) -> Path:
    """Write a table in the configured output format.

    Args:
        df: Table to write
        path: Output path without suffix (``.<fmt>`` is appended)
        fmt: One of 'tsv', 'csv', 'parquet'
        index: Whether to write the index

    Returns:
        Path actually written

    """
    path = Path(path)
    path = path.parent / f"{path.name}.{fmt}"
    if fmt == 'parquet':
        df.to_parquet(path, index=index)
    elif fmt == 'csv':
        df.to_csv(path, index=index)
    elif fmt == 'tsv':
        df.to_csv(path, sep='\t', index=index)
    else:
        raise ValueError(f"Unknown output format '{fmt}'. Must be one of: tsv, csv, parquet")
    return path


def load_table(path: Path) -> pd.DataFrame:
    """Load a table written by ``write_table`` (parquet file or directory, CSV, TSV)."""
    path = Path(path)
    if path.is_dir() or path.suffix.lower() == '.parquet':
        return pd.read_parquet(path)
    return pd.read_csv(path, sep=_detect_sep(path))


def load_sample_groups(filepath: Path) -> dict[str, str]:
    """Load an explicit sample name -> group mapping from a two-column table.

    Args:
        filepath: TSV/CSV with 'sample_name' (or 'Sample name') and 'group' columns

    Returns:
        Dict mapping sample name to group label

    Raises:
        ValueError: If columns are missing or a sample is listed twice

    """
    filepath = Path(filepath)
    meta = pd.read_csv(filepath, sep=_detect_sep(filepath), dtype=str)
    meta.columns = [c.strip().lower().replace(' ', '_') for c in meta.columns]

    missing = [col for col in ['sample_name', 'group'] if col not in meta.columns]
    if missing:
        raise ValueError(f"Missing required group mapping columns: {missing}")

    duplicates = meta[meta['sample_name'].duplicated()]['sample_name'].tolist()
    if duplicates:
        raise ValueError(f"Duplicate sample_name entries: {duplicates}")

    return dict(zip(meta['sample_name'].str.strip(), meta['group'].str.strip()))


def describe_readings(df: pd.DataFrame, source: Optional[str] = None) -> dict:
    """Summary counts of a reading table for logs and provenance."""
    return {
        'source': source,
        'n_readings': int(len(df)),
        'n_peptides': int(df['peptide'].nunique()),
        'n_samples': int(df[['barcode', 'array']].drop_duplicates().shape[0]),
        'n_barcodes': int(df['barcode'].nunique()),
        'exposure_times': sorted(int(e) for e in df['exposure_ms'].unique()),
        'n_saturated': int(df['saturated'].sum()),
        'n_negative': int((df['signal'] < 0).sum()),
    }
