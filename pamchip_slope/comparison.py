"""Chip-paired group comparisons of transformed slopes.

For a (case, control) pair of groups, every chip (barcode) that carries both
groups contributes one difference per peptide:

    diff_chip = mean(case slope_transformed) - mean(control slope_transformed)

and the log fold change is the mean of those differences across chips. Since
transformed slopes are log2 values, the difference is a log2 fold change of
kinase activity.

Quality gates are re-applied using only the samples of the two groups, so
whether a peptide takes part in one comparison does not depend on any other.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .errors import UnknownGroup, UnpairedChip
from .filters import DEFAULT_MIN_R2, DEFAULT_MIN_SIGNAL

logger = logging.getLogger(__name__)

DEFAULT_LFC_CUTOFFS = (0.2, 0.3, 0.4)


@dataclass(frozen=True)
class Comparison:
    """A declared case vs. control group comparison."""

    case: str
    control: str

    @property
    def name(self) -> str:
        return f"{self.case}_vs_{self.control}"

    @classmethod
    def parse(cls, value) -> Comparison:
        """Build from a {case, control} dict, a (case, control) pair or 'CASE:CONTROL'."""
        if isinstance(value, Comparison):
            return value
        if isinstance(value, dict):
            try:
                return cls(case=str(value['case']), control=str(value['control']))
            except KeyError as e:
                raise ValueError(f"Comparison {value} is missing {e}") from None
        if isinstance(value, str):
            parts = value.split(':')
            if len(parts) != 2 or not all(p.strip() for p in parts):
                raise ValueError(f"Comparison '{value}' must look like CASE:CONTROL")
            return cls(case=parts[0].strip(), control=parts[1].strip())
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(case=str(value[0]), control=str(value[1]))
        raise ValueError(f"Cannot interpret comparison: {value!r}")


def significance_column(cutoff: float) -> str:
    return f"significant_{cutoff:g}"


@dataclass
class ComparisonResult:
    """Result of one case vs. control comparison.

    ``table`` has one row per peptide passing QC: lfc, n_chips, case_mean,
    control_mean and one ``significant_<cutoff>`` column per cutoff.
    ``qc`` has one row per non-reference peptide with its gate outcomes.
    ``per_chip`` holds the per-barcode differences (peptide x barcode).
    """

    comparison: Comparison
    table: pd.DataFrame
    qc: pd.DataFrame
    per_chip: pd.DataFrame
    paired_chips: list[str]
    skipped_chips: list[str]
    lfc_cutoffs: tuple[float, ...]
    method_log: list[str] = field(default_factory=list)

    def hits(self, cutoff: float) -> list[str]:
        """Peptides flagged significant at the given cutoff."""
        col = significance_column(cutoff)
        if col not in self.table.columns:
            raise KeyError(f"Cutoff {cutoff} not evaluated; available: {list(self.lfc_cutoffs)}")
        return self.table.loc[self.table[col], 'peptide'].tolist()


def _sample_table(fits: pd.DataFrame, max_exposure: pd.DataFrame) -> pd.DataFrame:
    cols = ['sample_id', 'group', 'barcode']
    return pd.concat([fits[cols], max_exposure[cols]]).drop_duplicates().reset_index(drop=True)


def pair_chip(chip_samples: pd.DataFrame, comparison: Comparison) -> tuple[list[str], list[str]]:
    """Return (case sample_ids, control sample_ids) for one chip.

    Raises:
        UnpairedChip: If the chip lacks one of the two groups

    """
    case = chip_samples.loc[chip_samples['group'] == comparison.case, 'sample_id'].tolist()
    control = chip_samples.loc[chip_samples['group'] == comparison.control, 'sample_id'].tolist()
    if not case or not control:
        barcode = chip_samples['barcode'].iloc[0]
        lacking = comparison.case if not case else comparison.control
        raise UnpairedChip(
            f"Chip {barcode} has no '{lacking}' sample for {comparison.name}", [barcode]
        )
    return sorted(case), sorted(control)


def _qc_table(
    max_exposure: pd.DataFrame,
    fits: pd.DataFrame,
    samples: list[str],
    peptides: list[str],
    min_signal: float,
    min_r2: float,
) -> pd.DataFrame:
    signal = (
        max_exposure[max_exposure['sample_id'].isin(samples)]
        .pivot(index='peptide', columns='sample_id', values='signal')
        .reindex(index=peptides, columns=samples)
    )
    r2 = (
        fits[fits['sample_id'].isin(samples)]
        .pivot(index='peptide', columns='sample_id', values='r2')
        .reindex(index=peptides, columns=samples)
    )

    qc = pd.DataFrame(index=pd.Index(peptides, name='peptide'))
    qc['min_signal'] = signal.min(axis=1)
    qc['min_r2'] = r2.min(axis=1)
    qc['pass_signal'] = (signal >= min_signal).all(axis=1)
    qc['pass_fit'] = (r2 >= min_r2).all(axis=1)
    qc['qc_pass'] = qc['pass_signal'] & qc['pass_fit']

    reasons = []
    for peptide in peptides:
        why = []
        if signal.loc[peptide].isna().any():
            why.append('missing_endpoint')
        if (signal.loc[peptide] < min_signal).any():
            why.append('low_signal')
        if r2.loc[peptide].isna().any():
            why.append('invalid_fit')
        if (r2.loc[peptide] < min_r2).any():
            why.append('low_r2')
        reasons.append(';'.join(why))
    qc['reason'] = reasons
    return qc.reset_index()


def compare_groups(
    fits: pd.DataFrame,
    max_exposure: pd.DataFrame,
    comparison: Comparison,
    lfc_cutoffs: Sequence[float] = DEFAULT_LFC_CUTOFFS,
    min_signal: float = DEFAULT_MIN_SIGNAL,
    min_r2: float = DEFAULT_MIN_R2,
    reference_peptides: Iterable[str] = (),
) -> ComparisonResult:
    """Compute chip-paired log fold changes for one comparison.

    Args:
        fits: Valid fits from ``fit_slopes`` (all peptides, unfiltered)
        max_exposure: End-point table from ``extract_endpoints``
        comparison: Case and control group labels
        lfc_cutoffs: Absolute log2 fold change cutoffs for significance
        min_signal: Minimum max-exposure signal in every sample (inclusive)
        min_r2: Minimum fit R² in every sample (inclusive)
        reference_peptides: Peptides never reported

    Returns:
        ComparisonResult

    Raises:
        UnknownGroup: If either group label does not exist in the data
        UnpairedChip: If no chip carries both groups

    """
    cutoffs = tuple(sorted(float(c) for c in lfc_cutoffs))
    samples = _sample_table(fits, max_exposure)

    known = set(samples['group'])
    unknown = [g for g in (comparison.case, comparison.control) if g not in known]
    if unknown:
        raise UnknownGroup(unknown, f"Comparison {comparison.name} names unknown groups {unknown}")

    relevant = samples[samples['group'].isin([comparison.case, comparison.control])]

    pairs: dict[str, tuple[list[str], list[str]]] = {}
    skipped = []
    for barcode, chip_samples in relevant.groupby('barcode', sort=True):
        try:
            pairs[barcode] = pair_chip(chip_samples, comparison)
        except UnpairedChip as e:
            logger.warning(f"Skipping chip: {e}")
            skipped.append(barcode)

    if not pairs:
        raise UnpairedChip(
            f"No chip carries both '{comparison.case}' and '{comparison.control}'", skipped
        )

    considered = sorted(s for case, control in pairs.values() for s in case + control)
    reference = set(reference_peptides)
    seen = set(max_exposure.loc[max_exposure['sample_id'].isin(considered), 'peptide'])
    seen |= set(fits.loc[fits['sample_id'].isin(considered), 'peptide'])
    peptides = sorted(seen - reference)

    qc = _qc_table(max_exposure, fits, considered, peptides, min_signal, min_r2)
    passing = qc.loc[qc['qc_pass'], 'peptide'].tolist()

    values = (
        fits[fits['sample_id'].isin(considered) & fits['peptide'].isin(passing)]
        .pivot(index='peptide', columns='sample_id', values='slope_transformed')
        .reindex(index=passing, columns=considered)
    )

    per_chip = pd.DataFrame(index=pd.Index(passing, name='peptide'))
    case_all, control_all = [], []
    for barcode, (case, control) in pairs.items():
        per_chip[barcode] = values[case].mean(axis=1) - values[control].mean(axis=1)
        case_all.extend(case)
        control_all.extend(control)

    table = pd.DataFrame({
        'peptide': passing,
        'lfc': per_chip.mean(axis=1).to_numpy(),
        'n_chips': per_chip.notna().sum(axis=1).astype(int).to_numpy(),
        'case_mean': values[case_all].mean(axis=1).to_numpy(),
        'control_mean': values[control_all].mean(axis=1).to_numpy(),
    })
    for cutoff in cutoffs:
        table[significance_column(cutoff)] = np.abs(table['lfc']) >= cutoff

    method_log = [
        f"{comparison.name}: {len(pairs)} paired chips ({len(skipped)} skipped), "
        f"{len(passing)}/{len(peptides)} peptides pass QC, "
        + ', '.join(
            f"{int(table[significance_column(c)].sum())} at |LFC| >= {c:g}" for c in cutoffs
        )
    ]
    logger.info(method_log[0])

    return ComparisonResult(
        comparison=comparison,
        table=table,
        qc=qc,
        per_chip=per_chip.reset_index(),
        paired_chips=list(pairs),
        skipped_chips=skipped,
        lfc_cutoffs=cutoffs,
        method_log=method_log,
    )


def run_comparisons(
    fits: pd.DataFrame,
    max_exposure: pd.DataFrame,
    comparisons: Iterable[Comparison],
    lfc_cutoffs: Sequence[float] = DEFAULT_LFC_CUTOFFS,
    min_signal: float = DEFAULT_MIN_SIGNAL,
    min_r2: float = DEFAULT_MIN_R2,
    reference_peptides: Iterable[str] = (),
    n_workers: int = 1,
) -> tuple[dict[str, ComparisonResult], dict[str, str]]:
    """Evaluate independent comparisons over the same fits.

    Comparisons share the input tables read-only. A comparison with no chip
    pair is reported in the failures dict rather than returned empty.

    Returns:
        Tuple of (results by comparison name, failure message by comparison name)

    """
    comparisons = [Comparison.parse(c) for c in comparisons]
    reference_peptides = frozenset(reference_peptides)

    def _run(comparison: Comparison) -> ComparisonResult:
        return compare_groups(
            fits, max_exposure, comparison,
            lfc_cutoffs=lfc_cutoffs,
            min_signal=min_signal,
            min_r2=min_r2,
            reference_peptides=reference_peptides,
        )

    results: dict[str, ComparisonResult] = {}
    failures: dict[str, str] = {}

    if n_workers > 1 and len(comparisons) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {c.name: executor.submit(_run, c) for c in comparisons}
            outcomes = []
            for name, future in futures.items():
                try:
                    outcomes.append((name, future.result(), None))
                except UnpairedChip as e:
                    outcomes.append((name, None, e))
    else:
        outcomes = []
        for c in comparisons:
            try:
                outcomes.append((c.name, _run(c), None))
            except UnpairedChip as e:
                outcomes.append((c.name, None, e))

    for name, result, error in outcomes:
        if error is not None:
            logger.error(f"Comparison {name} failed: {error}")
            failures[name] = str(error)
        else:
            results[name] = result

    return results, failures
