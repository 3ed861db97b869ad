"""Quality gate for raw readings: negative signal, saturation and grouping.

Negative signal-minus-background values are background-subtraction artifacts
and must not reach the log transform downstream. Saturated spots no longer
respond linearly to exposure time. Both are handled by a configurable policy
that is applied to every reading and recorded in the method log.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

import pandas as pd

from .chip import ChipType, chip_spec
from .errors import UnknownGroup

logger = logging.getLogger(__name__)

NEGATIVE_POLICIES = ('clip', 'exclude')
SATURATION_POLICIES = ('exclude', 'keep')
GROUPING_METHODS = ('sample_name', 'split', 'pattern', 'mapping')

DROPPED_COLUMNS = ['stage', 'peptide', 'sample_id', 'exposure_ms', 'reason']


@dataclass
class GroupingRule:
    """Rule assigning a group label to a sample name.

    Methods:
        sample_name: the sample name is the group label
        split: the part of the sample name before ``separator``
        pattern: first group whose regex matches (case-insensitive)
        mapping: explicit sample name -> group dict
    """

    method: str = 'sample_name'
    separator: str = '_'
    patterns: dict[str, str] = field(default_factory=dict)
    mapping: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.method not in GROUPING_METHODS:
            raise ValueError(
                f"Unknown grouping method '{self.method}'. Must be one of: {GROUPING_METHODS}"
            )
        if self.method == 'pattern' and not self.patterns:
            raise ValueError("Grouping method 'pattern' needs at least one pattern")
        self._compiled = [
            (group, re.compile(pattern, re.IGNORECASE))
            for group, pattern in self.patterns.items()
        ]

    @classmethod
    def from_config(cls, config: dict | None) -> GroupingRule:
        """Build a rule from the 'grouping' config section."""
        config = config or {}
        return cls(
            method=config.get('method', 'sample_name'),
            separator=config.get('separator', '_'),
            patterns=dict(config.get('patterns') or {}),
            mapping={str(k): str(v) for k, v in (config.get('mapping') or {}).items()},
        )

    def classify(self, sample_name: str) -> str | None:
        """Return the group for a sample name, or None if it cannot be classified."""
        name = str(sample_name).strip()
        if not name:
            return None

        if self.method == 'sample_name':
            return name
        if self.method == 'split':
            prefix = name.split(self.separator, 1)[0].strip()
            return prefix or None
        if self.method == 'pattern':
            for group, regex in self._compiled:
                if regex.search(name):
                    return group
            return None
        return self.mapping.get(name)


@dataclass
class QualityGateResult:
    """Result of applying the quality gate to raw readings."""

    data: pd.DataFrame
    dropped: pd.DataFrame
    samples: pd.DataFrame
    method_log: list[str] = field(default_factory=list)


def assign_groups(
    data: pd.DataFrame,
    grouping: GroupingRule | Callable[[str], str | None],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Add 'group' and 'sample_id' columns to a reading table.

    The sample identifier is ``<group>_<barcode>``; when one group occupies
    several arrays of a chip the array is appended so identifiers stay unique.

    Args:
        data: Reading table with barcode, array and sample_name columns
        grouping: GroupingRule or a callable mapping sample name to group

    Returns:
        Tuple of (data with group/sample_id, one-row-per-sample table)

    Raises:
        UnknownGroup: If any sample cannot be classified

    """
    classify = grouping.classify if isinstance(grouping, GroupingRule) else grouping

    samples = data[['barcode', 'array', 'sample_name']].drop_duplicates().reset_index(drop=True)
    samples['group'] = [classify(name) for name in samples['sample_name']]

    unknown = samples['group'].isna() | (samples['group'].astype(str).str.strip() == '')
    if unknown.any():
        labels = [
            f"{row.sample_name or '<empty>'} ({row.barcode}/{row.array})"
            for row in samples.loc[unknown].itertuples()
        ]
        raise UnknownGroup(labels)
    samples['group'] = samples['group'].astype(str)

    sample_id = samples['group'] + '_' + samples['barcode'].astype(str)
    shared = sample_id.duplicated(keep=False)
    sample_id[shared] = sample_id[shared] + '_' + samples.loc[shared, 'array'].astype(str)
    samples['sample_id'] = sample_id

    if shared.any():
        logger.info(
            f"{int(shared.sum())} samples share a group and chip; array appended to sample_id"
        )

    out = data.merge(samples, on=['barcode', 'array', 'sample_name'], how='left')
    return out, samples


def apply_qc_steps(
    readings: pd.DataFrame,
    chip_type: ChipType | str,
    grouping: GroupingRule | Callable[[str], str | None] | None = None,
    negative_policy: str = 'clip',
    saturation_policy: str = 'exclude',
) -> QualityGateResult:
    """Apply negative-signal and saturation handling and assign groups.

    Args:
        readings: Tidy reading table from ``load_pamstation_crosstabs``
        chip_type: Chip type of the run
        grouping: Sample -> group rule (defaults to the sample name)
        negative_policy: 'clip' sets negative signal to 0, 'exclude' drops it
        saturation_policy: 'exclude' drops saturated readings, 'keep' retains them

    Returns:
        QualityGateResult with the cleaned reading table

    Raises:
        ValueError: For unknown policies
        UnknownGroup: If a sample cannot be classified

    """
    if negative_policy not in NEGATIVE_POLICIES:
        raise ValueError(f"negative_policy must be one of {NEGATIVE_POLICIES}")
    if saturation_policy not in SATURATION_POLICIES:
        raise ValueError(f"saturation_policy must be one of {SATURATION_POLICIES}")

    spec = chip_spec(chip_type)
    grouping = grouping if grouping is not None else GroupingRule()
    method_log = []

    data, samples = assign_groups(readings, grouping)
    method_log.append(
        f"Assigned {len(samples)} samples on {samples['barcode'].nunique()} "
        f"{spec.chip_type.value} chips to {samples['group'].nunique()} groups"
    )

    drop_mask = pd.Series(False, index=data.index)
    reasons = pd.Series('', index=data.index)

    negative = data['signal'] < 0
    n_negative = int(negative.sum())
    data['clipped'] = False
    if negative_policy == 'clip':
        data.loc[negative, 'signal'] = 0.0
        data.loc[negative, 'clipped'] = True
        method_log.append(f"Clipped {n_negative} negative readings to 0")
    else:
        drop_mask |= negative
        reasons[negative] = 'negative_signal'
        method_log.append(f"Excluded {n_negative} negative readings")

    saturated = data['saturated'].astype(bool) & ~drop_mask
    n_saturated = int(data['saturated'].astype(bool).sum())
    if saturation_policy == 'exclude':
        drop_mask |= saturated
        reasons[saturated] = 'saturated'
        method_log.append(f"Excluded {n_saturated} saturated readings")
    else:
        method_log.append(f"Kept {n_saturated} saturated readings (flagged)")

    dropped = data.loc[drop_mask, ['peptide', 'sample_id', 'exposure_ms']].copy()
    dropped['reason'] = reasons[drop_mask]
    dropped.insert(0, 'stage', 'quality')
    dropped = dropped[DROPPED_COLUMNS].reset_index(drop=True)

    data = data.loc[~drop_mask].reset_index(drop=True)

    for step in method_log:
        logger.info(step)

    return QualityGateResult(
        data=data,
        dropped=dropped,
        samples=samples,
        method_log=method_log,
    )
