"""
pamchip-slope: kinase activity slopes from PamStation PamChip arrays

A pipeline that turns PamStation signal/saturation crosstab exports into
quality-controlled per-peptide activity slopes (log2(100 x slope) of signal
vs. exposure time), chip-normalized and group-averaged views, and chip-paired
group comparisons.
"""

__version__ = "0.1.0"

from .chip import (
    ChipSpec,
    ChipType,
    chip_spec,
)
from .errors import (
    DegenerateFit,
    MissingExposure,
    PamChipError,
    SchemaMismatch,
    UnknownGroup,
    UnpairedChip,
)
from .data_io import (
    load_pamstation_crosstabs,
    read_crosstab,
    validate_crosstab,
)
from .quality import (
    GroupingRule,
    apply_qc_steps,
)
from .endpoints import extract_endpoints
from .filters import (
    filter_low_signal,
    filter_nonlinear,
    filter_reference_peptides,
)
from .slope_model import (
    LinearFit,
    fit_linear,
    fit_slopes,
    transform_slope,
)
from .normalization import (
    NormalizationResult,
    normalize_slopes,
    to_wide,
)
from .comparison import (
    Comparison,
    ComparisonResult,
    compare_groups,
    run_comparisons,
)
from .pipeline import (
    PipelineResult,
    run_pipeline,
)
from .validation import (
    NormalizationMetrics,
    validate_normalization,
)
