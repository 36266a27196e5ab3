"""
Cross-modality integration of differential results.

Aligns two differential tables (e.g. transcript and protein level) on the
shared (contrast, feature) key, correlates their fold changes per contrast
and bins the correlation strength by fixed |r| thresholds.
"""

from typing import Sequence, Tuple
import logging
import warnings
import numpy as np
import pandas as pd
from scipy import stats

from de_analysis import adjust_pvalues, ensure_feature_column
from omics_parser import MeasurementTable, validate_columns

logger = logging.getLogger(__name__)

STRONG_THRESHOLD = 0.7
MODERATE_THRESHOLD = 0.4

CORRELATION_COLUMNS = [
    "contrast",
    "method",
    "n_pairs",
    "r",
    "pvalue",
    "padj",
    "strength",
    "direction",
]

ALIGN_REQUIRED = ["contrast", "feature", "log2FoldChange", "padj"]


def classify_correlation_strength(
    r: float, strong: float = STRONG_THRESHOLD, moderate: float = MODERATE_THRESHOLD
) -> str:
    """Bin |r| into strong / moderate / weak; NA gives 'undefined'."""
    if r is None or not np.isfinite(r):
        return "undefined"
    magnitude = abs(r)
    if magnitude >= strong:
        return "strong"
    if magnitude >= moderate:
        return "moderate"
    return "weak"


def correlate_pairs(
    x: Sequence[float], y: Sequence[float], method: str = "pearson", min_pairs: int = 3
) -> Tuple[float, float, int]:
    """
    Correlation of paired values, ignoring pairs with a missing side.

    Returns:
        (r, pvalue, n_pairs); r and pvalue are NaN with fewer than
        `min_pairs` complete pairs or a constant side
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    complete = np.isfinite(x) & np.isfinite(y)
    x, y = x[complete], y[complete]
    n = int(complete.sum())

    if n < max(min_pairs, 3) or np.std(x) == 0 or np.std(y) == 0:
        return np.nan, np.nan, n

    if method == "pearson":
        r, p = stats.pearsonr(x, y)
    elif method == "spearman":
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            r, p = stats.spearmanr(x, y)
    else:
        raise ValueError(f"Unknown correlation method '{method}'. Use 'pearson' or 'spearman'.")
    return float(r), float(p), n


def align_differential_results(
    left: pd.DataFrame,
    right: pd.DataFrame,
    suffixes: Tuple[str, str] = ("_rna", "_protein"),
) -> pd.DataFrame:
    """
    Inner-join two differential tables on (contrast, feature).

    Raises:
        SchemaMismatchError: If either table lacks the required columns
    """
    left = ensure_feature_column(left)
    right = ensure_feature_column(right)
    validate_columns(left, ALIGN_REQUIRED, "align_differential_results(left)")
    validate_columns(right, ALIGN_REQUIRED, "align_differential_results(right)")

    keep = ["contrast", "feature", "log2FoldChange", "pvalue", "padj"]
    left_part = left[[c for c in keep if c in left.columns]]
    right_part = right[[c for c in keep if c in right.columns]]
    aligned = left_part.merge(right_part, on=["contrast", "feature"], suffixes=suffixes)

    logger.info(
        f"Aligned {len(aligned)} (contrast, feature) pairs "
        f"from {len(left_part)} and {len(right_part)} rows"
    )
    return aligned


def correlate_modalities(
    aligned: pd.DataFrame,
    suffixes: Tuple[str, str] = ("_rna", "_protein"),
    method: str = "pearson",
    min_pairs: int = 3,
    value: str = "log2FoldChange",
) -> pd.DataFrame:
    """
    Per-contrast correlation of fold changes between two modalities.

    Args:
        aligned: Output of align_differential_results
        suffixes: Suffixes used when aligning
        method: 'pearson' or 'spearman'
        min_pairs: Minimum complete pairs for a defined correlation
        value: Column stem to correlate

    Returns:
        DataFrame with CORRELATION_COLUMNS; BH-adjusted across contrasts
    """
    x_col, y_col = f"{value}{suffixes[0]}", f"{value}{suffixes[1]}"
    validate_columns(aligned, ["contrast", x_col, y_col], "correlate_modalities")

    rows = []
    for contrast, group in aligned.groupby("contrast", sort=True):
        r, p, n = correlate_pairs(group[x_col], group[y_col], method=method, min_pairs=min_pairs)
        if not np.isfinite(r):
            logger.warning(f"{contrast}: correlation undefined ({n} complete pairs or constant values)")
        rows.append(
            {
                "contrast": contrast,
                "method": method,
                "n_pairs": n,
                "r": r,
                "pvalue": p,
                "strength": classify_correlation_strength(r),
                "direction": "positive" if r > 0 else "negative" if r < 0 else "none",
            }
        )

    if not rows:
        return pd.DataFrame(columns=CORRELATION_COLUMNS)

    result = pd.DataFrame(rows)
    result["padj"] = adjust_pvalues(result["pvalue"].to_numpy())
    return result[CORRELATION_COLUMNS]


def classify_concordance(
    aligned: pd.DataFrame,
    suffixes: Tuple[str, str] = ("_rna", "_protein"),
    padj_threshold: float = 0.05,
) -> pd.DataFrame:
    """
    Label each aligned feature by agreement of its two fold changes.

    Labels: concordant_up, concordant_down, discordant (significant in both
    with opposite signs), single_modality (significant in one only) and
    not_significant.
    """
    lfc_a, lfc_b = f"log2FoldChange{suffixes[0]}", f"log2FoldChange{suffixes[1]}"
    sig_a = aligned[f"padj{suffixes[0]}"] < padj_threshold
    sig_b = aligned[f"padj{suffixes[1]}"] < padj_threshold
    up_a, up_b = aligned[lfc_a] > 0, aligned[lfc_b] > 0

    labels = np.select(
        [
            sig_a & sig_b & up_a & up_b,
            sig_a & sig_b & ~up_a & ~up_b,
            sig_a & sig_b,
            sig_a | sig_b,
        ],
        ["concordant_up", "concordant_down", "discordant", "single_modality"],
        default="not_significant",
    )
    result = aligned.copy()
    result["concordance"] = labels
    return result


def correlate_features_across_samples(
    table_a: MeasurementTable,
    table_b: MeasurementTable,
    method: str = "spearman",
    min_pairs: int = 3,
) -> pd.DataFrame:
    """
    Per-feature correlation between two modalities over their shared samples.

    Returns:
        DataFrame with feature, n_pairs, r, pvalue, padj, strength
    """
    samples = [s for s in table_a.samples if s in set(table_b.samples)]
    features = [f for f in table_a.features if f in set(table_b.features)]
    columns = ["feature", "n_pairs", "r", "pvalue", "padj", "strength"]
    if len(samples) < min_pairs or not features:
        logger.warning(
            f"Per-feature correlation skipped: {len(samples)} shared samples, "
            f"{len(features)} shared features"
        )
        return pd.DataFrame(columns=columns)

    a = table_a.data.loc[features, samples]
    b = table_b.data.loc[features, samples]
    rows = []
    for feature in features:
        r, p, n = correlate_pairs(a.loc[feature], b.loc[feature], method=method, min_pairs=min_pairs)
        rows.append({"feature": feature, "n_pairs": n, "r": r, "pvalue": p})

    result = pd.DataFrame(rows)
    result["padj"] = adjust_pvalues(result["pvalue"].to_numpy())
    result["strength"] = result["r"].apply(classify_correlation_strength)
    return result[columns].sort_values("padj", na_position="last").reset_index(drop=True)
