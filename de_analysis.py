"""
Differential abundance analysis between sample groups.

Two methods share one result layout:
- "welch": per-feature Welch t-test on log-scale values (any modality)
- "deseq2": PyDESeq2 negative binomial model for raw counts, implementing
  "fit once, contrast many" per design factor

Every result row carries the label of the contrast that produced it, so
results of several contrasts can be concatenated.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
import logging
import warnings
import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from omics_parser import (
    InputValidationError,
    MeasurementTable,
    Modality,
    SampleMetadata,
)

logger = logging.getLogger(__name__)

DE_RESULT_COLUMNS = [
    "feature",
    "contrast",
    "factor",
    "test",
    "reference",
    "log2FoldChange",
    "stat",
    "pvalue",
    "padj",
    "significant",
    "mean_test",
    "mean_reference",
    "n_test",
    "n_reference",
]


class InsufficientSamplesError(InputValidationError):
    """A contrast group has too few samples to be tested."""


def ensure_feature_column(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure DataFrame has a 'feature' column.

    Handles feature ids held in the index or under a gene/protein style
    column name, so externally produced result tables can be used too.
    """
    if "feature" in df.columns:
        return df

    aliases = [
        "gene", "Gene", "GENE", "GeneSymbol", "gene_symbol", "gene_id", "SYMBOL",
        "protein", "Protein", "accession",
    ]
    for alias in aliases:
        if alias in df.columns:
            return df.rename(columns={alias: "feature"})

    if df.index.name and df.index.name.lower() in ["feature", "gene", "symbol", "protein"]:
        df = df.reset_index()
        df.columns = ["feature"] + list(df.columns[1:])
        return df

    if df.index.name is None and len(df) > 0 and isinstance(df.index[0], str):
        df = df.reset_index()
        df.columns = ["feature"] + list(df.columns[1:])

    return df


@dataclass(frozen=True)
class Contrast:
    """Comparison of `test` against `reference` within one metadata factor."""

    factor: str
    test: str
    reference: str

    @property
    def label(self) -> str:
        return f"{self.factor}:{self.test}_vs_{self.reference}"

    @classmethod
    def all_pairs(cls, metadata: SampleMetadata, factor: str) -> List["Contrast"]:
        """Every pair of levels of `factor`, later level tested against earlier."""
        levels = sorted(metadata.groups(factor))
        return [cls(factor, test, ref) for ref, test in combinations(levels, 2)]


@dataclass(frozen=True)
class DifferentialRecord:
    """One feature's statistics within one contrast."""

    feature: str
    contrast: str
    log2_fold_change: float
    statistic: float
    pvalue: float
    padj: float
    significant: bool
    mean_test: float
    mean_reference: float
    n_test: int
    n_reference: int


@dataclass
class SkippedContrast:
    contrast: Contrast
    reason: str


@dataclass
class DEResult:
    """Result from differential analysis of one contrast."""

    contrast: Contrast
    results_df: pd.DataFrame  # DE_RESULT_COLUMNS, sorted by padj (NA last)
    method: str
    n_significant: int
    warnings: List[str] = field(default_factory=list)

    def records(self) -> Iterator[DifferentialRecord]:
        for row in self.results_df.itertuples(index=False):
            yield DifferentialRecord(
                feature=row.feature,
                contrast=row.contrast,
                log2_fold_change=row.log2FoldChange,
                statistic=row.stat,
                pvalue=row.pvalue,
                padj=row.padj,
                significant=bool(row.significant),
                mean_test=row.mean_test,
                mean_reference=row.mean_reference,
                n_test=int(row.n_test),
                n_reference=int(row.n_reference),
            )


@dataclass
class ComparisonRun:
    """All contrasts computed for one measurement table."""

    modality: Modality
    results: Dict[str, DEResult] = field(default_factory=dict)
    skipped: List[SkippedContrast] = field(default_factory=list)

    def combined(self) -> pd.DataFrame:
        frames = [r.results_df for r in self.results.values() if not r.results_df.empty]
        if not frames:
            return pd.DataFrame(columns=DE_RESULT_COLUMNS)
        return pd.concat(frames, ignore_index=True)

    def skipped_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "contrast": s.contrast.label,
                    "factor": s.contrast.factor,
                    "test": s.contrast.test,
                    "reference": s.contrast.reference,
                    "reason": s.reason,
                }
                for s in self.skipped
            ],
            columns=["contrast", "factor", "test", "reference", "reason"],
        )


def adjust_pvalues(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg over the finite p-values; NA stays NA."""
    pvalues = np.asarray(pvalues, dtype=float)
    padj = np.full(pvalues.shape, np.nan)
    finite = np.isfinite(pvalues)
    if finite.any():
        padj[finite] = multipletests(pvalues[finite], method="fdr_bh")[1]
    return padj


def welch_statistics(test_values: np.ndarray, ref_values: np.ndarray) -> Dict[str, np.ndarray]:
    """
    Row-wise Welch t-test ignoring missing values.

    Rows with fewer than two observations in a group, or zero variance in
    both groups, get NaN statistic and p-value.

    Args:
        test_values: features × test samples
        ref_values: features × reference samples

    Returns:
        Dict with log2FoldChange, stat, pvalue, mean_test, mean_reference,
        n_test, n_reference arrays
    """
    n_t = np.sum(~np.isnan(test_values), axis=1)
    n_r = np.sum(~np.isnan(ref_values), axis=1)

    with warnings.catch_warnings(), np.errstate(divide="ignore", invalid="ignore"):
        warnings.simplefilter("ignore", category=RuntimeWarning)
        mean_t = np.nanmean(test_values, axis=1)
        mean_r = np.nanmean(ref_values, axis=1)
        se2_t = np.nanvar(test_values, axis=1, ddof=1) / n_t
        se2_r = np.nanvar(ref_values, axis=1, ddof=1) / n_r
        se = np.sqrt(se2_t + se2_r)
        t_stat = (mean_t - mean_r) / se
        dof = (se2_t + se2_r) ** 2 / (
            se2_t ** 2 / (n_t - 1) + se2_r ** 2 / (n_r - 1)
        )

    valid = (n_t >= 2) & (n_r >= 2) & np.isfinite(t_stat) & (se > 0) & np.isfinite(dof)
    pvalue = np.full(t_stat.shape, np.nan)
    pvalue[valid] = 2 * stats.t.sf(np.abs(t_stat[valid]), dof[valid])
    t_stat = np.where(valid, t_stat, np.nan)

    return {
        "log2FoldChange": mean_t - mean_r,
        "stat": t_stat,
        "pvalue": pvalue,
        "mean_test": mean_t,
        "mean_reference": mean_r,
        "n_test": n_t,
        "n_reference": n_r,
    }


class DEAnalysisEngine:
    """Per-contrast differential analysis with skip reporting."""

    METHODS = ("welch", "deseq2")

    def __init__(
        self,
        method: str = "welch",
        padj_threshold: float = 0.05,
        lfc_threshold: float = 0.0,
        min_samples_per_group: int = 2,
    ):
        if method not in self.METHODS:
            raise ValueError(f"Unknown DE method '{method}'. Available: {list(self.METHODS)}")
        self.method = method
        self.padj_threshold = padj_threshold
        self.lfc_threshold = lfc_threshold
        self.min_samples_per_group = max(2, min_samples_per_group)

    def contrast_groups(
        self, metadata: SampleMetadata, contrast: Contrast
    ) -> Tuple[List[str], List[str]]:
        """
        Sample ids of the test and reference groups.

        Raises:
            InsufficientSamplesError: If either group is below the minimum size
        """
        groups = metadata.groups(contrast.factor)
        test_samples = groups.get(contrast.test, [])
        ref_samples = groups.get(contrast.reference, [])
        for level, members in ((contrast.test, test_samples), (contrast.reference, ref_samples)):
            if len(members) < self.min_samples_per_group:
                raise InsufficientSamplesError(
                    f"Group '{level}' of '{contrast.factor}' has {len(members)} samples "
                    f"(need at least {self.min_samples_per_group})",
                    details={"contrast": contrast.label, "group": level, "n": len(members)},
                )
        return test_samples, ref_samples

    def _build_results(
        self, features: Sequence[str], contrast: Contrast, columns: Dict[str, np.ndarray]
    ) -> pd.DataFrame:
        df = pd.DataFrame({"feature": list(features)})
        df["contrast"] = contrast.label
        df["factor"] = contrast.factor
        df["test"] = contrast.test
        df["reference"] = contrast.reference
        for name in DE_RESULT_COLUMNS:
            if name in columns:
                df[name] = np.asarray(columns[name])
        df["significant"] = (
            (df["padj"] < self.padj_threshold)
            & (df["log2FoldChange"].abs() >= self.lfc_threshold)
        ).fillna(False).astype(bool)
        df = df[DE_RESULT_COLUMNS]
        return df.sort_values(["padj", "pvalue"], na_position="last", kind="mergesort").reset_index(drop=True)

    def compare(
        self, table: MeasurementTable, metadata: SampleMetadata, contrast: Contrast
    ) -> DEResult:
        """
        Welch comparison of one contrast.

        Tables not on log scale are transformed with log2(x + 1) first so the
        fold change is a difference of log2 means.
        """
        test_samples, ref_samples = self.contrast_groups(metadata, contrast)
        warnings_list: List[str] = []

        data = table.data
        if not table.is_log_scale:
            data = np.log2(data.clip(lower=0) + 1)
            warnings_list.append("Values were log2(x + 1) transformed before testing")

        columns = welch_statistics(
            data[test_samples].to_numpy(dtype=float),
            data[ref_samples].to_numpy(dtype=float),
        )
        columns["padj"] = adjust_pvalues(columns["pvalue"])

        n_untested = int(np.isnan(columns["pvalue"]).sum())
        if n_untested:
            warnings_list.append(f"{n_untested} features had undefined statistics (NA)")

        results_df = self._build_results(table.features, contrast, columns)
        n_sig = int(results_df["significant"].sum())
        logger.info(f"{contrast.label}: {n_sig} significant of {len(results_df)} features")
        return DEResult(
            contrast=contrast,
            results_df=results_df,
            method="welch",
            n_significant=n_sig,
            warnings=warnings_list,
        )

    def fit_deseq_model(
        self, table: MeasurementTable, metadata: SampleMetadata, factor: str
    ) -> Tuple[DeseqDataSet, List[str]]:
        """
        Fit DESeq2 model ONCE for a factor. Returns fitted model + tested features.

        Features with any missing count are left out of the fit.
        """
        if table.modality != Modality.RNA_COUNTS or table.is_log_scale:
            raise ValueError("DESeq2 requires raw RNA counts (not log-transformed)")

        conditions = metadata.data[factor].dropna().astype(str)
        samples = [s for s in table.samples if s in conditions.index]
        counts = table.data[samples].T  # samples × features
        complete = counts.columns[counts.notna().all(axis=0)]
        if len(complete) < len(counts.columns):
            logger.warning(
                f"DESeq2 fit on '{factor}': {len(counts.columns) - len(complete)} "
                f"features with missing counts not tested"
            )
        counts = counts[complete].round().astype(int)

        dds = DeseqDataSet(
            counts=counts,
            metadata=conditions.loc[samples].to_frame(factor),
            design=f"~{factor}",
            refit_cooks=True,
            quiet=True,
        )
        dds.deseq2()
        return dds, list(complete)

    def compare_deseq(
        self,
        dds: DeseqDataSet,
        table: MeasurementTable,
        metadata: SampleMetadata,
        contrast: Contrast,
    ) -> DEResult:
        """Compute a single contrast from a fitted DESeq2 model."""
        test_samples, ref_samples = self.contrast_groups(metadata, contrast)

        stat_res = DeseqStats(
            dds, contrast=[contrast.factor, contrast.test, contrast.reference], quiet=True
        )
        stat_res.summary()
        res = stat_res.results_df.reindex(table.features)

        counts = table.data
        columns = {
            "log2FoldChange": res["log2FoldChange"].to_numpy(dtype=float),
            "stat": res["stat"].to_numpy(dtype=float),
            "pvalue": res["pvalue"].to_numpy(dtype=float),
            "padj": res["padj"].to_numpy(dtype=float),
            "mean_test": counts[test_samples].mean(axis=1).to_numpy(),
            "mean_reference": counts[ref_samples].mean(axis=1).to_numpy(),
            "n_test": counts[test_samples].notna().sum(axis=1).to_numpy(),
            "n_reference": counts[ref_samples].notna().sum(axis=1).to_numpy(),
        }
        results_df = self._build_results(table.features, contrast, columns)
        n_sig = int(results_df["significant"].sum())
        logger.info(f"{contrast.label} (DESeq2): {n_sig} significant of {len(results_df)} features")
        return DEResult(
            contrast=contrast, results_df=results_df, method="deseq2", n_significant=n_sig
        )

    def run_all_comparisons(
        self,
        table: MeasurementTable,
        metadata: SampleMetadata,
        contrasts: Sequence[Contrast],
    ) -> ComparisonRun:
        """
        Main entry point: compute every contrast, skipping the ones that cannot run.

        Skipped contrasts (too few samples, failed fit) are reported in
        ComparisonRun.skipped; the remaining contrasts still run.
        """
        run = ComparisonRun(modality=table.modality)
        fits: Dict[str, DeseqDataSet] = {}

        for contrast in contrasts:
            try:
                self.contrast_groups(metadata, contrast)
                if self.method == "deseq2":
                    if contrast.factor not in fits:
                        fits[contrast.factor], _ = self.fit_deseq_model(
                            table, metadata, contrast.factor
                        )
                    result = self.compare_deseq(fits[contrast.factor], table, metadata, contrast)
                else:
                    result = self.compare(table, metadata, contrast)
                run.results[contrast.label] = result
            except InputValidationError as e:
                # includes InsufficientSamplesError
                logger.warning(f"Skipping {contrast.label}: {e.message}")
                run.skipped.append(SkippedContrast(contrast, e.message))
            except (ValueError, RuntimeError, TypeError, KeyError) as e:
                logger.error(f"DE analysis {contrast.label} failed: {str(e)}", exc_info=True)
                run.skipped.append(SkippedContrast(contrast, f"Comparison failed: {str(e)}"))

        return run


def filter_results(
    results_df: pd.DataFrame,
    padj_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
) -> pd.DataFrame:
    """
    Filter DE results to significant features (NA statistics never pass).
    """
    return results_df[
        (results_df["padj"] < padj_threshold)
        & (results_df["log2FoldChange"].abs() > lfc_threshold)
    ].copy()


def summarize_results(
    results_df: pd.DataFrame, padj_threshold: float = 0.05, lfc_threshold: float = 1.0
) -> dict:
    """
    Summary counts for one contrast's results.

    Returns:
        Dict with tested, significant, upregulated, downregulated, top_up,
        top_down (feature names, at most 10 each)
    """
    df = results_df.dropna(subset=["padj", "log2FoldChange"])
    sig = df[df["padj"] < padj_threshold]
    up = sig[sig["log2FoldChange"] > lfc_threshold]
    down = sig[sig["log2FoldChange"] < -lfc_threshold]
    return {
        "tested": len(df),
        "significant": len(sig),
        "upregulated": len(up),
        "downregulated": len(down),
        "top_up": up.nlargest(10, "log2FoldChange")["feature"].tolist(),
        "top_down": down.nsmallest(10, "log2FoldChange")["feature"].tolist(),
    }
