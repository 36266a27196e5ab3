"""
Pathway Enrichment Analysis Module

Over-representation analysis of up- and down-regulated feature lists against
a gene set catalog, using a hypergeometric test over the measured universe.
An online Enrichr query through GSEApy is available as well.

Classes:
    PathwayEnrichment: Main class for pathway enrichment analysis
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple
import logging
import gseapy as gp
import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from de_analysis import adjust_pvalues, ensure_feature_column
from gene_programs import GeneSetCatalog

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = [
    "contrast",
    "direction",
    "term",
    "overlap",
    "set_size",
    "query_size",
    "universe_size",
    "fold_enrichment",
    "pvalue",
    "padj",
    "overlap_features",
]


@dataclass(frozen=True)
class FeatureLists:
    up: Tuple[str, ...]
    down: Tuple[str, ...]
    universe: FrozenSet = frozenset()


@dataclass
class EnrichmentResult:
    """Enrichment results for a single comparison."""

    contrast: str
    table: pd.DataFrame  # ENRICHMENT_COLUMNS, ranked by padj across directions
    n_up: int
    n_down: int
    universe_size: int
    excluded_sets: List[str] = field(default_factory=list)
    error: Optional[str] = None


def hypergeometric_pvalue(overlap: int, universe_size: int, set_size: int, query_size: int) -> float:
    """P(X >= overlap) drawing `query_size` from a universe with `set_size` successes."""
    if overlap <= 0:
        return 1.0
    return float(hypergeom.sf(overlap - 1, universe_size, set_size, query_size))


class PathwayEnrichment:
    """
    Over-representation analysis against a fixed catalog.

    Supports:
    - Feature selection from DE results (up and down lists)
    - Hypergeometric test with universe-restricted set sizes
    - BH correction across every set tested within one direction
    - Enrichr API queries with graceful offline handling
    """

    def __init__(self, min_set_size: int = 3, max_set_size: int = 500):
        self.min_set_size = min_set_size
        self.max_set_size = max_set_size

    def select_feature_lists(
        self,
        de_results: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 0.0,
    ) -> FeatureLists:
        """
        Split one contrast's DE results into up/down lists plus the universe.

        The universe is every feature with a defined p-value in the contrast.

        Args:
            de_results: DataFrame with columns: feature, log2FoldChange, pvalue, padj
            padj_threshold: Adjusted p-value threshold
            lfc_threshold: Absolute log2 fold change threshold

        Returns:
            FeatureLists sorted by padj ascending
        """
        de_results = ensure_feature_column(de_results)
        tested = de_results.dropna(subset=["pvalue"])
        universe = frozenset(tested["feature"].astype(str))

        sig = tested.dropna(subset=["padj", "log2FoldChange"])
        sig = sig[
            (sig["padj"] < padj_threshold) & (sig["log2FoldChange"].abs() >= lfc_threshold)
        ].sort_values("padj", kind="mergesort")
        up = sig[sig["log2FoldChange"] > 0]["feature"].astype(str)
        down = sig[sig["log2FoldChange"] < 0]["feature"].astype(str)
        return FeatureLists(up=tuple(up), down=tuple(down), universe=universe)

    def run_ora(
        self,
        query: List[str],
        catalog: GeneSetCatalog,
        universe: Set[str],
        direction: str = "up",
        contrast: str = "",
    ) -> Tuple[pd.DataFrame, List[str]]:
        """
        Hypergeometric over-representation test of one feature list.

        Sets whose overlap with the universe falls outside
        [min_set_size, max_set_size] are excluded before testing.

        Returns:
            Tuple of (results_df, excluded_set_names); results_df has
            ENRICHMENT_COLUMNS ranked by padj ascending (pvalue breaks ties).
            Empty query or universe gives an empty results_df.
        """
        universe = set(universe)
        query_set = set(query) & universe

        excluded = []
        eligible: Dict[str, Set[str]] = {}
        for term, members in catalog.programs.items():
            in_universe = set(members) & universe
            if len(in_universe) < self.min_set_size or len(in_universe) > self.max_set_size:
                excluded.append(term)
            else:
                eligible[term] = in_universe

        if not query_set or not eligible:
            return pd.DataFrame(columns=ENRICHMENT_COLUMNS), excluded

        universe_size = len(universe)
        query_size = len(query_set)
        rows = []
        for term, members in eligible.items():
            hits = sorted(query_set & members)
            expected = query_size * len(members) / universe_size
            rows.append(
                {
                    "contrast": contrast,
                    "direction": direction,
                    "term": term,
                    "overlap": len(hits),
                    "set_size": len(members),
                    "query_size": query_size,
                    "universe_size": universe_size,
                    "fold_enrichment": len(hits) / expected if expected > 0 else np.nan,
                    "pvalue": hypergeometric_pvalue(
                        len(hits), universe_size, len(members), query_size
                    ),
                    "overlap_features": ";".join(hits),
                }
            )

        results = pd.DataFrame(rows)
        results["padj"] = adjust_pvalues(results["pvalue"].to_numpy())
        results = results.sort_values(["padj", "pvalue"], kind="mergesort").reset_index(drop=True)
        return results[ENRICHMENT_COLUMNS], excluded

    def run_enrichment(
        self,
        de_results: pd.DataFrame,
        catalog: GeneSetCatalog,
        contrast: str = "",
        padj_threshold: float = 0.05,
        lfc_threshold: float = 0.0,
    ) -> EnrichmentResult:
        """
        Test the up and down lists of one contrast against the catalog.

        Each direction is corrected separately; the combined table is ranked
        by adjusted p-value across both directions.
        """
        lists = self.select_feature_lists(de_results, padj_threshold, lfc_threshold)

        tables = []
        excluded: List[str] = []
        for direction, query in (("up", lists.up), ("down", lists.down)):
            table, excluded = self.run_ora(
                list(query), catalog, lists.universe, direction=direction, contrast=contrast
            )
            if not table.empty:
                tables.append(table)

        if excluded:
            logger.info(
                f"{contrast}: {len(excluded)} gene sets excluded "
                f"(universe overlap outside {self.min_set_size}-{self.max_set_size})"
            )

        if tables:
            combined = pd.concat(tables, ignore_index=True)
            combined = combined.sort_values(["padj", "pvalue"], kind="mergesort").reset_index(drop=True)
        else:
            combined = pd.DataFrame(columns=ENRICHMENT_COLUMNS)
        if not lists.up and not lists.down:
            logger.info(f"{contrast}: no significant features, enrichment has no results")

        return EnrichmentResult(
            contrast=contrast,
            table=combined,
            n_up=len(lists.up),
            n_down=len(lists.down),
            universe_size=len(lists.universe),
            excluded_sets=excluded,
        )

    def run_enrichr(
        self, gene_list: List[str], gene_sets: List[str], organism: str = "Human"
    ) -> Tuple[pd.DataFrame, Optional[str]]:
        """
        Run Enrichr API query for pathway enrichment.

        Args:
            gene_list: List of gene symbols
            gene_sets: List of gene set libraries (e.g., ['GO_Biological_Process_2023'])
            organism: Organism name (default 'Human')

        Returns:
            Tuple of (results_df, error_message)
            - results_df: Columns Term, Overlap, P-value, Adjusted P-value, Genes
            - error_message: None if successful, error string if API fails
        """
        if not gene_list:
            return pd.DataFrame(), "No genes provided for enrichment"

        try:
            enr = gp.enrichr(
                gene_list=gene_list,
                gene_sets=gene_sets,
                organism=organism,
                outdir=None,  # Don't save to disk
                cutoff=0.05,
            )
        except Exception as e:
            # Graceful offline handling
            logger.warning(f"Enrichr query failed: {str(e)}")
            return pd.DataFrame(), f"Enrichment analysis failed (possibly offline): {str(e)}"

        results_df = enr.results
        standardized = results_df[
            ["Term", "Overlap", "P-value", "Adjusted P-value", "Genes"]
        ].copy()
        return standardized.sort_values("Adjusted P-value").head(20), None
