"""
End-to-end analysis pipeline.

load → filter/normalize → compare → enrich → integrate → export

Each stage takes its inputs as arguments and returns its outputs; nothing is
shared between stages through module state. Run with:

    python pipeline.py config/analysis.yaml
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import sys
import pandas as pd

from analysis_config import (
    AnalysisConfig,
    ComparisonConfig,
    ConfigError,
    InputConfig,
    load_config,
)
from de_analysis import ComparisonRun, Contrast, DEAnalysisEngine
from export_engine import ExportEngine
from gene_programs import GeneSetCatalog, load_catalog, score_programs
from integration import (
    align_differential_results,
    classify_concordance,
    correlate_features_across_samples,
    correlate_modalities,
)
from omics_parser import (
    InputValidationError,
    MeasurementTable,
    Modality,
    MissingInputError,
    SampleMetadata,
    load_measurement_table,
    load_sample_metadata,
)
from pathway_enrichment import EnrichmentResult, PathwayEnrichment
from preprocessing import PreprocessResult, log_normalize, preprocess
from run_manifest import RunManifest
import visualizations

logger = logging.getLogger(__name__)

MODALITY_LABELS = {
    Modality.RNA_COUNTS: "rna",
    Modality.PROTEIN_INTENSITY: "protein",
    Modality.PROGRAM_SCORE: "program",
}


@dataclass
class ModalityResult:
    """Everything computed for one measurement table."""

    label: str
    loaded: MeasurementTable
    preprocessed: PreprocessResult
    normalized: MeasurementTable
    comparison: ComparisonRun


@dataclass
class IntegrationResult:
    aligned: pd.DataFrame
    correlation: pd.DataFrame
    concordance: pd.DataFrame
    feature_correlation: pd.DataFrame
    suffixes: Tuple[str, str]


@dataclass
class PipelineResult:
    primary: ModalityResult
    secondary: Optional[ModalityResult] = None
    catalog: Optional[GeneSetCatalog] = None
    enrichment: Dict[str, Dict[str, EnrichmentResult]] = field(default_factory=dict)
    enrichr: Dict[str, pd.DataFrame] = field(default_factory=dict)
    enrichr_errors: List[str] = field(default_factory=list)
    program_scores: Optional[MeasurementTable] = None
    program_comparison: Optional[ComparisonRun] = None
    integration: Optional[IntegrationResult] = None
    # stage name -> reason, for stages that could not run
    failed_stages: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, Path] = field(default_factory=dict)


def load_inputs(input_config: InputConfig) -> Tuple[MeasurementTable, SampleMetadata]:
    """Load one measurement table and its sample metadata (fatal if missing)."""
    table = load_measurement_table(
        input_config.measurement_path,
        modality=input_config.modality,
        feature_column=input_config.feature_column,
        sheet_name=input_config.sheet_name,
        is_log_scale=input_config.is_log_scale,
    )
    metadata = load_sample_metadata(
        input_config.metadata_path, sample_column=input_config.sample_column
    )
    return table, metadata


def build_contrasts(metadata: SampleMetadata, comparison: ComparisonConfig) -> List[Contrast]:
    """Configured (test, reference) pairs, or every pair of factor levels."""
    metadata.require([comparison.factor], stage="build_contrasts")
    if comparison.contrasts:
        return [Contrast(comparison.factor, test, ref) for test, ref in comparison.contrasts]
    return Contrast.all_pairs(metadata, comparison.factor)


def analyze_modality(
    input_config: InputConfig, config: AnalysisConfig, label: Optional[str] = None
) -> ModalityResult:
    """Load, preprocess and compare one modality."""
    table, metadata = load_inputs(input_config)
    filtering = config.filtering
    comparison = config.comparison

    method = comparison.method
    if method == "deseq2" and (table.modality != Modality.RNA_COUNTS or table.is_log_scale):
        logger.warning(
            f"DESeq2 needs raw counts; using Welch test for {table.modality.value} table"
        )
        method = "welch"

    # DESeq2 tests raw filtered counts; normalization is then only for plots and scoring
    prep = preprocess(
        table,
        metadata,
        detection_threshold=filtering.detection_threshold,
        min_samples=filtering.min_samples,
        normalization="none" if method == "deseq2" else filtering.normalization,
    )
    normalized = (
        log_normalize(prep.table, filtering.normalization) if method == "deseq2" else prep.table
    )
    test_table = prep.table if method == "deseq2" else normalized

    engine = DEAnalysisEngine(
        method=method,
        padj_threshold=comparison.padj_threshold,
        lfc_threshold=comparison.lfc_threshold,
        min_samples_per_group=comparison.min_samples_per_group,
    )
    contrasts = build_contrasts(prep.metadata, comparison)
    run = engine.run_all_comparisons(test_table, prep.metadata, contrasts)

    label = label or MODALITY_LABELS[table.modality]
    logger.info(
        f"[{label}] {len(run.results)} contrasts computed, {len(run.skipped)} skipped"
    )
    return ModalityResult(
        label=label, loaded=table, preprocessed=prep, normalized=normalized, comparison=run
    )


def run_enrichment_stage(
    modality: ModalityResult, catalog: GeneSetCatalog, config: AnalysisConfig
) -> Dict[str, EnrichmentResult]:
    analyzer = PathwayEnrichment(
        min_set_size=config.enrichment.min_set_size,
        max_set_size=config.enrichment.max_set_size,
    )
    results = {}
    for label, de_result in modality.comparison.results.items():
        results[label] = analyzer.run_enrichment(
            de_result.results_df,
            catalog,
            contrast=label,
            padj_threshold=config.comparison.padj_threshold,
            lfc_threshold=config.comparison.lfc_threshold,
        )
    return results


def run_enrichr_stage(
    modality: ModalityResult, config: AnalysisConfig
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Query Enrichr with each contrast's up and down lists.

    A failed query (usually no network) is logged and reported; the local
    catalog results are unaffected.
    """
    analyzer = PathwayEnrichment()
    libraries = list(config.enrichment.enrichr_libraries)
    tables = []
    errors: List[str] = []
    for label, de_result in modality.comparison.results.items():
        lists = analyzer.select_feature_lists(
            de_result.results_df,
            padj_threshold=config.comparison.padj_threshold,
            lfc_threshold=config.comparison.lfc_threshold,
        )
        for direction, features in (("up", lists.up), ("down", lists.down)):
            if not features:
                continue
            df, error = analyzer.run_enrichr(list(features), libraries)
            if error:
                logger.warning(f"[{modality.label}] Enrichr skipped for {label} ({direction}): {error}")
                errors.append(f"{modality.label} {label} {direction}: {error}")
                continue
            tables.append(df.assign(contrast=label, direction=direction))

    if not tables:
        return pd.DataFrame(), errors
    return pd.concat(tables, ignore_index=True), errors


def run_program_stage(
    modality: ModalityResult, catalog: GeneSetCatalog, config: AnalysisConfig
) -> Tuple[Optional[MeasurementTable], Optional[ComparisonRun]]:
    """Score catalog programs per sample and compare the scores between groups."""
    try:
        scores = score_programs(modality.normalized, catalog)
    except InputValidationError as e:
        logger.warning(f"Program scoring skipped: {e.message}")
        return None, None

    metadata = modality.preprocessed.metadata
    engine = DEAnalysisEngine(
        method="welch",
        padj_threshold=config.comparison.padj_threshold,
        min_samples_per_group=config.comparison.min_samples_per_group,
    )
    run = engine.run_all_comparisons(scores, metadata, build_contrasts(metadata, config.comparison))
    return scores, run


def run_integration_stage(
    primary: ModalityResult, secondary: ModalityResult, config: AnalysisConfig
) -> IntegrationResult:
    suffixes = (f"_{primary.label}", f"_{secondary.label}")
    aligned = align_differential_results(
        primary.comparison.combined(), secondary.comparison.combined(), suffixes=suffixes
    )
    correlation = correlate_modalities(
        aligned,
        suffixes=suffixes,
        method=config.integration.method,
        min_pairs=config.integration.min_pairs,
    )
    concordance = classify_concordance(
        aligned, suffixes=suffixes, padj_threshold=config.comparison.padj_threshold
    )
    if config.integration.per_feature:
        feature_correlation = correlate_features_across_samples(
            primary.normalized,
            secondary.normalized,
            method=config.integration.method,
            min_pairs=config.integration.min_pairs,
        )
    else:
        feature_correlation = pd.DataFrame()
    return IntegrationResult(
        aligned=aligned,
        correlation=correlation,
        concordance=concordance,
        feature_correlation=feature_correlation,
        suffixes=suffixes,
    )


def export_tables(result: PipelineResult, exporter: ExportEngine) -> Dict[str, Path]:
    """Write every stage table as CSV."""
    outputs: Dict[str, Path] = {}
    modalities = [m for m in (result.primary, result.secondary) if m is not None]

    for modality in modalities:
        label = modality.label
        run = modality.comparison
        outputs[f"{label}_harmonized_matrix"] = exporter.write_matrix(
            modality.normalized, f"{label}_harmonized_matrix"
        )
        outputs[f"{label}_differential"] = exporter.write_csv(run.combined(), f"{label}_differential")
        if run.skipped:
            outputs[f"{label}_skipped_contrasts"] = exporter.write_csv(
                run.skipped_frame(), f"{label}_skipped_contrasts"
            )
        enrichment = result.enrichment.get(label)
        if enrichment:
            tables = [e.table for e in enrichment.values() if not e.table.empty]
            if tables:
                ranked = pd.concat(tables, ignore_index=True).sort_values(
                    ["contrast", "padj", "pvalue"], kind="mergesort"
                )
                outputs[f"{label}_enrichment"] = exporter.write_csv(ranked, f"{label}_enrichment")
        enrichr = result.enrichr.get(label)
        if enrichr is not None and not enrichr.empty:
            outputs[f"{label}_enrichr"] = exporter.write_csv(enrichr, f"{label}_enrichr")

    if result.program_scores is not None:
        outputs["program_scores"] = exporter.write_matrix(result.program_scores, "program_scores")
    if result.program_comparison is not None:
        outputs["program_score_differential"] = exporter.write_csv(
            result.program_comparison.combined(), "program_score_differential"
        )

    if result.integration is not None:
        outputs["cross_modality_correlation"] = exporter.write_csv(
            result.integration.correlation, "cross_modality_correlation"
        )
        outputs["cross_modality_concordance"] = exporter.write_csv(
            result.integration.concordance, "cross_modality_concordance"
        )
        if not result.integration.feature_correlation.empty:
            outputs["feature_correlation"] = exporter.write_csv(
                result.integration.feature_correlation, "feature_correlation"
            )
    return outputs


def render_figures(
    result: PipelineResult, exporter: ExportEngine, config: AnalysisConfig
) -> Dict[str, Path]:
    """Render plots; a plot whose input is insufficient is skipped and logged."""
    outputs: Dict[str, Path] = {}
    fmt = config.output.figure_format
    factor = config.comparison.factor

    def render(name: str, build):
        try:
            outputs[name] = exporter.export_figure(build(), name, format=fmt)
        except ValueError as e:
            logger.warning(f"Skipping plot {name}: {str(e)}")

    for modality in (m for m in (result.primary, result.secondary) if m is not None):
        conditions = modality.preprocessed.metadata.conditions(factor)
        render(
            f"{modality.label}_detection",
            lambda m=modality: visualizations.create_detection_plot(
                m.loaded.data, threshold=config.filtering.detection_threshold
            ),
        )
        render(
            f"{modality.label}_pca",
            lambda m=modality, c=conditions: visualizations.create_pca_plot(m.normalized.data, c),
        )
        for label, de_result in modality.comparison.results.items():
            render(
                f"{modality.label}_volcano_{label}",
                lambda r=de_result: visualizations.create_volcano_plot(
                    r.results_df,
                    lfc_threshold=config.comparison.lfc_threshold,
                    padj_threshold=config.comparison.padj_threshold,
                    title=f"Volcano Plot: {r.contrast.label}",
                ),
            )
            render(
                f"{modality.label}_heatmap_{label}",
                lambda m=modality, r=de_result, c=conditions: visualizations.create_clustered_heatmap(
                    m.normalized.data, c, de_results_df=r.results_df
                ),
            )
        for label, enrichment in result.enrichment.get(modality.label, {}).items():
            render(
                f"{modality.label}_enrichment_{label}",
                lambda e=enrichment: visualizations.create_enrichment_dotplot(
                    e.table, title=f"Enrichment: {e.contrast}"
                ),
            )

    if result.integration is not None:
        for contrast in result.integration.correlation["contrast"]:
            render(
                f"cross_modality_{contrast}",
                lambda c=contrast: visualizations.create_modality_scatter(
                    result.integration.aligned,
                    c,
                    suffixes=result.integration.suffixes,
                    labels=tuple(s.lstrip("_") for s in result.integration.suffixes),
                    method=config.integration.method,
                ),
            )
    return outputs


def _stage_summary(result: PipelineResult) -> dict:
    summary = {
        "catalog_source": result.catalog.source.value if result.catalog else None,
        "catalog_path": result.catalog.path if result.catalog else None,
        "contrasts": [],
        "skipped": [],
        "failed_stages": dict(result.failed_stages),
        "enrichr_errors": list(result.enrichr_errors),
    }
    for modality in (m for m in (result.primary, result.secondary) if m is not None):
        prep = modality.preprocessed
        summary[modality.label] = {
            "features": prep.table.shape[0],
            "samples": prep.table.shape[1],
            "duplicates_collapsed": prep.n_duplicates_collapsed,
            "features_filtered": prep.n_filtered,
            "normalization": prep.normalization,
            "warnings": prep.warnings,
        }
        for label, de_result in modality.comparison.results.items():
            summary["contrasts"].append(
                {
                    "modality": modality.label,
                    "contrast": label,
                    "method": de_result.method,
                    "significant": de_result.n_significant,
                }
            )
        for skipped in modality.comparison.skipped:
            summary["skipped"].append(
                {"modality": modality.label, "contrast": skipped.contrast.label, "reason": skipped.reason}
            )
    return summary


def run_pipeline(config: AnalysisConfig) -> PipelineResult:
    """
    Run every stage for one configuration.

    A missing secondary input only disables that modality and the
    integration stage; the failure is logged and recorded in the manifest.

    Raises:
        MissingInputError: If a primary measurement or metadata file is missing
    """
    primary = analyze_modality(config.primary, config)
    result = PipelineResult(primary=primary)

    if config.secondary is not None:
        label = MODALITY_LABELS[config.secondary.modality]
        if label == primary.label:
            label = f"{label}_secondary"
        try:
            result.secondary = analyze_modality(config.secondary, config, label=label)
        except MissingInputError as e:
            logger.error(f"Secondary input unavailable, skipping {label} and integration: {e.message}")
            result.failed_stages[label] = e.message
            result.failed_stages["integration"] = f"secondary input missing: {e.details.get('expected_path')}"

    if config.enrichment.enabled:
        catalog = load_catalog(
            config.enrichment.catalog_path, allow_fallback=config.enrichment.allow_fallback
        )
        result.catalog = catalog
        for modality in (m for m in (result.primary, result.secondary) if m is not None):
            result.enrichment[modality.label] = run_enrichment_stage(modality, catalog, config)
            if config.enrichment.enrichr_libraries:
                result.enrichr[modality.label], errors = run_enrichr_stage(modality, config)
                result.enrichr_errors.extend(errors)
        scorable = primary.loaded.modality != Modality.PROGRAM_SCORE
        if config.enrichment.score_programs and scorable:
            result.program_scores, result.program_comparison = run_program_stage(
                primary, catalog, config
            )

    if result.secondary is not None:
        result.integration = run_integration_stage(primary, result.secondary, config)

    exporter = ExportEngine(
        config.output.output_dir, prefix=config.output.prefix, run_date=config.output.run_date
    )
    result.outputs.update(export_tables(result, exporter))
    result.outputs.update(render_figures(result, exporter, config))

    if config.output.write_workbook:
        sheets = {
            f"DE_{result.primary.label}": result.primary.comparison.combined(),
        }
        for label, enrichment in result.enrichment.get(result.primary.label, {}).items():
            sheets[f"ORA_{label}"] = enrichment.table
        if result.integration is not None:
            sheets["Correlation"] = result.integration.correlation
        result.outputs["workbook"] = exporter.export_workbook(
            sheets, settings=_flatten(config.to_dict())
        )

    manifest = RunManifest.build(config.to_dict(), _stage_summary(result), result.outputs)
    result.outputs["manifest"] = RunManifest.save(manifest, exporter.path_for("manifest", "json"))
    logger.info(f"Pipeline finished: {len(result.outputs)} outputs in {exporter.output_dir}")
    return result


def _flatten(config: dict, prefix: str = "") -> dict:
    flat = {}
    for key, value in config.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{name}."))
        else:
            flat[name] = value
    return flat


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if len(argv) != 1:
        print("Usage: python pipeline.py <config.yaml>", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config(argv[0])
        run_pipeline(config)
    except ConfigError as e:
        logger.error(str(e))
        return 1
    except InputValidationError as e:
        logger.error(e.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
