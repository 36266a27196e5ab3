"""End-to-end tests on the demo cohort."""
import json
import pytest
import pandas as pd
import yaml

from analysis_config import parse_config
from gene_programs import ProgramSource
from omics_parser import MissingInputError
from pipeline import build_contrasts, main, run_pipeline


RUN_DATE = "2024-01-31"


def _raw_config(demo_files, tmp_path, **sections):
    raw = {
        "primary": {
            "measurement_path": str(demo_files["rna_counts"]),
            "metadata_path": str(demo_files["metadata"]),
            "modality": "rna_counts",
        },
        "secondary": {
            "measurement_path": str(demo_files["protein_intensities"]),
            "metadata_path": str(demo_files["metadata"]),
            "modality": "protein_intensity",
        },
        "comparison": {
            "factor": "subtype",
            "contrasts": [["Basal", "Luminal"], ["ClaudinLow", "Luminal"]],
        },
        "output": {
            "output_dir": str(tmp_path / "results"),
            "prefix": "demo",
            "run_date": RUN_DATE,
            "write_workbook": True,
        },
    }
    raw.update(sections)
    return raw


@pytest.fixture(scope="module")
def demo_run(tmp_path_factory):
    from demo_data import write_demo_dataset

    tmp_path = tmp_path_factory.mktemp("pipeline")
    demo_files = write_demo_dataset(tmp_path / "demo")
    config = parse_config(_raw_config(demo_files, tmp_path))
    return run_pipeline(config)


class TestDemoRun:
    def test_single_sample_group_skipped(self, demo_run):
        run = demo_run.primary.comparison
        assert list(run.results) == ["subtype:Basal_vs_Luminal"]
        assert [s.contrast.label for s in run.skipped] == ["subtype:ClaudinLow_vs_Luminal"]
        assert "ClaudinLow" in run.skipped[0].reason

    def test_built_in_shifts_detected(self, demo_run):
        de = demo_run.primary.comparison.results["subtype:Basal_vs_Luminal"].results_df.set_index("feature")
        assert de.loc["MKI67", "significant"]
        assert de.loc["MKI67", "log2FoldChange"] > 1
        assert de.loc["NDUFA4", "log2FoldChange"] < -1

    def test_protein_duplicates_averaged(self, demo_run):
        assert demo_run.secondary.preprocessed.n_duplicates_collapsed == 3
        assert demo_run.secondary.label == "protein"

    def test_enrichment_ranks_shifted_programs(self, demo_run):
        assert demo_run.catalog.source == ProgramSource.EMBEDDED_DEFAULT
        table = demo_run.enrichment["rna"]["subtype:Basal_vs_Luminal"].table
        up = table[table["direction"] == "up"]
        down = table[table["direction"] == "down"]
        assert up.iloc[0]["term"] == "Cell cycle G2/M"
        assert down.iloc[0]["term"] == "Oxidative phosphorylation"

    def test_program_scores_compared(self, demo_run):
        assert "Cell cycle G2/M" in demo_run.program_scores.features
        de = demo_run.program_comparison.results["subtype:Basal_vs_Luminal"].results_df
        row = de.set_index("feature").loc["Cell cycle G2/M"]
        assert row["log2FoldChange"] > 0
        assert row["padj"] < 0.05

    def test_modalities_correlate_strongly(self, demo_run):
        correlation = demo_run.integration.correlation.set_index("contrast")
        row = correlation.loc["subtype:Basal_vs_Luminal"]
        assert row["strength"] == "strong"
        assert row["direction"] == "positive"
        concordance = demo_run.integration.concordance.set_index("feature")
        assert concordance.loc["MKI67", "concordance"] == "concordant_up"

    def test_outputs_named_by_prefix_stage_and_date(self, demo_run):
        outputs = demo_run.outputs
        assert outputs["rna_differential"].name == "demo_rna_differential_20240131.csv"
        for key in [
            "rna_harmonized_matrix",
            "rna_skipped_contrasts",
            "rna_enrichment",
            "protein_differential",
            "program_scores",
            "cross_modality_correlation",
            "cross_modality_concordance",
            "feature_correlation",
            "workbook",
            "manifest",
        ]:
            assert outputs[key].exists(), key
        assert all("20240131" in path.name for path in outputs.values())

    def test_figures_written(self, demo_run):
        names = [path.name for path in demo_run.outputs.values()]
        assert "demo_rna_volcano_subtype_Basal_vs_Luminal_20240131.html" in names
        assert "demo_protein_pca_20240131.html" in names
        assert "demo_cross_modality_subtype_Basal_vs_Luminal_20240131.html" in names

    def test_exported_enrichment_ranked_by_padj(self, demo_run):
        table = pd.read_csv(demo_run.outputs["rna_enrichment"])
        assert set(table["direction"]) == {"up", "down"}
        for _, block in table.groupby("contrast"):
            assert block["padj"].is_monotonic_increasing

    def test_manifest_records_run(self, demo_run):
        manifest = json.loads(demo_run.outputs["manifest"].read_text())
        assert manifest["stages"]["catalog_source"] == "embedded_default"
        assert len(manifest["stages"]["contrasts"]) == 2
        assert len(manifest["stages"]["skipped"]) == 2
        assert manifest["config"]["output"]["run_date"] == RUN_DATE
        assert manifest["stages"]["failed_stages"] == {}


def test_provided_catalog_recorded(demo_files, tmp_path):
    gmt = tmp_path / "prior_programs.gmt"
    gmt.write_text("PROLIFERATION\tprior run\tMKI67\tTOP2A\tCCNB1\tCDK1\n")
    raw = _raw_config(demo_files, tmp_path, enrichment={"catalog_path": str(gmt)})
    del raw["secondary"]
    result = run_pipeline(parse_config(raw))

    assert result.catalog.source == ProgramSource.PROVIDED_ARTIFACT
    assert result.integration is None
    table = result.enrichment["rna"]["subtype:Basal_vs_Luminal"].table
    assert set(table["term"]) == {"PROLIFERATION"}
    up = table[table["direction"] == "up"].iloc[0]
    assert up["overlap"] == 4
    assert up["padj"] < 0.05


def test_missing_input_is_fatal(demo_files, tmp_path):
    raw = _raw_config(demo_files, tmp_path)
    raw["primary"]["metadata_path"] = str(tmp_path / "missing.csv")
    with pytest.raises(MissingInputError):
        run_pipeline(parse_config(raw))


def test_missing_secondary_keeps_primary_outputs(demo_files, tmp_path):
    raw = _raw_config(demo_files, tmp_path)
    raw["secondary"]["measurement_path"] = str(tmp_path / "missing_proteins.csv")
    raw["enrichment"] = {"score_programs": False}
    result = run_pipeline(parse_config(raw))

    assert result.secondary is None
    assert result.integration is None
    assert result.outputs["rna_differential"].exists()
    assert result.outputs["rna_enrichment"].exists()
    assert "cross_modality_correlation" not in result.outputs
    manifest = json.loads(result.outputs["manifest"].read_text())
    failed = manifest["stages"]["failed_stages"]
    assert set(failed) == {"protein", "integration"}
    assert "missing_proteins.csv" in failed["protein"]


class TestEnrichrStage:
    @pytest.fixture
    def raw(self, demo_files, tmp_path):
        raw = _raw_config(demo_files, tmp_path)
        del raw["secondary"]
        raw["enrichment"] = {"score_programs": False, "enrichr_libraries": ["KEGG_2021_Human"]}
        raw["output"]["write_workbook"] = False
        return raw

    def test_results_exported_per_direction(self, raw, mock_gseapy):
        result = run_pipeline(parse_config(raw))

        enrichr = result.enrichr["rna"]
        assert set(enrichr["direction"]) == {"up", "down"}
        assert (enrichr["contrast"] == "subtype:Basal_vs_Luminal").all()
        assert mock_gseapy.enrichr.call_count == 2
        assert mock_gseapy.enrichr.call_args.kwargs["gene_sets"] == ["KEGG_2021_Human"]
        exported = pd.read_csv(result.outputs["rna_enrichr"])
        assert "Adjusted P-value" in exported.columns

    def test_offline_run_continues(self, raw, mock_gseapy):
        mock_gseapy.enrichr.side_effect = ConnectionError("no network")
        result = run_pipeline(parse_config(raw))

        assert "rna_enrichr" not in result.outputs
        assert result.outputs["rna_enrichment"].exists()
        manifest = json.loads(result.outputs["manifest"].read_text())
        assert len(manifest["stages"]["enrichr_errors"]) == 2
        assert all("possibly offline" in e for e in manifest["stages"]["enrichr_errors"])


def test_build_contrasts_all_pairs(demo_files, tmp_path):
    from omics_parser import load_sample_metadata

    raw = _raw_config(demo_files, tmp_path)
    raw["comparison"] = {"factor": "subtype"}
    config = parse_config(raw)
    contrasts = build_contrasts(load_sample_metadata(demo_files["metadata"]), config.comparison)
    assert [c.label for c in contrasts] == [
        "subtype:ClaudinLow_vs_Basal",
        "subtype:Luminal_vs_Basal",
        "subtype:Luminal_vs_ClaudinLow",
    ]


class TestMain:
    def test_usage(self):
        assert main([]) == 2

    def test_runs_from_yaml(self, demo_files, tmp_path):
        raw = _raw_config(demo_files, tmp_path)
        del raw["secondary"]
        raw["enrichment"] = {"score_programs": False}
        raw["output"]["write_workbook"] = False
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(raw))

        assert main([str(path)]) == 0
        assert (tmp_path / "results" / "demo_manifest_20240131.json").exists()

    def test_missing_config(self, tmp_path):
        assert main([str(tmp_path / "nope.yaml")]) == 1

    def test_missing_input(self, demo_files, tmp_path):
        raw = _raw_config(demo_files, tmp_path)
        raw["primary"]["measurement_path"] = str(tmp_path / "missing.csv")
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(raw))
        assert main([str(path)]) == 1
