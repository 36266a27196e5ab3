"""Tests for per-contrast differential analysis."""
from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np

from de_analysis import (
    DE_RESULT_COLUMNS,
    Contrast,
    DEAnalysisEngine,
    InsufficientSamplesError,
    adjust_pvalues,
    ensure_feature_column,
    filter_results,
    summarize_results,
    welch_statistics,
)
from omics_parser import MeasurementTable, Modality, SampleMetadata


def test_ensure_feature_column_with_named_index():
    df = pd.DataFrame(
        {"log2FoldChange": [1.5, -2.0], "padj": [0.01, 0.05]},
        index=pd.Index(["TP53", "BRCA1"], name="Gene"),
    )
    result = ensure_feature_column(df)
    assert list(result["feature"]) == ["TP53", "BRCA1"]


def test_ensure_feature_column_protein_alias():
    df = pd.DataFrame({"protein": ["P04637"], "padj": [0.01]})
    assert "feature" in ensure_feature_column(df).columns


def test_ensure_feature_column_idempotent():
    df = pd.DataFrame({"padj": [0.01]}, index=pd.Index(["TP53"], name="gene"))
    result = ensure_feature_column(ensure_feature_column(df))
    assert list(result["feature"]) == ["TP53"]


class TestAdjustPvalues:
    def test_padj_not_below_pvalue_and_monotone(self):
        np.random.seed(42)
        pvalues = np.random.uniform(0, 1, 200)
        padj = adjust_pvalues(pvalues)

        assert np.all(padj >= pvalues - 1e-12)
        assert np.all(padj <= 1.0)
        order = np.argsort(pvalues)
        assert np.all(np.diff(padj[order]) >= -1e-12)

    def test_nan_stays_nan_and_is_not_counted(self):
        padj = adjust_pvalues(np.array([0.01, np.nan, 0.04]))
        assert np.isnan(padj[1])
        # two tests, not three
        assert padj[0] == pytest.approx(0.02)
        assert padj[2] == pytest.approx(0.04)

    def test_all_nan(self):
        assert np.isnan(adjust_pvalues(np.array([np.nan, np.nan]))).all()


class TestWelchStatistics:
    def test_zero_variance_gives_nan(self):
        test = np.array([[5.0, 5.0, 5.0]])
        ref = np.array([[5.0, 5.0, 5.0]])
        result = welch_statistics(test, ref)
        assert np.isnan(result["pvalue"][0])
        assert np.isnan(result["stat"][0])

    def test_single_observation_gives_nan(self):
        test = np.array([[5.0, np.nan, np.nan]])
        ref = np.array([[1.0, 2.0, 3.0]])
        result = welch_statistics(test, ref)
        assert np.isnan(result["pvalue"][0])
        assert result["n_test"][0] == 1

    def test_missing_values_ignored(self):
        test = np.array([[10.0, 10.2, np.nan, 9.8]])
        ref = np.array([[8.0, 8.1, 7.9]])
        result = welch_statistics(test, ref)
        assert result["log2FoldChange"][0] == pytest.approx(2.0)
        assert result["pvalue"][0] < 0.01


class TestContrast:
    def test_label(self):
        assert Contrast("subtype", "Basal", "Luminal").label == "subtype:Basal_vs_Luminal"

    def test_all_pairs(self):
        metadata = SampleMetadata(
            data=pd.DataFrame({"subtype": ["C", "A", "B", "A"]}, index=["s1", "s2", "s3", "s4"])
        )
        pairs = Contrast.all_pairs(metadata, "subtype")
        assert [(c.test, c.reference) for c in pairs] == [("B", "A"), ("C", "A"), ("C", "B")]


class TestWelchComparison:
    def test_fourfold_difference_detected(self, fourfold_table, fourfold_metadata):
        engine = DEAnalysisEngine(method="welch")
        result = engine.compare(fourfold_table, fourfold_metadata, Contrast("tissue", "tumor", "normal"))

        top = result.results_df.iloc[0]
        assert top["feature"] == "TP53"
        assert top["log2FoldChange"] == pytest.approx(2.0)
        assert top["padj"] < 0.05
        assert bool(top["significant"])
        assert list(result.results_df.columns) == DE_RESULT_COLUMNS

    def test_fourfold_raw_intensities(self, fourfold_metadata):
        np.random.seed(42)
        data = np.random.normal(100.0, 5.0, size=(20, 6))
        data[0] = [400.0, 410.0, 390.0, 100.0, 102.0, 98.0]
        df = pd.DataFrame(
            data,
            index=pd.Index([f"P{i}" for i in range(20)], name="feature"),
            columns=["T1", "T2", "T3", "N1", "N2", "N3"],
        )
        table = MeasurementTable(data=df, modality=Modality.PROTEIN_INTENSITY)
        result = DEAnalysisEngine().compare(table, fourfold_metadata, Contrast("tissue", "tumor", "normal"))

        row = result.results_df.set_index("feature").loc["P0"]
        assert row["padj"] < 0.05
        assert row["log2FoldChange"] == pytest.approx(np.log2(401 / 101), abs=0.05)

    def test_every_record_carries_contrast(self, fourfold_table, fourfold_metadata):
        engine = DEAnalysisEngine()
        result = engine.compare(fourfold_table, fourfold_metadata, Contrast("tissue", "tumor", "normal"))

        assert (result.results_df["contrast"] == "tissue:tumor_vs_normal").all()
        records = list(result.records())
        assert len(records) == len(fourfold_table.features)
        assert {r.contrast for r in records} == {"tissue:tumor_vs_normal"}

    def test_na_sorted_last(self, fourfold_metadata):
        df = pd.DataFrame(
            {
                "T1": [1.0, 5.0, 3.0], "T2": [1.1, 5.0, 3.2], "T3": [0.9, 5.0, 3.1],
                "N1": [0.0, 5.0, 1.0], "N2": [0.1, 5.0, 1.2], "N3": [-0.1, 5.0, 0.9],
            },
            index=pd.Index(["A", "CONST", "B"], name="feature"),
        )
        table = MeasurementTable(data=df, modality=Modality.PROTEIN_INTENSITY, is_log_scale=True)
        result = DEAnalysisEngine().compare(table, fourfold_metadata, Contrast("tissue", "tumor", "normal"))

        assert result.results_df["feature"].iloc[-1] == "CONST"
        assert np.isnan(result.results_df["padj"].iloc[-1])
        assert not result.results_df["significant"].iloc[-1]
        assert any("undefined" in w for w in result.warnings)

    def test_counts_log_transformed_first(self, counts_table, sample_metadata):
        result = DEAnalysisEngine().compare(
            counts_table, sample_metadata, Contrast("condition", "treatment", "control")
        )
        assert any("log2(x + 1)" in w for w in result.warnings)

    def test_insufficient_samples(self, fourfold_table):
        metadata = SampleMetadata(
            data=pd.DataFrame(
                {"tissue": ["tumor", "normal", "normal", "normal", "normal", "normal"]},
                index=["T1", "T2", "T3", "N1", "N2", "N3"],
            )
        )
        with pytest.raises(InsufficientSamplesError):
            DEAnalysisEngine().compare(fourfold_table, metadata, Contrast("tissue", "tumor", "normal"))


class TestRunAllComparisons:
    def test_small_group_skipped_others_run(self, fourfold_table):
        metadata = SampleMetadata(
            data=pd.DataFrame(
                {"tissue": ["tumor", "tumor", "tumor", "normal", "normal", "metastasis"]},
                index=["T1", "T2", "T3", "N1", "N2", "N3"],
            )
        )
        contrasts = Contrast.all_pairs(metadata, "tissue")
        run = DEAnalysisEngine().run_all_comparisons(fourfold_table, metadata, contrasts)

        assert list(run.results) == ["tissue:tumor_vs_normal"]
        assert len(run.skipped) == 2
        assert all("metastasis" in s.reason for s in run.skipped)

        skipped = run.skipped_frame()
        assert set(skipped["contrast"]) == {
            "tissue:normal_vs_metastasis",
            "tissue:tumor_vs_metastasis",
        }

    def test_combined_has_one_block_per_contrast(self, counts_table, sample_metadata):
        contrasts = [
            Contrast("condition", "treatment", "control"),
            Contrast("batch", "b2", "b1"),
        ]
        run = DEAnalysisEngine().run_all_comparisons(counts_table, sample_metadata, contrasts)
        combined = run.combined()

        assert len(combined) == 2 * len(counts_table.features)
        assert combined.groupby("contrast").size().tolist() == [100, 100]

    def test_empty_run_has_columns(self, counts_table, sample_metadata):
        run = DEAnalysisEngine().run_all_comparisons(counts_table, sample_metadata, [])
        assert list(run.combined().columns) == DE_RESULT_COLUMNS
        assert run.skipped_frame().empty

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown DE method"):
            DEAnalysisEngine(method="limma")


class TestDeseqPath:
    def test_fit_once_per_factor(self, monkeypatch, counts_table, sample_metadata):
        mock_dds_cls = MagicMock()
        mock_stats_cls = MagicMock()
        mock_stats_cls.return_value.results_df = pd.DataFrame(
            {
                "log2FoldChange": np.linspace(-2, 2, 100),
                "stat": np.linspace(-5, 5, 100),
                "pvalue": np.linspace(0.0001, 1, 100),
                "padj": np.linspace(0.001, 1, 100),
            },
            index=counts_table.features,
        )
        monkeypatch.setattr("de_analysis.DeseqDataSet", mock_dds_cls)
        monkeypatch.setattr("de_analysis.DeseqStats", mock_stats_cls)

        metadata = SampleMetadata(
            data=sample_metadata.data.assign(condition=["control"] * 4 + ["low"] * 3 + ["high"] * 3)
        )
        contrasts = [
            Contrast("condition", "low", "control"),
            Contrast("condition", "high", "control"),
        ]
        run = DEAnalysisEngine(method="deseq2").run_all_comparisons(counts_table, metadata, contrasts)

        assert mock_dds_cls.call_count == 1
        assert mock_dds_cls.call_args.kwargs["design"] == "~condition"
        assert mock_stats_cls.call_count == 2
        assert mock_stats_cls.call_args_list[0].kwargs["contrast"] == ["condition", "low", "control"]
        assert set(run.results) == {"condition:low_vs_control", "condition:high_vs_control"}
        assert run.results["condition:low_vs_control"].method == "deseq2"

    def test_demo_cohort_fit(self):
        from demo_data import load_demo_dataset

        demo = load_demo_dataset()
        table = MeasurementTable(data=demo.rna_counts.astype(float), modality=Modality.RNA_COUNTS)
        metadata = SampleMetadata(data=demo.metadata)
        run = DEAnalysisEngine(method="deseq2").run_all_comparisons(
            table, metadata, [Contrast("subtype", "Basal", "Luminal")]
        )

        assert not run.skipped
        de = run.results["subtype:Basal_vs_Luminal"].results_df.set_index("feature")
        assert de.loc["MKI67", "log2FoldChange"] > 1
        assert de.loc["MKI67", "padj"] < 0.05

    def test_log_scale_table_rejected(self, fourfold_table, fourfold_metadata):
        run = DEAnalysisEngine(method="deseq2").run_all_comparisons(
            fourfold_table, fourfold_metadata, [Contrast("tissue", "tumor", "normal")]
        )
        assert not run.results
        assert "raw RNA counts" in run.skipped[0].reason


def test_filter_results(sample_de_results_df):
    filtered = filter_results(sample_de_results_df, padj_threshold=0.05, lfc_threshold=1.0)
    assert len(filtered) == 11
    assert (filtered["padj"] < 0.05).all()


def test_summarize_results(sample_de_results_df):
    summary = summarize_results(sample_de_results_df, padj_threshold=0.05, lfc_threshold=1.0)
    assert summary["significant"] == 11
    assert summary["upregulated"] == 11
    assert summary["downregulated"] == 0
    assert len(summary["top_up"]) == 10
