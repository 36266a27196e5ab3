"""Tests for plot builders."""
import pytest
import pandas as pd
import numpy as np
import plotly.graph_objects as go

from visualizations import (
    create_clustered_heatmap,
    create_detection_plot,
    create_enrichment_dotplot,
    create_modality_scatter,
    create_pca_plot,
    create_volcano_plot,
)


@pytest.fixture
def log_expression_df(sample_counts_df):
    return np.log2(sample_counts_df + 1)


class TestVolcano:
    def test_basic(self, sample_de_results_df):
        fig = create_volcano_plot(sample_de_results_df, title="Volcano Plot: c")
        assert isinstance(fig, go.Figure)
        assert fig.layout.title.text == "Volcano Plot: c"

    def test_empty_raises(self):
        with pytest.raises(ValueError, match="empty"):
            create_volcano_plot(pd.DataFrame())

    def test_all_na_raises(self, sample_de_results_df):
        df = sample_de_results_df.assign(padj=np.nan)
        with pytest.raises(ValueError, match="NaN"):
            create_volcano_plot(df)

    def test_gene_column_accepted(self, sample_de_results_df):
        fig = create_volcano_plot(sample_de_results_df.rename(columns={"feature": "gene"}))
        assert isinstance(fig, go.Figure)


class TestHeatmap:
    def test_uses_de_ranking(self, log_expression_df, sample_conditions_dict, sample_de_results_df):
        fig = create_clustered_heatmap(
            log_expression_df, sample_conditions_dict, de_results_df=sample_de_results_df, top_n_features=20
        )
        assert len(fig.data[0].y) == 20

    def test_variance_fallback(self, log_expression_df, sample_conditions_dict):
        fig = create_clustered_heatmap(log_expression_df, sample_conditions_dict, top_n_features=15)
        assert len(fig.data[0].y) == 15

    def test_samples_grouped_by_condition(self, log_expression_df, sample_conditions_dict):
        fig = create_clustered_heatmap(log_expression_df, sample_conditions_dict)
        conditions = [sample_conditions_dict[s] for s in fig.data[0].x]
        assert conditions == sorted(conditions)

    def test_too_few_samples(self, log_expression_df):
        with pytest.raises(ValueError, match="only 1 samples"):
            create_clustered_heatmap(log_expression_df, {"sample_1": "control"})


class TestPCA:
    def test_basic(self, log_expression_df, sample_conditions_dict):
        fig = create_pca_plot(log_expression_df, sample_conditions_dict)
        assert "PC1" in fig.layout.xaxis.title.text

    def test_missing_values_dropped(self, log_expression_df, sample_conditions_dict):
        df = log_expression_df.copy()
        df.iloc[:50, 0] = np.nan
        fig = create_pca_plot(df, sample_conditions_dict)
        assert isinstance(fig, go.Figure)

    def test_too_few_samples(self, log_expression_df, sample_conditions_dict):
        with pytest.raises(ValueError, match="at least 3 samples"):
            create_pca_plot(log_expression_df.iloc[:, :2], sample_conditions_dict)


class TestEnrichmentDotplot:
    def test_empty_gives_annotated_figure(self):
        fig = create_enrichment_dotplot(pd.DataFrame())
        assert fig.layout.annotations[0].text == "No enrichment results to display"

    def test_basic(self):
        df = pd.DataFrame(
            {
                "term": ["Cell cycle G2/M", "Hypoxia"],
                "direction": ["up", "down"],
                "overlap": [10, 3],
                "padj": [1e-8, 0.02],
                "overlap_features": ["MKI67;TOP2A", "CA9"],
            }
        )
        fig = create_enrichment_dotplot(df, title="Enrichment: c")
        assert list(fig.data[0].y) == ["Hypoxia (down)", "Cell cycle G2/M (up)"]


class TestModalityScatter:
    def test_basic(self):
        aligned = pd.DataFrame(
            {
                "contrast": ["c"] * 4 + ["other"],
                "feature": ["A", "B", "C", "D", "A"],
                "log2FoldChange_rna": [1.0, 2.0, 3.0, 4.0, 0.0],
                "log2FoldChange_protein": [1.1, 1.9, 3.2, 3.9, 0.0],
            }
        )
        fig = create_modality_scatter(aligned, "c")
        assert "strong" in fig.layout.title.text
        assert "n = 4" in fig.layout.title.text

    def test_too_few_points(self):
        aligned = pd.DataFrame(
            {
                "contrast": ["c"],
                "feature": ["A"],
                "log2FoldChange_rna": [1.0],
                "log2FoldChange_protein": [1.0],
            }
        )
        with pytest.raises(ValueError):
            create_modality_scatter(aligned, "c")


def test_detection_plot(sample_counts_df):
    fig = create_detection_plot(sample_counts_df, threshold=50)
    assert len(fig.data[0].x) == 10


def test_detection_plot_empty():
    with pytest.raises(ValueError):
        create_detection_plot(pd.DataFrame())
