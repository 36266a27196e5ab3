"""
Pytest configuration and fixtures for the tumor omics comparison tests.
"""

from unittest.mock import MagicMock
import pytest
import pandas as pd
import numpy as np

from omics_parser import MeasurementTable, Modality, SampleMetadata


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_counts_df():
    """
    Sample RNA count matrix for testing.
    Shape: (100 features, 10 samples)
    """
    np.random.seed(42)
    data = np.random.negative_binomial(n=10, p=0.1, size=(100, 10))
    samples = [f"sample_{i + 1}" for i in range(10)]
    genes = [f"gene_{i + 1}" for i in range(100)]
    df = pd.DataFrame(data, index=genes, columns=samples).astype(float)
    df.index.name = "feature"
    return df


@pytest.fixture
def sample_metadata_df():
    """
    Sample metadata for testing.
    Shape: (10 samples, condition and batch), indexed by sample
    """
    samples = [f"sample_{i + 1}" for i in range(10)]
    conditions = ["control"] * 5 + ["treatment"] * 5
    df = pd.DataFrame(
        {"condition": conditions, "batch": ["b1", "b2"] * 5},
        index=pd.Index(samples, name="sample"),
    )
    return df


@pytest.fixture
def counts_table(sample_counts_df):
    return MeasurementTable(data=sample_counts_df, modality=Modality.RNA_COUNTS)


@pytest.fixture
def sample_metadata(sample_metadata_df):
    return SampleMetadata(data=sample_metadata_df)


@pytest.fixture
def sample_conditions_dict():
    """Sample conditions dictionary for testing."""
    return {f"sample_{i + 1}": "control" if i < 5 else "treatment" for i in range(10)}


@pytest.fixture
def fourfold_table():
    """
    Log2 matrix of 3 tumor vs 3 normal samples.

    TP53 is ~4x higher (2 log2 units) in tumor; the other 49 features are
    noise around the same mean.
    """
    np.random.seed(42)
    samples = ["T1", "T2", "T3", "N1", "N2", "N3"]
    genes = ["TP53"] + [f"gene_{i + 1}" for i in range(49)]
    data = np.random.normal(8.0, 0.3, size=(len(genes), len(samples)))
    data[0] = [10.0, 10.1, 9.9, 8.0, 8.1, 7.9]
    df = pd.DataFrame(data, index=pd.Index(genes, name="feature"), columns=samples)
    return MeasurementTable(data=df, modality=Modality.PROTEIN_INTENSITY, is_log_scale=True)


@pytest.fixture
def fourfold_metadata():
    return SampleMetadata(
        data=pd.DataFrame(
            {"tissue": ["tumor"] * 3 + ["normal"] * 3},
            index=pd.Index(["T1", "T2", "T3", "N1", "N2", "N3"], name="sample"),
        )
    )


@pytest.fixture
def sample_de_results_df():
    """
    Sample differential results for testing.
    Contains the columns produced by DEAnalysisEngine.
    """
    np.random.seed(42)
    n_genes = 100
    genes = [f"gene_{i + 1}" for i in range(n_genes)]

    df = pd.DataFrame(
        {
            "feature": genes,
            "contrast": "condition:treatment_vs_control",
            "log2FoldChange": np.random.normal(0, 2, n_genes),
            "stat": np.random.normal(0, 3, n_genes),
            "pvalue": np.random.uniform(0, 1, n_genes),
            "padj": np.random.uniform(0.1, 1, n_genes),
        }
    )

    # Ensure some significant genes
    df.loc[:10, "padj"] = np.random.uniform(0, 0.05, 11)
    df.loc[:10, "log2FoldChange"] = np.random.uniform(1.5, 3, 11)

    return df


@pytest.fixture
def demo_files(tmp_path):
    """Demo cohort written as CSV files."""
    from demo_data import write_demo_dataset

    return write_demo_dataset(tmp_path / "demo")


# ============================================================================
# External API Mocking Fixtures
# ============================================================================


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing."""
    mock_gp = MagicMock()

    mock_enrichr_result = MagicMock()
    mock_enrichr_result.results = pd.DataFrame(
        {
            "Term": ["immune response", "cell cycle", "apoptosis"],
            "Overlap": ["3/120", "2/85", "3/200"],
            "P-value": [0.001, 0.005, 0.01],
            "Adjusted P-value": [0.03, 0.01, 0.02],
            "Odds Ratio": [2.5, 2.0, 1.8],
            "Combined Score": [50, 40, 35],
            "Genes": ["gene_1;gene_2;gene_3", "gene_4;gene_5", "gene_6;gene_7;gene_8"],
        }
    )
    mock_gp.enrichr = MagicMock(return_value=mock_enrichr_result)

    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp
