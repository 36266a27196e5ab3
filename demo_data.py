"""
Demo dataset generator.

Generates a small tumor cohort with matched RNA counts and protein
intensities and built-in subtype differences, for trying out the pipeline
and for tests.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Union
import pandas as pd
import numpy as np

from gene_programs import EMBEDDED_DEFAULT_PROGRAMS

# Shifted in Basal relative to Luminal
UP_IN_BASAL = EMBEDDED_DEFAULT_PROGRAMS["Cell cycle G2/M"]
DOWN_IN_BASAL = EMBEDDED_DEFAULT_PROGRAMS["Oxidative phosphorylation"]


@dataclass
class DemoDataset:
    rna_counts: pd.DataFrame  # features × samples, integer counts
    protein_intensities: pd.DataFrame  # features × samples, with NaN and duplicate rows
    metadata: pd.DataFrame  # index=sample, columns subtype, treatment, timepoint


def load_demo_dataset(seed: int = 42) -> DemoDataset:
    """
    Generate the demo cohort.

    Dataset characteristics:
    - 13 samples: 6 Basal, 6 Luminal, 1 Claudin-low (too small to compare)
    - ~200 genes including every embedded default program
    - Cell cycle G2/M genes ~4x higher in Basal
    - Oxidative phosphorylation genes ~4x lower in Basal
    - Proteins for ~60% of genes, same direction of change, ~5% missing
      values and a few duplicated protein rows (isoforms)
    - Reproducible for a given seed
    """
    rng = np.random.RandomState(seed)

    samples = (
        [f"Basal_{i:02d}" for i in range(1, 7)]
        + [f"Luminal_{i:02d}" for i in range(1, 7)]
        + ["ClaudinLow_01"]
    )
    subtype = ["Basal"] * 6 + ["Luminal"] * 6 + ["ClaudinLow"]
    metadata = pd.DataFrame(
        {
            "subtype": subtype,
            "treatment": ["ICB", "Control"] * 6 + ["ICB"],
            "timepoint": ["baseline", "baseline", "on_treatment"] * 4 + ["baseline"],
        },
        index=pd.Index(samples, name="sample"),
    )

    program_genes = []
    for genes in EMBEDDED_DEFAULT_PROGRAMS.values():
        program_genes.extend(g for g in genes if g not in program_genes)
    genes = program_genes + [f"GENE_{i:03d}" for i in range(1, 201 - len(program_genes))]

    base_means = rng.lognormal(mean=5, sigma=1.0, size=len(genes))
    fold = np.ones((len(genes), len(samples)))
    is_basal = np.array([s == "Basal" for s in subtype])
    for g_idx, gene in enumerate(genes):
        if gene in UP_IN_BASAL:
            fold[g_idx, is_basal] = 4.0
        elif gene in DOWN_IN_BASAL:
            fold[g_idx, is_basal] = 0.25

    means = base_means[:, None] * fold * rng.normal(1.0, 0.08, size=fold.shape).clip(0.5)
    counts = rng.poisson(means)
    rna_counts = pd.DataFrame(counts, index=pd.Index(genes, name="feature"), columns=samples)

    # Proteins: a subset of genes, attenuated fold change, log-normal noise
    n_proteins = int(len(genes) * 0.6)
    protein_genes = program_genes + [g for g in genes if g not in program_genes][
        : max(0, n_proteins - len(program_genes))
    ]
    p_idx = [genes.index(g) for g in protein_genes]
    intensity = (
        base_means[p_idx, None] * 1e3
        * fold[p_idx] ** 0.8
        * rng.lognormal(0, 0.1, size=(len(p_idx), len(samples)))
    )
    intensity[rng.rand(*intensity.shape) < 0.05] = np.nan
    protein = pd.DataFrame(intensity, index=pd.Index(protein_genes, name="feature"), columns=samples)

    # Duplicate isoform rows for a few proteins
    isoforms = protein.iloc[:3] * rng.lognormal(0, 0.05, size=(3, len(samples)))
    protein = pd.concat([protein, isoforms])

    return DemoDataset(rna_counts=rna_counts, protein_intensities=protein, metadata=metadata)


def write_demo_dataset(directory: Union[str, Path], seed: int = 42) -> Dict[str, Path]:
    """Write the demo cohort as CSV files and return their paths."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    demo = load_demo_dataset(seed=seed)

    paths = {
        "rna_counts": directory / "rna_counts.csv",
        "protein_intensities": directory / "protein_intensities.csv",
        "metadata": directory / "sample_metadata.csv",
    }
    demo.rna_counts.reset_index().rename(columns={"feature": "gene"}).to_csv(
        paths["rna_counts"], index=False
    )
    demo.protein_intensities.reset_index().rename(columns={"feature": "protein"}).to_csv(
        paths["protein_intensities"], index=False
    )
    demo.metadata.reset_index().rename(columns={"sample": "sample_id"}).to_csv(
        paths["metadata"], index=False
    )
    return paths


if __name__ == "__main__":
    import sys

    target = sys.argv[1] if len(sys.argv) > 1 else "data/demo"
    for name, path in write_demo_dataset(target).items():
        print(f"{name}: {path}")
