"""
Interactive visualizations using Plotly.

Provides volcano plots, clustered heatmaps, PCA plots, enrichment dot plots,
cross-modality fold-change scatter plots and detection bar plots. Every
function raises ValueError when its input cannot produce a plot, so the
caller can skip that plot and carry on.
"""

from typing import Dict, Optional, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from scipy.cluster.hierarchy import linkage, leaves_list
from scipy.spatial.distance import pdist
from sklearn.decomposition import PCA

from de_analysis import ensure_feature_column
from integration import classify_correlation_strength, correlate_pairs


def create_volcano_plot(
    results_df: pd.DataFrame, lfc_threshold: float = 1.0, padj_threshold: float = 0.05,
    top_n_labels: int = 10, title: str = "Volcano Plot",
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Args:
        results_df: DataFrame with columns: feature, log2FoldChange, padj
        lfc_threshold: Log2 fold change threshold for significance (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)
        top_n_labels: Number of most significant features to label

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Ensure the differential analysis produced results."
        )

    results_df = ensure_feature_column(results_df)
    missing = [c for c in ["feature", "log2FoldChange", "padj"] if c not in results_df.columns]
    if missing:
        raise ValueError(f"Cannot create volcano plot: missing required columns {missing}.")

    # NA statistics are not plotted
    df = results_df.dropna(subset=["padj", "log2FoldChange"]).copy()
    if df.empty:
        raise ValueError("Cannot create volcano plot: all padj values are NaN.")

    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))  # Clip to avoid inf
    df["significance"] = np.select(
        [
            (df["padj"] < padj_threshold) & (df["log2FoldChange"] > lfc_threshold),
            (df["padj"] < padj_threshold) & (df["log2FoldChange"] < -lfc_threshold),
        ],
        ["Up", "Down"],
        default="NS",
    )

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="significance",
        hover_name="feature",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "significance": False,
        },
        color_discrete_map={"Up": "red", "Down": "blue", "NS": "lightgray"},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top = df[df["padj"] < padj_threshold].nsmallest(top_n_labels, "padj")
        if not top.empty:
            fig.add_trace(
                go.Scatter(
                    x=top["log2FoldChange"],
                    y=top["-log10_padj"],
                    mode="text",
                    text=top["feature"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title=title, showlegend=True)
    return fig


def create_clustered_heatmap(
    expression_df: pd.DataFrame,
    sample_conditions: Dict[str, str],
    de_results_df: Optional[pd.DataFrame] = None,
    top_n_features: int = 50,
    z_score: bool = True,
) -> go.Figure:
    """
    Create heatmap with row (feature) clustering.

    Features are the top N by padj when DE results are given (falling back
    to the most variable features if fewer than 10 qualify), otherwise the
    top N by variance. Samples are grouped by condition, not clustered.

    Args:
        expression_df: features × samples (log scale)
        sample_conditions: Dict[sample_name, condition]
        de_results_df: Optional DE results with 'feature', 'padj' columns
        top_n_features: Number of features to display (default: 50)
        z_score: Apply z-score normalization per feature (default: True)
    """
    if expression_df is None or expression_df.empty:
        raise ValueError("Cannot create heatmap: expression_df is empty or None.")
    if not sample_conditions:
        raise ValueError("Cannot create heatmap: sample_conditions is empty.")

    samples = [s for s in expression_df.columns if s in sample_conditions]
    if len(samples) < 2:
        raise ValueError(
            f"Cannot create heatmap: only {len(samples)} samples have a condition assigned."
        )
    expression_df = expression_df[samples]

    top_features = []
    if de_results_df is not None and not de_results_df.empty:
        ranked = ensure_feature_column(de_results_df).dropna(subset=["padj"])
        ranked = ranked.drop_duplicates("feature").nsmallest(top_n_features, "padj")
        top_features = [f for f in ranked["feature"] if f in expression_df.index]
    if len(top_features) < 10:
        top_features = expression_df.var(axis=1).nlargest(top_n_features).index.tolist()

    plot_data = expression_df.loc[top_features]

    if z_score:
        plot_data = plot_data.sub(plot_data.mean(axis=1), axis=0).div(
            plot_data.std(axis=1).replace(0, np.nan), axis=0
        )
    plot_data = plot_data.fillna(0)

    sample_order = sorted(plot_data.columns, key=lambda s: sample_conditions.get(s, ""))
    plot_data = plot_data[sample_order]

    if len(plot_data) > 1:
        linkage_matrix = linkage(pdist(plot_data.values, metric="euclidean"), method="average")
        plot_data = plot_data.iloc[leaves_list(linkage_matrix)]

    fig = go.Figure(
        data=go.Heatmap(
            z=plot_data.values,
            x=plot_data.columns,
            y=plot_data.index,
            colorscale="RdBu_r",
            zmid=0,
            hovertemplate="Feature: %{y}<br>Sample: %{x}<br>Value: %{z:.2f}<extra></extra>",
        )
    )
    fig.update_layout(
        title=f"Clustered Heatmap (Top {len(plot_data)} Features)",
        xaxis_title="Samples",
        yaxis_title="Features",
        height=max(400, len(plot_data) * 10),
    )
    return fig


def create_pca_plot(
    expression_df: pd.DataFrame, sample_conditions: Dict[str, str],
) -> go.Figure:
    """
    Create PCA plot of samples.

    Features with any missing value are left out of the decomposition.

    Args:
        expression_df: features × samples (log scale)
        sample_conditions: Dict[sample_name, condition]
    """
    if expression_df is None or expression_df.empty:
        raise ValueError("Cannot create PCA plot: expression_df is empty or None.")

    complete = expression_df.dropna(axis=0, how="any")
    if complete.shape[1] < 3 or complete.shape[0] < 2:
        raise ValueError(
            f"Cannot create PCA plot: requires at least 3 samples and 2 complete features, "
            f"got {complete.shape[1]} samples and {complete.shape[0]} features."
        )

    samples_x_features = complete.T
    pca = PCA(n_components=2)
    pca_result = pca.fit_transform(samples_x_features.values)

    pca_df = pd.DataFrame(pca_result, columns=["PC1", "PC2"], index=samples_x_features.index)
    pca_df["condition"] = [sample_conditions.get(s, "Unknown") for s in pca_df.index]
    pca_df["sample"] = pca_df.index

    fig = px.scatter(
        pca_df,
        x="PC1",
        y="PC2",
        color="condition",
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({pca.explained_variance_ratio_[0] * 100:.1f}%)",
            "PC2": f"PC2 ({pca.explained_variance_ratio_[1] * 100:.1f}%)",
        },
    )
    fig.update_layout(title="PCA Plot", showlegend=True)
    return fig


def create_enrichment_dotplot(
    enrichment_df: pd.DataFrame,
    top_n: int = 20,
    title: str = "Enrichment Results",
) -> go.Figure:
    """
    Create enrichment dot plot.

    Args:
        enrichment_df: DataFrame with columns: term, direction, overlap, padj
        top_n: Number of top terms to display
        title: Plot title
    """
    if enrichment_df is None or enrichment_df.empty:
        fig = go.Figure()
        fig.update_layout(
            title=title,
            annotations=[dict(
                text="No enrichment results to display",
                xref="paper", yref="paper",
                x=0.5, y=0.5, showarrow=False, font=dict(size=16)
            )]
        )
        return fig

    df = enrichment_df.dropna(subset=["padj"]).nsmallest(top_n, "padj").copy()
    df["-log10_padj"] = -np.log10(df["padj"].astype(float).clip(lower=1e-300))
    df["label"] = (df["term"].astype(str) + " (" + df["direction"].astype(str) + ")").apply(
        lambda x: x[:60] + "..." if len(x) > 60 else x
    )
    df = df.sort_values("-log10_padj", ascending=True)

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=df["-log10_padj"],
        y=df["label"],
        mode="markers",
        marker=dict(
            size=df["overlap"].astype(float).clip(lower=5, upper=40),
            color=df["-log10_padj"],
            colorscale="Viridis",
            showscale=True,
            colorbar=dict(title="-log₁₀(Adj. P)"),
            line=dict(width=1, color="DarkSlateGrey"),
        ),
        text=[f"Features: {g}" for g in df["overlap_features"]],
        hovertemplate=(
            "<b>%{y}</b><br>"
            "-log₁₀(padj): %{x:.2f}<br>"
            "%{text}<extra></extra>"
        ),
    ))
    fig.update_layout(
        title=title,
        xaxis_title="-log₁₀(Adjusted P-value)",
        yaxis_title="",
        height=max(400, len(df) * 25 + 100),
        margin=dict(l=300),
        showlegend=False,
    )
    return fig


def create_modality_scatter(
    aligned: pd.DataFrame,
    contrast: str,
    suffixes: Tuple[str, str] = ("_rna", "_protein"),
    labels: Tuple[str, str] = ("RNA", "Protein"),
    method: str = "pearson",
) -> go.Figure:
    """
    Scatter of one contrast's fold changes in two modalities.

    Args:
        aligned: Output of integration.align_differential_results
        contrast: Contrast label to plot
    """
    x_col, y_col = f"log2FoldChange{suffixes[0]}", f"log2FoldChange{suffixes[1]}"
    df = aligned[aligned["contrast"] == contrast].dropna(subset=[x_col, y_col])
    if len(df) < 3:
        raise ValueError(
            f"Cannot create modality scatter for {contrast}: {len(df)} aligned features."
        )

    r, _, n = correlate_pairs(df[x_col], df[y_col], method=method)
    strength = classify_correlation_strength(r)

    fig = px.scatter(
        df,
        x=x_col,
        y=y_col,
        hover_name="feature",
        labels={
            x_col: f"{labels[0]} log₂(Fold Change)",
            y_col: f"{labels[1]} log₂(Fold Change)",
        },
    )
    fig.add_hline(y=0, line_color="black", line_width=0.5)
    fig.add_vline(x=0, line_color="black", line_width=0.5)
    fig.update_layout(
        title=f"{contrast}: r = {r:.2f} ({strength}, n = {n})",
        showlegend=False,
    )
    return fig


def create_detection_plot(
    measurement_df: pd.DataFrame, threshold: float = 0.0
) -> go.Figure:
    """
    Bar plot of number of detected features per sample.

    Args:
        measurement_df: features × samples DataFrame (before normalization)
        threshold: Minimum value to consider a feature detected
    """
    if measurement_df is None or measurement_df.empty:
        raise ValueError("Cannot create detection plot: measurement_df is empty or None.")

    detected = (measurement_df > threshold).sum(axis=0).sort_values(ascending=False)

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=detected.index.tolist(),
            y=detected.values,
            marker_color="darkorange",
            name="Detected Features",
        )
    )
    fig.update_layout(
        title=f"Features Detected per Sample (value > {threshold})",
        xaxis_title="Sample",
        yaxis_title="Number of Features",
        showlegend=False,
    )
    return fig
