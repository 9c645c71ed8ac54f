#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, feature selection, scaling, PCA, UMAP, and clustering
"""

import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path
import numpy as np
import pandas as pd
from sklearn.metrics import silhouette_score

from pbmc3k.analysis_params import (
    CLUSTERING_PARAMS,
    HVG_PARAMS,
    NEIGHBOR_PARAMS,
    NORMALIZATION,
    PCA_PARAMS,
    SCALE_PARAMS,
)


def normalize_data(adata, target_sum=NORMALIZATION["target_sum"]):
    """Log-normalize counts

    Counts per cell are scaled to target_sum and log1p-transformed. The full
    log-normalized matrix is frozen into adata.raw for marker testing.

    Args:
        adata: AnnData object with raw counts in .X

    Returns:
        Normalized AnnData object
    """
    print(f"Normalizing to {target_sum:g} counts per cell (log1p)...")

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    # Save full log-normalized data
    adata.raw = adata

    return adata


def find_variable_features(
    adata,
    n_top_genes=HVG_PARAMS["n_top_genes"],
    flavor=HVG_PARAMS["flavor"],
):
    """Identify highly variable genes

    The seurat_v3 flavor (variance-stabilizing transformation) works on raw
    counts, read from layers["counts"]. Other flavors use the log data in .X.

    Args:
        adata: AnnData object
        n_top_genes: Number of variable genes to keep
        flavor: scanpy highly_variable_genes flavor

    Returns:
        AnnData object with var["highly_variable"] set
    """
    print("Identifying highly variable genes...")

    n_top_genes = min(int(n_top_genes), adata.n_vars)
    if flavor == "seurat_v3":
        if "counts" not in adata.layers:
            raise KeyError("layers['counts'] is required for the seurat_v3 flavor")
        sc.pp.highly_variable_genes(
            adata, flavor=flavor, n_top_genes=n_top_genes, layer="counts"
        )
    else:
        sc.pp.highly_variable_genes(adata, flavor=flavor, n_top_genes=n_top_genes)

    n_hvg = int(adata.var["highly_variable"].sum())
    print(f"  Identified {n_hvg:,} highly variable genes")

    return adata


def top_variable_features(adata, n=10):
    """Return the n most variable genes, most variable first"""
    if "highly_variable" not in adata.var:
        raise KeyError("No variable features found - run find_variable_features first")

    var = adata.var[adata.var["highly_variable"]]
    if "highly_variable_rank" in var:
        ranked = var.sort_values("highly_variable_rank")
    else:
        ranked = var.sort_values("dispersions_norm", ascending=False)
    return ranked.index[:n].tolist()


def plot_variable_features(adata, n_label=HVG_PARAMS["n_label"], save_dir=None):
    """Plot mean expression against standardized variance, top genes labelled

    Args:
        adata: AnnData object with variable features
        n_label: Number of top variable genes to label
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting variable features...")

    var = adata.var
    y_col = "variances_norm" if "variances_norm" in var else "dispersions_norm"
    hvg = var["highly_variable"].values

    fig, ax = plt.subplots(figsize=(7, 5))
    ax.scatter(var["means"][~hvg], var[y_col][~hvg], s=4, c="black", label="Non-variable")
    ax.scatter(var["means"][hvg], var[y_col][hvg], s=4, c="red", label="Variable")

    for gene in top_variable_features(adata, n=n_label):
        ax.annotate(
            gene,
            (var.loc[gene, "means"], var.loc[gene, y_col]),
            fontsize=8,
            xytext=(3, 3),
            textcoords="offset points",
        )

    ax.set_xscale("log")
    ax.set_xlabel("Average expression")
    ax.set_ylabel("Standardized variance" if y_col == "variances_norm" else "Normalized dispersion")
    ax.legend(loc="upper left", markerscale=3)
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "variable_features.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/variable_features.png")
        plt.close(fig)
    else:
        plt.show()


def scale_data(adata, max_value=SCALE_PARAMS["max_value"]):
    """Scale every gene to zero mean and unit variance, clipped at max_value"""
    print(f"Scaling data (zero mean, unit variance, max={max_value})...")
    sc.pp.scale(adata, max_value=max_value)
    return adata


def run_pca(
    adata,
    n_comps=PCA_PARAMS["n_comps"],
    svd_solver=PCA_PARAMS["svd_solver"],
    random_state=0,
):
    """Run PCA on the highly variable genes

    Args:
        adata: Scaled AnnData object with var["highly_variable"]
        n_comps: Number of components (reduced if the data is too small)

    Returns:
        AnnData object with obsm["X_pca"] and varm["PCs"]
    """
    if "highly_variable" not in adata.var:
        raise KeyError("No variable features found - run find_variable_features first")

    n_hvg = int(adata.var["highly_variable"].sum())
    max_comps = min(n_hvg, adata.n_obs) - 1
    if max_comps < 2:
        raise ValueError(f"Too few variable genes ({n_hvg}) or cells for PCA")
    if n_comps > max_comps:
        print(f"  Reducing n_comps from {n_comps} to {max_comps}")
        n_comps = max_comps

    print(f"Running PCA ({n_comps} components on {n_hvg:,} variable genes)...")
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        svd_solver=svd_solver,
        mask_var="highly_variable",
        random_state=random_state,
    )

    return adata


def find_neighbors(
    adata,
    n_neighbors=NEIGHBOR_PARAMS["n_neighbors"],
    n_pcs=NEIGHBOR_PARAMS["n_pcs"],
    random_state=0,
):
    """Build the kNN graph on the first n_pcs principal components"""
    print(f"Computing neighborhood graph ({n_neighbors} neighbors, {n_pcs} PCs)...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, random_state=random_state)
    return adata


def _leiden(adata, resolution, key_added, random_state=0):
    sc.tl.leiden(
        adata,
        resolution=float(resolution),
        key_added=key_added,
        flavor="igraph",
        n_iterations=2,
        directed=False,
        random_state=random_state,
    )


def find_clusters(
    adata,
    resolution=CLUSTERING_PARAMS["resolution"],
    key_added=CLUSTERING_PARAMS["key_added"],
    random_state=CLUSTERING_PARAMS["random_state"],
):
    """Cluster cells with the Leiden algorithm on the neighbor graph

    Returns:
        AnnData object with obs[key_added] cluster labels ("0", "1", ...)
    """
    if "neighbors" not in adata.uns:
        raise KeyError("Neighbor graph not found - run find_neighbors first")

    print(f"Clustering (Leiden, resolution={resolution})...")
    _leiden(adata, resolution, key_added, random_state=random_state)

    n_clusters = adata.obs[key_added].nunique()
    print(f"  Identified {n_clusters} clusters")
    return adata


def run_umap(adata, random_state=0):
    """Compute the UMAP embedding from the neighbor graph"""
    if "neighbors" not in adata.uns:
        raise KeyError("Neighbor graph not found - run find_neighbors first")
    print("Running UMAP...")
    sc.tl.umap(adata, random_state=random_state)
    return adata


def cluster_sizes(adata, groupby=CLUSTERING_PARAMS["key_added"]):
    """Number of cells per cluster, in cluster order"""
    return adata.obs[groupby].value_counts().reindex(adata.obs[groupby].cat.categories)


def plot_embeddings(
    adata,
    color=CLUSTERING_PARAMS["key_added"],
    basis="umap",
    save_dir=None,
    legend_loc="on data",
    title=None,
):
    """Plot a 2D embedding colored by an obs column or gene

    Args:
        adata: AnnData object with obsm["X_{basis}"]
        color: obs column or gene name
        basis: Embedding name ("umap" or "pca")
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if f"X_{basis}" not in adata.obsm:
        raise KeyError(f"Embedding 'X_{basis}' not found in adata.obsm")

    fig, ax = plt.subplots(figsize=(7, 6))
    sc.pl.embedding(
        adata,
        basis=basis,
        color=color,
        legend_loc=legend_loc,
        title=title or color,
        ax=ax,
        show=False,
    )
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        out = save_dir / f"{basis}_{color}.png"
        fig.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close(fig)
    else:
        plt.show()


def _partition_metrics(X, labels, min_cluster_size):
    """Silhouette on PCA space and share of cells in clusters below min_cluster_size"""
    counts = labels.value_counts()
    if len(counts) < 2:
        return np.nan, 0.0

    small = counts[counts < max(2, int(min_cluster_size))].sum()
    try:
        sil = float(silhouette_score(X, labels))
    except ValueError:
        sil = np.nan
    return sil, float(small / len(labels))


def _pick_resolution(metrics_df, tolerance=0.02):
    """Best silhouette; near-ties go to fewer small clusters, fewer clusters, lower resolution"""
    if metrics_df["silhouette"].notna().any():
        best = metrics_df["silhouette"].max()
        candidates = metrics_df[metrics_df["silhouette"] >= best - tolerance]
        order = ["small_cluster_fraction", "n_clusters", "resolution"]
    else:
        split = metrics_df[metrics_df["n_clusters"] > 1]
        candidates = split if not split.empty else metrics_df
        order = ["resolution"]
    return float(candidates.sort_values(order).iloc[0]["resolution"])


def _plot_sweep(metrics_df, chosen_res, save_dir):
    fig, ax_sil = plt.subplots(figsize=(7, 4))
    ax_n = ax_sil.twinx()
    ax_sil.plot(metrics_df["resolution"], metrics_df["silhouette"], "-o", color="#1f77b4")
    ax_n.plot(metrics_df["resolution"], metrics_df["n_clusters"], "-s", color="#ff7f0e")
    ax_sil.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
    ax_sil.set_xlabel("Leiden resolution")
    ax_sil.set_ylabel("Silhouette (PCA)", color="#1f77b4")
    ax_n.set_ylabel("# clusters", color="#ff7f0e")
    fig.tight_layout()
    fig.savefig(save_dir / "leiden_sweep_diagnostics.png", dpi=300, bbox_inches="tight")
    plt.close(fig)
    print(f"  Saved: {save_dir}/leiden_sweep_diagnostics.png")


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    n_pcs=NEIGHBOR_PARAMS["n_pcs"],
    save_dir=None,
):
    """Sweep Leiden resolutions on the existing neighbor graph and suggest one

    Each resolution is scored by silhouette on the first n_pcs PCs and by the
    share of cells in clusters smaller than min_cluster_size. Labels for each
    resolution are kept in obs["leiden_{res:.2f}"]; obs["leiden"] is untouched.

    Args:
        adata: AnnData object with neighbors and PCA
        resolution_grid: Resolutions to test (default 0.2 to 1.4 in steps of 0.1)
        save_dir: If set, writes the metrics CSV, a clustree-style label table
            and a diagnostics plot

    Returns:
        (chosen resolution, metrics DataFrame)
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 1.45, 0.1), 2)

    if "neighbors" not in adata.uns:
        raise KeyError("Neighbor graph not found - run find_neighbors first")
    if "X_pca" not in adata.obsm:
        raise KeyError("PCA embedding not found - run run_pca first")

    X = adata.obsm["X_pca"][:, :n_pcs]
    print(f"Sweeping {len(resolution_grid)} Leiden resolutions...")

    rows = []
    keys = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        _leiden(adata, res, key)
        labels = adata.obs[key].astype(str)
        sil, small_frac = _partition_metrics(X, labels, min_cluster_size)
        rows.append(
            {
                "resolution": float(res),
                "n_clusters": int(labels.nunique()),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )
        keys.append(key)

    metrics_df = pd.DataFrame(rows)
    chosen_res = _pick_resolution(metrics_df)

    if save_dir:
        save_dir = Path(save_dir)
        save_dir.mkdir(parents=True, exist_ok=True)

        metrics_df.to_csv(save_dir / "leiden_resolution_sweep.csv", index=False)
        print(f"  Saved: {save_dir}/leiden_resolution_sweep.csv")

        labels_df = adata.obs[keys].copy()
        labels_df.insert(0, "cell", adata.obs_names)
        labels_df.to_csv(save_dir / "clustree_leiden_labels.csv", index=False)
        print(f"  Saved: {save_dir}/clustree_leiden_labels.csv")

        _plot_sweep(metrics_df, chosen_res, save_dir)

    print(f"Chosen Leiden resolution: {chosen_res}")
    return chosen_res, metrics_df
