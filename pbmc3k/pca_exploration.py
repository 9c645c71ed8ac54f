#!/usr/bin/env python3
"""
PCA exploration utilities: loadings, PC heatmaps and elbow plots
Used to decide how many principal components carry biological signal
"""

import math

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path

from pbmc3k.analysis_params import PCA_PARAMS


def _check_pca(adata):
    if "X_pca" not in adata.obsm or "PCs" not in adata.varm:
        raise KeyError("PCA results not found - run run_pca first")


def _loadings(adata):
    """Gene loadings restricted to the genes PCA was computed on"""
    loadings = pd.DataFrame(adata.varm["PCs"], index=adata.var_names)
    if "highly_variable" in adata.var:
        loadings = loadings[adata.var["highly_variable"].values]
    loadings.columns = [f"PC_{i + 1}" for i in range(loadings.shape[1])]
    return loadings


def _dims(adata, dims):
    n_comps = adata.obsm["X_pca"].shape[1]
    dims = list(dims)
    bad = [d for d in dims if not 1 <= d <= n_comps]
    if bad:
        raise ValueError(f"PC dims {bad} out of range 1..{n_comps}")
    return dims


def pc_top_genes(adata, dims=range(1, PCA_PARAMS["print_dims"] + 1), n_genes=PCA_PARAMS["print_genes"]):
    """Top positive and negative loading genes for each requested PC

    Args:
        adata: AnnData object with PCA results
        dims: 1-based PC numbers
        n_genes: Genes reported in each direction

    Returns:
        Dict {"PC_1": {"positive": [...], "negative": [...]}, ...}
    """
    _check_pca(adata)
    loadings = _loadings(adata)
    result = {}
    for dim in _dims(adata, dims):
        col = loadings[f"PC_{dim}"]
        result[f"PC_{dim}"] = {
            "positive": col.nlargest(n_genes).index.tolist(),
            "negative": col.nsmallest(n_genes).index.tolist(),
        }
    return result


def print_pc_loadings(adata, dims=range(1, PCA_PARAMS["print_dims"] + 1), n_genes=PCA_PARAMS["print_genes"]):
    """Print the top loading genes per PC"""
    for pc, genes in pc_top_genes(adata, dims=dims, n_genes=n_genes).items():
        print(pc)
        print(f"Positive:  {', '.join(genes['positive'])}")
        print(f"Negative:  {', '.join(genes['negative'])}")


def plot_pc_loadings(adata, dims=(1, 2), n_genes=30, save_dir=None):
    """Dot plot of the strongest gene loadings for each PC

    Args:
        adata: AnnData object with PCA results
        dims: 1-based PC numbers, one panel each
        n_genes: Genes shown per panel (half positive, half negative)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    _check_pca(adata)
    loadings = _loadings(adata)
    dims = _dims(adata, dims)

    fig, axes = plt.subplots(1, len(dims), figsize=(4 * len(dims), max(4, n_genes * 0.22)))
    axes = np.atleast_1d(axes)

    half = max(1, n_genes // 2)
    for ax, dim in zip(axes, dims):
        col = loadings[f"PC_{dim}"]
        top = pd.concat([col.nsmallest(half), col.nlargest(half)])
        top = top[~top.index.duplicated()].sort_values()
        ax.scatter(top.values, range(len(top)), color="navy", s=15)
        ax.set_yticks(range(len(top)))
        ax.set_yticklabels(top.index, fontsize=7)
        ax.axvline(0, color="gray", linewidth=0.5)
        ax.set_xlabel(f"PC_{dim}")

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "pca_loadings.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_loadings.png")
        plt.close(fig)
    else:
        plt.show()


def plot_pca(adata, color="orig.ident", save_dir=None):
    """Scatter of cells on PC 1 and PC 2"""
    _check_pca(adata)

    fig, ax = plt.subplots(figsize=(7, 6))
    sc.pl.embedding(adata, basis="pca", color=color, ax=ax, show=False)
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "pca_scatter.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_scatter.png")
        plt.close(fig)
    else:
        plt.show()


def pc_heatmap_matrix(adata, dim, n_cells=PCA_PARAMS["heatmap_cells"], n_genes=30, clip=2.5):
    """Scaled expression of the extreme genes and cells of one PC

    Cells are ordered by PC score; when n_cells is below the number of cells,
    the n_cells/2 lowest and highest scoring cells are used. Genes are the
    n_genes/2 strongest positive and negative loadings.

    Returns:
        DataFrame (genes x cells) clipped to [-clip, clip]
    """
    _check_pca(adata)
    dim = _dims(adata, [dim])[0]

    scores = adata.obsm["X_pca"][:, dim - 1]
    order = np.argsort(scores)
    if n_cells < adata.n_obs:
        half = max(1, n_cells // 2)
        order = np.concatenate([order[:half], order[-half:]])

    col = _loadings(adata)[f"PC_{dim}"]
    half = max(1, n_genes // 2)
    genes = pd.concat([col.nlargest(half), col.nsmallest(half)[::-1]])
    genes = genes[~genes.index.duplicated()].index
    gene_idx = adata.var_names.get_indexer(genes)

    X = adata.X[np.ix_(order, gene_idx)]
    if hasattr(X, "toarray"):
        X = X.toarray()
    X = np.clip(np.asarray(X, dtype=float), -clip, clip)

    return pd.DataFrame(X.T, index=genes, columns=adata.obs_names[order])


def plot_pc_heatmaps(
    adata,
    dims=range(1, PCA_PARAMS["heatmap_dims"] + 1),
    n_cells=PCA_PARAMS["heatmap_cells"],
    n_genes=30,
    ncols=3,
    save_dir=None,
):
    """Heatmaps of the extreme genes and cells for each requested PC

    Args:
        adata: Scaled AnnData object with PCA results
        dims: 1-based PC numbers, one panel each
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    _check_pca(adata)
    dims = _dims(adata, dims)
    nrows = math.ceil(len(dims) / ncols)

    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 4 * nrows), squeeze=False)
    for ax, dim in zip(axes.flat, dims):
        mat = pc_heatmap_matrix(adata, dim, n_cells=n_cells, n_genes=n_genes)
        ax.imshow(mat.values, aspect="auto", cmap="RdBu_r", vmin=-2.5, vmax=2.5)
        ax.set_yticks(range(len(mat.index)))
        ax.set_yticklabels(mat.index, fontsize=5)
        ax.set_xticks([])
        ax.set_title(f"PC_{dim}")
    for ax in list(axes.flat)[len(dims):]:
        ax.axis("off")

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "pca_heatmaps.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_heatmaps.png")
        plt.close(fig)
    else:
        plt.show()


def plot_elbow(adata, n_pcs=None, selected=None, save_dir=None):
    """Standard deviation explained by each PC

    Args:
        adata: AnnData object with PCA results
        n_pcs: Number of PCs to show (default: all computed)
        selected: Optional PC count marked with a dashed line
    """
    _check_pca(adata)
    stdev = np.sqrt(adata.uns["pca"]["variance"])
    if n_pcs is not None:
        stdev = stdev[:n_pcs]

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.scatter(np.arange(1, len(stdev) + 1), stdev, color="black", s=12)
    if selected is not None:
        ax.axvline(selected, color="r", linestyle="--", label=f"Selected: {selected}")
        ax.legend()
    ax.set_xlabel("PC")
    ax.set_ylabel("Standard Deviation")
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        plt.close(fig)
    else:
        plt.show()
