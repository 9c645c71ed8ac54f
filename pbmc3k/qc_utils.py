#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation, plotting, and filtering
"""

import numpy as np
import scanpy as sc
import matplotlib.pyplot as plt
from pathlib import Path
from pbmc3k.qc_filters import CELL_FILTERS, GENE_PATTERNS

QC_METRICS = ["n_genes_by_counts", "total_counts", "percent_mt"]


def calculate_qc_metrics(adata, mt_pattern=GENE_PATTERNS["mt_pattern"]):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts (in layers["counts"] or .X)
        mt_pattern: Prefix identifying mitochondrial genes

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(mt_pattern)
    print(f"  Mitochondrial genes ({mt_pattern}*): {int(adata.var['mt'].sum())}")

    layer = "counts" if "counts" in adata.layers else None
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        percent_top=None,
        log1p=False,
        inplace=True,
        layer=layer,
    )

    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"].fillna(0.0)

    return adata


def _pearson(x, y):
    if len(x) < 2 or np.std(x) == 0 or np.std(y) == 0:
        return float("nan")
    return float(np.corrcoef(x, y)[0, 1])


def plot_qc_metrics(adata, save_dir=None):
    """Plot QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    # First figure: violin plots
    fig, axes = plt.subplots(1, 3, figsize=(12, 4))
    for ax, metric in zip(axes, QC_METRICS):
        sc.pl.violin(adata, metric, jitter=0.4, ax=ax, show=False)
        ax.set_title(metric)
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    # Second figure: scatter plots, titled with the Pearson correlation
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    for ax, y in zip(axes, ["percent_mt", "n_genes_by_counts"]):
        sc.pl.scatter(adata, x="total_counts", y=y, ax=ax, show=False)
        r = _pearson(adata.obs["total_counts"].values, adata.obs[y].values)
        ax.set_title(f"{r:.2f}")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        plt.close(fig)
    else:
        plt.show()


def filter_cells(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
):
    """Apply QC filtering

    Keeps cells with min_genes < n_genes_by_counts < max_genes and
    percent_mt < max_mt_pct.

    Args:
        adata: AnnData object with QC metrics
        min_genes: Exclusive lower bound on genes per cell
        max_genes: Exclusive upper bound on genes per cell
        max_mt_pct: Exclusive upper bound on mitochondrial percentage

    Returns:
        Filtered AnnData object
    """
    for col in ["n_genes_by_counts", "percent_mt"]:
        if col not in adata.obs:
            raise KeyError(f"QC column '{col}' not found in adata.obs - run calculate_qc_metrics first")

    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    keep = (
        (adata.obs["n_genes_by_counts"] > min_genes)
        & (adata.obs["n_genes_by_counts"] < max_genes)
        & (adata.obs["percent_mt"] < max_mt_pct)
    )
    adata = adata[keep.values, :].copy()

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def qc_summary(adata):
    """Summarize QC metric distributions (one row per metric)"""
    return adata.obs[QC_METRICS].describe().T
