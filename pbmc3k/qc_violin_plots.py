#!/usr/bin/env python3
"""
Alternative QC violin plot implementation using seaborn for true violin plots
"""

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
import pandas as pd
from pathlib import Path
from pbmc3k.qc_filters import CELL_FILTERS

METRICS = [
    ("n_genes_by_counts", "Genes per cell"),
    ("total_counts", "Total counts per cell"),
    ("percent_mt", "Mitochondrial %"),
]


def _threshold_lines(metric, cell_filters):
    if metric == "n_genes_by_counts":
        return [
            (cell_filters["min_genes"], "Min threshold"),
            (cell_filters["max_genes"], "Max threshold"),
        ]
    if metric == "percent_mt":
        return [(cell_filters["max_mt_pct"], f"{cell_filters['max_mt_pct']}% threshold")]
    return []


def create_true_violin_plots(adata, save_dir=None, cell_filters=CELL_FILTERS):
    """Create proper violin plots for QC metrics

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional)
        cell_filters: Thresholds drawn as dashed lines
    """
    print("Creating true violin plots...")

    qc_data = pd.DataFrame({metric: adata.obs[metric].values for metric, _ in METRICS})

    fig, axes = plt.subplots(1, 3, figsize=(14, 5))

    for ax, (metric, title) in zip(axes, METRICS):
        sns.violinplot(data=qc_data, y=metric, ax=ax, color="skyblue", inner="box")

        ax.set_ylabel(title)
        ax.set_xlabel("")
        ax.set_title(title)

        lines = _threshold_lines(metric, cell_filters)
        for value, label in lines:
            ax.axhline(y=value, color="red", linestyle="--", alpha=0.5, label=label)
        if lines:
            ax.legend(fontsize=8)

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "true_violin_plots.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/true_violin_plots.png")
        plt.close(fig)
    else:
        plt.show()

    return fig


def create_violin_with_points(adata, save_dir=None, max_points=10000, random_state=0):
    """Create violin plots with overlaid strip plots

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional)
        max_points: Above this many cells, max_points cells are sampled for the strip layer
    """
    print("Creating violin plots with points...")

    # Sample data if too many cells (for visibility)
    if adata.n_obs > max_points:
        rng = np.random.default_rng(random_state)
        sample_idx = rng.choice(adata.n_obs, max_points, replace=False)
        obs = adata.obs.iloc[np.sort(sample_idx)]
    else:
        obs = adata.obs

    qc_data = pd.DataFrame({metric: obs[metric].values for metric, _ in METRICS})

    fig, axes = plt.subplots(1, 3, figsize=(14, 5))

    for ax, (metric, title) in zip(axes, METRICS):
        sns.violinplot(data=qc_data, y=metric, ax=ax, color="lightblue", inner=None)

        sns.stripplot(
            data=qc_data, y=metric, ax=ax, color="black", alpha=0.3, size=1, jitter=True
        )

        ax.set_ylabel(title)
        ax.set_xlabel("")
        ax.set_title(title)

    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "violin_with_points.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/violin_with_points.png")
        plt.close(fig)
    else:
        plt.show()

    return fig
