#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles canonical marker panels and cluster identity assignment
"""

import re

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path

from pbmc3k.analysis_params import CLUSTERING_PARAMS
from pbmc3k.processing import plot_embeddings

# Module-level constants: single sources of truth
CANONICAL_MARKERS = {
    "Naive CD4 T": ["IL7R", "CCR7"],
    "CD14+ Mono": ["CD14", "LYZ"],
    "Memory CD4 T": ["IL7R", "S100A4"],
    "B": ["MS4A1"],
    "CD8 T": ["CD8A"],
    "FCGR3A+ Mono": ["FCGR3A", "MS4A7"],
    "NK": ["GNLY", "NKG7"],
    "DC": ["FCER1A", "CST3"],
    "Platelet": ["PPBP"],
}

# Genes overlaid on the UMAP to check identities
FEATURE_PLOT_GENES = [
    "MS4A1",
    "GNLY",
    "CD3E",
    "CD14",
    "FCER1A",
    "FCGR3A",
    "LYZ",
    "PPBP",
    "CD8A",
]


def _score_name(label):
    return "score_" + re.sub(r"\W+", "_", label).strip("_")


def rename_clusters(
    adata,
    new_ids,
    groupby=CLUSTERING_PARAMS["key_added"],
    key_added="cell_type",
):
    """Assign identities to clusters

    Args:
        adata: AnnData object with cluster labels
        new_ids: List with one label per cluster (in cluster order), or a dict
            mapping every cluster label to its identity. Several clusters may
            share an identity.
        groupby: obs column holding cluster labels
        key_added: obs column receiving the identities

    Returns:
        Dict cluster -> identity
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    clusters = [str(c) for c in adata.obs[groupby].astype("category").cat.categories]

    if isinstance(new_ids, dict):
        mapping = {str(k): v for k, v in new_ids.items()}
        missing = [c for c in clusters if c not in mapping]
        if missing:
            raise ValueError(f"No identity given for clusters {missing}")
    else:
        new_ids = list(new_ids)
        if len(new_ids) != len(clusters):
            raise ValueError(
                f"Got {len(new_ids)} identities for {len(clusters)} clusters; "
                "provide exactly one identity per cluster"
            )
        mapping = dict(zip(clusters, new_ids))

    labels = adata.obs[groupby].astype(str).map(mapping)
    categories = list(dict.fromkeys(mapping[c] for c in clusters))
    adata.obs[key_added] = pd.Categorical(labels, categories=categories)

    print(f"Renamed {len(clusters)} clusters into {len(categories)} identities")
    return {c: mapping[c] for c in clusters}


def assign_identities_by_scores(
    adata,
    marker_genes=CANONICAL_MARKERS,
    groupby=CLUSTERING_PARAMS["key_added"],
    margin=0.05,
    agg="median",
    key_added="cell_type",
):
    """Assign cluster identities from canonical marker panel scores

    Each panel is scored per cell (scanpy score_genes on the log-normalized
    data), scores are aggregated per cluster, and each cluster takes the
    best-scoring panel. Clusters whose best and second-best scores differ by
    less than margin keep their cluster label.

    Args:
        adata: AnnData object with clustering results
        marker_genes: Dict of identity -> marker genes
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')

    Returns:
        Dict cluster -> identity
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if agg not in ("median", "mean"):
        raise ValueError("agg must be 'median' or 'mean'")

    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    score_cols = []
    labels = []
    for label, genes in marker_genes.items():
        genes = [g for g in genes if g in var_names]
        if not genes:
            print(f"  Skipping {label}: no marker genes present")
            continue
        score_name = _score_name(label)
        sc.tl.score_genes(adata, gene_list=genes, score_name=score_name, use_raw=use_raw)
        score_cols.append(score_name)
        labels.append(label)

    if not score_cols:
        raise ValueError("None of the marker panels have genes in the dataset")

    grouped = adata.obs.groupby(groupby, observed=True)[score_cols]
    grouped = grouped.median() if agg == "median" else grouped.mean()

    values = grouped.to_numpy()
    top_idx = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top_idx]
    if values.shape[1] > 1:
        second_best = np.partition(values, -2, axis=1)[:, -2]
    else:
        second_best = np.full(values.shape[0], -np.inf)
    confident = best - second_best >= margin
    winners = np.array(labels)[top_idx]

    mapping = {}
    for cluster, label, is_conf in zip(grouped.index.astype(str), winners, confident):
        mapping[cluster] = label if is_conf else cluster

    print(f"Assigned {int(confident.sum())} / {len(grouped)} clusters from marker scores")
    for cluster, label in mapping.items():
        print(f"  {cluster}: {label}")

    return rename_clusters(adata, mapping, groupby=groupby, key_added=key_added)


def identity_table(adata, groupby=CLUSTERING_PARAMS["key_added"], key="cell_type"):
    """Cluster, identity and cell count, one row per cluster"""
    for col in (groupby, key):
        if col not in adata.obs:
            raise KeyError(f"Column '{col}' not found in adata.obs")
    table = (
        adata.obs.groupby([groupby, key], observed=True)
        .size()
        .reset_index(name="n_cells")
    )
    return table.rename(columns={groupby: "cluster", key: "identity"})


def plot_labeled_umap(adata, key="cell_type", save_dir=None):
    """UMAP colored by cell identity, labels drawn on the clusters"""
    if key not in adata.obs:
        raise KeyError(f"Column '{key}' not found in adata.obs - assign identities first")
    plot_embeddings(
        adata,
        color=key,
        basis="umap",
        save_dir=save_dir,
        legend_loc="on data",
        title="PBMC identities",
    )


def plot_cell_type_summary(adata, key="cell_type", save_dir=None):
    """Plot the number of cells per identity

    Args:
        adata: AnnData object with cell type annotations
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if key not in adata.obs:
        raise KeyError(f"Column '{key}' not found in adata.obs")

    counts = adata.obs[key].value_counts(sort=False)

    fig, ax = plt.subplots(figsize=(8, 5))
    counts.plot(kind="bar", ax=ax, color="steelblue")
    ax.set_title("Cells per identity")
    ax.set_xlabel("")
    ax.set_ylabel("Number of cells")
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/celltype_distribution.png")
        plt.close(fig)
    else:
        plt.show()

    print("\nCell type summary:")
    print(counts)
