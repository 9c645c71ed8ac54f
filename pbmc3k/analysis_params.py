#!/usr/bin/env python3
"""
Analysis parameters for the PBMC 3k guided clustering tutorial

Single source of truth for every downstream step after QC. The driver script
and the notebook read these values; pass explicit arguments to override them.
"""

# LogNormalize: counts per cell scaled to target_sum, then log1p
NORMALIZATION = {
    "target_sum": 1e4,
}

# Variable feature selection (vst on raw counts)
HVG_PARAMS = {
    "flavor": "seurat_v3",
    "n_top_genes": 2000,
    "n_label": 10,  # Top genes labelled on the variable feature plot
}

SCALE_PARAMS = {
    "max_value": 10,
}

PCA_PARAMS = {
    "n_comps": 50,
    "svd_solver": "arpack",
    "print_dims": 5,  # PCs printed with their top loading genes
    "print_genes": 5,
    "heatmap_dims": 15,
    "heatmap_cells": 500,
}

# Permutation test of PC significance
JACKSTRAW_PARAMS = {
    "n_replicates": 100,
    "prop_freq": 0.01,
    "dims": 20,
    "score_thresh": 1e-5,
}

NEIGHBOR_PARAMS = {
    "n_pcs": 10,
    "n_neighbors": 20,
}

CLUSTERING_PARAMS = {
    "resolution": 0.5,
    "key_added": "leiden",
    "random_state": 0,
}

MARKER_PARAMS = {
    "min_pct": 0.25,
    "logfc_threshold": 0.25,
    "n_top": 2,  # Markers reported per cluster
    "heatmap_top": 10,  # Markers per cluster on the heatmap
    "heatmap_min_log2fc": 1,
}

# Cluster labels in cluster order, as assigned in the tutorial
CLUSTER_IDENTITIES = [
    "Naive CD4 T",
    "CD14+ Mono",
    "Memory CD4 T",
    "B",
    "CD8 T",
    "FCGR3A+ Mono",
    "NK",
    "DC",
    "Platelet",
]

CHECKPOINTS = {
    "clustered": "pbmc_tutorial.h5ad",
    "final": "pbmc3k_final.h5ad",
}


def get_params_summary():
    """Return a formatted summary of analysis parameters"""
    summary = [
        "=== Analysis Parameters ===",
        f"  - Normalization target sum: {NORMALIZATION['target_sum']:g}",
        f"  - Variable features: {HVG_PARAMS['n_top_genes']} ({HVG_PARAMS['flavor']})",
        f"  - Scale clip: {SCALE_PARAMS['max_value']}",
        f"  - PCs computed: {PCA_PARAMS['n_comps']}",
        f"  - JackStraw: {JACKSTRAW_PARAMS['n_replicates']} replicates, "
        f"{JACKSTRAW_PARAMS['dims']} dims",
        f"  - Neighbors: {NEIGHBOR_PARAMS['n_neighbors']} on {NEIGHBOR_PARAMS['n_pcs']} PCs",
        f"  - Leiden resolution: {CLUSTERING_PARAMS['resolution']}",
        f"  - Markers: min.pct {MARKER_PARAMS['min_pct']}, "
        f"logfc {MARKER_PARAMS['logfc_threshold']}",
    ]
    return "\n".join(summary)


def validate_params():
    """Validate that analysis parameters are mutually consistent"""
    errors = []

    if NORMALIZATION["target_sum"] <= 0:
        errors.append("target_sum must be positive")

    if HVG_PARAMS["n_top_genes"] < 1:
        errors.append("n_top_genes must be at least 1")

    if NEIGHBOR_PARAMS["n_pcs"] > PCA_PARAMS["n_comps"]:
        errors.append("n_pcs cannot exceed the number of computed PCs")

    if JACKSTRAW_PARAMS["dims"] > PCA_PARAMS["n_comps"]:
        errors.append("JackStraw dims cannot exceed the number of computed PCs")

    if not 0 < JACKSTRAW_PARAMS["prop_freq"] < 1:
        errors.append("prop_freq must be between 0 and 1")

    if not 0 <= MARKER_PARAMS["min_pct"] <= 1:
        errors.append("min_pct must be between 0 and 1")

    if CLUSTERING_PARAMS["resolution"] <= 0:
        errors.append("resolution must be positive")

    if len(set(CLUSTER_IDENTITIES)) != len(CLUSTER_IDENTITIES):
        errors.append("CLUSTER_IDENTITIES must be unique")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


validate_params()
