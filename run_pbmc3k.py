#!/usr/bin/env python3
"""
PBMC 3k guided clustering: QC, normalization, PCA, clustering,
marker discovery and cell type annotation

This script performs:
1. 10x data loading and object creation
2. Quality control and cell filtering
3. Normalization, variable feature selection and scaling
4. PCA and dimensionality assessment (loadings, heatmaps, JackStraw, elbow)
5. Clustering and UMAP
6. Marker discovery and cluster identity assignment

python run_pbmc3k.py --data-dir data/filtered_gene_bc_matrices/hg19
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

# Import our custom modules
from pbmc3k.data_loader import (
    load_10x_mtx,
    load_10x_h5,
    create_analysis_object,
    save_checkpoint,
    summarize_counts,
)
from pbmc3k.qc_utils import calculate_qc_metrics, plot_qc_metrics, filter_cells, qc_summary
from pbmc3k.qc_violin_plots import create_true_violin_plots
from pbmc3k.processing import (
    normalize_data,
    find_variable_features,
    top_variable_features,
    plot_variable_features,
    scale_data,
    run_pca,
    find_neighbors,
    find_clusters,
    run_umap,
    cluster_sizes,
    plot_embeddings,
    choose_leiden_resolution,
)
from pbmc3k.pca_exploration import (
    print_pc_loadings,
    plot_pc_loadings,
    plot_pca,
    plot_pc_heatmaps,
    plot_elbow,
)
from pbmc3k.jackstraw import jackstraw, score_jackstraw, significant_pcs, plot_jackstraw
from pbmc3k.markers import (
    find_markers,
    find_all_markers,
    top_markers,
    plot_marker_violins,
    plot_feature_umaps,
    plot_marker_heatmap,
    plot_marker_dotplot,
)
from pbmc3k.annotation import (
    CANONICAL_MARKERS,
    FEATURE_PLOT_GENES,
    rename_clusters,
    assign_identities_by_scores,
    identity_table,
    plot_labeled_umap,
    plot_cell_type_summary,
)
from pbmc3k.qc_filters import CELL_FILTERS, get_filter_summary
from pbmc3k.analysis_params import (
    HVG_PARAMS,
    JACKSTRAW_PARAMS,
    NEIGHBOR_PARAMS,
    CLUSTERING_PARAMS,
    MARKER_PARAMS,
    CLUSTER_IDENTITIES,
    CHECKPOINTS,
    get_params_summary,
)

# Configure scanpy
sc.settings.verbosity = 3  # verbosity level
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def _present(adata, genes):
    names = adata.raw.var_names if adata.raw is not None else adata.var_names
    return [g for g in genes if g in names]


def load_data(data_path):
    """Load a 10x matrix directory or a Cell Ranger .h5 file"""
    data_path = Path(data_path)
    if data_path.suffix == ".h5":
        return load_10x_h5(data_path)
    return load_10x_mtx(data_path)


def run_marker_comparisons(adata, groupby, plots_dir):
    """Cluster comparisons from the guided tutorial, run when the clusters exist"""
    clusters = list(adata.obs[groupby].cat.categories)

    if "2" in clusters:
        print("\nMarkers of cluster 2 vs all other cells:")
        markers_2 = find_markers(adata, ident_1="2", groupby=groupby, min_pct=MARKER_PARAMS["min_pct"])
        print(markers_2.head(5))
    else:
        print("\nCluster 2 not found, skipping its marker table")

    if all(c in clusters for c in ("5", "0", "3")):
        print("\nMarkers distinguishing cluster 5 from clusters 0 and 3:")
        markers_5 = find_markers(
            adata,
            ident_1="5",
            ident_2=["0", "3"],
            groupby=groupby,
            min_pct=MARKER_PARAMS["min_pct"],
        )
        print(markers_5.head(5))
    else:
        print("\nClusters 5, 0 and 3 not all present, skipping the 5 vs 0+3 comparison")

    print("\nAll cluster markers (positive only):")
    all_markers = find_all_markers(adata, groupby=groupby, only_pos=True)
    print(top_markers(all_markers, n=MARKER_PARAMS["n_top"]))

    if "0" in clusters:
        print("\nROC markers of cluster 0:")
        roc_0 = find_markers(
            adata,
            ident_1="0",
            groupby=groupby,
            logfc_threshold=MARKER_PARAMS["logfc_threshold"],
            test_use="roc",
            only_pos=True,
        )
        print(roc_0.head(5))

    genes = _present(adata, ["MS4A1", "CD79A"])
    if genes:
        plot_marker_violins(adata, genes, groupby=groupby, save_dir=plots_dir)
    genes = _present(adata, ["NKG7", "PF4"])
    if genes:
        plot_marker_violins(adata, genes, groupby=groupby, layer="counts", log=True, save_dir=plots_dir)

    genes = _present(adata, FEATURE_PLOT_GENES)
    if genes:
        plot_feature_umaps(adata, genes, save_dir=plots_dir)

    top10 = top_markers(
        all_markers,
        n=MARKER_PARAMS["heatmap_top"],
        min_log2fc=MARKER_PARAMS["heatmap_min_log2fc"],
    )
    if not top10.empty:
        plot_marker_heatmap(adata, top10, groupby=groupby, save_dir=plots_dir)
    else:
        print("  No markers above the heatmap threshold, skipping heatmap")

    return all_markers


def main(
    data_dir="data/filtered_gene_bc_matrices/hg19",
    output_dir="output",
    plots_dir_path="plots",
    identity_mode="scored",
    n_top_genes=HVG_PARAMS["n_top_genes"],
    jackstraw_replicates=JACKSTRAW_PARAMS["n_replicates"],
    skip_jackstraw=False,
    sweep_resolution=False,
    n_pcs=NEIGHBOR_PARAMS["n_pcs"],
    resolution=CLUSTERING_PARAMS["resolution"],
):
    """Main analysis pipeline

    Args:
        data_dir: 10x matrix directory or Cell Ranger .h5 file
        output_dir: Directory where checkpoints and marker tables are written
        plots_dir_path: Directory where plots will be saved
        identity_mode: "scored" assigns identities from canonical marker panels;
            "fixed" applies the published 9-label table in cluster order
        jackstraw_replicates: Permutation replicates for JackStraw
        skip_jackstraw: Skip the (slow) JackStraw test
        sweep_resolution: Pick the Leiden resolution from a silhouette sweep
    """
    if identity_mode not in ("scored", "fixed"):
        raise ValueError("identity_mode must be 'scored' or 'fixed'")

    print("Starting PBMC 3k guided clustering pipeline...")

    # Create output directories
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    print("Running in save-only mode - plots will not be displayed")

    # Print parameter settings
    print("\n" + get_filter_summary() + "\n")
    print(get_params_summary() + "\n")

    # Step 1: Load data and create the analysis object
    adata = load_data(data_dir)
    print(f"Raw matrix: {summarize_counts(adata)}")
    adata = create_analysis_object(adata)

    # Step 2: QC metrics and filtering
    adata = calculate_qc_metrics(adata)
    print(qc_summary(adata))
    plot_qc_metrics(adata, save_dir=plots_dir)
    create_true_violin_plots(adata, save_dir=plots_dir)
    adata = filter_cells(
        adata,
        min_genes=CELL_FILTERS["min_genes"],
        max_genes=CELL_FILTERS["max_genes"],
        max_mt_pct=CELL_FILTERS["max_mt_pct"],
    )

    # Step 3: Normalize, variable features, scale
    adata = normalize_data(adata)
    adata = find_variable_features(adata, n_top_genes=n_top_genes)
    print(f"Top 10 variable genes: {', '.join(top_variable_features(adata, n=10))}")
    plot_variable_features(adata, save_dir=plots_dir)
    adata = scale_data(adata)

    # Step 4: PCA and dimensionality
    adata = run_pca(adata)
    print_pc_loadings(adata)
    plot_pc_loadings(adata, save_dir=plots_dir)
    plot_pca(adata, save_dir=plots_dir)
    n_computed = adata.obsm["X_pca"].shape[1]
    plot_pc_heatmaps(adata, dims=range(1, min(15, n_computed) + 1), save_dir=plots_dir)

    if not skip_jackstraw:
        dims = min(JACKSTRAW_PARAMS["dims"], n_computed)
        adata = jackstraw(adata, n_replicates=jackstraw_replicates, dims=dims)
        print(score_jackstraw(adata))
        print(f"Significant PCs: {significant_pcs(adata)}")
        plot_jackstraw(adata, dims=range(1, min(15, dims) + 1), save_dir=plots_dir)
    else:
        print("Skipping JackStraw")

    n_pcs = min(n_pcs, n_computed)
    plot_elbow(adata, selected=n_pcs, save_dir=plots_dir)

    # Step 5: Neighbors, clustering and UMAP
    groupby = CLUSTERING_PARAMS["key_added"]
    adata = find_neighbors(adata, n_pcs=n_pcs)
    if sweep_resolution:
        resolution, _ = choose_leiden_resolution(adata, n_pcs=n_pcs, save_dir=plots_dir)
    adata = find_clusters(adata, resolution=resolution)
    print(cluster_sizes(adata, groupby=groupby))
    adata = run_umap(adata)
    plot_embeddings(adata, color=groupby, save_dir=plots_dir)

    path = save_checkpoint(adata, output_dir / CHECKPOINTS["clustered"])
    print(f"Saved clustered data to {path}")

    # Step 6: Markers
    all_markers = run_marker_comparisons(adata, groupby, plots_dir)
    all_markers.to_csv(output_dir / "all_markers.csv", index=False)
    plot_marker_dotplot(adata, CANONICAL_MARKERS, groupby=groupby, save_dir=plots_dir)

    # Step 7: Cluster identities
    n_clusters = adata.obs[groupby].nunique()
    if identity_mode == "fixed" and n_clusters == len(CLUSTER_IDENTITIES):
        rename_clusters(adata, CLUSTER_IDENTITIES, groupby=groupby)
    else:
        if identity_mode == "fixed":
            print(
                f"Found {n_clusters} clusters but {len(CLUSTER_IDENTITIES)} fixed identities; "
                "assigning identities from marker scores instead"
            )
        assign_identities_by_scores(adata, CANONICAL_MARKERS, groupby=groupby)

    print(identity_table(adata, groupby=groupby))
    plot_labeled_umap(adata, save_dir=plots_dir)
    plot_cell_type_summary(adata, save_dir=plots_dir)

    # Save results
    path = save_checkpoint(adata, output_dir / CHECKPOINTS["final"])
    print(f"Saved annotated data to {path}")

    print("Analysis complete!")
    return adata


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="PBMC 3k QC, clustering, marker discovery and annotation"
    )
    parser.add_argument(
        "--data-dir",
        default="data/filtered_gene_bc_matrices/hg19",
        help="10x matrix directory or Cell Ranger .h5 file",
    )
    parser.add_argument(
        "--output-dir",
        default="output",
        help="Directory to write checkpoints and marker tables to (default: 'output')",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--identity-mode",
        choices=["scored", "fixed"],
        default="scored",
        help="Cluster identities from marker scores or the fixed 9-label table",
    )
    parser.add_argument(
        "--n-top-genes",
        type=int,
        default=HVG_PARAMS["n_top_genes"],
        help="Number of variable features",
    )
    parser.add_argument(
        "--jackstraw-replicates",
        type=int,
        default=JACKSTRAW_PARAMS["n_replicates"],
        help="JackStraw permutation replicates",
    )
    parser.add_argument(
        "--skip-jackstraw",
        action="store_true",
        help="Skip the JackStraw test",
    )
    parser.add_argument(
        "--sweep-resolution",
        action="store_true",
        help="Choose the Leiden resolution from a silhouette sweep",
    )
    parser.add_argument(
        "--n-pcs",
        type=int,
        default=NEIGHBOR_PARAMS["n_pcs"],
        help="PCs used for the neighbor graph",
    )
    parser.add_argument(
        "--resolution",
        type=float,
        default=CLUSTERING_PARAMS["resolution"],
        help="Leiden resolution",
    )
    args = parser.parse_args()

    adata = main(
        data_dir=args.data_dir,
        output_dir=args.output_dir,
        plots_dir_path=args.plots_dir,
        identity_mode=args.identity_mode,
        n_top_genes=args.n_top_genes,
        jackstraw_replicates=args.jackstraw_replicates,
        skip_jackstraw=args.skip_jackstraw,
        sweep_resolution=args.sweep_resolution,
        n_pcs=args.n_pcs,
        resolution=args.resolution,
    )
