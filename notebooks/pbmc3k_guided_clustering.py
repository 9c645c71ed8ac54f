# %% [markdown]
# # PBMC 3k Guided Clustering
#
# Interactive walkthrough of the standard single-cell workflow on the 10x Genomics
# PBMC 3k dataset (2,700 peripheral blood mononuclear cells): QC, normalization,
# variable feature selection, PCA, clustering, marker discovery and cell type
# annotation.
#
# Download the data from
# https://cf.10xgenomics.com/samples/cell/pbmc3k/pbmc3k_filtered_gene_bc_matrices.tar.gz
# and extract it next to this notebook.
#
# ---

# %% [markdown]
# ## Table of Contents
#
# 1. [Setup](#setup)
# 2. [Stage 1: Load Data](#stage1)
# 3. [Stage 2: QC & Filtering](#stage2)
# 4. [Stage 3: Normalization & Variable Features](#stage3)
# 5. [Stage 4: Scaling & PCA](#stage4)
# 6. [Stage 5: Dimensionality](#stage5)
# 7. [Stage 6: Clustering & UMAP](#stage6)
# 8. [Stage 7: Marker Genes](#stage7)
# 9. [Stage 8: Cell Type Identities](#stage8)
#
# ---

# %% [markdown]
# ## 1. Setup

# %%
# Install required packages
# !pip install -q scanpy anndata igraph umap-learn scikit-misc seaborn

import sys
import warnings
import matplotlib
import scanpy as sc
from pathlib import Path
from IPython.display import display

sys.path.insert(0, str(Path.cwd().parent))

from pbmc3k.data_loader import load_10x_mtx, create_analysis_object, save_checkpoint, load_checkpoint
from pbmc3k import qc_utils, qc_violin_plots, processing, pca_exploration, jackstraw, markers, annotation
from pbmc3k.qc_filters import CELL_FILTERS, get_filter_summary
from pbmc3k.analysis_params import CLUSTER_IDENTITIES, CHECKPOINTS, get_params_summary

# Configure settings
warnings.filterwarnings('ignore')
sc.settings.verbosity = 3
sc.settings.set_figure_params(dpi=80, facecolor='white')
matplotlib.rcParams['figure.figsize'] = (8, 6)

print("✓ Setup complete!")
print(f"Scanpy version: {sc.__version__}")

# %%
DATA_DIR = Path("filtered_gene_bc_matrices/hg19")  # 🔧 UPDATE THIS PATH
OUTPUT_DIR = Path("output")
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

print(get_filter_summary())
print()
print(get_params_summary())

# %% [markdown]
# ## 2. Stage 1: Load Data <a id="stage1"></a>
#
# Read the 10x count matrix and keep genes detected in at least 3 cells and cells
# with at least 200 detected genes.

# %%
counts = load_10x_mtx(DATA_DIR)
counts[:5, :].to_df().iloc[:, :10]

# %%
adata = create_analysis_object(counts, project="pbmc3k")
adata

# %% [markdown]
# ## 3. Stage 2: QC & Filtering <a id="stage2"></a>
#
# 📊 Low-quality cells and empty droplets have few genes; doublets have too many;
# dying cells have a high share of mitochondrial reads.

# %%
adata = qc_utils.calculate_qc_metrics(adata)
display(adata.obs[qc_utils.QC_METRICS].head())

# %%
qc_utils.plot_qc_metrics(adata)
qc_violin_plots.create_true_violin_plots(adata)
qc_violin_plots.create_violin_with_points(adata)

# %%
adata = qc_utils.filter_cells(
    adata,
    min_genes=CELL_FILTERS["min_genes"],
    max_genes=CELL_FILTERS["max_genes"],
    max_mt_pct=CELL_FILTERS["max_mt_pct"],
)

# %% [markdown]
# ## 4. Stage 3: Normalization & Variable Features <a id="stage3"></a>

# %%
adata = processing.normalize_data(adata)
adata = processing.find_variable_features(adata)

top10 = processing.top_variable_features(adata, n=10)
print(f"Top 10 variable genes: {', '.join(top10)}")
processing.plot_variable_features(adata)

# %% [markdown]
# ## 5. Stage 4: Scaling & PCA <a id="stage4"></a>

# %%
adata = processing.scale_data(adata)
adata = processing.run_pca(adata)
pca_exploration.print_pc_loadings(adata)

# %%
pca_exploration.plot_pc_loadings(adata, dims=(1, 2))
pca_exploration.plot_pca(adata)

# %%
pca_exploration.plot_pc_heatmaps(adata, dims=[1], n_cells=500, ncols=1)
pca_exploration.plot_pc_heatmaps(adata, dims=range(1, 16), n_cells=500)

# %% [markdown]
# ## 6. Stage 5: Dimensionality <a id="stage5"></a>
#
# ⏱️ JackStraw with 100 replicates takes several minutes. The elbow plot is a
# fast alternative.

# %%
adata = jackstraw.jackstraw(adata, n_replicates=100, dims=20)
display(jackstraw.score_jackstraw(adata))
jackstraw.plot_jackstraw(adata, dims=range(1, 16))
print(f"Significant PCs: {jackstraw.significant_pcs(adata)}")

# %%
N_PCS = 10  # 🔧 PCs used downstream
pca_exploration.plot_elbow(adata, selected=N_PCS)

# %% [markdown]
# ## 7. Stage 6: Clustering & UMAP <a id="stage6"></a>

# %%
adata = processing.find_neighbors(adata, n_pcs=N_PCS)
adata = processing.find_clusters(adata, resolution=0.5)
display(processing.cluster_sizes(adata))

# %%
adata = processing.run_umap(adata)
processing.plot_embeddings(adata, color="leiden")

# %%
save_checkpoint(adata, OUTPUT_DIR / CHECKPOINTS["clustered"])

# %% [markdown]
# ### 🎛️ Optional: resolution sweep
#
# Silhouette and cluster counts across Leiden resolutions. Does not change
# `adata.obs["leiden"]`.

# %%
best_res, sweep = processing.choose_leiden_resolution(adata, n_pcs=N_PCS)
print(f"Suggested resolution: {best_res}")
display(sweep)

# %% [markdown]
# ## 8. Stage 7: Marker Genes <a id="stage7"></a>

# %%
print("=" * 60)
print("DATA VALIDATION")
print("=" * 60)

checks = {
    'Clusters': 'leiden' in adata.obs.columns,
    'UMAP': 'X_umap' in adata.obsm,
    'Log-normalized data': adata.raw is not None,
    'Raw counts': 'counts' in adata.layers,
}

for check, passed in checks.items():
    print(f"  {'✓' if passed else '✗'} {check}")
    if not passed:
        raise ValueError(f"Missing {check} - run the stages above first!")

# %%
# Markers of cluster 2
cluster2 = markers.find_markers(adata, ident_1="2", min_pct=0.25)
cluster2.head(5)

# %%
# Markers distinguishing cluster 5 from clusters 0 and 3
cluster5 = markers.find_markers(adata, ident_1="5", ident_2=["0", "3"], min_pct=0.25)
cluster5.head(5)

# %%
all_markers = markers.find_all_markers(adata, only_pos=True)
markers.top_markers(all_markers, n=2)

# %%
# ROC test: AUC-based classification power per gene
cluster0_roc = markers.find_markers(
    adata, ident_1="0", logfc_threshold=0.25, test_use="roc", only_pos=True
)
cluster0_roc.head(5)

# %%
markers.plot_marker_violins(adata, ["MS4A1", "CD79A"])
markers.plot_marker_violins(adata, ["NKG7", "PF4"], layer="counts", log=True)

# %%
markers.plot_feature_umaps(adata, annotation.FEATURE_PLOT_GENES)

# %%
top10 = markers.top_markers(all_markers, n=10, min_log2fc=1)
markers.plot_marker_heatmap(adata, top10)

# %% [markdown]
# ## 9. Stage 8: Cell Type Identities <a id="stage8"></a>
#
# | Cluster | Markers | Cell type |
# |---|---|---|
# | 0 | IL7R, CCR7 | Naive CD4+ T |
# | 1 | CD14, LYZ | CD14+ Mono |
# | 2 | IL7R, S100A4 | Memory CD4+ |
# | 3 | MS4A1 | B |
# | 4 | CD8A | CD8+ T |
# | 5 | FCGR3A, MS4A7 | FCGR3A+ Mono |
# | 6 | GNLY, NKG7 | NK |
# | 7 | FCER1A, CST3 | DC |
# | 8 | PPBP | Platelet |
#
# ⚠️ Cluster numbering depends on the clustering run. Check the dot plot before
# applying the fixed table; otherwise use the marker-score assignment.

# %%
markers.plot_marker_dotplot(adata, annotation.CANONICAL_MARKERS)

# %%
USE_FIXED_TABLE = False  # 🔧 True once the dot plot matches the table above

if USE_FIXED_TABLE:
    annotation.rename_clusters(adata, CLUSTER_IDENTITIES)
else:
    annotation.assign_identities_by_scores(adata, annotation.CANONICAL_MARKERS)

display(annotation.identity_table(adata))

# %%
annotation.plot_labeled_umap(adata)
annotation.plot_cell_type_summary(adata)

# %%
save_checkpoint(adata, OUTPUT_DIR / CHECKPOINTS["final"])

# Reload check
reloaded = load_checkpoint(OUTPUT_DIR / CHECKPOINTS["final"])
print(f"✓ Reloaded: {reloaded.n_obs:,} cells, identities: {list(reloaded.obs['cell_type'].cat.categories)}")
