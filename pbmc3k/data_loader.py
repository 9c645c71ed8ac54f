#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles 10x Genomics matrix loading, object creation and checkpoints
"""

import h5py
import numpy as np
import scanpy as sc
from scipy import sparse
import anndata
from pathlib import Path

from pbmc3k.qc_filters import OBJECT_FILTERS


def load_10x_mtx(data_dir):
    """Load a 10x sparse matrix directory

    Accepts both the legacy layout (matrix.mtx, genes.tsv, barcodes.tsv) and
    the Cell Ranger v3 layout (gzipped, features.tsv.gz).

    Args:
        data_dir: Directory holding the matrix, feature and barcode files

    Returns:
        AnnData object (cells x genes) with gene symbols as var_names
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise FileNotFoundError(f"10x matrix directory not found: {data_dir}")

    print(f"Loading 10x matrix from {data_dir}")
    adata = sc.read_10x_mtx(data_dir, var_names="gene_symbols", make_unique=True)
    adata.var_names_make_unique()

    print(f"  Loaded {adata.n_obs:,} cells x {adata.n_vars:,} genes")
    return adata


def load_10x_h5(file_path):
    """Load a Cell Ranger HDF5 feature-barcode matrix

    Args:
        file_path: Path to the H5 file (Cell Ranger v2 or v3 layout)

    Returns:
        AnnData object with loaded data
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"10x H5 file not found: {file_path}")

    gex_mask = None
    with h5py.File(file_path, "r") as f:
        if "matrix" in f:
            group = f["matrix"]
            gene_names = [x.decode("utf-8") for x in group["features"]["name"][:]]
            gene_ids = [x.decode("utf-8") for x in group["features"]["id"][:]]
            if "feature_type" in group["features"]:
                feature_types = [x.decode("utf-8") for x in group["features"]["feature_type"][:]]
                gex_mask = np.array([t == "Gene Expression" for t in feature_types])
        else:
            # v2 files keep one group per genome
            genome = list(f.keys())[0]
            group = f[genome]
            gene_names = [x.decode("utf-8") for x in group["gene_names"][:]]
            gene_ids = [x.decode("utf-8") for x in group["genes"][:]]

        cell_barcodes = [x.decode("utf-8") for x in group["barcodes"][:]]
        shape = tuple(group["shape"][:])

        # Stored as genes x cells in CSC order
        X = sparse.csc_matrix(
            (group["data"][:], group["indices"][:], group["indptr"][:]), shape=shape
        )

    if X.shape[0] == len(gene_names) and X.shape[1] == len(cell_barcodes):
        adata = anndata.AnnData(X.T.tocsr())
    else:
        adata = anndata.AnnData(X.tocsr())

    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    adata.obs_names = cell_barcodes
    # Antibody Capture, CRISPR etc. are not genes
    if gex_mask is not None and not gex_mask.all():
        adata = adata[:, gex_mask].copy()
    adata.var_names_make_unique()

    print(f"Loaded {file_path.name}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")
    return adata


def create_analysis_object(
    adata,
    project="pbmc3k",
    min_cells=OBJECT_FILTERS["min_cells"],
    min_features=OBJECT_FILTERS["min_features"],
):
    """Create the working object from a raw count matrix

    Cells with fewer than min_features detected genes are dropped first, then
    genes detected in fewer than min_cells of the remaining cells.

    Args:
        adata: AnnData object with raw counts in .X
        project: Project name stored in obs["orig.ident"]
        min_cells: Minimum cells a gene must be detected in
        min_features: Minimum genes a cell must express

    Returns:
        Filtered AnnData object with counts preserved in layers["counts"]
    """
    print("Creating analysis object...")
    n_cells, n_genes = adata.n_obs, adata.n_vars

    adata = adata.copy()
    if min_features > 0:
        sc.pp.filter_cells(adata, min_genes=min_features)
    if min_cells > 0:
        sc.pp.filter_genes(adata, min_cells=min_cells)

    if adata.n_obs == 0 or adata.n_vars == 0:
        raise ValueError(
            f"No data left after object filters (min_cells={min_cells}, "
            f"min_features={min_features})"
        )

    if sparse.issparse(adata.X):
        adata.X = adata.X.tocsr()
    adata.layers["counts"] = adata.X.copy()
    adata.obs["orig.ident"] = project
    adata.obs["orig.ident"] = adata.obs["orig.ident"].astype("category")
    adata.uns["project_name"] = project

    print(f"  Cells: {n_cells:,} -> {adata.n_obs:,}")
    print(f"  Genes: {n_genes:,} -> {adata.n_vars:,}")
    return adata


def save_checkpoint(adata, path):
    """Serialize the full analysis object to an .h5ad file

    Args:
        adata: AnnData object
        path: Destination file; parent directories are created

    Returns:
        Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path, compression="gzip")
    print(f"  Saved: {path}")
    return path


def load_checkpoint(path):
    """Load an analysis object written by save_checkpoint"""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    adata = sc.read_h5ad(path)
    print(f"Loaded {path.name}: {adata.n_obs:,} cells x {adata.n_vars:,} genes")
    return adata


def summarize_counts(adata):
    """Return basic sparsity statistics of the count matrix"""
    X = adata.layers["counts"] if "counts" in adata.layers else adata.X
    n_nonzero = X.nnz if sparse.issparse(X) else int(np.count_nonzero(X))
    total = adata.n_obs * adata.n_vars
    return {
        "n_cells": adata.n_obs,
        "n_genes": adata.n_vars,
        "n_nonzero": int(n_nonzero),
        "density": n_nonzero / total if total else 0.0,
    }
