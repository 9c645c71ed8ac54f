#!/usr/bin/env python3
"""
Marker gene utilities for single-cell RNA-seq analysis
Handles cluster-vs-rest and cluster-vs-cluster testing and marker plots
"""

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from scipy import sparse
from sklearn.metrics import roc_auc_score
from pathlib import Path

from pbmc3k.analysis_params import CLUSTERING_PARAMS, MARKER_PARAMS

WILCOX_COLUMNS = ["p_val", "avg_log2FC", "pct.1", "pct.2", "p_val_adj"]
ROC_COLUMNS = ["myAUC", "avg_diff", "power", "avg_log2FC", "pct.1", "pct.2"]
TESTS = ("wilcox", "roc")


def _as_list(ident):
    if ident is None:
        return None
    if isinstance(ident, (list, tuple, set, np.ndarray, pd.Index)):
        return [str(i) for i in ident]
    return [str(ident)]


def _expression(adata, use_raw=True):
    """Log-normalized expression matrix and its gene names"""
    if use_raw and adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def _group_masks(adata, ident_1, ident_2, groupby):
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    labels = adata.obs[groupby].astype(str)
    ids_1 = _as_list(ident_1)
    ids_2 = _as_list(ident_2)

    known = set(labels.unique())
    missing = [i for i in ids_1 + (ids_2 or []) if i not in known]
    if missing:
        raise KeyError(f"Identities {missing} not found in adata.obs['{groupby}']")

    mask_1 = labels.isin(ids_1).values
    mask_2 = labels.isin(ids_2).values if ids_2 else ~mask_1
    if (mask_1 & mask_2).any():
        raise ValueError("ident_1 and ident_2 must not overlap")
    if mask_2.sum() == 0:
        raise ValueError(f"No cells left to compare against {ids_1}")
    return mask_1, mask_2


def _col_mean(X):
    return np.asarray(X.mean(axis=0)).ravel()


def _expm1(X):
    return X.expm1() if sparse.issparse(X) else np.expm1(X)


def group_statistics(X, mask_1, mask_2):
    """Detection rates and average log2 fold change between two cell groups

    Returns:
        DataFrame with pct.1, pct.2 (rounded to 3 decimals) and avg_log2FC,
        computed as log2(mean(expm1(x)) + 1) differences
    """
    X_1, X_2 = X[mask_1], X[mask_2]
    pct_1 = np.round(_col_mean(X_1 > 0), 3)
    pct_2 = np.round(_col_mean(X_2 > 0), 3)
    avg_log2fc = np.log2(_col_mean(_expm1(X_1)) + 1) - np.log2(_col_mean(_expm1(X_2)) + 1)
    return pd.DataFrame({"pct.1": pct_1, "pct.2": pct_2, "avg_log2FC": avg_log2fc})


def _wilcox(X, gene_names, mask_1, mask_2):
    selected = mask_1 | mask_2
    groups = np.where(mask_1[selected], "ident_1", "ident_2")
    tmp = anndata.AnnData(
        X=X[selected],
        obs=pd.DataFrame(
            {"group": pd.Categorical(groups, categories=["ident_1", "ident_2"])},
            index=[str(i) for i in range(int(selected.sum()))],
        ),
        var=pd.DataFrame(index=gene_names),
    )
    tmp.uns["log1p"] = {"base": None}
    sc.tl.rank_genes_groups(
        tmp,
        "group",
        groups=["ident_1"],
        reference="ident_2",
        method="wilcoxon",
        use_raw=False,
        n_genes=tmp.n_vars,
        tie_correct=True,
    )
    result = sc.get.rank_genes_groups_df(tmp, group="ident_1").set_index("names")
    return result["pvals"].reindex(gene_names).to_numpy()


def _roc(X, mask_1, mask_2):
    selected = mask_1 | mask_2
    y = mask_1[selected]
    X_sel = X[selected]
    X_sel = X_sel.tocsc() if sparse.issparse(X_sel) else np.asarray(X_sel)

    auc = np.empty(X_sel.shape[1])
    for j in range(X_sel.shape[1]):
        col = X_sel[:, j]
        col = col.toarray().ravel() if sparse.issparse(col) else np.asarray(col).ravel()
        auc[j] = roc_auc_score(y, col)

    avg_diff = _col_mean(X_sel[y]) - _col_mean(X_sel[~y])
    return auc, avg_diff


def find_markers(
    adata,
    ident_1,
    ident_2=None,
    groupby=CLUSTERING_PARAMS["key_added"],
    min_pct=0.1,
    logfc_threshold=0.25,
    test_use="wilcox",
    only_pos=False,
    use_raw=True,
):
    """Find genes differentially expressed between two groups of cells

    Genes are first restricted to those detected in at least min_pct of
    either group and with |avg_log2FC| >= logfc_threshold (positive only
    when only_pos), then tested on the log-normalized data.

    Args:
        adata: AnnData object with cluster labels in obs[groupby]
        ident_1: Cluster label(s) to find markers for
        ident_2: Cluster label(s) to compare against (default: all other cells)
        groupby: obs column holding identities
        min_pct: Minimum detection rate in either group
        logfc_threshold: Minimum absolute average log2 fold change
        test_use: "wilcox" (rank-sum) or "roc" (classifier AUC)
        only_pos: Only return genes higher in ident_1

    Returns:
        DataFrame indexed by gene. wilcox: p_val, avg_log2FC, pct.1, pct.2,
        p_val_adj (Bonferroni over all genes), sorted by p_val.
        roc: myAUC, avg_diff, power, avg_log2FC, pct.1, pct.2, sorted by power.
    """
    if test_use not in TESTS:
        raise ValueError(f"Unknown test '{test_use}', expected one of {TESTS}")

    mask_1, mask_2 = _group_masks(adata, ident_1, ident_2, groupby)
    X, gene_names = _expression(adata, use_raw=use_raw)
    if sparse.issparse(X):
        X = X.tocsr()

    stats = group_statistics(X, mask_1, mask_2)
    stats.index = gene_names

    keep = np.maximum(stats["pct.1"], stats["pct.2"]) >= min_pct
    if only_pos:
        keep &= stats["avg_log2FC"] >= logfc_threshold
    else:
        keep &= stats["avg_log2FC"].abs() >= logfc_threshold

    columns = WILCOX_COLUMNS if test_use == "wilcox" else ROC_COLUMNS
    if not keep.any():
        return pd.DataFrame(columns=columns)

    stats = stats[keep.values].copy()
    X = X[:, np.flatnonzero(keep.values)]

    if test_use == "wilcox":
        stats["p_val"] = _wilcox(X, stats.index, mask_1, mask_2)
        stats["p_val_adj"] = np.minimum(stats["p_val"] * len(gene_names), 1.0)
        result = stats.sort_values(["p_val", "avg_log2FC"], ascending=[True, False])
    else:
        auc, avg_diff = _roc(X, mask_1, mask_2)
        stats["myAUC"] = np.round(auc, 3)
        stats["avg_diff"] = avg_diff
        stats["power"] = np.round(2 * np.abs(auc - 0.5), 3)
        result = stats.sort_values("power", ascending=False)

    return result[columns]


def find_all_markers(
    adata,
    groupby=CLUSTERING_PARAMS["key_added"],
    only_pos=True,
    min_pct=MARKER_PARAMS["min_pct"],
    logfc_threshold=MARKER_PARAMS["logfc_threshold"],
    test_use="wilcox",
    return_thresh=0.01,
):
    """Find markers for every cluster against all other cells

    Args:
        return_thresh: Only keep wilcox markers with p_val below this value

    Returns:
        Long DataFrame with a cluster and gene column per marker
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    clusters = adata.obs[groupby].astype("category").cat.categories
    print(f"Finding markers for {len(clusters)} clusters ({test_use})...")

    results = []
    for cluster in clusters:
        res = find_markers(
            adata,
            ident_1=cluster,
            groupby=groupby,
            min_pct=min_pct,
            logfc_threshold=logfc_threshold,
            test_use=test_use,
            only_pos=only_pos,
        )
        if test_use == "wilcox" and return_thresh is not None:
            res = res[res["p_val"] < return_thresh]
        if res.empty:
            print(f"  Cluster {cluster}: no markers")
            continue
        res = res.copy()
        res["cluster"] = str(cluster)
        res["gene"] = res.index
        results.append(res)
        print(f"  Cluster {cluster}: {len(res)} markers")

    if not results:
        columns = (WILCOX_COLUMNS if test_use == "wilcox" else ROC_COLUMNS) + ["cluster", "gene"]
        return pd.DataFrame(columns=columns)

    markers = pd.concat(results).reset_index(drop=True)
    markers["cluster"] = pd.Categorical(
        markers["cluster"], categories=[str(c) for c in clusters]
    )
    return markers


def top_markers(markers, n=MARKER_PARAMS["n_top"], by="avg_log2FC", min_log2fc=None):
    """Top n markers per cluster

    Args:
        markers: Output of find_all_markers
        n: Markers kept per cluster
        by: Column to rank by (descending); None keeps the existing order
        min_log2fc: Optional strict lower bound on avg_log2FC applied first
    """
    if "cluster" not in markers:
        raise KeyError("markers must have a 'cluster' column")

    df = markers
    if min_log2fc is not None:
        df = df[df["avg_log2FC"] > min_log2fc]
    if by is not None:
        df = df.sort_values(by, ascending=False, kind="stable")
    df = df.groupby("cluster", observed=True, sort=False).head(n)
    return df.sort_values("cluster", kind="stable").reset_index(drop=True)


def _check_genes(adata, genes, use_raw=True):
    names = adata.raw.var_names if use_raw and adata.raw is not None else adata.var_names
    missing = [g for g in genes if g not in names]
    if missing:
        raise KeyError(f"Genes not found: {missing}")


def plot_marker_violins(
    adata,
    genes,
    groupby=CLUSTERING_PARAMS["key_added"],
    layer=None,
    log=False,
    filename=None,
    save_dir=None,
):
    """Violin plots of gene expression per cluster

    Args:
        adata: AnnData object
        genes: Genes to plot, one panel each
        layer: Plot this layer (e.g. "counts") instead of log-normalized data
        log: Log-scale the y axis
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    use_raw = layer is None and adata.raw is not None
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers")
    _check_genes(adata, genes, use_raw=use_raw)

    fig, axes = plt.subplots(1, len(genes), figsize=(5 * len(genes), 4))
    axes = np.atleast_1d(axes)
    for ax, gene in zip(axes, genes):
        sc.pl.violin(
            adata,
            gene,
            groupby=groupby,
            use_raw=use_raw,
            layer=layer,
            log=log,
            jitter=0.4,
            ax=ax,
            show=False,
        )
        ax.set_title(gene)
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        suffix = f"_{layer}" if layer else ""
        out = save_dir / (filename or f"violin_{'_'.join(genes)}{suffix}.png")
        fig.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close(fig)
    else:
        plt.show()


def plot_feature_umaps(adata, genes, ncols=3, filename="feature_plots.png", save_dir=None):
    """Gene expression overlaid on the UMAP embedding"""
    if "X_umap" not in adata.obsm:
        raise KeyError("UMAP embedding not found - run run_umap first")
    _check_genes(adata, genes)

    fig = sc.pl.umap(
        adata,
        color=list(genes),
        use_raw=adata.raw is not None,
        ncols=ncols,
        show=False,
        return_fig=True,
    )

    if save_dir:
        save_dir = Path(save_dir)
        out = save_dir / filename
        fig.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close(fig)
    else:
        plt.show()


def plot_marker_heatmap(adata, markers, groupby=CLUSTERING_PARAMS["key_added"], save_dir=None):
    """Heatmap of scaled expression for marker genes, cells grouped by cluster

    Args:
        adata: Scaled AnnData object
        markers: DataFrame with a gene column (e.g. output of top_markers)
    """
    genes = list(dict.fromkeys(markers["gene"]))
    genes = [g for g in genes if g in adata.var_names]
    if not genes:
        raise ValueError("None of the marker genes are present in adata.var_names")

    sc.pl.heatmap(
        adata,
        var_names=genes,
        groupby=groupby,
        use_raw=False,
        vmin=-2.5,
        vmax=2.5,
        cmap="RdBu_r",
        swap_axes=True,
        show_gene_labels=True,
        show=False,
    )

    if save_dir:
        save_dir = Path(save_dir)
        out = save_dir / "marker_heatmap.png"
        plt.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close()
    else:
        plt.show()


def plot_marker_dotplot(adata, marker_genes, groupby=CLUSTERING_PARAMS["key_added"], save_dir=None):
    """Dot plot of marker genes across clusters

    Args:
        adata: AnnData object with clustering results
        marker_genes: List of genes, or dict of panel name -> genes
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    names = adata.raw.var_names if adata.raw is not None else adata.var_names
    if isinstance(marker_genes, dict):
        genes = [g for panel in marker_genes.values() for g in panel]
    else:
        genes = list(marker_genes)

    # Dedupe while preserving order
    available = list(dict.fromkeys(g for g in genes if g in names))
    if not available:
        print("  No marker genes found in the dataset, skipping dot plot")
        return

    sc.pl.dotplot(
        adata,
        available,
        groupby=groupby,
        standard_scale="var",
        show=False,
    )

    if save_dir:
        save_dir = Path(save_dir)
        out = save_dir / "marker_genes_dotplot.png"
        plt.savefig(out, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out}")
        plt.close()
    else:
        plt.show()
