#!/usr/bin/env python3
"""
JackStraw permutation test for principal component significance

A small share of the variable genes is permuted across cells and PCA is
re-run; the loadings of the permuted genes form a null distribution.
'Significant' PCs show a strong enrichment of genes with low empirical
p-values.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from sklearn.utils.extmath import randomized_svd
from scipy import stats
from pathlib import Path

from pbmc3k.analysis_params import JACKSTRAW_PARAMS


def _scaled_variable_matrix(adata):
    if "highly_variable" not in adata.var:
        raise ValueError("No variable features found - run find_variable_features first")
    hvg = adata.var["highly_variable"].values
    if hvg.sum() == 0:
        raise ValueError("No variable features selected")
    X = adata.X[:, hvg]
    if hasattr(X, "toarray"):
        X = X.toarray()
    return np.asarray(X, dtype=np.float64), adata.var_names[hvg]


def _null_loadings(data, dims, n_rand, rng):
    """Loadings of n_rand row-shuffled genes on a PCA of the modified data"""
    rand_genes = rng.choice(data.shape[1], size=n_rand, replace=False)
    data_mod = data.copy()
    for g in rand_genes:
        data_mod[:, g] = rng.permutation(data_mod[:, g])
    data_mod -= data_mod.mean(axis=0)

    _, _, vt = randomized_svd(
        data_mod, n_components=dims, random_state=int(rng.integers(2**31 - 1))
    )
    return vt[:, rand_genes].T


def empirical_p(observed, null):
    """Share of null values exceeding each observed value (absolute scale)"""
    null_sorted = np.sort(np.abs(null))
    n_greater = len(null_sorted) - np.searchsorted(null_sorted, np.abs(observed), side="right")
    return n_greater / len(null_sorted)


def jackstraw(
    adata,
    n_replicates=JACKSTRAW_PARAMS["n_replicates"],
    prop_freq=JACKSTRAW_PARAMS["prop_freq"],
    dims=JACKSTRAW_PARAMS["dims"],
    random_state=0,
):
    """Determine statistical significance of PCA scores

    Args:
        adata: Scaled AnnData object with PCA results on variable genes
        n_replicates: Number of permutation replicates
        prop_freq: Share of genes permuted per replicate (at least 3 genes)
        dims: Number of PCs tested

    Returns:
        AnnData object with uns["jackstraw"]["empirical_p"] (genes x dims)
    """
    if "PCs" not in adata.varm:
        raise KeyError("PCA results not found - run run_pca first")

    n_comps = adata.varm["PCs"].shape[1]
    if dims < 2 or dims > n_comps:
        raise ValueError(f"dims must be between 2 and the {n_comps} computed PCs")
    if n_replicates < 1:
        raise ValueError("n_replicates must be at least 1")

    data, genes = _scaled_variable_matrix(adata)
    n_rand = max(3, int(data.shape[1] * prop_freq))
    if n_rand > data.shape[1]:
        raise ValueError(f"Need at least 3 variable genes, found {data.shape[1]}")

    print(f"Running JackStraw ({n_replicates} replicates, {n_rand} genes each, {dims} PCs)...")

    rng = np.random.default_rng(random_state)
    null = np.vstack(
        [_null_loadings(data, dims, n_rand, rng) for _ in range(n_replicates)]
    )

    observed = adata.varm["PCs"][adata.var["highly_variable"].values, :dims]
    p_values = np.column_stack(
        [empirical_p(observed[:, k], null[:, k]) for k in range(dims)]
    )

    adata.uns["jackstraw"] = {
        "empirical_p": p_values,
        "genes": np.asarray(genes, dtype=str),
        "params": {
            "n_replicates": int(n_replicates),
            "prop_freq": float(prop_freq),
            "dims": int(dims),
        },
    }
    return adata


def _proportion_test(observed, expected, n):
    """p-value of observed/n vs expected/n, chi-square with Yates' correction"""
    if observed == 0:
        return 1.0
    table = np.array([[observed, n - observed], [expected, n - expected]])
    return float(stats.chi2_contingency(table, correction=True)[1])


def score_jackstraw(adata, dims=None, score_thresh=JACKSTRAW_PARAMS["score_thresh"]):
    """Score each PC by its enrichment of low empirical p-values

    For each PC the number of genes with p <= score_thresh is compared with
    the number expected under the uniform null by a two-sample proportion test
    with continuity correction. PCs with no gene below the threshold score 1.

    Returns:
        DataFrame with columns PC and score (p-value), also stored in
        uns["jackstraw"]["pc_scores"]
    """
    if "jackstraw" not in adata.uns:
        raise KeyError("JackStraw results not found - run jackstraw first")

    p_all = np.asarray(adata.uns["jackstraw"]["empirical_p"])
    n_genes, n_dims = p_all.shape
    dims = range(1, n_dims + 1) if dims is None else list(dims)

    scores = []
    for dim in dims:
        if not 1 <= dim <= n_dims:
            raise ValueError(f"PC {dim} was not tested (1..{n_dims})")
        observed = int((p_all[:, dim - 1] <= score_thresh).sum())
        expected = int(np.floor(n_genes * score_thresh))
        scores.append(_proportion_test(observed, expected, n_genes))

    result = pd.DataFrame({"PC": list(dims), "score": scores})
    adata.uns["jackstraw"]["pc_scores"] = {
        "PC": result["PC"].to_numpy(),
        "score": result["score"].to_numpy(),
    }
    adata.uns["jackstraw"]["score_thresh"] = float(score_thresh)
    return result


def significant_pcs(adata, alpha=0.05):
    """PCs whose JackStraw score is below alpha"""
    if "pc_scores" not in adata.uns.get("jackstraw", {}):
        raise KeyError("PC scores not found - run score_jackstraw first")
    scores = adata.uns["jackstraw"]["pc_scores"]
    return [int(pc) for pc, s in zip(scores["PC"], scores["score"]) if s < alpha]


def plot_jackstraw(adata, dims=range(1, 16), xmax=0.1, ymax=0.3, save_dir=None):
    """QQ plot of empirical p-values against the uniform distribution per PC

    Args:
        adata: AnnData object with scored JackStraw results
        dims: 1-based PC numbers to draw
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    if "pc_scores" not in adata.uns.get("jackstraw", {}):
        raise KeyError("PC scores not found - run score_jackstraw first")

    p_all = np.asarray(adata.uns["jackstraw"]["empirical_p"])
    scores = dict(
        zip(
            adata.uns["jackstraw"]["pc_scores"]["PC"],
            adata.uns["jackstraw"]["pc_scores"]["score"],
        )
    )
    n_genes = p_all.shape[0]
    uniform = (np.arange(1, n_genes + 1) - 0.5) / n_genes

    fig, ax = plt.subplots(figsize=(7, 5))
    cmap = plt.get_cmap("tab20")
    for i, dim in enumerate(dims):
        if dim not in scores:
            continue
        ax.plot(
            uniform,
            np.sort(p_all[:, dim - 1]),
            color=cmap(i % 20),
            linewidth=1,
            label=f"PC {dim}: {scores[dim]:.2g}",
        )
    ax.plot([0, xmax], [0, xmax], color="gray", linestyle="--", linewidth=1)
    ax.set_xlim(0, xmax)
    ax.set_ylim(0, ymax)
    ax.set_xlabel("Theoretical (uniform)")
    ax.set_ylabel("Empirical")
    ax.legend(fontsize=7, bbox_to_anchor=(1.02, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        save_dir = Path(save_dir)
        fig.savefig(save_dir / "jackstraw_plot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/jackstraw_plot.png")
        plt.close(fig)
    else:
        plt.show()
