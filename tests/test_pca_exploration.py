import numpy as np
import pytest

from pbmc3k import pca_exploration


def test_pc_top_genes(processed_adata):
    top = pca_exploration.pc_top_genes(processed_adata, dims=range(1, 4), n_genes=5)

    assert list(top) == ["PC_1", "PC_2", "PC_3"]
    for genes in top.values():
        assert len(genes["positive"]) == 5
        assert len(genes["negative"]) == 5
        assert not set(genes["positive"]) & set(genes["negative"])

    # Loadings are only reported for variable genes
    hvg = set(processed_adata.var_names[processed_adata.var["highly_variable"]])
    assert set(top["PC_1"]["positive"]) <= hvg


def test_pc_top_genes_sorted_by_loading(processed_adata):
    top = pca_exploration.pc_top_genes(processed_adata, dims=[1], n_genes=3)
    loadings = dict(zip(processed_adata.var_names, processed_adata.varm["PCs"][:, 0]))
    positive = [loadings[g] for g in top["PC_1"]["positive"]]
    negative = [loadings[g] for g in top["PC_1"]["negative"]]
    assert positive == sorted(positive, reverse=True)
    assert negative == sorted(negative)


def test_dims_out_of_range(processed_adata):
    with pytest.raises(ValueError):
        pca_exploration.pc_top_genes(processed_adata, dims=[0])
    with pytest.raises(ValueError):
        pca_exploration.pc_top_genes(processed_adata, dims=[21])


def test_requires_pca(counts_adata):
    with pytest.raises(KeyError):
        pca_exploration.pc_top_genes(counts_adata)
    with pytest.raises(KeyError):
        pca_exploration.plot_elbow(counts_adata)


def test_print_pc_loadings(processed_adata, capsys):
    pca_exploration.print_pc_loadings(processed_adata, dims=[1, 2], n_genes=2)
    out = capsys.readouterr().out
    assert "PC_1" in out
    assert "Positive:" in out
    assert "Negative:" in out


def test_pc_heatmap_matrix(processed_adata):
    mat = pca_exploration.pc_heatmap_matrix(processed_adata, dim=1, n_cells=100, n_genes=10)

    assert mat.shape == (10, 100)
    assert mat.values.max() <= 2.5
    assert mat.values.min() >= -2.5

    # Cells are ordered by their PC score
    scores = dict(zip(processed_adata.obs_names, processed_adata.obsm["X_pca"][:, 0]))
    ordered = [scores[c] for c in mat.columns]
    assert ordered == sorted(ordered)


def test_pc_heatmap_matrix_all_cells(processed_adata):
    mat = pca_exploration.pc_heatmap_matrix(processed_adata, dim=2, n_cells=10_000, n_genes=6)
    assert mat.shape[1] == processed_adata.n_obs


def test_pca_plots_saved(tmp_path, processed_adata):
    pca_exploration.plot_pc_loadings(processed_adata, dims=(1, 2), save_dir=tmp_path)
    pca_exploration.plot_pca(processed_adata, color="leiden", save_dir=tmp_path)
    pca_exploration.plot_pc_heatmaps(processed_adata, dims=range(1, 5), n_cells=100, save_dir=tmp_path)
    pca_exploration.plot_elbow(processed_adata, selected=10, save_dir=tmp_path)

    for name in ["pca_loadings.png", "pca_scatter.png", "pca_heatmaps.png", "pca_elbow_plot.png"]:
        assert (tmp_path / name).is_file()


def test_elbow_is_decreasing(processed_adata):
    stdev = np.sqrt(processed_adata.uns["pca"]["variance"])
    assert np.all(np.diff(stdev) <= 1e-8)


def test_pca_plots_accept_str_dir(tmp_path, processed_adata):
    pca_exploration.plot_elbow(processed_adata, save_dir=str(tmp_path))
    assert (tmp_path / "pca_elbow_plot.png").is_file()
