import numpy as np
import pandas as pd
import pytest

from pbmc3k.qc_utils import calculate_qc_metrics, plot_qc_metrics, filter_cells, qc_summary, QC_METRICS
from pbmc3k.qc_violin_plots import create_true_violin_plots, create_violin_with_points


def test_calculate_qc_metrics(qc_adata):
    assert int(qc_adata.var["mt"].sum()) == 5
    for metric in QC_METRICS:
        assert metric in qc_adata.obs

    high_mt = qc_adata.obs["truth"] == "high_mt"
    assert (qc_adata.obs.loc[high_mt, "percent_mt"] > 5).all()
    assert (qc_adata.obs.loc[~high_mt, "percent_mt"] < 5).all()


def test_percent_mt_uses_counts(qc_adata):
    counts = qc_adata.layers["counts"].toarray()
    mt = qc_adata.var["mt"].values
    expected = 100 * counts[:, mt].sum(axis=1) / counts.sum(axis=1)
    np.testing.assert_allclose(qc_adata.obs["percent_mt"].values, expected, rtol=1e-4)


def test_filter_cells_removes_high_mt(qc_adata):
    filtered = filter_cells(qc_adata)
    assert "high_mt" not in set(filtered.obs["truth"])
    assert filtered.n_obs == qc_adata.n_obs - 8


def test_filter_cells_bounds_are_strict(qc_adata):
    obs = qc_adata.obs
    obs["n_genes_by_counts"] = 300
    obs["percent_mt"] = 1.0
    names = obs.index
    obs.loc[names[0], "n_genes_by_counts"] = 200
    obs.loc[names[1], "n_genes_by_counts"] = 2500
    obs.loc[names[2], "percent_mt"] = 5.0
    obs.loc[names[3], "n_genes_by_counts"] = 201
    obs.loc[names[4], "percent_mt"] = 4.99

    filtered = filter_cells(qc_adata, min_genes=200, max_genes=2500, max_mt_pct=5)
    assert filtered.n_obs == qc_adata.n_obs - 3
    for dropped in names[:3]:
        assert dropped not in filtered.obs_names
    assert names[3] in filtered.obs_names
    assert names[4] in filtered.obs_names


def test_filter_cells_requires_metrics(counts_adata):
    with pytest.raises(KeyError):
        filter_cells(counts_adata)


def test_qc_summary(qc_adata):
    summary = qc_summary(qc_adata)
    assert list(summary.index) == QC_METRICS
    assert summary.loc["n_genes_by_counts", "count"] == qc_adata.n_obs


def test_qc_plots_saved(tmp_path, qc_adata):
    plot_qc_metrics(qc_adata, save_dir=tmp_path)
    assert (tmp_path / "qc_violin_plots.png").is_file()
    assert (tmp_path / "qc_scatter_plots.png").is_file()

    create_true_violin_plots(qc_adata, save_dir=tmp_path)
    assert (tmp_path / "true_violin_plots.png").is_file()

    create_violin_with_points(qc_adata, save_dir=tmp_path, max_points=50)
    assert (tmp_path / "violin_with_points.png").is_file()


def test_qc_plots_accept_str_dir(tmp_path, qc_adata):
    plot_qc_metrics(qc_adata, save_dir=str(tmp_path))
    create_violin_with_points(qc_adata, save_dir=str(tmp_path), max_points=50)
    assert (tmp_path / "qc_violin_plots.png").is_file()
    assert (tmp_path / "violin_with_points.png").is_file()
