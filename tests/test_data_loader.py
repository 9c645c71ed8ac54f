import h5py
import numpy as np
import pytest
from scipy import sparse

from pbmc3k.data_loader import (
    load_10x_mtx,
    load_10x_h5,
    create_analysis_object,
    save_checkpoint,
    load_checkpoint,
    summarize_counts,
)


def _write_v3_h5(adata, path, feature_types=None):
    X = sparse.csc_matrix(adata.X.T)  # genes x cells
    with h5py.File(path, "w") as f:
        group = f.create_group("matrix")
        group.create_dataset("data", data=X.data.astype(np.int32))
        group.create_dataset("indices", data=X.indices)
        group.create_dataset("indptr", data=X.indptr)
        group.create_dataset("shape", data=np.array(X.shape))
        group.create_dataset("barcodes", data=np.array(adata.obs_names, dtype="S"))
        features = group.create_group("features")
        features.create_dataset("name", data=np.array(adata.var_names, dtype="S"))
        ids = [f"ENSG{i:011d}" for i in range(adata.n_vars)]
        features.create_dataset("id", data=np.array(ids, dtype="S"))
        if feature_types is not None:
            features.create_dataset("feature_type", data=np.array(feature_types, dtype="S"))


def _write_v2_h5(adata, path, genome="hg19"):
    X = sparse.csc_matrix(adata.X.T)
    with h5py.File(path, "w") as f:
        group = f.create_group(genome)
        group.create_dataset("data", data=X.data.astype(np.int32))
        group.create_dataset("indices", data=X.indices)
        group.create_dataset("indptr", data=X.indptr)
        group.create_dataset("shape", data=np.array(X.shape))
        group.create_dataset("barcodes", data=np.array(adata.obs_names, dtype="S"))
        group.create_dataset("gene_names", data=np.array(adata.var_names, dtype="S"))
        ids = [f"ENSG{i:011d}" for i in range(adata.n_vars)]
        group.create_dataset("genes", data=np.array(ids, dtype="S"))


def test_load_10x_mtx(tenx_dir, counts_adata):
    adata = load_10x_mtx(tenx_dir)
    assert adata.shape == counts_adata.shape
    assert list(adata.var_names[:3]) == ["IL7R", "CCR7", "CD3E"]
    assert list(adata.obs_names) == list(counts_adata.obs_names)
    np.testing.assert_allclose(adata.X.toarray(), counts_adata.X.toarray())


def test_load_10x_mtx_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_10x_mtx(tmp_path / "nope")


def test_load_10x_h5(tmp_path, counts_adata):
    path = tmp_path / "filtered_feature_bc_matrix.h5"
    _write_v3_h5(counts_adata, path)

    adata = load_10x_h5(path)
    assert adata.shape == counts_adata.shape
    assert adata.var["gene_ids"].iloc[0] == "ENSG00000000000"
    np.testing.assert_allclose(adata.X.toarray(), counts_adata.X.toarray())


def test_load_10x_h5_v2_layout(tmp_path, counts_adata):
    path = tmp_path / "filtered_gene_bc_matrices_h5.h5"
    _write_v2_h5(counts_adata, path)

    adata = load_10x_h5(path)
    assert adata.shape == counts_adata.shape
    assert list(adata.var_names[:3]) == ["IL7R", "CCR7", "CD3E"]
    assert adata.var["gene_ids"].iloc[1] == "ENSG00000000001"
    assert list(adata.obs_names) == list(counts_adata.obs_names)
    np.testing.assert_allclose(adata.X.toarray(), counts_adata.X.toarray())


def test_load_10x_h5_keeps_gene_expression_only(tmp_path, counts_adata):
    feature_types = ["Gene Expression"] * counts_adata.n_vars
    feature_types[-5:] = ["Antibody Capture"] * 5
    path = tmp_path / "filtered_feature_bc_matrix.h5"
    _write_v3_h5(counts_adata, path, feature_types=feature_types)

    adata = load_10x_h5(path)
    assert adata.n_vars == counts_adata.n_vars - 5
    assert list(adata.var_names) == list(counts_adata.var_names[:-5])
    np.testing.assert_allclose(adata.X.toarray(), counts_adata.X[:, :-5].toarray())


def test_load_10x_h5_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_10x_h5(tmp_path / "missing.h5")


def test_create_analysis_object_filters_cells_then_genes(counts_adata):
    adata = create_analysis_object(counts_adata, project="pbmc3k")

    # Low quality cells have far fewer than 200 genes
    assert "low_quality" not in set(adata.obs["truth"])
    assert adata.n_obs == counts_adata.n_obs - 6
    assert (adata.obs["n_genes"] >= 200).all()
    assert "counts" in adata.layers
    assert (adata.obs["orig.ident"] == "pbmc3k").all()
    assert adata.uns["project_name"] == "pbmc3k"


def test_create_analysis_object_leaves_input_untouched(counts_adata):
    before = counts_adata.shape
    create_analysis_object(counts_adata)
    assert counts_adata.shape == before


def test_create_analysis_object_gene_filter(counts_adata):
    adata = create_analysis_object(counts_adata, min_cells=0, min_features=0)
    assert adata.shape == counts_adata.shape

    with pytest.raises(ValueError):
        create_analysis_object(counts_adata, min_cells=0, min_features=10_000)


def test_checkpoint_round_trip(tmp_path, qc_adata):
    path = save_checkpoint(qc_adata, tmp_path / "nested" / "pbmc_tutorial.h5ad")
    assert path.is_file()

    loaded = load_checkpoint(path)
    assert loaded.shape == qc_adata.shape
    assert "counts" in loaded.layers
    assert "percent_mt" in loaded.obs


def test_load_checkpoint_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_checkpoint(tmp_path / "missing.h5ad")


def test_summarize_counts(counts_adata):
    summary = summarize_counts(counts_adata)
    assert summary["n_cells"] == counts_adata.n_obs
    assert summary["n_genes"] == counts_adata.n_vars
    assert summary["n_nonzero"] == counts_adata.X.nnz
    assert 0 < summary["density"] < 1
