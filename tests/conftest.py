import matplotlib

matplotlib.use("Agg")

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import io, sparse

# Three well separated populations, each with its own marker genes
GROUP_MARKERS = {
    "0": ["IL7R", "CCR7", "CD3E"],
    "1": ["MS4A1", "CD79A"],
    "2": ["CD14", "LYZ", "CST3"],
}
GROUP_SIZES = {"0": 120, "1": 90, "2": 90}
OTHER_NAMED = ["S100A4", "CD8A", "FCGR3A", "MS4A7", "GNLY", "NKG7", "FCER1A", "PPBP", "PF4"]
MT_GENES = ["MT-CO1", "MT-CO2", "MT-ND1", "MT-ND4", "MT-ATP6"]
N_GENES = 400
N_HIGH_MT = 8
N_LOW_QUALITY = 6


def make_counts(seed=0):
    """Synthetic PBMC-like count matrix (cells x genes)

    Besides the three populations it holds N_HIGH_MT cells with a high
    mitochondrial fraction and N_LOW_QUALITY cells with few detected genes.
    """
    rng = np.random.default_rng(seed)

    markers = [g for genes in GROUP_MARKERS.values() for g in genes]
    named = markers + OTHER_NAMED + MT_GENES
    gene_names = named + [f"GENE{i}" for i in range(N_GENES - len(named))]
    mt_idx = [gene_names.index(g) for g in MT_GENES]

    base = rng.uniform(1.0, 4.0, size=N_GENES)
    base[: len(markers)] = 0.2
    base[mt_idx] = 1.0

    blocks = []
    labels = []
    for group, n in GROUP_SIZES.items():
        rates = np.tile(base, (n, 1))
        for gene in GROUP_MARKERS[group]:
            rates[:, gene_names.index(gene)] = 20.0
        blocks.append(rates)
        labels += [group] * n

    high_mt = np.tile(base, (N_HIGH_MT, 1))
    high_mt[:, mt_idx] = 30.0
    low_quality = np.tile(base * 0.05, (N_LOW_QUALITY, 1))
    blocks += [high_mt, low_quality]
    labels += ["high_mt"] * N_HIGH_MT + ["low_quality"] * N_LOW_QUALITY

    counts = rng.poisson(np.vstack(blocks)).astype(np.float32)
    obs = pd.DataFrame(
        {"truth": pd.Categorical(labels)},
        index=[f"CELL{i}-1" for i in range(len(labels))],
    )
    return anndata.AnnData(
        X=sparse.csr_matrix(counts), obs=obs, var=pd.DataFrame(index=gene_names)
    )


def write_10x_mtx(adata, path):
    """Write adata in the legacy 10x layout (matrix.mtx, genes.tsv, barcodes.tsv)"""
    path.mkdir(parents=True, exist_ok=True)
    io.mmwrite(str(path / "matrix.mtx"), sparse.coo_matrix(adata.X.T.astype(np.int64)))
    with open(path / "genes.tsv", "w") as f:
        for i, name in enumerate(adata.var_names):
            f.write(f"ENSG{i:011d}\t{name}\n")
    with open(path / "barcodes.tsv", "w") as f:
        for barcode in adata.obs_names:
            f.write(f"{barcode}\n")
    return path


@pytest.fixture
def counts_adata():
    return make_counts()


@pytest.fixture
def tenx_dir(tmp_path, counts_adata):
    return write_10x_mtx(counts_adata, tmp_path / "hg19")


@pytest.fixture
def qc_adata(counts_adata):
    from pbmc3k.data_loader import create_analysis_object
    from pbmc3k.qc_utils import calculate_qc_metrics

    return calculate_qc_metrics(create_analysis_object(counts_adata))


@pytest.fixture(scope="session")
def _processed():
    from pbmc3k.data_loader import create_analysis_object
    from pbmc3k.qc_utils import calculate_qc_metrics, filter_cells
    from pbmc3k import processing

    adata = create_analysis_object(make_counts())
    adata = calculate_qc_metrics(adata)
    adata = filter_cells(adata)
    adata = processing.normalize_data(adata)
    adata = processing.find_variable_features(adata, n_top_genes=150)
    adata = processing.scale_data(adata)
    adata = processing.run_pca(adata, n_comps=20)
    adata = processing.find_neighbors(adata, n_neighbors=15, n_pcs=10)
    adata = processing.run_umap(adata)
    # Known populations stand in for cluster labels
    adata.obs["leiden"] = adata.obs["truth"].astype(str).astype("category")
    return adata


@pytest.fixture
def processed_adata(_processed):
    return _processed.copy()
