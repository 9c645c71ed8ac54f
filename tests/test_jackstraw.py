import numpy as np
import pytest

from pbmc3k.jackstraw import (
    empirical_p,
    jackstraw,
    score_jackstraw,
    significant_pcs,
    plot_jackstraw,
)


def test_empirical_p():
    null = np.array([0.1, -0.2, 0.3, 0.01])
    p = empirical_p(np.array([0.5, 0.05, -0.15]), null)
    np.testing.assert_allclose(p, [0.0, 0.75, 0.5])


def test_jackstraw(processed_adata):
    adata = jackstraw(processed_adata, n_replicates=4, dims=5, random_state=1)

    result = adata.uns["jackstraw"]
    n_hvg = int(adata.var["highly_variable"].sum())
    assert result["empirical_p"].shape == (n_hvg, 5)
    assert len(result["genes"]) == n_hvg
    assert np.all((result["empirical_p"] >= 0) & (result["empirical_p"] <= 1))
    assert result["params"]["n_replicates"] == 4


def test_jackstraw_is_reproducible(processed_adata):
    first = jackstraw(processed_adata.copy(), n_replicates=2, dims=3, random_state=7)
    second = jackstraw(processed_adata.copy(), n_replicates=2, dims=3, random_state=7)
    np.testing.assert_array_equal(
        first.uns["jackstraw"]["empirical_p"], second.uns["jackstraw"]["empirical_p"]
    )


def test_jackstraw_validation(processed_adata, counts_adata):
    with pytest.raises(KeyError):
        jackstraw(counts_adata)
    with pytest.raises(ValueError):
        jackstraw(processed_adata, dims=1)
    with pytest.raises(ValueError):
        jackstraw(processed_adata, dims=50)
    with pytest.raises(ValueError):
        jackstraw(processed_adata, n_replicates=0)


def test_score_jackstraw_detects_enrichment(processed_adata):
    rng = np.random.default_rng(0)
    p = rng.uniform(0.01, 1, size=(200, 2))
    p[:50, 0] = 0.0
    processed_adata.uns["jackstraw"] = {"empirical_p": p}

    scores = score_jackstraw(processed_adata)
    assert list(scores["PC"]) == [1, 2]
    assert scores.loc[0, "score"] < 1e-3
    # Nothing below the threshold and nothing expected
    assert scores.loc[1, "score"] == 1.0
    assert significant_pcs(processed_adata) == [1]


def test_score_jackstraw_continuity_correction(processed_adata):
    # 3 of 2000 genes at p=0 against floor(2000 * 1e-5) = 0 expected;
    # prop.test(c(3, 0), c(2000, 2000)) gives 0.2480
    p = np.ones((2000, 1))
    p[:3, 0] = 0.0
    processed_adata.uns["jackstraw"] = {"empirical_p": p}

    scores = score_jackstraw(processed_adata, score_thresh=1e-5)
    assert scores.loc[0, "score"] == pytest.approx(0.2480, abs=1e-3)
    assert significant_pcs(processed_adata) == []


def test_score_jackstraw_no_hits_scores_one(processed_adata):
    # 2 genes expected below the threshold, none observed
    processed_adata.uns["jackstraw"] = {"empirical_p": np.ones((200, 1))}

    scores = score_jackstraw(processed_adata, score_thresh=0.01)
    assert scores.loc[0, "score"] == 1.0


def test_score_jackstraw_requires_results(processed_adata):
    with pytest.raises(KeyError):
        score_jackstraw(processed_adata)
    with pytest.raises(KeyError):
        significant_pcs(processed_adata)


def test_score_jackstraw_bad_dims(processed_adata):
    processed_adata.uns["jackstraw"] = {"empirical_p": np.ones((10, 3))}
    with pytest.raises(ValueError):
        score_jackstraw(processed_adata, dims=[4])


def test_plot_jackstraw(tmp_path, processed_adata):
    jackstraw(processed_adata, n_replicates=2, dims=4)
    score_jackstraw(processed_adata)
    plot_jackstraw(processed_adata, dims=range(1, 5), save_dir=tmp_path)
    assert (tmp_path / "jackstraw_plot.png").is_file()
