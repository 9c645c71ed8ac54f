import pytest

from pbmc3k import qc_filters, analysis_params


def test_default_filters_are_valid():
    assert qc_filters.validate_filters() is True


def test_filter_validation_reports_all_errors():
    bad_cells = {"min_genes": 3000, "max_genes": 2500, "max_mt_pct": 150}
    bad_object = {"min_cells": -1, "min_features": 200}
    with pytest.raises(ValueError) as excinfo:
        qc_filters.validate_filters(cell_filters=bad_cells, object_filters=bad_object)
    message = str(excinfo.value)
    assert "min_genes must be less than max_genes" in message
    assert "max_mt_pct" in message
    assert "non-negative" in message


def test_filter_summary_mentions_thresholds():
    summary = qc_filters.get_filter_summary()
    assert "200 < n < 2500" in summary
    assert "MT-" in summary


def test_params_are_consistent():
    assert analysis_params.validate_params() is True
    assert analysis_params.NEIGHBOR_PARAMS["n_pcs"] == 10
    assert analysis_params.CLUSTERING_PARAMS["resolution"] == 0.5
    assert len(analysis_params.CLUSTER_IDENTITIES) == 9


def test_params_summary_lists_each_stage():
    summary = analysis_params.get_params_summary()
    for text in ["target sum", "Variable features", "JackStraw", "Leiden resolution"]:
        assert text in summary
