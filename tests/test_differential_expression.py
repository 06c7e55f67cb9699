import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from crypt_de.differential_expression import (
    CONTRASTS,
    build_contrasts,
    build_design_matrix,
    check_model_matches,
    export_gene_tables,
    fit_crypt_model,
    rank_score,
    run_contrasts,
    significant_genes,
)
from crypt_de.normalization import normalize_pseudobulk
from crypt_de.qlglm import load_model, save_model, squeeze_var, trigamma_inverse

LEVELS = ["STD_control", "STD_disease", "GW_control", "GW_disease"]


@pytest.fixture(scope="module")
def fitted():
    from conftest import make_pseudobulk

    pb = normalize_pseudobulk(make_pseudobulk())
    fit, contrasts = fit_crypt_model(pb)
    return pb, fit, contrasts


@pytest.fixture(scope="module")
def de_results(fitted):
    _, fit, contrasts = fitted
    return run_contrasts(fit, contrasts)


def test_design_is_one_hot_without_intercept(pseudobulk):
    design = build_design_matrix(pseudobulk.obs)

    assert list(design.columns) == LEVELS
    assert (design.sum(axis=1) == 1).all()
    assert design.loc["GW_disease_2", "GW_disease"] == 1


def test_contrast_weights():
    contrasts = build_contrasts(LEVELS)

    assert list(contrasts.columns) == list(CONTRASTS)
    np.testing.assert_allclose(contrasts["granuloma_vs_control"], [-0.5, 0.5, -0.5, 0.5])
    np.testing.assert_allclose(contrasts["GW_vs_STD"], [-0.5, -0.5, 0.5, 0.5])
    np.testing.assert_allclose(contrasts["diet_x_crypt"], [1, -1, -1, 1])
    np.testing.assert_allclose(contrasts["granuloma_vs_control_in_GW"], [0, 0, -1, 1])
    # Every contrast compares equal total weight on both sides
    np.testing.assert_allclose(contrasts.sum(axis=0), 0)


def test_contrasts_with_missing_level_are_skipped():
    contrasts = build_contrasts(["STD_control", "STD_disease", "GW_control"])
    assert list(contrasts.columns) == ["GW_vs_STD_in_control", "granuloma_vs_control_in_STD"]


def test_rank_score_is_monotone():
    fc = np.array([0.5, 1.0, 2.0])
    assert np.all(np.diff(rank_score(fc, np.full(3, 0.01))) > 0)
    assert np.all(np.diff(rank_score(-fc, np.full(3, 0.01))) > 0)

    fdr = np.array([0.1, 0.01, 0.001])
    assert np.all(np.diff(rank_score(np.ones(3), fdr)) > 0)
    assert np.isfinite(rank_score([1.0], [0.0])).all()


def test_trigamma_inverse():
    x = np.array([1e-3, 0.1, 1.0, 10.0])
    np.testing.assert_allclose(polygamma(1, trigamma_inverse(x)), x, rtol=1e-6)


def test_squeeze_moves_variances_towards_prior():
    rng = np.random.default_rng(3)
    df = 8
    s2 = 0.5 * rng.chisquare(df, size=500) / df

    s2_post, s2_prior, df_prior = squeeze_var(s2, df, robust=False)

    assert df_prior > 0
    assert np.var(s2_post) < np.var(s2)
    assert np.median(s2_prior) == pytest.approx(0.5, rel=0.2)


def test_disease_gene_is_detected(de_results):
    res = de_results.set_index(["contrast", "gene"])
    gene0 = res.loc[("granuloma_vs_control", "Gene0")]

    assert gene0["FDR"] <= 0.10
    assert gene0["logFC"] == pytest.approx(3.0, abs=0.7)
    assert gene0["significant"] and gene0["upregulated"]

    # Same effect in each diet separately
    assert res.loc[("granuloma_vs_control_in_STD", "Gene0"), "logFC"] > 2
    assert res.loc[("granuloma_vs_control_in_GW", "Gene0"), "logFC"] > 2
    # No diet effect was simulated
    assert abs(res.loc[("GW_vs_STD", "Gene0"), "logFC"]) < 1


def test_results_are_well_formed(de_results, fitted):
    _, fit, contrasts = fitted
    assert len(de_results) == fit.counts.shape[0] * contrasts.shape[1]
    assert de_results["PValue"].between(0, 1).all()
    assert de_results["FDR"].between(0, 1).all()
    assert (de_results["FDR"] >= de_results["PValue"] - 1e-12).all()
    np.testing.assert_allclose(
        de_results["rank_score"], rank_score(de_results["logFC"], de_results["FDR"])
    )


def test_significant_genes_cut_and_union():
    results = pd.DataFrame({
        "gene": [f"g{i}" for i in range(15)] + ["g0", "x"],
        "contrast": ["GW_vs_STD"] * 15 + ["diet_x_crypt"] * 2,
        "logFC": [1.0] * 17,
        "FDR": [0.001 * (i + 1) for i in range(15)] + [0.01, 0.5],
    })
    results["rank_score"] = rank_score(results["logFC"], results["FDR"])

    tables, union = significant_genes(
        results, fdr_threshold=0.1, top_n=10, top_n_contrasts=["GW_vs_STD"]
    )

    assert len(tables["GW_vs_STD"]) == 10
    assert list(tables["GW_vs_STD"]["gene"][:2]) == ["g0", "g1"]
    assert list(tables["diet_x_crypt"]["gene"]) == ["g0"]
    assert list(tables["GW_vs_STD"].columns) == ["gene", "rank_score", "logFC", "FDR"]
    assert union == [f"g{i}" for i in range(10)]


def test_export_gene_tables(tmp_path):
    tables = {"GW_vs_STD": pd.DataFrame({"gene": ["a"], "rank_score": [2.0], "logFC": [1.0], "FDR": [0.01]})}
    paths = export_gene_tables(tables, tmp_path)

    assert paths[0].name == "de_GW_vs_STD.csv"
    assert list(pd.read_csv(paths[0]).columns) == ["gene", "rank_score", "logFC", "FDR"]


def test_saved_model_reproduces_results(fitted, de_results, tmp_path):
    pb, fit, contrasts = fitted
    save_model(fit, tmp_path / "fit.pkl")
    save_model(contrasts, tmp_path / "contrasts.pkl")

    loaded = load_model(tmp_path / "fit.pkl")
    check_model_matches(loaded, pb, list(pb.var_names))
    again = run_contrasts(loaded, load_model(tmp_path / "contrasts.pkl"))

    np.testing.assert_allclose(again["FDR"], de_results["FDR"])


def test_model_mismatch_raises(fitted):
    pb, fit, _ = fitted
    with pytest.raises(ValueError):
        check_model_matches(fit, pb, list(pb.var_names[:5]))


def test_load_missing_model_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_model(tmp_path / "missing.pkl")
