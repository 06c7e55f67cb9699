import numpy as np
import pytest

from crypt_de.normalization import (
    calc_norm_factors,
    filter_by_expression,
    filter_pseudobulk,
    normalize_pseudobulk,
)


def test_gene_with_six_counts_in_single_sample_group_is_kept():
    # samples: a | b, c
    counts = np.array([
        [6, 1],
        [0, 0],
        [0, 5],
    ])
    groups = ["X", "Y", "Y"]

    keep = filter_by_expression(counts, groups, min_count=1, min_prop=1.0, min_total_count=6)

    assert keep[0]
    # Gene 1: group X total is 1, group Y detected in only half of its samples
    assert not keep[1]


def test_gene_detected_everywhere_but_low_total_is_dropped():
    counts = np.array([[1], [1], [1], [1]])
    keep = filter_by_expression(counts, ["X", "X", "Y", "Y"], min_total_count=6)
    assert not keep[0]


def test_gene_needs_every_sample_of_some_group():
    counts = np.array([
        [10, 3],
        [0, 3],
        [10, 0],
        [10, 3],
    ])
    keep = filter_by_expression(counts, ["X", "X", "Y", "Y"])
    # Gene 0 passes through group Y; gene 1 through group X
    assert keep.tolist() == [True, True]


def test_filter_rejects_mismatched_groups():
    with pytest.raises(ValueError):
        filter_by_expression(np.ones((3, 2)), ["X", "Y"])


def test_filter_pseudobulk_only_shrinks(pseudobulk):
    pseudobulk.layers["counts"][:, 5] = 0
    filtered = filter_pseudobulk(pseudobulk)

    assert filtered.n_vars == pseudobulk.n_vars - 1
    assert "Gene5" not in filtered.var_names
    assert set(filtered.var_names) <= set(pseudobulk.var_names)


def test_norm_factors_are_one_for_proportional_samples():
    rng = np.random.default_rng(0)
    base = rng.integers(10, 200, size=200).astype(float)
    counts = np.vstack([base, base * 2, base * 3])

    factors = calc_norm_factors(counts)

    np.testing.assert_allclose(factors, 1.0, atol=1e-8)


def test_norm_factors_correct_for_composition():
    rng = np.random.default_rng(1)
    base = rng.integers(50, 200, size=500).astype(float)
    shifted = base.copy()
    # A minority of genes take up a large share of the second library
    shifted[:25] *= 20
    counts = np.vstack([base, shifted])

    factors = calc_norm_factors(counts)

    assert np.prod(factors) == pytest.approx(1.0)
    # Effective library of the second sample is close to the first for the unchanged genes
    lib = counts.sum(axis=1)
    eff = lib * factors
    ratio = (shifted[25:] / eff[1]).mean() / (base[25:] / eff[0]).mean()
    assert ratio == pytest.approx(1.0, rel=0.05)


def test_normalize_adds_layers(pseudobulk):
    pb = normalize_pseudobulk(pseudobulk, scale=1e5)

    counts = pb.layers["counts"]
    expected = counts / pb.obs["size_factor"].to_numpy()[:, None] * 1e5
    np.testing.assert_allclose(pb.layers["normcounts"], expected)
    np.testing.assert_allclose(pb.layers["logcounts"], np.log1p(expected))
    np.testing.assert_allclose(pb.obs["lib_size"], counts.sum(axis=1))
    np.testing.assert_allclose(
        pb.obs["size_factor"], pb.obs["lib_size"] * pb.obs["norm_factor"]
    )
