#!/usr/bin/env python3
"""
Gene filtering and normalization for pseudobulk samples
Group-aware expression filter, TMM scale factors and log-normalized counts
"""

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import rankdata

from crypt_de.params import FILTER_PARAMS, NORM_PARAMS


def _dense(X):
    if sparse.issparse(X):
        X = X.toarray()
    return np.asarray(X, dtype=float)


def filter_by_expression(
    counts,
    groups,
    min_count=FILTER_PARAMS["min_count"],
    min_prop=FILTER_PARAMS["min_prop"],
    min_total_count=FILTER_PARAMS["min_total_count"],
):
    """Flag genes detected consistently within at least one expression group

    A gene is kept when, for some group, the fraction of the group's samples
    with count >= min_count reaches min_prop and the gene's summed count over
    that group reaches min_total_count.

    Args:
        counts: samples x genes count matrix
        groups: group label of every sample
        min_count: Per-sample detection threshold
        min_prop: Required proportion of detecting samples within the group
        min_total_count: Required total count within the group

    Returns:
        Boolean numpy array over genes
    """
    counts = _dense(counts)
    groups = np.asarray(groups).astype(str)
    if counts.shape[0] != len(groups):
        raise ValueError(
            f"Got {len(groups)} group labels for {counts.shape[0]} samples"
        )

    keep = np.zeros(counts.shape[1], dtype=bool)
    for group in np.unique(groups):
        group_counts = counts[groups == group]
        n_samples = group_counts.shape[0]
        n_detected = (group_counts >= min_count).sum(axis=0)
        # Small tolerance so that min_prop=1.0 means "all samples"
        prop_ok = n_detected >= min_prop * n_samples - 1e-8
        total_ok = group_counts.sum(axis=0) >= min_total_count
        keep |= prop_ok & total_ok

    return keep


def filter_pseudobulk(pb, group_key="condition", **filter_kwargs):
    """Apply filter_by_expression to a pseudobulk AnnData object

    Returns:
        Filtered copy of pb
    """
    print("Filtering genes for DE analysis...")

    if group_key not in pb.obs.columns:
        raise ValueError(f"Missing required column: {group_key}")

    keep = filter_by_expression(pb.layers["counts"], pb.obs[group_key], **filter_kwargs)
    pb_filtered = pb[:, keep].copy()

    print(f"Kept {pb_filtered.n_vars} genes after filtering ({pb.n_vars - pb_filtered.n_vars} removed)")

    return pb_filtered


def _tmm_factor(obs, ref, lib_obs, lib_ref, logratio_trim, sum_trim, a_cutoff):
    """TMM factor of one sample against the reference sample"""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts,
    lib_sizes=None,
    logratio_trim=NORM_PARAMS["logratio_trim"],
    sum_trim=NORM_PARAMS["sum_trim"],
    a_cutoff=NORM_PARAMS["a_cutoff"],
):
    """Trimmed mean of M-values normalization factors

    The reference sample is the one whose upper-quartile to library-size ratio
    is closest to the mean ratio. Factors multiply to one.

    Args:
        counts: samples x genes count matrix
        lib_sizes: Optional library sizes (default: row sums)

    Returns:
        numpy array of normalization factors, one per sample
    """
    counts = _dense(counts)
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=1)
    lib_sizes = np.asarray(lib_sizes, dtype=float)

    if np.any(lib_sizes <= 0):
        raise ValueError("All samples need a positive library size for TMM")

    # Genes with zero counts everywhere carry no information
    counts = counts[:, counts.sum(axis=0) > 0]
    if counts.shape[1] == 0 or counts.shape[0] < 2:
        return np.ones(len(lib_sizes))

    f75 = np.quantile(counts, 0.75, axis=1) / lib_sizes
    ref_idx = int(np.argmin(np.abs(f75 - f75.mean())))
    ref = counts[ref_idx]

    factors = np.array([
        _tmm_factor(
            counts[i], ref, lib_sizes[i], lib_sizes[ref_idx],
            logratio_trim, sum_trim, a_cutoff,
        )
        for i in range(counts.shape[0])
    ])

    return factors / np.exp(np.mean(np.log(factors)))


def normalize_pseudobulk(pb, scale=NORM_PARAMS["scale"]):
    """Scale pseudobulk counts by TMM x library size and log-transform

    Adds obs["lib_size"], obs["norm_factor"], obs["size_factor"] and the
    layers "normcounts" and "logcounts"; X is set to logcounts.

    Args:
        pb: Pseudobulk AnnData object with layers["counts"]
        scale: Constant multiplied into the scaled counts before log1p

    Returns:
        pb (modified in place)
    """
    print("Normalizing pseudobulk counts (TMM)...")

    counts = _dense(pb.layers["counts"])
    lib_sizes = counts.sum(axis=1)
    norm_factors = calc_norm_factors(counts, lib_sizes)

    pb.obs["lib_size"] = lib_sizes
    pb.obs["norm_factor"] = norm_factors
    pb.obs["size_factor"] = lib_sizes * norm_factors

    normcounts = counts / pb.obs["size_factor"].to_numpy()[:, None] * scale
    pb.layers["normcounts"] = normcounts
    pb.layers["logcounts"] = np.log1p(normcounts)
    pb.X = pb.layers["logcounts"].copy()

    factors = pd.Series(norm_factors, index=pb.obs_names)
    print(f"  Norm factors: {factors.min():.3f} - {factors.max():.3f}")

    return pb
