#!/usr/bin/env python3
"""
Pseudobulk aggregation for the Visium crypt analysis
Sums spot counts within each crypt group
"""

import re
import numpy as np
import pandas as pd
import anndata
from scipy import sparse

from crypt_de.data_loader import get_raw_counts


def natural_sort_key(text):
    """Sort key treating digit runs as numbers ("STD_control_2" < "STD_control_10")"""
    # re.split with a group alternates text and digits, so list positions align
    return [int(part) if i % 2 else part for i, part in enumerate(re.split(r"(\d+)", text))]


def create_pseudobulk(
    adata,
    groupby="crypt_group",
    covariates=("diet", "crypt_type", "condition"),
    min_spots=1,
):
    """Create pseudobulk samples by summing spot counts per group

    Args:
        adata: AnnData object (spots x genes) with raw counts
        groupby: obs column holding the group id of every spot
        covariates: obs columns constant within a group, copied to the samples
        min_spots: Minimum spots required per pseudobulk sample

    Returns:
        AnnData object (groups x genes) with summed counts in X and layers["counts"]
    """
    print("Creating pseudobulk samples...")

    missing = [c for c in [groupby, *covariates] if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    X, var_names = get_raw_counts(adata)
    if not sparse.issparse(X):
        X = sparse.csr_matrix(np.asarray(X))

    groups = adata.obs[groupby].astype(str)
    if groups.isna().any():
        raise ValueError(f"Spots without a '{groupby}' value must be removed first")

    group_ids = pd.Index(sorted(groups.unique(), key=natural_sort_key))
    codes = group_ids.get_indexer(groups)

    # Indicator matrix (groups x spots); the product is a plain per-group sum
    indicator = sparse.csr_matrix(
        (np.ones(len(codes)), (codes, np.arange(len(codes)))),
        shape=(len(group_ids), len(codes)),
    )
    summed = indicator @ X
    summed = np.asarray(summed.todense()) if sparse.issparse(summed) else np.asarray(summed)

    obs = adata.obs.assign(_group=groups.to_numpy())
    sample_info = []
    for group_id in group_ids:
        group_obs = obs.loc[obs["_group"] == group_id]
        info = {"group_id": group_id, "n_spots": len(group_obs)}
        for col in covariates:
            values = group_obs[col].astype(str).unique()
            if len(values) != 1:
                raise ValueError(
                    f"Covariate '{col}' is not constant within group {group_id}: {list(values)}"
                )
            info[col] = values[0]
        sample_info.append(info)

    sample_info_df = pd.DataFrame(sample_info).set_index("group_id")
    sample_info_df.index.name = None
    for col in covariates:
        if isinstance(adata.obs[col].dtype, pd.CategoricalDtype):
            cats = [str(c) for c in adata.obs[col].cat.categories]
            sample_info_df[col] = pd.Categorical(
                sample_info_df[col], categories=cats, ordered=adata.obs[col].cat.ordered
            ).remove_unused_categories()

    keep = (sample_info_df["n_spots"] >= min_spots).to_numpy()
    if not keep.all():
        print(f"⚠️  Skipping {int((~keep).sum())} groups with fewer than {min_spots} spots")

    pb = anndata.AnnData(
        X=summed[keep],
        obs=sample_info_df.loc[keep],
        var=pd.DataFrame(index=pd.Index(var_names).astype(str)),
    )
    pb.layers["counts"] = pb.X.copy()

    print(f"Created {pb.n_obs} pseudobulk samples from {pb.n_vars} genes")

    return pb


def pseudobulk_to_frame(pb, layer="counts"):
    """Genes x samples DataFrame of one pseudobulk layer"""
    values = pb.layers[layer] if layer is not None else pb.X
    if sparse.issparse(values):
        values = values.toarray()
    return pd.DataFrame(np.asarray(values).T, index=pb.var_names, columns=pb.obs_names)


def sample_table(pb):
    """Per-sample covariates and size factors for export"""
    table = pb.obs.copy()
    table.index.name = "sample"
    return table
