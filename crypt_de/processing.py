#!/usr/bin/env python3
"""
Exploratory analysis of pseudobulk samples
Handles PCA, hierarchical clustering of samples and PC variance partitioning
"""

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import sparse
from scipy.cluster.hierarchy import cut_tree, linkage
from sklearn.decomposition import PCA
from statsmodels.stats.anova import anova_lm

from crypt_de.params import PCA_PARAMS


def run_pca(pb, layer="logcounts"):
    """Run PCA on samples x genes without scaling genes to unit variance

    Args:
        pb: Pseudobulk AnnData object
        layer: Layer to decompose

    Returns:
        pb with obsm["X_pca"], varm["PCs"] and uns["pca"] set
    """
    print("Running PCA...")

    X = pb.layers[layer] if layer is not None else pb.X
    if sparse.issparse(X):
        X = X.toarray()
    X = np.asarray(X, dtype=float)

    n_comps = min(X.shape)
    pca = PCA(n_components=n_comps, svd_solver="full")
    scores = pca.fit_transform(X)

    pb.obsm["X_pca"] = scores
    pb.varm["PCs"] = pca.components_.T
    pb.uns["pca"] = {
        "variance": pca.explained_variance_,
        "variance_ratio": pca.explained_variance_ratio_,
        "layer": layer,
    }

    ratio = pca.explained_variance_ratio_
    print(f"  {n_comps} components; PC1 {ratio[0]*100:.1f}%, PC2 {ratio[1]*100 if n_comps > 1 else 0:.1f}%")

    return pb


def _pc_names(n):
    return [f"PC{i + 1}" for i in range(n)]


def pca_tables(pb):
    """Return (scores, loadings) DataFrames from a PCA'd pseudobulk object"""
    scores = pb.obsm["X_pca"]
    loadings = pb.varm["PCs"]
    scores_df = pd.DataFrame(scores, index=pb.obs_names, columns=_pc_names(scores.shape[1]))
    loadings_df = pd.DataFrame(loadings, index=pb.var_names, columns=_pc_names(loadings.shape[1]))
    return scores_df, loadings_df


def cluster_samples(
    pb,
    ks=PCA_PARAMS["cluster_k"],
    method=PCA_PARAMS["linkage_method"],
):
    """Hierarchically cluster samples on all PC scores

    Args:
        pb: Pseudobulk AnnData object with obsm["X_pca"]
        ks: Numbers of clusters to cut the tree into
        method: Linkage method

    Returns:
        pb with obs["hclust_k{k}"] for each k and uns["hclust"]
    """
    print("Clustering samples on PC scores...")

    if "X_pca" not in pb.obsm:
        raise ValueError("Run run_pca() before cluster_samples()")

    Z = linkage(pb.obsm["X_pca"], method=method, metric="euclidean")
    ks = [k for k in ks if k <= pb.n_obs]
    if ks:
        cuts = cut_tree(Z, n_clusters=ks)
        for i, k in enumerate(ks):
            pb.obs[f"hclust_k{k}"] = pd.Categorical((cuts[:, i] + 1).astype(str))
            print(f"  k={k}: {pb.obs[f'hclust_k{k}'].value_counts().sort_index().to_dict()}")

    pb.uns["hclust"] = {"linkage": Z, "method": method}

    return pb


def pc_variance_by_covariate(
    pb,
    covariates=("diet", "crypt_type"),
    alpha=PCA_PARAMS["anova_alpha"],
):
    """One-way ANOVA of every PC against each covariate

    Args:
        pb: Pseudobulk AnnData object with PCA results
        covariates: obs columns to test separately
        alpha: Uncorrected p-value threshold for a PC to count

    Returns:
        Tuple of (per-PC table, per-covariate summary)
    """
    print("Partitioning PC variance by covariate...")

    scores_df, _ = pca_tables(pb)
    variance_ratio = np.asarray(pb.uns["pca"]["variance_ratio"])

    rows = []
    for covariate in covariates:
        if covariate not in pb.obs.columns:
            raise ValueError(f"Missing required column: {covariate}")
        labels = pb.obs[covariate].astype(str).to_numpy()

        for i, pc in enumerate(scores_df.columns):
            pvalue = np.nan
            f_stat = np.nan
            if len(np.unique(labels)) > 1 and variance_ratio[i] > 1e-12:
                data = pd.DataFrame({"score": scores_df[pc].to_numpy(), "covariate": labels})
                table = anova_lm(smf.ols("score ~ C(covariate)", data=data).fit())
                f_stat = table.loc["C(covariate)", "F"]
                pvalue = table.loc["C(covariate)", "PR(>F)"]

            rows.append({
                "covariate": covariate,
                "pc": pc,
                "variance_ratio": variance_ratio[i],
                "F": f_stat,
                "pvalue": pvalue,
                "significant": bool(pvalue <= alpha) if np.isfinite(pvalue) else False,
            })

    per_pc = pd.DataFrame(rows)
    summary = (
        per_pc[per_pc["significant"]]
        .groupby("covariate")["variance_ratio"]
        .agg(["sum", "count"])
        .reindex(list(covariates), fill_value=0)
        .rename(columns={"sum": "variance_explained", "count": "n_pcs"})
    )
    summary["n_pcs"] = summary["n_pcs"].astype(int)

    for covariate, row in summary.iterrows():
        print(f"  {covariate}: {row['variance_explained']*100:.1f}% of variance over {row['n_pcs']} PCs")

    return per_pc, summary


def select_loading_genes(
    pb,
    n_pcs=PCA_PARAMS["n_loading_pcs"],
    quantile=PCA_PARAMS["loading_quantile"],
):
    """Genes with the strongest loadings on the first PCs

    Positive and negative loadings are ranked separately; a gene is selected
    when it falls in the top (1 - quantile) fraction of either side on any of
    the first n_pcs components.

    Returns:
        List of gene names in var order
    """
    _, loadings_df = pca_tables(pb)
    selected = np.zeros(pb.n_vars, dtype=bool)

    for pc in loadings_df.columns[:n_pcs]:
        loading = loadings_df[pc].to_numpy()
        for side in (loading, -loading):
            values = side[side > 0]
            if len(values) == 0:
                continue
            cutoff = np.quantile(values, quantile)
            selected |= (side > 0) & (side >= cutoff)

    genes = loadings_df.index[selected].tolist()
    print(f"Selected {len(genes)} genes from the top loadings of PC1-PC{n_pcs}")

    return genes
