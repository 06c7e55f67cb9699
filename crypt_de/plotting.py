#!/usr/bin/env python3
"""
Plotting utilities for the crypt pseudobulk analysis
Heatmaps, PCA scatter plots and per-covariate box plots
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.cluster.hierarchy import dendrogram

from crypt_de.processing import pca_tables

DIET_COLORS = {"STD": "#4daf4a", "GW": "#984ea3"}
CRYPT_COLORS = {"control": "#bdbdbd", "disease": "#e41a1c"}


def _finish(fig, save_path):
    if save_path:
        fig.savefig(save_path, bbox_inches="tight")
        print(f"  Saved: {save_path}")
        plt.close(fig)
    else:
        plt.show()


def zscore_genes(pb, genes, layer="logcounts"):
    """Per-gene z-scores across samples (genes x samples DataFrame)"""
    expr = pd.DataFrame(
        np.asarray(pb[:, list(genes)].layers[layer], dtype=float).T,
        index=list(genes),
        columns=pb.obs_names,
    )
    sd = expr.std(axis=1, ddof=1).replace(0, np.nan)
    return expr.sub(expr.mean(axis=1), axis=0).div(sd, axis=0).fillna(0.0)


def plot_de_heatmap(pb, genes, save_path=None, layer="logcounts"):
    """Heatmap of z-scored expression for a gene set, annotated by diet and crypt type

    Args:
        pb: Normalized pseudobulk AnnData object
        genes: Genes to show (e.g. union of significant genes)
        save_path: PDF path
    """
    print("Plotting heatmap of significant genes...")

    if len(genes) == 0:
        print("⚠️  No genes to plot; skipping heatmap")
        return None

    z = zscore_genes(pb, genes, layer=layer)

    col_colors = pd.DataFrame(
        {
            "diet": pb.obs["diet"].astype(str).map(DIET_COLORS),
            "crypt_type": pb.obs["crypt_type"].astype(str).map(CRYPT_COLORS),
        },
        index=pb.obs_names,
    )

    grid = sns.clustermap(
        z,
        cmap=sns.diverging_palette(220, 20, as_cmap=True),
        center=0,
        col_colors=col_colors,
        col_cluster=pb.n_obs > 2,
        row_cluster=len(genes) > 1,
        xticklabels=True,
        yticklabels=len(genes) <= 80,
        cbar_kws={"label": "z-score (log-normalized)"},
        figsize=(max(6, 0.35 * pb.n_obs + 4), max(6, 0.18 * len(genes) + 3)),
    )
    grid.ax_heatmap.set_xlabel("Crypt group")
    grid.ax_heatmap.set_ylabel("Gene")

    _finish(grid.fig, save_path)
    return z


def plot_pca_scatter(pb, color="condition", save_path=None, components=(1, 2)):
    """PC scatter of pseudobulk samples coloured by a covariate"""
    scores_df, _ = pca_tables(pb)
    ratio = pb.uns["pca"]["variance_ratio"]
    a, b = components

    data = scores_df.join(pb.obs[[color]].astype(str))
    style = "crypt_type" if color != "crypt_type" and "crypt_type" in pb.obs.columns else None
    if style:
        data[style] = pb.obs[style].astype(str)

    fig, ax = plt.subplots(figsize=(6, 5))
    sns.scatterplot(data=data, x=f"PC{a}", y=f"PC{b}", hue=color, style=style, s=70, ax=ax)
    ax.set_xlabel(f"PC{a} ({ratio[a - 1]*100:.1f}%)")
    ax.set_ylabel(f"PC{b} ({ratio[b - 1]*100:.1f}%)")
    ax.set_title(f"Pseudobulk PCA ({color})")
    ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False)
    plt.tight_layout()

    _finish(fig, save_path)


def plot_variance_explained(pb, save_path=None):
    """Elbow plot of the PCA variance ratio"""
    ratio = np.asarray(pb.uns["pca"]["variance_ratio"])
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(np.arange(1, len(ratio) + 1), ratio * 100, "-o")
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance explained (%)")
    plt.tight_layout()
    _finish(fig, save_path)


def plot_pc_boxplots(pb, covariates=("diet", "crypt_type"), n_pcs=4, save_path=None):
    """Box plots of PC scores per covariate level"""
    scores_df, _ = pca_tables(pb)
    pcs = list(scores_df.columns[:n_pcs])

    fig, axes = plt.subplots(
        len(covariates), len(pcs), figsize=(3 * len(pcs), 3 * len(covariates)), squeeze=False
    )
    for i, covariate in enumerate(covariates):
        data = scores_df[pcs].assign(**{covariate: pb.obs[covariate].astype(str)})
        for j, pc in enumerate(pcs):
            ax = axes[i, j]
            sns.boxplot(data=data, x=covariate, y=pc, ax=ax, color="white")
            sns.stripplot(data=data, x=covariate, y=pc, ax=ax, color="black", size=4)
            ax.set_title(f"{pc} by {covariate}", fontsize=9)
    plt.tight_layout()
    _finish(fig, save_path)


def plot_gene_boxplots(pb, genes, by="condition", layer="logcounts", save_path=None):
    """Box plots of log-normalized expression of selected genes"""
    genes = [g for g in genes if g in pb.var_names]
    if not genes:
        print("⚠️  None of the requested genes are present; skipping gene box plots")
        return

    expr = pd.DataFrame(
        np.asarray(pb[:, genes].layers[layer], dtype=float), index=pb.obs_names, columns=genes
    )
    data = expr.assign(**{by: pb.obs[by].astype(str)}).melt(
        id_vars=by, var_name="gene", value_name="expression"
    )

    grid = sns.catplot(
        data=data, x=by, y="expression", col="gene", col_wrap=min(4, len(genes)),
        kind="box", color="white", sharey=False, height=3,
    )
    grid.map_dataframe(sns.stripplot, x=by, y="expression", color="black", size=4)
    grid.set_xticklabels(rotation=45, ha="right")
    grid.set_axis_labels("", "log1p(normalized count)")
    plt.tight_layout()
    _finish(grid.fig, save_path)


def plot_sample_dendrogram(pb, color="condition", save_path=None):
    """Dendrogram of the hierarchical clustering on PC scores"""
    if "hclust" not in pb.uns:
        raise ValueError("Run cluster_samples() before plotting the dendrogram")

    fig, ax = plt.subplots(figsize=(max(6, 0.4 * pb.n_obs), 4))
    dendrogram(
        pb.uns["hclust"]["linkage"],
        labels=list(pb.obs[color].astype(str) + " | " + pb.obs_names.to_numpy()),
        leaf_rotation=90,
        ax=ax,
    )
    ax.set_ylabel("Euclidean distance (all PCs)")
    plt.tight_layout()
    _finish(fig, save_path)
