#!/usr/bin/env python3
"""
Differential expression utilities for crypt pseudobulk samples
Handles design/contrast construction, QL F-tests and gene ranking
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from pathlib import Path

from crypt_de.params import CONDITION_ORDER, DE_PARAMS
from crypt_de.pseudobulk import pseudobulk_to_frame
from crypt_de.qlglm import fit_qlglm, ql_f_test

# Contrast name -> weights over condition levels
CONTRASTS = {
    "granuloma_vs_control": {
        "STD_disease": 0.5, "GW_disease": 0.5, "STD_control": -0.5, "GW_control": -0.5,
    },
    "GW_vs_STD": {
        "GW_control": 0.5, "GW_disease": 0.5, "STD_control": -0.5, "STD_disease": -0.5,
    },
    "GW_vs_STD_in_control": {"GW_control": 1, "STD_control": -1},
    "GW_vs_STD_in_disease": {"GW_disease": 1, "STD_disease": -1},
    # (GW_disease - GW_control) - (STD_disease - STD_control)
    "diet_x_crypt": {
        "GW_disease": 1, "GW_control": -1, "STD_disease": -1, "STD_control": 1,
    },
    "granuloma_vs_control_in_STD": {"STD_disease": 1, "STD_control": -1},
    "granuloma_vs_control_in_GW": {"GW_disease": 1, "GW_control": -1},
}


def build_design_matrix(obs, key="condition"):
    """No-intercept design with one indicator column per condition level

    Args:
        obs: Sample metadata (pseudobulk obs)
        key: Column with the condition of every sample

    Returns:
        DataFrame (samples x levels) of 0/1 floats
    """
    if key not in obs.columns:
        raise ValueError(f"Missing required column: {key}")

    values = obs[key].astype(str)
    levels = [lvl for lvl in CONDITION_ORDER if lvl in set(values)]
    levels += sorted(set(values) - set(levels))

    design = pd.DataFrame(
        {lvl: (values == lvl).astype(float).to_numpy() for lvl in levels},
        index=obs.index,
    )
    return design


def build_contrasts(levels, contrasts=None):
    """Contrast matrix (levels x contrasts)

    Contrasts referring to a level absent from the design are skipped.
    """
    if contrasts is None:
        contrasts = CONTRASTS

    levels = list(levels)
    columns = {}
    for name, weights in contrasts.items():
        missing = [lvl for lvl in weights if lvl not in levels]
        if missing:
            print(f"  ⚠️  Skipping contrast {name}: no samples for {missing}")
            continue
        columns[name] = pd.Series(weights, dtype=float).reindex(levels).fillna(0.0)

    if not columns:
        raise ValueError(f"No contrast can be formed from levels {levels}")

    return pd.DataFrame(columns, index=levels)


def rank_score(logfc, fdr):
    """|logFC| x -log10(FDR); larger means stronger and more significant"""
    fdr = np.clip(np.asarray(fdr, dtype=float), 1e-300, 1.0)
    return np.abs(np.asarray(logfc, dtype=float)) * -np.log10(fdr)


def fit_crypt_model(pb, genes=None, key="condition", robust=DE_PARAMS["robust"]):
    """Fit the QL GLM across all pseudobulk samples

    Args:
        pb: Normalized pseudobulk AnnData object (obs has size_factor)
        genes: Optional subset of genes to fit
        key: Condition column used for the design

    Returns:
        Tuple of (QLFit, contrast matrix)
    """
    if "size_factor" not in pb.obs.columns:
        raise ValueError("Run normalize_pseudobulk() before fitting the model")

    counts = pseudobulk_to_frame(pb, layer="counts")
    if genes is not None:
        missing = [g for g in genes if g not in counts.index]
        if missing:
            raise ValueError(f"{len(missing)} requested genes are not in the pseudobulk object")
        counts = counts.loc[list(genes)]

    design = build_design_matrix(pb.obs, key=key)
    contrasts = build_contrasts(design.columns)

    print(f"  Design levels: {list(design.columns)}")
    print(f"  Contrasts: {list(contrasts.columns)}")

    fit = fit_qlglm(counts, design, pb.obs["size_factor"].to_numpy(), robust=robust)

    return fit, contrasts


def run_contrasts(fit, contrasts, fdr_threshold=DE_PARAMS["fdr_threshold"]):
    """QL F-test for every contrast of a contrast matrix

    Returns:
        Long DataFrame with one row per gene and contrast
    """
    print("Testing contrasts...")

    results = []
    for name in contrasts.columns:
        res = ql_f_test(fit, contrasts[name].reindex(fit.design.columns).fillna(0.0))
        res.insert(0, "gene", res.index)
        res["contrast"] = name
        res["rank_score"] = rank_score(res["logFC"], res["FDR"])
        res["significant"] = res["FDR"] <= fdr_threshold
        res["upregulated"] = res["significant"] & (res["logFC"] > 0)
        res["downregulated"] = res["significant"] & (res["logFC"] < 0)

        n_sig = res["significant"].sum()
        n_up = res["upregulated"].sum()
        n_down = res["downregulated"].sum()
        print(f"  {name}: {n_sig} significant genes ({n_up} up, {n_down} down)")

        results.append(res.reset_index(drop=True))

    return pd.concat(results, ignore_index=True)


def significant_genes(
    de_results,
    fdr_threshold=DE_PARAMS["fdr_threshold"],
    top_n=DE_PARAMS["top_n"],
    top_n_contrasts=DE_PARAMS["top_n_contrasts"],
):
    """Per-contrast significant gene tables and their union

    Genes at FDR <= fdr_threshold are ranked by rank_score; contrasts listed
    in top_n_contrasts keep only their top_n genes.

    Returns:
        Tuple of (dict contrast -> DataFrame, union gene list)
    """
    tables = {}
    union = []
    for name, res in de_results.groupby("contrast", sort=False):
        sig = res[res["FDR"] <= fdr_threshold].sort_values("rank_score", ascending=False)
        if name in top_n_contrasts:
            sig = sig.head(top_n)
        tables[name] = sig[["gene", "rank_score", "logFC", "FDR"]].reset_index(drop=True)
        union.extend(g for g in tables[name]["gene"] if g not in union)

    print(f"Union of significant genes across contrasts: {len(union)}")

    return tables, union


def export_gene_tables(tables, out_dir):
    """Write one CSV per contrast (gene, rank_score, logFC, FDR)"""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name, table in tables.items():
        path = out_dir / f"de_{name}.csv"
        table.to_csv(path, index=False)
        print(f"  Saved: {path}")
        paths.append(path)
    return paths


def check_model_matches(fit, pb, genes):
    """Raise if a loaded model was fitted to other samples or genes"""
    if list(fit.samples) != list(pb.obs_names):
        raise ValueError("Loaded model samples do not match the pseudobulk samples")
    if list(fit.genes) != list(genes):
        raise ValueError("Loaded model genes do not match the selected genes")


def plot_de_summary(de_results, fdr_threshold=DE_PARAMS["fdr_threshold"], save_path=None):
    """Bar plot of up/down significant genes per contrast

    Returns:
        DataFrame with counts summary
    """
    print("Plotting DE summary...")

    counts = (
        de_results.groupby("contrast", sort=False)[["upregulated", "downregulated"]]
        .sum()
        .astype(int)
    )

    fig, ax = plt.subplots(figsize=(9, 5))
    counts.plot.barh(ax=ax, color=["#d62728", "#1f77b4"])
    ax.set_xlabel(f"Genes at FDR <= {fdr_threshold}")
    ax.set_ylabel("Contrast")
    ax.set_title("Significant genes per contrast")
    sns.despine(ax=ax)
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, bbox_inches="tight")
        print(f"  Saved: {save_path}")
    plt.close(fig)

    return counts


def plot_volcano(de_results, contrast, fdr_threshold=DE_PARAMS["fdr_threshold"], save_path=None):
    """Volcano plot for one contrast"""
    res = de_results[de_results["contrast"] == contrast].copy()
    if len(res) == 0:
        print(f"No results for {contrast}")
        return

    res["neg_log10_fdr"] = -np.log10(res["FDR"].clip(lower=1e-300))

    fig, ax = plt.subplots(figsize=(7, 6))
    ns = res[~res["significant"]]
    ax.scatter(ns["logFC"], ns["neg_log10_fdr"], c="gray", alpha=0.5, s=15, label="Not significant")

    up = res[res["upregulated"]]
    if len(up) > 0:
        ax.scatter(up["logFC"], up["neg_log10_fdr"], c="red", alpha=0.7, s=20,
                   label=f"Up (n={len(up)})")
    down = res[res["downregulated"]]
    if len(down) > 0:
        ax.scatter(down["logFC"], down["neg_log10_fdr"], c="blue", alpha=0.7, s=20,
                   label=f"Down (n={len(down)})")

    for _, row in res.nlargest(10, "rank_score").iterrows():
        if row["significant"]:
            ax.annotate(row["gene"], (row["logFC"], row["neg_log10_fdr"]), fontsize=7)

    ax.axhline(-np.log10(fdr_threshold), color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("Log2 Fold Change")
    ax.set_ylabel("-Log10(FDR)")
    ax.set_title(contrast)
    ax.legend(loc="best")
    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, bbox_inches="tight")
        print(f"  Saved: {save_path}")
    plt.close(fig)
