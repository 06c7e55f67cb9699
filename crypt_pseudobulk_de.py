#!/usr/bin/env python3
"""
Pseudobulk differential expression between annotated crypts
Control vs granuloma-associated crypts in STD and GW diet Visium sections

This script performs:
1. Spot -> crypt annotation join and pseudobulk aggregation
2. Gene filtering and TMM normalization
3. PCA, sample clustering and PC variance partitioning by covariate
4. QL F-tests for all crypt/diet contrasts (model from fit_crypt_glm.py)
5. Heatmaps, PCA and box plots, and CSV export of every table

python crypt_pseudobulk_de.py
"""

import warnings
import argparse
import matplotlib
import scanpy as sc

from crypt_de.annotation import annotation_table
from crypt_de.differential_expression import (
    check_model_matches,
    export_gene_tables,
    fit_crypt_model,
    plot_de_summary,
    plot_volcano,
    run_contrasts,
    significant_genes,
)
from crypt_de.params import PATHS, get_param_summary
from crypt_de.pipeline import build_pseudobulk, model_genes, output_paths
from crypt_de.plotting import (
    plot_de_heatmap,
    plot_gene_boxplots,
    plot_pc_boxplots,
    plot_pca_scatter,
    plot_sample_dendrogram,
    plot_variance_explained,
)
from crypt_de.processing import pc_variance_by_covariate, pca_tables
from crypt_de.pseudobulk import pseudobulk_to_frame, sample_table
from crypt_de.qlglm import load_model, save_model

sc.settings.verbosity = 1

warnings.filterwarnings("ignore")


def load_or_fit_model(pb, genes, output_dir, refit=False):
    """Load the fitted model and contrasts written by fit_crypt_glm.py

    Fits (and saves) them when the files are missing or refit is set.
    """
    model_path = output_dir / PATHS["model"]
    contrasts_path = output_dir / PATHS["contrasts"]

    if not refit and model_path.exists() and contrasts_path.exists():
        print(f"Loading fitted model from {model_path}")
        fit = load_model(model_path)
        contrasts = load_model(contrasts_path)
        check_model_matches(fit, pb, genes)
        return fit, contrasts

    print("No saved model found; fitting now...")
    fit, contrasts = fit_crypt_model(pb, genes=genes)
    save_model(fit, model_path)
    save_model(contrasts, contrasts_path)
    return fit, contrasts


def main(adata_path=PATHS["adata"], annotation_dir=PATHS["annotation_dir"],
         output_dir=PATHS["output_dir"], refit=False):
    """Main analysis pipeline

    Returns:
        Tuple of (pseudobulk AnnData, DE results, significant gene tables)
    """
    print("Starting crypt pseudobulk DE analysis...")
    print(get_param_summary())

    output_dir, plots_dir, tables_dir = output_paths(output_dir)

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    # Step 1-3: annotation, aggregation, normalization, PCA
    adata, pb = build_pseudobulk(adata_path, annotation_dir)

    annotation_table(adata).to_csv(tables_dir / "spot_annotation.csv")
    print(f"  Saved: {tables_dir / 'spot_annotation.csv'}")
    for layer in ["counts", "normcounts", "logcounts"]:
        path = tables_dir / f"pseudobulk_{layer}.csv"
        pseudobulk_to_frame(pb, layer=layer).to_csv(path)
        print(f"  Saved: {path}")
    sample_table(pb).to_csv(tables_dir / "pseudobulk_samples.csv")
    print(f"  Saved: {tables_dir / 'pseudobulk_samples.csv'}")

    # Step 4: exploratory analysis
    scores_df, loadings_df = pca_tables(pb)
    scores_df.join(pb.obs).to_csv(tables_dir / "pca_scores.csv")
    loadings_df.to_csv(tables_dir / "pca_loadings.csv")
    print(f"  Saved: {tables_dir / 'pca_scores.csv'}")
    print(f"  Saved: {tables_dir / 'pca_loadings.csv'}")

    per_pc, covariate_summary = pc_variance_by_covariate(pb)
    per_pc.to_csv(tables_dir / "pca_variance_anova.csv", index=False)
    covariate_summary.to_csv(tables_dir / "pca_covariate_variance.csv")
    print(f"  Saved: {tables_dir / 'pca_variance_anova.csv'}")
    print(f"  Saved: {tables_dir / 'pca_covariate_variance.csv'}")

    plot_pca_scatter(pb, color="diet", save_path=plots_dir / "pca_scatter.pdf")
    if "hclust_k4" in pb.obs.columns:
        plot_pca_scatter(pb, color="hclust_k4", save_path=plots_dir / "pca_scatter_hclust_k4.pdf")
    plot_variance_explained(pb, save_path=plots_dir / "pca_variance_explained.pdf")
    plot_pc_boxplots(pb, save_path=plots_dir / "pca_boxplots.pdf")
    plot_sample_dendrogram(pb, save_path=plots_dir / "sample_dendrogram.pdf")

    # Step 5: differential expression
    genes = model_genes(pb)
    fit, contrasts = load_or_fit_model(pb, genes, output_dir, refit=refit)

    de_results = run_contrasts(fit, contrasts)
    de_results.to_csv(tables_dir / "de_all_contrasts.csv", index=False)
    print(f"  Saved: {tables_dir / 'de_all_contrasts.csv'}")

    tables, union = significant_genes(de_results)
    export_gene_tables(tables, tables_dir)

    # Step 6: reporting
    plot_de_summary(de_results, save_path=plots_dir / "de_summary.pdf")
    for name in contrasts.columns:
        plot_volcano(de_results, name, save_path=plots_dir / f"volcano_{name}.pdf")
    plot_de_heatmap(pb, union, save_path=plots_dir / "heatmap_significant_genes.pdf")

    top_genes = []
    for table in tables.values():
        top_genes.extend(g for g in table["gene"].head(2) if g not in top_genes)
    plot_gene_boxplots(pb, top_genes[:12], save_path=plots_dir / "top_gene_boxplots.pdf")

    print("Analysis complete!")
    return pb, de_results, tables


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Crypt pseudobulk differential expression")
    parser.add_argument("--adata", default=PATHS["adata"], help="Combined Visium .h5ad")
    parser.add_argument("--annotations", default=PATHS["annotation_dir"],
                        help="Directory of per-slide crypt annotation CSVs")
    parser.add_argument("--output-dir", default=PATHS["output_dir"], help="Output directory")
    parser.add_argument("--refit", action="store_true",
                        help="Refit the GLM instead of loading fit_crypt_glm.py output")
    args = parser.parse_args()

    main(args.adata, args.annotations, args.output_dir, refit=args.refit)
