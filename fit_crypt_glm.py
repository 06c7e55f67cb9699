#!/usr/bin/env python3
"""
Fit the quasi-likelihood GLM for the crypt pseudobulk analysis

This script performs:
1. Visium loading, crypt annotation and pseudobulk aggregation
2. Gene filtering, TMM normalization and PCA
3. QL negative binomial GLM fit on the top-loading genes
4. Export of the fitted model and the contrast matrix (pickle)

python fit_crypt_glm.py --output-dir outputs/crypt_pseudobulk
"""

import warnings
import argparse
import scanpy as sc

from crypt_de.differential_expression import fit_crypt_model
from crypt_de.params import PATHS, get_param_summary
from crypt_de.pipeline import build_pseudobulk, model_genes, output_paths
from crypt_de.qlglm import save_model

sc.settings.verbosity = 1

warnings.filterwarnings("ignore")


def main(adata_path=PATHS["adata"], annotation_dir=PATHS["annotation_dir"],
         output_dir=PATHS["output_dir"]):
    """Fit and save the GLM

    Returns:
        Tuple of (fit, contrasts)
    """
    print("Fitting crypt pseudobulk GLM...")
    print(get_param_summary())

    output_dir, _, _ = output_paths(output_dir)

    _, pb = build_pseudobulk(adata_path, annotation_dir)
    genes = model_genes(pb)

    fit, contrasts = fit_crypt_model(pb, genes=genes)

    save_model(fit, output_dir / PATHS["model"])
    save_model(contrasts, output_dir / PATHS["contrasts"])

    print("✓ Model fitting complete!")
    return fit, contrasts


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Fit the crypt pseudobulk QL GLM")
    parser.add_argument("--adata", default=PATHS["adata"], help="Combined Visium .h5ad")
    parser.add_argument("--annotations", default=PATHS["annotation_dir"],
                        help="Directory of per-slide crypt annotation CSVs")
    parser.add_argument("--output-dir", default=PATHS["output_dir"], help="Output directory")
    args = parser.parse_args()

    main(args.adata, args.annotations, args.output_dir)
