#!/usr/bin/env python3
"""
Analysis parameters for the crypt pseudobulk differential expression pipeline

This file centralizes all paths and thresholds used in the pipeline.
Modify these values to adjust filtering stringency or point at other data.
"""

# Input / output locations (relative to the working directory)
PATHS = {
    "adata": "data/visium_all_sections.h5ad",
    "annotation_dir": "data/crypt_annotations",
    "output_dir": "outputs/crypt_pseudobulk",
    "model": "fitted_qlglm.pkl",  # Written by fit_crypt_glm.py into output_dir
    "contrasts": "contrast_matrix.pkl",
}

# Reference genome gene set
GENOME = {
    "prefix": "mm10---",  # Mouse genes in the combined mm10/pathogen reference
}

# Spot -> crypt annotation files (one CSV per slide)
ANNOTATION = {
    "spot_col": "spot_id",
    "control_col": "control",
    "disease_col": "disease",
    "diet_tokens": ["STD", "GW"],
    "crypt_types": ["control", "disease"],
    # Annotation file stem -> Visium section, for stems without a section token
    "section_map": {},
}

# Pseudobulk gene filter: gene kept if some condition group has every sample
# with >= min_count and the group total >= min_total_count
FILTER_PARAMS = {
    "min_count": 1,
    "min_prop": 1.0,
    "min_total_count": 6,
}

# Normalization (TMM x library size, then log1p)
NORM_PARAMS = {
    "scale": 1e5,
    "logratio_trim": 0.3,
    "sum_trim": 0.05,
    "a_cutoff": -1e10,
}

# Exploratory analysis
PCA_PARAMS = {
    "loading_quantile": 0.7,  # Top 30% of loadings on each side
    "n_loading_pcs": 2,
    "cluster_k": (2, 4),
    "linkage_method": "complete",
    "anova_alpha": 0.05,
}

# Differential expression
DE_PARAMS = {
    "fdr_threshold": 0.10,
    "top_n": 10,
    # Contrasts trimmed to their top_n genes before building the heatmap gene set
    "top_n_contrasts": ["GW_vs_STD", "granuloma_vs_control"],
    "robust": True,
    "winsor_tail_p": (0.05, 0.1),
}

CONDITION_ORDER = ["STD_control", "STD_disease", "GW_control", "GW_disease"]


def get_param_summary():
    """Return a formatted summary of current parameter settings"""
    summary = [
        "=== Crypt pseudobulk settings ===",
        f"\nGenome prefix: {GENOME['prefix']}",
        f"Diets: {', '.join(ANNOTATION['diet_tokens'])}",
        "\nGene filter:",
        f"  - Min count per sample: {FILTER_PARAMS['min_count']}",
        f"  - Min proportion of group: {FILTER_PARAMS['min_prop']*100:.0f}%",
        f"  - Min total count in group: {FILTER_PARAMS['min_total_count']}",
        "\nNormalization:",
        f"  - TMM x library size, scaled to {NORM_PARAMS['scale']:,.0f}, log1p",
        "\nDifferential expression:",
        f"  - FDR threshold: {DE_PARAMS['fdr_threshold']}",
        f"  - Robust QL dispersion: {DE_PARAMS['robust']}",
    ]
    return "\n".join(summary)


def validate_params():
    """Validate that parameter values make sense"""
    errors = []

    if FILTER_PARAMS["min_count"] < 0:
        errors.append("min_count must be non-negative")

    if not 0 < FILTER_PARAMS["min_prop"] <= 1:
        errors.append("min_prop must be in (0, 1]")

    if FILTER_PARAMS["min_total_count"] < 0:
        errors.append("min_total_count must be non-negative")

    if NORM_PARAMS["scale"] <= 0:
        errors.append("scale must be positive")

    if not 0 <= NORM_PARAMS["logratio_trim"] < 1 or not 0 <= NORM_PARAMS["sum_trim"] < 1:
        errors.append("TMM trims must be in [0, 1)")

    if not 0 < PCA_PARAMS["loading_quantile"] < 1:
        errors.append("loading_quantile must be between 0 and 1")

    if any(k < 1 for k in PCA_PARAMS["cluster_k"]):
        errors.append("cluster_k values must be >= 1")

    if not 0 < DE_PARAMS["fdr_threshold"] <= 1:
        errors.append("fdr_threshold must be in (0, 1]")

    if len(set(ANNOTATION["diet_tokens"])) != len(ANNOTATION["diet_tokens"]):
        errors.append("diet_tokens must be unique")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
