#!/usr/bin/env python3
"""
Shared pipeline stages for the crypt pseudobulk scripts
Load -> annotate -> aggregate -> filter -> normalize -> PCA
"""

from pathlib import Path

from crypt_de.annotation import annotate_spots, join_annotations, read_crypt_annotations
from crypt_de.data_loader import add_spot_metadata, load_visium_object, subset_to_genome
from crypt_de.normalization import filter_pseudobulk, normalize_pseudobulk
from crypt_de.params import GENOME, PCA_PARAMS
from crypt_de.processing import cluster_samples, run_pca, select_loading_genes
from crypt_de.pseudobulk import create_pseudobulk


def build_pseudobulk(adata_path, annotation_dir, genome_prefix=GENOME["prefix"]):
    """Run the stages shared by model fitting and reporting

    Args:
        adata_path: Path to the combined Visium .h5ad
        annotation_dir: Directory of per-slide crypt annotation CSVs
        genome_prefix: Gene name prefix of the reference genome to keep

    Returns:
        Tuple of (annotated spot AnnData, normalized pseudobulk AnnData)
    """
    adata = load_visium_object(adata_path)
    adata = subset_to_genome(adata, genome_prefix)
    adata = add_spot_metadata(adata)

    annotations = read_crypt_annotations(annotation_dir)
    joined = join_annotations(adata.obs, annotations)
    adata = annotate_spots(adata, joined)

    pb = create_pseudobulk(adata)
    pb = filter_pseudobulk(pb)
    pb = normalize_pseudobulk(pb)

    run_pca(pb)
    cluster_samples(pb)

    return adata, pb


def model_genes(pb):
    """Genes passed to the GLM: top PC1/PC2 loadings"""
    return select_loading_genes(
        pb, n_pcs=PCA_PARAMS["n_loading_pcs"], quantile=PCA_PARAMS["loading_quantile"]
    )


def output_paths(output_dir):
    """Create the output directory tree and return its parts"""
    output_dir = Path(output_dir)
    plots_dir = output_dir / "plots"
    tables_dir = output_dir / "tables"
    for d in (output_dir, plots_dir, tables_dir):
        d.mkdir(parents=True, exist_ok=True)
    return output_dir, plots_dir, tables_dir
