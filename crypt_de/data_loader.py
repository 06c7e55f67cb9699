#!/usr/bin/env python3
"""
Data loading utilities for the Visium crypt analysis
Handles reading the combined spot object and restricting it to one genome
"""

import numpy as np
import pandas as pd
import scanpy as sc
from pathlib import Path


def load_visium_object(file_path):
    """Load the combined Visium spot object

    Args:
        file_path: Path to the .h5ad file holding all sections

    Returns:
        AnnData object (spots x genes)
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(
            f"{file_path} not found. Export the merged Visium sections to h5ad first."
        )

    print(f"Loading {file_path}")
    adata = sc.read_h5ad(file_path)
    print(f"Loaded data: {adata.n_obs:,} spots, {adata.n_vars:,} genes")

    return adata


def get_raw_counts(adata):
    """Return the raw count matrix and its gene names

    Counts are taken from layers["counts"], then .raw, then .X.
    """
    if "counts" in adata.layers:
        return adata.layers["counts"], adata.var_names
    if adata.raw is not None:
        return adata.raw.X, adata.raw.var_names
    return adata.X, adata.var_names


def subset_to_genome(adata, prefix):
    """Keep genes of one reference genome and strip the genome prefix

    Args:
        adata: AnnData object with prefixed gene names (e.g. "mm10---Actb")
        prefix: Genome prefix to select on

    Returns:
        New AnnData object with only the selected genes, renamed
    """
    print(f"Restricting to genes with prefix '{prefix}'...")

    mask = np.asarray(adata.var_names.str.startswith(prefix))
    if not mask.any():
        raise ValueError(f"No genes start with prefix '{prefix}'")

    adata = adata[:, mask].copy()
    adata.var["gene_ids"] = adata.var_names.to_numpy()
    adata.var_names = adata.var_names.str.slice(len(prefix))
    adata.var_names_make_unique()

    # .raw keeps the original gene set; drop it so counts stay aligned
    if adata.raw is not None and "counts" not in adata.layers:
        adata.layers["counts"] = adata.raw[:, adata.var["gene_ids"].tolist()].X
    adata.raw = None

    print(f"  Kept {adata.n_vars:,} genes")

    return adata


def add_spot_metadata(adata, section_table=None):
    """Add per-spot metadata columns used by the annotation join

    Ensures `spot_id`, `section`, `diet` and `day` exist in `adata.obs`.
    Obs names of the form "<barcode>_<section>" are split when `spot_id`
    or `section` is missing.

    Args:
        adata: AnnData object
        section_table: Optional DataFrame with columns section, diet, day

    Returns:
        AnnData object with metadata added
    """
    print("Adding spot metadata...")

    obs_names = pd.Series(adata.obs_names, index=adata.obs_names)
    if "spot_id" not in adata.obs.columns:
        adata.obs["spot_id"] = obs_names.str.split("_", n=1).str[0]
    if "section" not in adata.obs.columns:
        adata.obs["section"] = obs_names.str.split("_", n=1).str[1]

    if section_table is not None:
        lookup = section_table.set_index("section")
        for col in ["diet", "day"]:
            if col in lookup.columns:
                adata.obs[col] = adata.obs["section"].map(lookup[col])

    missing = [c for c in ["spot_id", "section", "diet"] if c not in adata.obs.columns]
    if missing:
        raise ValueError(f"Missing required spot metadata columns: {missing}")

    if "day" not in adata.obs.columns:
        adata.obs["day"] = np.nan

    adata.obs["diet"] = adata.obs["diet"].astype(str)

    return adata

