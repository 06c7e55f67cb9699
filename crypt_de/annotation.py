#!/usr/bin/env python3
"""
Crypt annotation utilities for the Visium crypt analysis
Handles reading the manual spot -> crypt calls and joining them to spots
"""

import pandas as pd
from pathlib import Path

from crypt_de.params import ANNOTATION, CONDITION_ORDER


def infer_diet(file_path, tokens=None):
    """Infer the diet of a slide from its annotation file name

    Args:
        file_path: Path to the annotation CSV
        tokens: Diet tokens to look for (default: ANNOTATION["diet_tokens"])

    Returns:
        The single diet token found in the file stem
    """
    if tokens is None:
        tokens = ANNOTATION["diet_tokens"]

    parts = Path(file_path).stem.replace("-", "_").split("_")
    found = [t for t in tokens if t in parts]
    if len(found) != 1:
        raise ValueError(
            f"Cannot infer diet from {Path(file_path).name}: matched {found or 'nothing'}"
        )
    return found[0]


def infer_section(slide, sections, section_map=None):
    """Match an annotation file stem to one Visium section

    A stem matches a section when it equals the section name, starts with
    "<section>_" or has the section as one of its "_"-separated tokens.

    Args:
        slide: Annotation file stem (the `slide` column of read_annotation_file)
        sections: Section names present in the spot metadata
        section_map: Explicit stem -> section overrides
            (default: ANNOTATION["section_map"])

    Returns:
        The matching section name
    """
    if section_map is None:
        section_map = ANNOTATION["section_map"]
    if slide in section_map:
        return section_map[slide]

    tokens = slide.split("_")
    found = [
        s for s in sections
        if s == slide or slide.startswith(f"{s}_") or s in tokens
    ]
    if len(found) != 1:
        raise ValueError(
            f"Cannot match annotation file '{slide}' to a section: matched {found or 'nothing'}"
        )
    return found[0]


def read_annotation_file(file_path):
    """Read one per-slide annotation CSV into a long table

    Rows with neither a control nor a disease crypt assignment are dropped.
    Each remaining row yields one output row per assigned crypt column.

    Returns:
        DataFrame with columns spot_id, slide, diet, crypt_type, crypt_id
    """
    spot_col = ANNOTATION["spot_col"]
    type_cols = {
        ANNOTATION["control_col"]: ANNOTATION["crypt_types"][0],
        ANNOTATION["disease_col"]: ANNOTATION["crypt_types"][1],
    }

    df = pd.read_csv(file_path)
    if spot_col not in df.columns:
        raise ValueError(f"{Path(file_path).name} has no '{spot_col}' column")

    # Optional columns may be absent from a slide with only one crypt type
    for col in type_cols:
        if col not in df.columns:
            df[col] = pd.NA

    df = df[[spot_col, *type_cols]].dropna(subset=list(type_cols), how="all")

    long_df = df.melt(
        id_vars=spot_col,
        value_vars=list(type_cols),
        var_name="crypt_type",
        value_name="crypt_id",
    ).dropna(subset=["crypt_id"])

    long_df["crypt_type"] = long_df["crypt_type"].map(type_cols)
    long_df["crypt_id"] = long_df["crypt_id"].map(_format_crypt_id)
    long_df = long_df.rename(columns={spot_col: "spot_id"})
    long_df.insert(1, "slide", Path(file_path).stem)
    long_df.insert(2, "diet", infer_diet(file_path))

    return long_df.reset_index(drop=True)


def _format_crypt_id(value):
    # Spreadsheet exports turn integer ids into floats ("3.0")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def read_crypt_annotations(annotation_dir):
    """Read every per-slide annotation CSV in a directory

    Args:
        annotation_dir: Directory holding one CSV per slide

    Returns:
        Long DataFrame with columns spot_id, slide, diet, crypt_type, crypt_id
    """
    annotation_dir = Path(annotation_dir)
    files = sorted(annotation_dir.glob("*.csv"))
    if not files:
        raise FileNotFoundError(f"No annotation CSV files found in {annotation_dir}")

    print(f"Reading {len(files)} crypt annotation files...")
    tables = []
    for file_path in files:
        table = read_annotation_file(file_path)
        print(f"  {file_path.name}: {len(table)} assignments ({table['diet'].iloc[0] if len(table) else 'empty'})")
        tables.append(table)

    annotations = pd.concat(tables, ignore_index=True)
    print(f"✓ {len(annotations):,} spot -> crypt assignments")

    return annotations


def join_annotations(spot_meta, annotations):
    """Join crypt assignments to spot metadata

    Barcodes repeat on every Visium slide, so each annotation file is first
    matched to its section (see infer_section) and spots are joined on
    (spot_id, section, diet). Rows without a complete match are discarded.
    Spots appearing more than once after the join (conflicting manual calls)
    are excluded entirely.

    Args:
        spot_meta: adata.obs-like DataFrame with spot_id, section and diet columns
        annotations: Output of read_crypt_annotations

    Returns:
        DataFrame indexed by obs name with spot_id, section, diet, crypt_type,
        crypt_id, crypt_group
    """
    print("Joining crypt annotations to spots...")

    required = ["spot_id", "section", "diet"]
    missing = [c for c in required if c not in spot_meta.columns]
    if missing:
        raise ValueError(f"Missing required spot metadata columns: {missing}")

    spots = spot_meta[required].astype(str)
    spots.index.name = "obs_name"
    spots = spots.reset_index()

    annot = annotations.copy()
    annot["spot_id"] = annot["spot_id"].astype(str)
    sections = spots["section"].unique()
    annot["section"] = [infer_section(s, sections) for s in annot["slide"].astype(str)]

    joined = spots.merge(annot, on=["spot_id", "section", "diet"], how="inner")
    joined = joined.dropna(subset=["obs_name", "crypt_type", "crypt_id"])

    # Numeric ids sort numerically ("2" before "10")
    joined["_id_num"] = pd.to_numeric(joined["crypt_id"], errors="coerce")
    joined = joined.sort_values(["crypt_type", "_id_num", "crypt_id"], kind="stable")
    joined = joined.drop(columns="_id_num")
    joined["crypt_group"] = (
        joined["diet"] + "_" + joined["crypt_type"] + "_" + joined["crypt_id"]
    )

    duplicated = joined["obs_name"].duplicated(keep=False)
    n_dup_spots = joined.loc[duplicated, "obs_name"].nunique()
    if n_dup_spots:
        print(f"⚠️  Dropping {n_dup_spots} spots with conflicting crypt annotations")
    joined = joined.loc[~duplicated].set_index("obs_name")

    print(f"✓ {len(joined):,} spots assigned to {joined['crypt_group'].nunique()} crypt groups")

    return joined


def annotate_spots(adata, joined):
    """Restrict adata to annotated spots and copy the crypt assignment to obs

    Args:
        adata: AnnData object (spots x genes)
        joined: Output of join_annotations

    Returns:
        New AnnData object with crypt_type, crypt_id, crypt_group and condition
    """
    keep = adata.obs_names.isin(joined.index)
    n_dropped = adata.n_obs - int(keep.sum())
    adata = adata[keep].copy()

    for col in ["crypt_type", "crypt_id", "crypt_group"]:
        adata.obs[col] = joined.loc[adata.obs_names, col].to_numpy()

    adata.obs["condition"] = pd.Categorical(
        adata.obs["diet"].astype(str) + "_" + adata.obs["crypt_type"].astype(str),
        categories=CONDITION_ORDER,
        ordered=True,
    )

    print(f"  Retained {adata.n_obs:,} annotated spots ({n_dropped:,} unannotated removed)")

    return adata


def annotation_table(adata):
    """Per-spot annotation table for export"""
    cols = [c for c in ["spot_id", "section", "diet", "day", "crypt_type", "crypt_id", "crypt_group"]
            if c in adata.obs.columns]
    table = adata.obs[cols].copy()
    table.index.name = "spot"
    return table
