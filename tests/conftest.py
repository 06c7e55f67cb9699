import matplotlib

matplotlib.use("Agg")

import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

N_GENES = 40
GENOME_PREFIX = "mm10---"

# section -> diet; one diet per slide
SECTIONS = {"S1": "STD", "S2": "GW"}


def make_spot_adata(n_spots_per_section=10, seed=0):
    """Spots from two sections with prefixed mouse genes and two pathogen genes."""
    rng = np.random.default_rng(seed)
    obs_rows = []
    for section, diet in SECTIONS.items():
        for i in range(n_spots_per_section):
            obs_rows.append({"name": f"BC{i:03d}-1_{section}", "diet": diet})
    obs = pd.DataFrame(obs_rows).set_index("name")
    obs.index.name = None

    genes = [f"{GENOME_PREFIX}Gene{i}" for i in range(N_GENES)] + ["pathogen---p1", "pathogen---p2"]
    counts = rng.poisson(5, size=(len(obs), len(genes)))
    return anndata.AnnData(
        X=sparse.csr_matrix(counts.astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=genes),
    )


def write_annotation_files(directory):
    """One CSV per slide: spots 0-2 control crypt 1, spots 3-5 disease crypt 1."""
    directory.mkdir(parents=True, exist_ok=True)
    for section, diet in SECTIONS.items():
        rows = []
        for i in range(3):
            rows.append({"spot_id": f"BC{i:03d}-1", "control": 1, "disease": np.nan})
        for i in range(3, 6):
            rows.append({"spot_id": f"BC{i:03d}-1", "control": np.nan, "disease": 1})
        # Listed but not assigned to any crypt
        rows.append({"spot_id": "BC006-1", "control": np.nan, "disease": np.nan})
        pd.DataFrame(rows).to_csv(directory / f"{section}_{diet}_day21.csv", index=False)
    return directory


@pytest.fixture
def spot_adata():
    return make_spot_adata()


@pytest.fixture
def annotation_dir(tmp_path):
    return write_annotation_files(tmp_path / "annotations")


def make_pseudobulk(n_reps=3, n_genes=60, de_gene_fold=8.0, seed=1):
    """Pseudobulk samples: 4 conditions x n_reps with NB counts.

    Gene0 is up-regulated in disease crypts of both diets.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for diet in ["STD", "GW"]:
        for crypt_type in ["control", "disease"]:
            for rep in range(n_reps):
                rows.append({
                    "sample": f"{diet}_{crypt_type}_{rep + 1}",
                    "diet": diet,
                    "crypt_type": crypt_type,
                    "condition": f"{diet}_{crypt_type}",
                })
    obs = pd.DataFrame(rows).set_index("sample")
    obs.index.name = None

    base_mean = rng.uniform(50, 500, size=n_genes)
    mu = np.tile(base_mean, (len(obs), 1))
    mu[(obs["crypt_type"] == "disease").to_numpy(), 0] *= de_gene_fold

    dispersion = 0.05
    size = 1 / dispersion
    counts = rng.negative_binomial(size, size / (size + mu)).astype(float)

    pb = anndata.AnnData(
        X=counts,
        obs=obs,
        var=pd.DataFrame(index=[f"Gene{i}" for i in range(n_genes)]),
    )
    pb.layers["counts"] = counts.copy()
    return pb


@pytest.fixture
def pseudobulk():
    return make_pseudobulk()
