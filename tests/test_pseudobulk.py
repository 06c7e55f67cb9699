import anndata
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from crypt_de.data_loader import add_spot_metadata, subset_to_genome
from crypt_de.pipeline import build_pseudobulk
from crypt_de.pseudobulk import create_pseudobulk, natural_sort_key, pseudobulk_to_frame


def _spots(counts, groups, diets=None, crypt_types=None):
    n = len(groups)
    obs = pd.DataFrame(
        {
            "crypt_group": groups,
            "diet": diets or ["STD"] * n,
            "crypt_type": crypt_types or ["control"] * n,
        },
        index=[f"spot{i}" for i in range(n)],
    )
    return anndata.AnnData(
        X=sparse.csr_matrix(np.asarray(counts, dtype=float)),
        obs=obs,
        var=pd.DataFrame(index=[f"g{j}" for j in range(np.shape(counts)[1])]),
    )


def test_group_of_one_reproduces_spot():
    counts = [[1, 0, 7], [2, 3, 4], [5, 5, 5]]
    adata = _spots(counts, ["a", "b", "b"])

    pb = create_pseudobulk(adata, covariates=("diet", "crypt_type"))

    np.testing.assert_array_equal(pb["a"].X.ravel(), [1, 0, 7])
    np.testing.assert_array_equal(pb["b"].X.ravel(), [7, 8, 9])
    assert pb.obs.loc["a", "n_spots"] == 1
    assert pb.obs.loc["b", "n_spots"] == 2


def test_constant_counts_scale_with_group_size():
    n = 5
    adata = _spots([[3, 1]] * n, ["g"] * n)

    pb = create_pseudobulk(adata, covariates=("diet",))

    np.testing.assert_array_equal(pb.layers["counts"].ravel(), [3 * n, 1 * n])


def test_inconsistent_covariate_raises():
    adata = _spots([[1], [1]], ["g", "g"], diets=["STD", "GW"])

    with pytest.raises(ValueError, match="not constant"):
        create_pseudobulk(adata, covariates=("diet",))


def test_missing_column_raises():
    adata = _spots([[1]], ["g"])

    with pytest.raises(ValueError, match="Missing required columns"):
        create_pseudobulk(adata, covariates=("condition",))


def test_frame_is_genes_by_samples():
    adata = _spots([[1, 2], [3, 4]], ["a", "b"])
    pb = create_pseudobulk(adata, covariates=("diet",))

    frame = pseudobulk_to_frame(pb)

    assert list(frame.index) == ["g0", "g1"]
    assert list(frame.columns) == ["a", "b"]
    assert frame.loc["g1", "b"] == 4


def test_two_slides_give_four_groups(spot_adata, annotation_dir, tmp_path):
    path = tmp_path / "spots.h5ad"
    spot_adata.write_h5ad(path)

    adata, pb = build_pseudobulk(path, annotation_dir)

    assert pb.n_obs == 4
    assert set(pb.obs_names) == {
        "STD_control_1", "STD_disease_1", "GW_control_1", "GW_disease_1",
    }
    assert pb.obs.loc["GW_disease_1", "diet"] == "GW"
    assert pb.obs.loc["GW_disease_1", "crypt_type"] == "disease"
    assert pb.obs.loc["STD_control_1", "diet"] == "STD"
    assert (pb.obs["n_spots"] == 3).all()

    # Pseudobulk counts equal the sum over the three spots of each group
    raw = subset_to_genome(spot_adata, "mm10---")
    raw = add_spot_metadata(raw)
    spots = ["BC003-1_S2", "BC004-1_S2", "BC005-1_S2"]
    expected = np.asarray(raw[spots].X.sum(axis=0)).ravel()
    observed = pseudobulk_to_frame(pb, layer="counts")["GW_disease_1"]
    np.testing.assert_allclose(observed.to_numpy(), expected[raw.var_names.get_indexer(observed.index)])

    # Genes only shrink along the pipeline
    assert pb.n_vars <= adata.n_vars
    assert "X_pca" in pb.obsm


def test_groups_are_ordered_by_crypt_number():
    groups = ["STD_control_10", "STD_control_2", "GW_control_1", "STD_control_1"]
    adata = _spots([[1]] * 4, groups)

    pb = create_pseudobulk(adata, covariates=("diet",))

    assert list(pb.obs_names) == [
        "GW_control_1", "STD_control_1", "STD_control_2", "STD_control_10",
    ]
    assert natural_sort_key("a_2") < natural_sort_key("a_10")
