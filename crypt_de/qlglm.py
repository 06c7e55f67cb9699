#!/usr/bin/env python3
"""
Quasi-likelihood negative binomial GLM for the crypt pseudobulk analysis
Per-gene NB fits, empirical Bayes QL dispersions and QL F-tests

Each gene is fitted with a negative binomial GLM (statsmodels) using a
trended NB dispersion and log effective library sizes as offsets. The
residual deviance per degree of freedom gives a gene-wise quasi-likelihood
dispersion, which is squeezed towards a (trended) prior by empirical Bayes.
Contrasts are tested with a quasi-likelihood F-test that compares the full
fit with the fit of a design reparameterised so the contrast is zero.
"""

import pickle
import warnings
import numpy as np
import pandas as pd
import statsmodels.api as sm
from pathlib import Path
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from crypt_de.params import DE_PARAMS

MIN_DISPERSION = 1e-6
PRIOR_COUNT = 0.125


class QLFit:
    """Result of fit_qlglm

    Attributes:
        counts: genes x samples raw counts
        design: samples x coefficients design matrix
        offset: log effective library sizes
        dispersion: trended NB dispersion per gene
        coefficients: prior-count shrunk coefficients (genes x coefficients)
        unshrunk_coefficients: coefficients of the plain fit
        deviance: residual deviance per gene
        df_residual: residual degrees of freedom
        s2, s2_prior, s2_post: raw, prior and posterior QL dispersions
        df_prior: prior degrees of freedom
        ave_log_cpm: average log2 CPM per gene
    """

    def __init__(self, counts, design, offset, dispersion, coefficients,
                 unshrunk_coefficients, deviance, df_residual, s2, s2_prior,
                 df_prior, s2_post, ave_log_cpm, robust=True, info=None):
        self.counts = counts
        self.design = design
        self.offset = offset
        self.dispersion = dispersion
        self.coefficients = coefficients
        self.unshrunk_coefficients = unshrunk_coefficients
        self.deviance = deviance
        self.df_residual = df_residual
        self.s2 = s2
        self.s2_prior = s2_prior
        self.df_prior = df_prior
        self.s2_post = s2_post
        self.ave_log_cpm = ave_log_cpm
        self.robust = robust
        self.info = info if info is not None else {}

    @property
    def genes(self):
        return self.counts.index

    @property
    def samples(self):
        return self.counts.columns


def ave_log_cpm(counts, lib_sizes, prior_count=2.0):
    """Average log2 counts-per-million per gene (genes x samples input)"""
    lib_sizes = np.asarray(lib_sizes, dtype=float)
    prior = prior_count * lib_sizes / lib_sizes.mean()
    cpm = (counts + prior) / (lib_sizes + 2 * prior) * 1e6
    return np.log2(cpm.mean(axis=1))


def _nb_fit(y, design, offset, dispersion):
    """Fit one NB GLM, return (coefficients, fitted means, deviance)"""
    family = sm.families.NegativeBinomial(alpha=max(float(dispersion), MIN_DISPERSION))
    if design.shape[1] == 0:
        mu = np.exp(offset)
        return np.zeros(0), mu, float(family.deviance(y, mu))

    with warnings.catch_warnings():
        # Groups with all-zero counts drive coefficients towards -inf
        warnings.simplefilter("ignore")
        res = sm.GLM(y, design, family=family, offset=offset).fit(maxiter=100)
    return np.asarray(res.params), np.asarray(res.fittedvalues), float(res.deviance)


def estimate_dispersions(counts, design, offset, covariate, frac=0.6):
    """Gene-wise and trended NB dispersions

    Gene-wise dispersions are moment estimates from the Pearson residuals
    of a Poisson fit; the trend is a robust LOWESS of the gene-wise values
    against average log CPM.

    Returns:
        Tuple of (trended, genewise) dispersions
    """
    df_resid = design.shape[0] - np.linalg.matrix_rank(design)
    if df_resid <= 0:
        raise ValueError("Design leaves no residual degrees of freedom")

    genewise = np.zeros(counts.shape[0])
    poisson = sm.families.Poisson()
    for i, y in enumerate(counts):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = sm.GLM(y, design, family=poisson, offset=offset).fit()
        mu = np.maximum(np.asarray(res.fittedvalues), 1e-8)
        genewise[i] = np.sum(((y - mu) ** 2 - mu) / mu ** 2) / df_resid
    genewise = np.clip(genewise, MIN_DISPERSION, 10.0)

    if len(genewise) < 10:
        trended = np.full_like(genewise, np.mean(genewise))
    else:
        trended = lowess(genewise, covariate, frac=frac, it=3, return_sorted=False)
    trended = np.clip(np.nan_to_num(trended, nan=np.mean(genewise)), MIN_DISPERSION, None)

    return trended, genewise


def trigamma_inverse(x):
    """Solve trigamma(y) = x for y by Newton iteration"""
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.empty_like(x)
    large = x > 1e7
    small = x < 1e-6
    mid = ~(large | small)
    y[large] = 1 / np.sqrt(x[large])
    y[small] = 1 / x[small]

    ym = 0.5 + 1 / x[mid]
    xm = x[mid]
    for _ in range(50):
        tri = polygamma(1, ym)
        dif = tri * (1 - tri / xm) / polygamma(2, ym)
        ym = ym + dif
        if np.all(-dif / ym < 1e-8):
            break
    y[mid] = ym
    return y


def fit_f_dist(x, df1, covariate=None, winsor_tail_p=None):
    """Moment estimates of the scaled F prior for gene-wise variances

    With a covariate the prior location follows a LOWESS trend. With
    winsor_tail_p the log-variance residuals are winsorised at the given
    lower and upper tail proportions before the moments are taken.

    Returns:
        Tuple of (prior variance per gene, prior degrees of freedom)
    """
    x = np.asarray(x, dtype=float)
    n = len(x)
    x = np.maximum(x, 1e-5 * np.median(x[x > 0]) if np.any(x > 0) else 1e-8)

    e = np.log(x) - digamma(df1 / 2) + np.log(df1 / 2)
    if covariate is not None and n >= 10:
        emean = lowess(e, covariate, frac=0.6, it=0, return_sorted=False)
        emean = np.where(np.isfinite(emean), emean, np.mean(e))
    else:
        emean = np.full(n, np.mean(e))
    resid = e - emean

    if winsor_tail_p is not None and n >= 10:
        lo, hi = np.quantile(resid, [winsor_tail_p[0], 1 - winsor_tail_p[1]])
        resid = np.clip(resid, lo, hi)
        emean = emean + np.mean(resid)
        resid = resid - np.mean(resid)

    evar = np.sum(resid ** 2) / max(n - 1, 1) - polygamma(1, df1 / 2)
    if evar > 0:
        df2 = 2 * float(trigamma_inverse(evar)[0])
        s20 = np.exp(emean + digamma(df2 / 2) - np.log(df2 / 2))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return s20, df2


def squeeze_var(s2, df, covariate=None, robust=True, winsor_tail_p=DE_PARAMS["winsor_tail_p"]):
    """Empirical Bayes posterior variances

    Returns:
        Tuple of (posterior variances, prior variances, prior df)
    """
    s2_prior, df_prior = fit_f_dist(
        s2, df, covariate=covariate, winsor_tail_p=winsor_tail_p if robust else None
    )
    if np.isinf(df_prior):
        return s2_prior.copy(), s2_prior, df_prior
    s2_post = (df_prior * s2_prior + df * s2) / (df_prior + df)
    return s2_post, s2_prior, df_prior


def fit_qlglm(counts, design, lib_sizes, robust=DE_PARAMS["robust"], trend=True):
    """Fit the quasi-likelihood NB GLM to every gene

    Args:
        counts: genes x samples raw counts
        design: samples x coefficients design matrix (same sample order)
        lib_sizes: Effective library sizes (library size x norm factor)
        robust: Winsorise the QL dispersion prior estimation
        trend: Let the QL prior follow average log CPM

    Returns:
        QLFit
    """
    if list(counts.columns) != list(design.index):
        raise ValueError("Sample order of counts and design do not match")

    print(f"Fitting QL negative binomial GLM: {counts.shape[0]} genes x {counts.shape[1]} samples")

    Y = counts.to_numpy(dtype=float)
    X = design.to_numpy(dtype=float)
    lib_sizes = np.asarray(lib_sizes, dtype=float)
    offset = np.log(lib_sizes)

    n_samples = X.shape[0]
    df_residual = n_samples - np.linalg.matrix_rank(X)
    if df_residual <= 0:
        raise ValueError(
            f"Design with {X.shape[1]} coefficients needs more than {n_samples} samples"
        )

    log_cpm = ave_log_cpm(Y, lib_sizes)
    dispersion, genewise = estimate_dispersions(Y, X, offset, log_cpm)

    # Shrunk coefficients: counts augmented by a small library-scaled prior
    prior = PRIOR_COUNT * lib_sizes / lib_sizes.mean()
    offset_shrunk = np.log(lib_sizes + 2 * prior)

    coefs = np.zeros((Y.shape[0], X.shape[1]))
    coefs_shrunk = np.zeros_like(coefs)
    deviance = np.zeros(Y.shape[0])
    for i, y in enumerate(Y):
        coefs[i], _, deviance[i] = _nb_fit(y, X, offset, dispersion[i])
        coefs_shrunk[i], _, _ = _nb_fit(y + prior, X, offset_shrunk, dispersion[i])

    s2 = np.maximum(deviance / df_residual, 0)
    s2_post, s2_prior, df_prior = squeeze_var(
        s2, df_residual, covariate=log_cpm if trend else None, robust=robust
    )

    print(f"  Prior QL df: {df_prior:.2f}, median QL dispersion: {np.median(s2_post):.3f}")

    return QLFit(
        counts=counts.copy(),
        design=design.copy(),
        offset=offset,
        dispersion=dispersion,
        coefficients=pd.DataFrame(coefs_shrunk, index=counts.index, columns=design.columns),
        unshrunk_coefficients=pd.DataFrame(coefs, index=counts.index, columns=design.columns),
        deviance=deviance,
        df_residual=int(df_residual),
        s2=s2,
        s2_prior=np.asarray(s2_prior),
        df_prior=float(df_prior),
        s2_post=np.asarray(s2_post),
        ave_log_cpm=log_cpm,
        robust=robust,
        info={"genewise_dispersion": genewise, "trend": trend},
    )


def ql_f_test(fit, contrast):
    """Quasi-likelihood F-test of one contrast

    Args:
        fit: QLFit from fit_qlglm
        contrast: Weights over the design columns (array or Series)

    Returns:
        DataFrame indexed by gene with logFC, logCPM, F, PValue, FDR
    """
    if isinstance(contrast, pd.Series):
        contrast = contrast.reindex(fit.design.columns).fillna(0).to_numpy()
    contrast = np.asarray(contrast, dtype=float)
    if contrast.shape != (fit.design.shape[1],):
        raise ValueError(
            f"Contrast has {contrast.size} weights for {fit.design.shape[1]} coefficients"
        )
    if not np.any(contrast):
        raise ValueError("Contrast is all zeros")

    # Rotate the design so that the contrast is its first coefficient
    Q, _ = np.linalg.qr(contrast[:, None], mode="complete")
    X_null = fit.design.to_numpy(dtype=float) @ Q[:, 1:]

    Y = fit.counts.to_numpy(dtype=float)
    dev_null = np.zeros(Y.shape[0])
    for i, y in enumerate(Y):
        _, _, dev_null[i] = _nb_fit(y, X_null, fit.offset, fit.dispersion[i])

    lr = np.maximum(dev_null - fit.deviance, 0)
    f_stat = lr / fit.s2_post

    df_total = fit.df_prior + fit.df_residual
    if np.isfinite(df_total):
        pvalue = stats.f.sf(f_stat, 1, df_total)
    else:
        pvalue = stats.chi2.sf(f_stat, 1)

    logfc = fit.coefficients.to_numpy() @ contrast / np.log(2)

    return pd.DataFrame(
        {
            "logFC": logfc,
            "logCPM": fit.ave_log_cpm,
            "F": f_stat,
            "PValue": pvalue,
            "FDR": multipletests(pvalue, method="fdr_bh")[1],
        },
        index=fit.genes,
    )


def save_model(obj, path):
    """Pickle a fitted model or contrast matrix"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(obj, f)
    print(f"  Saved: {path}")


def load_model(path):
    """Load an object written by save_model"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{path} not found. Run fit_crypt_glm.py first.")
    with open(path, "rb") as f:
        return pickle.load(f)
