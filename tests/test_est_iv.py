import pytest
import numpy as np
import pandas as pd
from regkit.estimators.iv import IV2SLS
from regkit.estimators.ols import OLS
from regkit.core.errors import InstrumentError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def data_iv(seed=42):
    rng = np.random.default_rng(seed)
    N = 200

    Z = rng.standard_normal((N, 2))
    u = rng.standard_normal(N)
    # first stage: x = Z pi + v, with v correlated with u
    v = 0.5 * u + rng.standard_normal(N) * 0.5
    x_en = Z[:, 0] * 1.5 + Z[:, 1] * 0.5 + v
    w = rng.standard_normal(N)
    firm = np.arange(N) % 20
    y = 2.0 * x_en - 1.0 * w + 0.3 * rng.standard_normal(20)[firm] + u

    return pd.DataFrame(
        {"y": y, "x_en": x_en, "w": w, "z1": Z[:, 0], "z2": Z[:, 1], "firm": firm},
    )

def _manual_2sls(X, Z, y):
    Pz = Z @ np.linalg.pinv(Z.T @ Z) @ Z.T
    Xh = Pz @ X
    beta = np.linalg.solve(Xh.T @ X, Xh.T @ y)
    e = y - X @ beta
    return beta, e, np.linalg.inv(Xh.T @ Xh)

# ---------------------------------------------------------------------
# Unit Tests: Estimates
# ---------------------------------------------------------------------

def test_iv_2sls_exact(data_iv):
    df = data_iv
    X = np.column_stack([np.ones(len(df)), df["w"], df["x_en"]])
    Z = np.column_stack([np.ones(len(df)), df["w"], df["z1"], df["z2"]])
    y = df["y"].to_numpy()
    beta, e, bread = _manual_2sls(X, Z, y)

    res = IV2SLS.from_formula("y ~ w | 0 | x_en ~ z1 + z2", df).fit()
    assert res.names == ("Intercept", "w", "x_en")
    assert np.allclose(res.coef, beta)
    assert np.allclose(res.residuals, e)

    n, p = X.shape
    V = float(e @ e) / (n - p) * bread
    assert np.allclose(res.vcov("classical").to_numpy(), V)
    assert res.model_info["endogenous"] == ["x_en"]
    assert res.model_info["instruments"] == ["z1", "z2"]

def test_iv_with_instruments_equal_to_regressors_is_ols(data_iv):
    df = data_iv
    W = df[["w"]]
    iv = IV2SLS(df["y"], W, df[["x_en"]], df[["x_en"]]).fit()
    ols = OLS(df["y"], df[["w", "x_en"]]).fit()
    assert iv.names == ols.names
    assert np.allclose(iv.coef, ols.coef)
    for kind in ("classical", "HC1", "HC3"):
        assert np.allclose(iv.vcov(kind).to_numpy(), ols.vcov(kind).to_numpy())

def test_iv_consistent_where_ols_is_biased():
    rng = np.random.default_rng(8)
    n = 20_000
    z = rng.standard_normal(n)
    u = rng.standard_normal(n)
    x = z + 0.8 * u + 0.3 * rng.standard_normal(n)
    y = 1.0 + 2.0 * x + u
    iv = IV2SLS(y, None, x, z).fit()
    ols = OLS(y, x).fit()
    assert abs(iv.params["x0"] - 2.0) < 0.05
    assert abs(ols.params["x0"] - 2.0) > 0.2

def test_iv_with_fixed_effects_matches_dummies(data_iv):
    df = data_iv
    D = pd.get_dummies(df["firm"].astype(str)).to_numpy(dtype=float)
    X = np.column_stack([df["w"], df["x_en"], D])
    Z = np.column_stack([df["w"], df["z1"], df["z2"], D])
    y = df["y"].to_numpy()
    beta, e, bread = _manual_2sls(X, Z, y)

    res = IV2SLS.from_formula("y ~ w | firm | x_en ~ z1 + z2", df).fit()
    assert res.names == ("w", "x_en")
    assert np.allclose(res.coef, beta[:2])
    assert np.allclose(res.residuals, e)
    assert res.fe_dof == 20
    n, k = X.shape
    assert res.df_resid == n - k
    V = float(e @ e) / (n - k) * bread
    assert np.allclose(res.vcov("classical").to_numpy(), V[:2, :2])

def test_iv_cluster_default_from_formula(data_iv):
    res = IV2SLS.from_formula("y ~ w | 0 | x_en ~ z1 + z2 | firm", data_iv).fit()
    table = res.coef_table()
    assert table.cov_kind == "cluster"
    assert table.df == 19

# ---------------------------------------------------------------------
# Unit Tests: Diagnostics and Identification
# ---------------------------------------------------------------------

def test_first_stage_f(data_iv):
    df = data_iv
    x = df["x_en"].to_numpy()
    R = np.column_stack([np.ones(len(df)), df["w"]])
    U = np.column_stack([R, df["z1"], df["z2"]])
    rss_r = np.sum((x - R @ np.linalg.lstsq(R, x, rcond=None)[0]) ** 2)
    rss_u = np.sum((x - U @ np.linalg.lstsq(U, x, rcond=None)[0]) ** 2)
    F = ((rss_r - rss_u) / 2) / (rss_u / (len(df) - 4))

    res = IV2SLS.from_formula("y ~ w | 0 | x_en ~ z1 + z2", df).fit()
    fs = res.model_info["first_stage"]["x_en"]
    assert np.isclose(fs["F"], F)
    assert fs["df_num"] == 2
    assert fs["df_denom"] == len(df) - 4
    assert fs["F"] > 10

def test_under_identified_raises(data_iv):
    df = data_iv
    with pytest.raises(InstrumentError) as info:
        IV2SLS.from_formula("y ~ 1 | 0 | x_en + w ~ z1", df)
    assert info.value.n_endog == 2
    assert info.value.n_instruments == 1

def test_collinear_instrument_raises_on_fit(data_iv):
    df = data_iv.assign(z_bad=2.0 * data_iv["w"])
    model = IV2SLS.from_formula("y ~ w | 0 | x_en ~ z_bad", df)
    with pytest.raises(InstrumentError):
        model.fit()

def test_bad_inputs(data_iv):
    df = data_iv
    n = len(df)
    with pytest.raises(ValueError):
        IV2SLS(df["y"], df[["w"]], np.zeros((n, 0)), df[["z1"]])
    with pytest.raises(ValueError, match="no 'endog ~ instruments'"):
        IV2SLS.from_formula("y ~ w", df)

def test_iv_summary(data_iv):
    res = IV2SLS.from_formula("y ~ w | 0 | x_en ~ z1 + z2", data_iv).fit()
    text = res.summary("HC1")
    assert "x_en" in text
    assert "IV2SLS" in text
