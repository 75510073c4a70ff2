import pytest
import numpy as np
import pandas as pd
from regkit.estimators.ols import OLS
from regkit.estimators.iv import IV2SLS as IV
from regkit.core.errors import DataError, InstrumentError, RankDeficiencyError

# Helper to generate data
def make_data(n=100, k=3, seed=42):
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n, k))
    beta = np.ones(k)
    y = X @ beta + rng.standard_normal(n)
    return X, y

def test_perfect_multicollinearity_ols():
    """Collinear columns are dropped, the rest is estimated."""
    X, y = make_data()
    X_bad = X.copy()
    X_bad[:, 2] = X_bad[:, 0] + X_bad[:, 1]
    with pytest.warns(RankDeficiencyError):
        result = OLS(y, X_bad).fit()
    assert np.all(np.isfinite(result.params))
    assert len(result.dropped_columns) == 1
    assert result.rank == 3
    assert result.df_resid == 97

def test_nan_in_arrays_is_rejected():
    """The array API requires complete data."""
    X, y = make_data()
    X[0, 0] = np.nan
    with pytest.raises(ValueError, match="NA/NaN/Inf"):
        OLS(y, X).fit()

def test_nan_and_inf_dropped_by_formula():
    X, y = make_data()
    df = pd.DataFrame(X, columns=["a", "b", "c"]).assign(y=y)
    df.loc[0, "a"] = np.nan
    df.loc[1, "y"] = np.inf
    result = OLS.from_formula("y ~ a + b + c", df).fit()
    assert result.n_obs == 98
    assert result.model_info["n_dropped_rows"] == 2
    assert list(result.design.dropped_index) == [0, 1]

def test_zero_variance_regressor():
    """A constant regressor is collinear with the intercept."""
    X, y = make_data()
    X[:, 1] = 1.0
    with pytest.warns(RankDeficiencyError):
        result = OLS(y, X).fit()
    assert np.all(np.isfinite(result.params))
    assert len(result.dropped_columns) == 1

def test_high_dimensional_n_less_than_k():
    """With more columns than rows no residual degrees of freedom remain."""
    X, y = make_data(n=10, k=20)
    with pytest.warns(RankDeficiencyError), pytest.raises(DataError, match="degrees of freedom"):
        OLS(y, X).fit()

def test_absorbed_groups_can_exhaust_dof():
    df = pd.DataFrame({"y": [1.0, 2.0, 3.0], "x": [0.1, 0.5, 0.2], "g": [1, 1, 2]})
    with pytest.raises(DataError, match="degrees of freedom"):
        OLS.from_formula("y ~ x | g", df).fit()

def test_iv_rank_condition():
    """Instruments without variation leave the model under-identified."""
    n = 100
    rng = np.random.default_rng(42)
    X = rng.standard_normal(n)
    y = 2.0 * X + rng.standard_normal(n)
    df = pd.DataFrame({"y": y, "x": X, "z1": np.zeros(n), "z2": np.zeros(n)})
    model = IV.from_formula("y ~ 1 | 0 | x ~ z1 + z2", df)
    with pytest.raises(InstrumentError):
        model.fit()
