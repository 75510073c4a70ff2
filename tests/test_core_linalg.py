import pytest
import numpy as np
from regkit.core import linalg as la
from regkit.core.errors import DataError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(42)

@pytest.fixture
def data_dense(rng):
    X = rng.standard_normal((100, 5))
    y = X @ np.ones(5) + rng.standard_normal(100)
    return X, y

@pytest.fixture
def data_rank_deficient(rng):
    X = rng.standard_normal((100, 3))
    X = np.column_stack([X, X[:, 0] + X[:, 1]])  # 4th col is lin comb
    y = rng.standard_normal(100)
    return X, y

# ---------------------------------------------------------------------
# Unit Tests: Finite Checks and Rank
# ---------------------------------------------------------------------

def test_assert_all_finite():
    with pytest.raises(ValueError, match="NA/NaN/Inf"):
        la._assert_all_finite(np.array([1.0, np.nan]))
    with pytest.raises(ValueError, match="NA/NaN/Inf"):
        la._assert_all_finite(np.array([[1.0, np.inf]]))
    la._assert_all_finite(np.array([1.0, 2.0]), None)

def test_rank_from_diag_policies():
    d = np.array([10.0, 1.0, 5e-7])
    # R policy: tol = 1e-7 * 10 = 1e-6 -> drops the last entry
    assert la.rank_from_diag(d, 3, mode="r") == 2
    # Stata policy: tol = 1e-13 * mean -> keeps it
    assert la.rank_from_diag(d, 3, mode="stata") == 3
    assert la.rank_from_diag(np.array([]), 0) == 0

def test_qr_outputs(data_dense):
    X, _ = data_dense
    Q, R, P = la.qr(X, pivoting=True)
    assert Q.shape == (100, 5)
    assert R.shape == (5, 5)
    assert np.allclose(Q @ R, X[:, P])

# ---------------------------------------------------------------------
# Unit Tests: Least Squares
# ---------------------------------------------------------------------

def test_lstsq_matches_numpy(data_dense):
    X, y = data_dense
    res = la.lstsq_qr(X, y)
    beta_np = np.linalg.lstsq(X, y, rcond=None)[0]
    assert np.allclose(res.coef, beta_np)
    assert res.rank == 5
    assert res.df_resid == 95
    assert np.all(res.keep)

def test_normal_equations_hold(data_dense):
    X, y = data_dense
    res = la.lstsq_qr(X, y)
    assert np.allclose(X.T @ res.residuals, 0.0, atol=1e-9)
    assert np.allclose(res.fitted + res.residuals, y)

def test_bread_equals_inverse_gram(data_dense):
    X, y = data_dense
    res = la.lstsq_qr(X, y)
    assert np.allclose(res.bread, np.linalg.inv(X.T @ X))
    assert np.allclose(res.bread, la.xtx_inv_via_qr(X))

def test_leverage_is_hat_diagonal(data_dense):
    X, y = data_dense
    res = la.lstsq_qr(X, y)
    H = X @ np.linalg.solve(X.T @ X, X.T)
    assert np.allclose(res.leverage, np.diag(H))
    assert np.isclose(res.leverage.sum(), 5.0)
    assert np.allclose(la.hat_diag(X), res.leverage)

def test_rank_deficient_drops_dependent_column(data_rank_deficient):
    X, y = data_rank_deficient
    res = la.lstsq_qr(X, y)
    assert res.rank == 3
    assert len(res.dropped) == 1
    assert np.isnan(res.coef[res.dropped[0]])
    assert res.bread.shape == (3, 3)
    Xk = X[:, res.keep]
    assert np.allclose(Xk.T @ res.residuals, 0.0, atol=1e-9)
    assert np.allclose(res.bread, np.linalg.inv(Xk.T @ Xk))
    # fitted values are those of the reduced design
    beta_k = np.linalg.lstsq(Xk, y, rcond=None)[0]
    assert np.allclose(res.coef_kept, beta_k)

def test_lstsq_rejects_nan_and_empty(rng):
    X = rng.standard_normal((10, 2))
    y = rng.standard_normal(10)
    y[3] = np.nan
    with pytest.raises(ValueError):
        la.lstsq_qr(X, y)
    with pytest.raises(DataError):
        la.lstsq_qr(np.zeros((10, 0)), rng.standard_normal(10))
    with pytest.raises(DataError, match="rank=0"):
        la.lstsq_qr(np.zeros((10, 2)), rng.standard_normal(10))

# ---------------------------------------------------------------------
# Unit Tests: Reductions and Parallel Helpers
# ---------------------------------------------------------------------

def test_group_sum_sorted_labels():
    X = np.array([[1.0], [2.0], [3.0], [4.0]])
    codes = np.array([5, 2, 5, 2])
    out = la.group_sum(X, codes)
    # rows follow sorted labels: 2 then 5
    assert np.allclose(out.ravel(), [6.0, 4.0])

def test_crossprod_and_tdot(data_dense):
    X, y = data_dense
    assert la.crossprod(X, y).shape == (5, 1)
    assert np.allclose(la.tdot(X), X.T @ X)

def test_resolve_n_jobs(monkeypatch):
    monkeypatch.delenv(la.N_JOBS_ENV, raising=False)
    assert la.resolve_n_jobs() == 1
    monkeypatch.setenv(la.N_JOBS_ENV, "3")
    assert la.resolve_n_jobs() == 3
    assert la.resolve_n_jobs(2) == 2
    assert la.resolve_n_jobs(-1) >= 1
    monkeypatch.setenv(la.N_JOBS_ENV, "many")
    with pytest.raises(ValueError):
        la.resolve_n_jobs()
    with pytest.raises(ValueError):
        la.resolve_n_jobs(0)

def test_parallel_map_preserves_order():
    items = list(range(20))
    assert la.parallel_map(lambda v: v * v, items, n_jobs=4) == [v * v for v in items]
    assert la.parallel_map(lambda v: v + 1, items, n_jobs=1) == [v + 1 for v in items]

def test_column_blocks_cover_all_columns():
    blocks = la.column_blocks(7, 3)
    assert len(blocks) == 3
    assert np.array_equal(np.concatenate(blocks), np.arange(7))
    assert len(la.column_blocks(2, 8)) == 2
    assert la.column_blocks(0, 4) == []

def test_block_sum():
    parts = [np.eye(2), 2 * np.eye(2), np.ones((2, 2))]
    assert np.allclose(la.block_sum(parts), 3 * np.eye(2) + 1.0)

def test_min_eigval():
    A = np.diag([3.0, -1.0, 2.0])
    assert np.isclose(la.min_eigval(A), -1.0)
