import pytest
import numpy as np
import pandas as pd
from regkit.core import fe as fe_mod
from regkit.core.errors import ConvergenceError, DataError

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture
def rng():
    return np.random.default_rng(999)

@pytest.fixture
def unbalanced(rng):
    N = 400
    g1 = rng.integers(0, 30, size=N)
    g2 = rng.integers(0, 12, size=N)
    X = rng.standard_normal((N, 2)) + 0.3 * g1[:, None] / 30.0
    y = X @ np.array([1.0, -2.0]) + rng.standard_normal(30)[g1] + rng.standard_normal(12)[g2]
    y = y + rng.standard_normal(N)
    return X, y, g1, g2

# ---------------------------------------------------------------------
# Unit Tests: Singleton Dropping
# ---------------------------------------------------------------------

def test_drop_singletons_iteratively():
    # g1 = [0, 0, 0, 1]: row 3 is alone in g1
    # g2 = [0, 1, 1, 1]: row 0 is alone in g2
    # after both drops rows 1 and 2 share levels in both groups
    g1 = np.array([0, 0, 0, 1])
    g2 = np.array([0, 1, 1, 1])
    mask = fe_mod._drop_singletons_iteratively([g1, g2])
    assert np.all(mask == np.array([False, True, True, False]))

def test_drop_singletons_no_drops():
    g1 = np.array([0, 0, 1, 1])
    g2 = np.array([0, 1, 0, 1])
    mask = fe_mod._drop_singletons_iteratively([g1, g2])
    assert np.all(mask)

def test_absorb_singletons_off_by_default(rng):
    g = np.array([0, 0, 0, 1, 1, 2])
    X = rng.standard_normal((6, 1))
    y = rng.standard_normal(6)
    res = fe_mod.absorb(X, y, g)
    assert res.n_effective == 6
    assert res.dropped["singleton"] == 0

    res = fe_mod.absorb(X, y, g, config=fe_mod.AbsorbConfig(drop_singletons=True))
    assert res.n_effective == 5
    assert res.dropped["singleton"] == 1
    assert not res.mask[5]

# ---------------------------------------------------------------------
# Unit Tests: Absorption (Demeaning)
# ---------------------------------------------------------------------

def test_absorb_one_way(rng):
    N, G = 100, 10
    g = rng.integers(0, G, size=N)
    y = rng.standard_normal(G)[g] + rng.standard_normal(N)
    X = rng.standard_normal((N, 2))

    res = fe_mod.absorb(X, y, fe_ids=g)

    df = pd.DataFrame({"y": y, "g": g})
    y_expected = y - df.groupby("g")["y"].transform("mean").to_numpy()
    assert np.allclose(res.y.flatten(), y_expected)
    assert res.converged
    assert res.n_iter == 1
    assert res.fe_dof == G

def test_absorb_two_way_matches_dummy_ols(unbalanced):
    X, y, g1, g2 = unbalanced
    res = fe_mod.absorb(X, y, [g1, g2], config=fe_mod.AbsorbConfig(tol=1e-12))
    assert res.converged
    beta_within = np.linalg.lstsq(res.X, res.y.ravel(), rcond=None)[0]

    D = pd.get_dummies(pd.DataFrame({"g1": g1, "g2": g2}).astype(str), drop_first=True)
    full = np.column_stack([X, np.ones(len(y)), D.to_numpy(dtype=float)])
    beta_full = np.linalg.lstsq(full, y, rcond=None)[0]
    assert np.allclose(beta_within, beta_full[:2], atol=1e-8)

    # residuals agree as well
    e_within = res.y.ravel() - res.X @ beta_within
    e_full = y - full @ beta_full
    assert np.allclose(e_within, e_full, atol=1e-8)

def test_absorb_is_idempotent(unbalanced):
    X, y, g1, g2 = unbalanced
    cfg = fe_mod.AbsorbConfig(tol=1e-12)
    once = fe_mod.absorb(X, y, [g1, g2], config=cfg)
    twice = fe_mod.absorb(once.X, once.y, [g1, g2], config=cfg)
    assert np.allclose(once.X, twice.X, atol=1e-8)
    assert np.allclose(once.y, twice.y, atol=1e-8)

def test_irons_tuck_agrees_with_plain_sweeps(unbalanced):
    X, y, g1, g2 = unbalanced
    plain = fe_mod.absorb(X, y, [g1, g2], config=fe_mod.AbsorbConfig(tol=1e-12))
    fast = fe_mod.absorb(
        X, y, [g1, g2], config=fe_mod.AbsorbConfig(tol=1e-12, accel="irons_tuck"),
    )
    assert fast.converged
    assert np.allclose(plain.X, fast.X, atol=1e-7)
    assert np.allclose(plain.y, fast.y, atol=1e-7)

def test_absorb_reports_non_convergence(unbalanced):
    X, y, g1, g2 = unbalanced
    with pytest.warns(ConvergenceError):
        res = fe_mod.absorb(X, y, [g1, g2], config=fe_mod.AbsorbConfig(max_iter=1))
    assert not res.converged
    assert res.n_iter == 1
    assert [w.kind for w in res.warnings] == ["convergence"]

def test_absorb_parallel_blocks_match_serial(unbalanced):
    X, y, g1, g2 = unbalanced
    cfg = fe_mod.AbsorbConfig(tol=1e-12)
    serial = fe_mod.absorb(X, y, [g1, g2], config=cfg)
    threaded = fe_mod.absorb(
        X, y, [g1, g2], config=fe_mod.AbsorbConfig(tol=1e-12, n_jobs=3),
    )
    assert np.allclose(serial.X, threaded.X, atol=1e-9)
    assert np.allclose(serial.y, threaded.y, atol=1e-9)

def test_absorb_drops_missing_ids_and_values(rng):
    g = np.array(["a", "a", None, "b", "b", "b"], dtype=object)
    X = rng.standard_normal((6, 1))
    X[4, 0] = np.nan
    y = rng.standard_normal(6)
    res = fe_mod.absorb(X, y, g)
    assert res.mask.tolist() == [True, True, False, True, False, True]
    assert res.dropped["fe_id_na"] == 1
    assert res.dropped["na"] == 1

def test_absorb_with_extra_block(rng):
    g = rng.integers(0, 5, size=50)
    X = rng.standard_normal((50, 1))
    Z = rng.standard_normal((50, 2))
    res = fe_mod.absorb(X, rng.standard_normal(50), g, Z=Z)
    assert res.Z.shape == (50, 2)
    means = pd.DataFrame(res.Z).groupby(g).mean().to_numpy()
    assert np.allclose(means, 0.0, atol=1e-12)

def test_absorb_empty_sample_raises():
    g = np.array([None, None], dtype=object)
    with pytest.raises(DataError):
        fe_mod.absorb(np.ones((2, 1)), np.ones(2), g)

def test_demean_wrapper(rng):
    g = rng.integers(0, 4, size=30)
    X = rng.standard_normal((30, 3))
    out = fe_mod.demean(X, g)
    assert out.shape == (30, 3)
    assert np.allclose(pd.DataFrame(out).groupby(g).mean().to_numpy(), 0.0, atol=1e-12)

def test_absorb_config_validation():
    with pytest.raises(ValueError):
        fe_mod.AbsorbConfig(tol=0.0)
    with pytest.raises(ValueError):
        fe_mod.AbsorbConfig(max_iter=0)
    with pytest.raises(ValueError):
        fe_mod.AbsorbConfig(accel="aitken")

# ---------------------------------------------------------------------
# Unit Tests: Nesting Detection and DoF
# ---------------------------------------------------------------------

def test_is_nested():
    state = np.array([0, 0, 1, 1, 2, 2])
    county = np.array([0, 1, 2, 3, 4, 5])
    assert fe_mod.is_nested(state, [county])
    assert not fe_mod.is_nested(county, [state])
    assert not fe_mod.is_nested(state, [])

def test_absorb_prunes_nested_group(rng):
    county = np.repeat(np.arange(12), 5)
    state = county // 4
    X = rng.standard_normal((60, 1))
    y = rng.standard_normal(60)
    res = fe_mod.absorb(X, y, [county, state])
    assert len(res.fe_codes) == 1
    assert res.fe_dof == 12
    one_way = fe_mod.absorb(X, y, county)
    assert np.allclose(res.X, one_way.X)

def test_compute_fe_dof_connected_two_way(panel):
    info = fe_mod.compute_fe_dof([panel["firm"], panel["year"]])
    assert info["levels_per_fe"] == [40, 8]
    assert info["Mk"] == [0, 1]
    assert info["fe_dof"] == 47

    info = fe_mod.compute_fe_dof([panel["firm"], panel["year"]], include_intercept=True)
    assert info["fe_dof"] == 46

def test_compute_fe_dof_disconnected_components():
    # two disjoint blocks: levels {0,1} x {0} and {2,3} x {1}
    g1 = np.array([0, 1, 2, 3])
    g2 = np.array([0, 0, 1, 1])
    info = fe_mod.compute_fe_dof([g1, g2])
    assert info["Mk"] == [0, 2]
    assert info["fe_dof"] == 4

def test_compute_fe_dof_three_way_uses_max_pairwise():
    g1 = np.array([0, 0, 1, 1, 2, 2])
    g2 = np.array([0, 1, 0, 1, 0, 1])
    g3 = np.array([0, 0, 0, 1, 1, 1])
    info = fe_mod.compute_fe_dof([g1, g2, g3])
    assert info["Mk"][2] == max(
        fe_mod._bipartite_components(g1, g3), fe_mod._bipartite_components(g2, g3),
    )
    assert info["total_levels"] == 7

def test_compute_fe_dof_rejects_missing():
    with pytest.raises(DataError):
        fe_mod.compute_fe_dof([np.array(["a", None], dtype=object)])

def test_fe_leverage_single_group():
    lev = fe_mod.fe_leverage([np.array([0, 0, 1, 1, 1])])
    assert np.allclose(lev, [0.5, 0.5, 1 / 3, 1 / 3, 1 / 3])
    assert fe_mod.fe_leverage([np.array([0, 1]), np.array([0, 0])]) is None
