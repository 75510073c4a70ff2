from __future__ import annotations

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def panel(rng):
    """Balanced firm x year panel with firm and year effects and a known slope."""
    n_firm, n_year = 40, 8
    firm = np.repeat(np.arange(n_firm), n_year)
    year = np.tile(np.arange(n_year), n_firm)
    a_firm = rng.normal(size=n_firm)[firm]
    a_year = rng.normal(size=n_year)[year]
    x1 = rng.normal(size=firm.size) + 0.5 * a_firm
    x2 = rng.normal(size=firm.size)
    y = 1.5 * x1 - 0.7 * x2 + a_firm + a_year + rng.normal(scale=0.5, size=firm.size)
    return pd.DataFrame(
        {"y": y, "x1": x1, "x2": x2, "firm": firm, "year": year},
    )


@pytest.fixture
def height_mass():
    """Ten (height, mass) pairs; the last row is an extreme outlier."""
    return pd.DataFrame(
        {
            "height": [172, 167, 96, 202, 150, 178, 165, 97, 183, 175],
            "mass": [77, 75, 32, 136, 49, 120, 75, 32, 84, 1358],
        },
        dtype=float,
    )
