import numpy as np
import pandas as pd
import pytest

from regkit.core.design import Continuous, Factor, Interaction
from regkit.core.errors import DataError
from regkit.utils.formula import parse_formula


def _toy_df() -> pd.DataFrame:
    n = 10
    return pd.DataFrame(
        {
            "y": np.arange(n, dtype=float),
            "x": np.arange(n, dtype=float) + 1.0,
            "w": np.linspace(0.0, 1.0, n),
            "z": np.arange(n, dtype=float) ** 2,
            "g": list("ababababab"),
            "firm": np.repeat([1, 2], 5),
            "cl": np.repeat([1, 2, 3, 4, 5], 2),
        },
        index=pd.RangeIndex(n),
    )


def test_include_intercept_detects_0_plus_x() -> None:
    out = parse_formula("y ~ 0 + x", _toy_df())
    assert out.terms.intercept is False


def test_include_intercept_detects_x_minus_1() -> None:
    out = parse_formula("y ~ x - 1", _toy_df())
    assert out.terms.intercept is False


def test_include_intercept_default_true() -> None:
    out = parse_formula("y ~ x", _toy_df())
    assert out.terms.intercept is True
    assert out.terms.response == "y"
    assert out.terms.terms == (Continuous("x"),)


def test_terms_tagged_by_dtype() -> None:
    out = parse_formula("y ~ x + g + C(firm)", _toy_df())
    assert out.terms.terms == (Continuous("x"), Factor("g"), Factor("firm"))


def test_star_expands_to_parents_and_interaction() -> None:
    out = parse_formula("y ~ x * g", _toy_df())
    assert out.terms.terms == (
        Continuous("x"),
        Factor("g"),
        Interaction(Continuous("x"), Factor("g"), include_parents=False),
    )


def test_colon_is_pure_interaction() -> None:
    out = parse_formula("y ~ x:w", _toy_df())
    assert out.terms.terms == (Interaction(Continuous("x"), Continuous("w"), include_parents=False),)


def test_baseline_rule_is_passed_to_factors() -> None:
    out = parse_formula("y ~ g", _toy_df(), baseline="first_seen")
    assert out.terms.terms == (Factor("g", baseline="first_seen"),)


def test_without_data_names_are_continuous() -> None:
    out = parse_formula("y ~ g + C(h)")
    assert out.terms.terms == (Continuous("g"), Factor("h"))


def test_pipe_parts() -> None:
    out = parse_formula("y ~ x | firm | 0 | cl", _toy_df())
    assert out.fe == ("firm",)
    assert out.clusters == ("cl",)
    assert not out.is_iv
    assert out.extra_columns() == ("firm", "cl")


def test_two_way_clusters_deduplicated() -> None:
    out = parse_formula("y ~ x | 0 | 0 | firm + cl + firm", _toy_df())
    assert out.fe == ()
    assert out.clusters == ("firm", "cl")


def test_iv_part() -> None:
    out = parse_formula("y ~ w | firm | x ~ z + g", _toy_df())
    assert out.is_iv
    assert out.endog == (Continuous("x"),)
    assert out.instruments == (Continuous("z"), Factor("g"))
    assert out.extra_columns() == ("firm", "x", "z", "g")


def test_parenthesized_iv_clauses_are_pooled() -> None:
    out = parse_formula("y ~ 1 | 0 | (x ~ z) + (w ~ z + g)", _toy_df())
    assert out.endog == (Continuous("x"), Continuous("w"))
    assert out.instruments == (Continuous("z"), Factor("g"))


def test_bad_formulas() -> None:
    df = _toy_df()
    with pytest.raises(ValueError, match="'~'"):
        parse_formula("y x", df)
    with pytest.raises(ValueError, match="too many"):
        parse_formula("y ~ x | firm | 0 | cl | w", df)
    with pytest.raises(ValueError, match="second formula part"):
        parse_formula("y ~ w | x ~ z", df)
    with pytest.raises(ValueError, match="exactly one response"):
        parse_formula("y + w ~ x", df)
    with pytest.raises(ValueError):
        parse_formula("y ~ x | firm * cl", df)


def test_unknown_columns_raise_data_error() -> None:
    df = _toy_df()
    with pytest.raises(DataError) as info:
        parse_formula("y ~ nope", df)
    assert info.value.column == "nope"
    with pytest.raises(DataError):
        parse_formula("y ~ x | nofe", df)
    with pytest.raises(DataError):
        parse_formula("missing ~ x", df)


def test_unsupported_transform_raises() -> None:
    with pytest.raises(DataError, match="Unsupported term"):
        parse_formula("y ~ np.log(x)", _toy_df())
