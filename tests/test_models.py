"""Tests for the design, the per-protein models and contrast testing."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import f as f_dist

from proteodiff.analysis.ebayes_prior import squeeze_var
from proteodiff.analysis.linearmodelfitter import LinearModelFitter
from proteodiff.analysis.stats_ops import bh_adjust
from proteodiff.analysis.statisticaltester import RESULT_COLUMNS, ContrastTester, StageWiseTester
from proteodiff.design.contrast import Contrast, parse_contrasts
from proteodiff.design.contrastbuilder import ContrastBuilder
from proteodiff.design.designmatrixbuilder import DesignMatrixBuilder, r_style_name, split_terms
from proteodiff.utils.errors import ErrorKind, UnidentifiableDesignError, UnknownCoefficientError


def _obs(groups, **factors):
    index = pd.Index([f"S{i}" for i in range(len(groups))], name="Sample")
    obs = pd.DataFrame({"group": groups, **factors}, index=index)
    return obs.astype("category")


def _fit(expression, obs, formula="~ group", mode="fixed", robust=True, **kwargs):
    design = DesignMatrixBuilder(obs, {"formula": formula, "mode": mode}).build()
    return LinearModelFitter(expression, design, mode=mode, robust=robust, **kwargs).fit()


class TestDesignMatrix:
    """Formula parsing and identifiability checks."""

    def test_r_style_names(self):
        obs = _obs(["A", "A", "B", "B", "C", "C"])
        design = DesignMatrixBuilder(obs, {"formula": "~ group"}).build()
        assert design.coefficient_names == ["(Intercept)", "groupB", "groupC"]

        design = DesignMatrixBuilder(obs, {"formula": "0 + group"}).build()
        assert design.coefficient_names == ["groupA", "groupB", "groupC"]

    def test_interaction_name(self):
        assert r_style_name("group[T.B]:batch[T.2]") == "groupB:batch2"

    def test_split_terms_keeps_random_term(self):
        assert split_terms(" group + (1 | mouse) ") == ["group", "(1 | mouse)"]

    def test_random_term_in_fixed_mode(self):
        obs = _obs(["A", "A", "B", "B"], mouse=["1", "2", "1", "2"])
        with pytest.raises(UnidentifiableDesignError) as exc:
            DesignMatrixBuilder(obs, {"formula": "~ group + (1|mouse)", "mode": "fixed"}).build()
        assert exc.value.kind is ErrorKind.UNIDENTIFIABLE_DESIGN

    def test_saturated_design(self):
        """As many coefficients as samples leaves no residual degrees of freedom."""
        obs = _obs(["A", "B", "C"])
        with pytest.raises(UnidentifiableDesignError, match="saturated"):
            DesignMatrixBuilder(obs, {"formula": "~ group"}).build()

    def test_aliased_factors(self):
        """Two factors carrying the same partition cannot both be estimated."""
        obs = _obs(["A", "A", "B", "B", "C", "C"], copy=["x", "x", "y", "y", "z", "z"])
        with pytest.raises(UnidentifiableDesignError, match="rank deficient"):
            DesignMatrixBuilder(obs, {"formula": "~ group + copy"}).build()

    def test_unknown_factor(self):
        obs = _obs(["A", "A", "B", "B"])
        with pytest.raises(UnidentifiableDesignError):
            DesignMatrixBuilder(obs, {"formula": "~ genotype"}).build()

    def test_mixed_needs_one_random_term(self):
        obs = _obs(["A", "A", "B", "B"])
        with pytest.raises(UnidentifiableDesignError):
            DesignMatrixBuilder(obs, {"formula": "~ group", "mode": "mixed"}).build()

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            DesignMatrixBuilder(_obs(["A", "B"]), {"formula": "~ group", "mode": "bayes"})


class TestContrast:
    """Contrast expressions over coefficient names."""

    def test_parse_difference(self):
        c = Contrast.parse("groupC - groupB = 0")
        assert c.name == "groupC - groupB"
        assert dict(c.weights) == {"groupC": 1.0, "groupB": -1.0}

    def test_parse_weights(self):
        c = Contrast.parse("0.5*groupB + 0.5*groupC")
        assert dict(c.weights) == {"groupB": 0.5, "groupC": 0.5}

    def test_parse_mapping_with_name(self):
        contrasts = parse_contrasts({"C_minus_B": "groupC - groupB"})
        assert [c.name for c in contrasts] == ["C_minus_B"]

    def test_nonzero_rhs(self):
        with pytest.raises(ValueError):
            Contrast.parse("groupB = 1")

    def test_unknown_coefficient(self):
        c = Contrast.parse("groupD = 0")
        with pytest.raises(UnknownCoefficientError) as exc:
            c.vector(["(Intercept)", "groupB", "groupC"])
        assert exc.value.kind is ErrorKind.UNKNOWN_COEFFICIENT

    def test_unspaced_operator_hint(self):
        """Operators need spaces around them; the error says so."""
        c = Contrast.parse("groupB-groupA=0")
        with pytest.raises(UnknownCoefficientError, match="spaced operators"):
            c.validate(["groupA", "groupB"])

    def test_vector(self):
        c = Contrast.parse("groupC - groupB = 0")
        assert c.vector(["(Intercept)", "groupB", "groupC"]).tolist() == [0.0, -1.0, 1.0]


class TestContrastBuilder:
    """Pairwise contrasts of a treatment-coded factor."""

    def test_all_pairwise(self):
        obs = _obs(["A", "A", "B", "B", "C", "C"])
        builder = ContrastBuilder(obs, ["(Intercept)", "groupB", "groupC"], "group")
        contrasts = builder.make_all_pairwise_contrasts()

        assert [c.name for c in contrasts] == ["B_vs_A", "C_vs_A", "C_vs_B"]
        assert dict(contrasts[0].weights) == {"groupB": 1.0}
        assert dict(contrasts[2].weights) == {"groupC": 1.0, "groupB": -1.0}

    def test_unknown_factor(self):
        with pytest.raises(ValueError):
            ContrastBuilder(_obs(["A", "B"]), ["(Intercept)", "groupB"], "genotype")


class TestLinearModelFitter:
    """One model per protein on its observed samples."""

    def test_equal_groups(self):
        """Equal group means give logFC 0 and a non-significant test."""
        obs = _obs(["A", "A", "B", "B"])
        expression = pd.DataFrame([[1.9, 2.1, 2.1, 1.9]], index=["P1"], columns=obs.index)
        fitter = _fit(expression, obs, robust=False)
        model = fitter.get_results()["P1"]

        assert model.coefficients["(Intercept)"] == pytest.approx(2.0)
        assert model.coefficients["groupB"] == pytest.approx(0.0, abs=1e-12)
        assert model.df_residual == 2

        res = ContrastTester(fitter.get_results(), fitter.coefficient_names, moderated=False).test(
            Contrast.parse("groupB = 0"))
        assert res.loc["P1", "logFC"] == pytest.approx(0.0, abs=1e-12)
        assert res.loc["P1", "pval"] > 0.9

    def test_equal_groups_cell_means(self):
        """Cell-means coding: groupA = groupB = 2.0 and 'groupB - groupA = 0' gives logFC 0."""
        obs = _obs(["A", "A", "B", "B"])
        expression = pd.DataFrame([[1.9, 2.1, 2.1, 1.9]], index=["P1"], columns=obs.index)
        fitter = _fit(expression, obs, formula="~ 0 + group", robust=False)
        model = fitter.get_results()["P1"]
        assert model.coefficients["groupA"] == pytest.approx(2.0)
        assert model.coefficients["groupB"] == pytest.approx(2.0)

        res = ContrastTester(fitter.get_results(), fitter.coefficient_names, moderated=False).test(
            Contrast.parse("groupB - groupA = 0"))
        assert res.loc["P1", "logFC"] == pytest.approx(0.0, abs=1e-12)
        assert res.loc["P1", "pval"] > 0.9

    def test_too_few_observations(self):
        """A protein with no residual df has no model and stays out of BH."""
        obs = _obs(["A", "A", "B", "B"])
        expression = pd.DataFrame(
            [[1.0, 1.2, 3.0, 3.1], [2.0, np.nan, 4.0, np.nan], [5.0, 5.1, 5.0, 4.9]],
            index=["P1", "P2", "P3"], columns=obs.index,
        )
        fitter = _fit(expression, obs, robust=False)
        assert fitter.get_results()["P2"] is None

        res = ContrastTester(fitter.get_results(), fitter.coefficient_names).test(Contrast.parse("groupB = 0"))
        assert list(res.columns) == RESULT_COLUMNS
        assert res.loc["P2"].isna().all()
        expected = bh_adjust(res.loc[["P1", "P3"], "pval"].to_numpy())
        assert np.allclose(res.loc[["P1", "P3"], "adjPval"], expected)

    def test_group_shift_detected(self, group_design_data):
        """Proteins shifted by 3 in group C are found."""
        expression, obs = group_design_data
        fitter = _fit(expression, obs)
        tester = ContrastTester(fitter.get_results(), fitter.coefficient_names)
        res = tester.test(Contrast.parse("groupC = 0"))

        assert np.allclose(res.loc[[f"P{i}" for i in range(5)], "logFC"], 3.0, atol=0.5)
        assert (res.loc[[f"P{i}" for i in range(5)], "adjPval"] < 0.05).all()
        # moderated df never exceed the pooled residual df
        assert (res["df"] <= 20 * 3).all()

    def test_ridge(self, group_design_data):
        """Penalized fits lose less than one df per coefficient."""
        expression, obs = group_design_data
        fitter = _fit(expression, obs, mode="ridge", ridge_lambda=1.0)
        model = fitter.get_results()["P0"]
        assert 6 - 3 < model.df_residual < 6
        assert 0 < model.coefficients["groupC"] < 3.0

    def test_ridge_unobserved_group(self, group_design_data):
        """A group without observations has no estimate; the protein gets no model and no p-value."""
        expression, obs = group_design_data
        expression = expression.copy()
        expression.loc["P0", ["C1", "C2"]] = np.nan
        fitter = _fit(expression, obs, mode="ridge", ridge_lambda=1.0)
        assert fitter.get_results()["P0"] is None

        res = ContrastTester(fitter.get_results(), fitter.coefficient_names).test(Contrast.parse("groupC = 0"))
        assert res.loc["P0"].isna().all()
        others = [f"P{i}" for i in range(1, 20)]
        assert np.allclose(res.loc[others, "adjPval"], bh_adjust(res.loc[others, "pval"].to_numpy()))

    def test_mixed(self):
        """Random intercept per mouse; one extra df is spent on its variance."""
        rng = np.random.default_rng(3)
        groups = ["A"] * 6 + ["B"] * 6
        mouse = ["m1", "m1", "m2", "m2", "m3", "m3", "m4", "m4", "m5", "m5", "m6", "m6"]
        obs = _obs(groups, mouse=mouse)
        mouse_effect = {m: rng.normal(0, 0.5) for m in set(mouse)}
        values = np.array([
            [20 + (1.0 if g == "B" else 0.0) + mouse_effect[m] + rng.normal(0, 0.2)
             for g, m in zip(groups, mouse)]
            for _ in range(5)
        ])
        expression = pd.DataFrame(values, index=[f"P{i}" for i in range(5)], columns=obs.index)

        fitter = _fit(expression, obs, formula="~ group + (1|mouse)", mode="mixed", robust=False)
        fitted = [m for m in fitter.get_results().values() if m is not None]
        assert fitted
        for model in fitted:
            assert model.df_residual == 12 - 2 - 1
            assert list(model.coefficients.index) == ["(Intercept)", "groupB"]


class TestModeration:
    """Benjamini-Hochberg and empirical-Bayes variance moderation."""

    def test_bh_monotone(self):
        p = np.array([0.01, 0.04, np.nan, 0.03, 0.5])
        adj = bh_adjust(p)
        assert np.isnan(adj[2])
        finite = np.isfinite(p)
        order = np.argsort(p[finite])
        assert np.all(np.diff(adj[finite][order]) >= 0)
        assert np.all(adj[finite] >= p[finite])

    def test_squeeze_var_shrinks(self):
        """Posterior variances move towards the prior, never past it."""
        rng = np.random.default_rng(11)
        sigma2 = 10 * 0.5 / rng.chisquare(10, size=500)
        s2 = sigma2 * rng.chisquare(4, size=500) / 4
        post, d0, s20 = squeeze_var(s2, 4.0)

        assert d0 > 0
        assert np.all(np.abs(post - s20) <= np.abs(s2 - s20) + 1e-12)
        assert np.var(post) < np.var(s2)

    def test_squeeze_var_without_prior(self):
        """A single variance cannot estimate a prior and comes back unchanged."""
        post, d0, _ = squeeze_var(np.array([0.5]), 3.0)
        assert d0 == 0
        assert post.tolist() == [0.5]


class TestStageWise:
    """Screening F test followed by within-protein confirmation."""

    def test_stagewise_columns(self, group_design_data):
        expression, obs = group_design_data
        fitter = _fit(expression, obs)
        names = fitter.coefficient_names
        contrasts = ContrastBuilder(obs, names, "group").make_all_pairwise_contrasts()
        tester = ContrastTester(fitter.get_results(), names)
        results = StageWiseTester(tester, contrasts, alpha=0.05).run()

        assert list(results) == ["B_vs_A", "C_vs_A", "C_vs_B"]
        res = results["C_vs_A"]
        for col in ("pvalScreen", "adjPvalScreen", "adjPvalStageWise"):
            assert col in res.columns

        tested = res["adjPvalStageWise"].notna()
        assert (res.loc[tested, "adjPvalStageWise"] >= res.loc[tested, "adjPvalScreen"]).all()
        # failing the screen means no stage-wise p-value
        assert res.loc[res["adjPvalScreen"] >= 0.05, "adjPvalStageWise"].isna().all()
        assert (res.loc[[f"P{i}" for i in range(5)], "adjPvalStageWise"] < 0.05).all()

    def test_screen_uses_contrast_rank(self, group_design_data):
        """Three pairwise contrasts of three levels span two dimensions: F has 2 numerator df."""
        expression, obs = group_design_data
        fitter = _fit(expression, obs)
        names = fitter.coefficient_names
        contrasts = ContrastBuilder(obs, names, "group").make_all_pairwise_contrasts()
        screen = ContrastTester(fitter.get_results(), names).omnibus(contrasts)

        assert len(contrasts) == 3
        assert (screen["df1"] == 2).all()
        expected = f_dist.sf(screen["F"].to_numpy(), 2, screen["df2"].to_numpy())
        assert np.allclose(screen["pval"].to_numpy(), expected)

    def test_needs_contrasts(self, group_design_data):
        expression, obs = group_design_data
        fitter = _fit(expression, obs)
        with pytest.raises(ValueError):
            StageWiseTester(ContrastTester(fitter.get_results(), fitter.coefficient_names), [])
