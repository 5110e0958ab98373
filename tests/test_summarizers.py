"""Tests for peptide-to-protein summarization."""

import numpy as np
import polars as pl
import pytest

from proteodiff.workflow.summarizer_factory import get_summarizer, summarize_to_proteins
from proteodiff.workflow.summarizers.median_polish import tukey_median_polish
from proteodiff.workflow.summarizers.robust_summary import robust_summary


def _additive_block(noise=0.0, seed=1):
    """4 peptides x 3 samples: sample levels 20/21/22, sum-to-zero peptide effects."""
    rng = np.random.default_rng(seed)
    samples = np.array([20.0, 21.0, 22.0])
    peptides = np.array([0.5, -0.5, 1.0, -1.0])
    return samples, peptides[:, None] + samples[None, :] + rng.normal(0, noise, size=(4, 3))


class TestRobustSummary:
    """Huber sample + peptide model per protein."""

    def test_outlier_downweighted(self):
        """A single aberrant value moves the robust estimate much less than the mean."""
        truth, block = _additive_block(noise=0.1)
        block[0, 0] += 10.0

        robust = robust_summary(block)
        mean = np.nanmean(block, axis=0)
        assert abs(robust[0] - truth[0]) < 1.0
        assert abs(robust[0] - truth[0]) < abs(mean[0] - truth[0])

    def test_missing_sample_gives_nan(self):
        """A sample without any observed peptide has no protein value."""
        _, block = _additive_block(noise=0.1)
        block[:, 1] = np.nan
        out = robust_summary(block)
        assert np.isnan(out[1])
        assert np.isfinite(out[[0, 2]]).all()

    def test_single_peptide(self):
        block = np.array([[1.0, np.nan, 3.0]])
        out = robust_summary(block)
        assert np.allclose(out, [1.0, np.nan, 3.0], equal_nan=True)

    def test_saturated_falls_back_to_median(self):
        """Two peptides sharing one sample cannot separate effects; medians are used."""
        block = np.array([[1.0, np.nan], [3.0, np.nan]])
        out = robust_summary(block)
        assert out[0] == pytest.approx(2.0)
        assert np.isnan(out[1])


class TestMedianPolish:
    """Tukey median polish."""

    def test_additive_block_recovered(self):
        """Sample values differ exactly by the sample effects on noiseless data."""
        truth, block = _additive_block()
        result = tukey_median_polish(block)
        assert result.converged
        assert np.allclose(np.diff(result.sample_values), np.diff(truth))
        assert np.allclose(result.residuals, 0.0)

    def test_missing_values_ignored(self):
        truth, block = _additive_block()
        block[2, 1] = np.nan
        values = tukey_median_polish(block).sample_values
        assert np.isfinite(values).all()
        assert np.allclose(np.diff(values), np.diff(truth))


class TestSummarizerFactory:
    """Method selection and the protein table layout."""

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Invalid summarization method"):
            get_summarizer(method="maxlfq")

    def test_sum_keeps_all_missing_samples_missing(self):
        block = np.array([[1.0, np.nan], [2.0, np.nan]])
        out = get_summarizer(method="sum")(block)
        assert out[0] == 3.0
        assert np.isnan(out[1])

    def test_one_row_per_protein(self):
        """Proteins are sorted by identifier and count their peptides."""
        df = pl.DataFrame({
            "PEPTIDE_ID": ["a", "b", "c"],
            "PROTEIN_GROUP": ["P2", "P1", "P2"],
            "S1": [1.0, 5.0, 3.0],
            "S2": [2.0, None, 4.0],
        })
        proteins, meta = summarize_to_proteins(df, ["S1", "S2"], get_summarizer(method="mean"))

        assert proteins.get_column("INDEX").to_list() == ["P1", "P2"]
        assert proteins.get_column("S1").to_list() == [5.0, 2.0]
        assert proteins.get_column("S2").to_list() == [None, 3.0]
        assert meta.get_column("N_PEPTIDES").to_list() == [1, 2]
