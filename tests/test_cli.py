"""
Tests for the run_de command line entry point.
"""

import pandas as pd
import pytest
from click.testing import CliRunner

from run_de import main


@pytest.fixture
def inputs(simulated, tmp_path):
    cm, _ = simulated
    counts_path = tmp_path / "counts.tsv"
    samples_path = tmp_path / "samples.csv"
    cm.counts.to_csv(counts_path, sep="\t")
    pd.DataFrame({"condition": cm.groups}).to_csv(samples_path)
    return str(counts_path), str(samples_path), tmp_path


def test_run_writes_results(inputs):
    counts_path, samples_path, tmp_path = inputs
    out = tmp_path / "out.tsv"
    result = CliRunner().invoke(
        main, [counts_path, samples_path, "-o", str(out), "--lfc-threshold", "1"]
    )
    assert result.exit_code == 0, result.output
    assert "Differential Expression Summary" in result.output

    table = pd.read_csv(out, sep="\t", index_col=0)
    assert len(table) == 100
    assert table["significant"].sum() == 10


def test_bad_reference_reports_stage(inputs):
    counts_path, samples_path, tmp_path = inputs
    result = CliRunner().invoke(
        main, [counts_path, samples_path, "--reference", "Z", "-o", str(tmp_path / "x.tsv")]
    )
    assert result.exit_code == 1
    assert "[config]" in result.output


def test_missing_group_column(inputs):
    counts_path, samples_path, tmp_path = inputs
    result = CliRunner().invoke(
        main, [counts_path, samples_path, "--group-column", "dex",
               "-o", str(tmp_path / "x.tsv")]
    )
    assert result.exit_code == 1
    assert "[input]" in result.output
