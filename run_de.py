import logging
import time

import click
import pandas as pd

from rnaseq_de import CountMatrix, DEConfig, run_de, summary, write_results
from rnaseq_de.exceptions import DEAnalysisError


def load_data(counts_path, samples_path):
    sep_counts = "\t" if counts_path.endswith((".tsv", ".txt")) else ","
    sep_samples = "\t" if samples_path.endswith((".tsv", ".txt")) else ","
    print(f"Loading {counts_path}...")
    counts_df = pd.read_csv(counts_path, index_col=0, sep=sep_counts)
    print(f"Loading {samples_path}...")
    coldata_df = pd.read_csv(samples_path, index_col=0, sep=sep_samples)
    return counts_df, coldata_df


@click.command()
@click.argument("counts_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("samples_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--group-column", default="condition", show_default=True,
              help="Sample sheet column holding the group labels.")
@click.option("--reference", default=None, help="Reference group (default: first level).")
@click.option("--test-group", default=None, help="Group tested against the reference.")
@click.option("--correction", type=click.Choice(["bh", "bonferroni"]), default="bh",
              show_default=True)
@click.option("--alpha", default=0.05, show_default=True, type=float)
@click.option("--lfc-threshold", default=2.0, show_default=True, type=float,
              help="Minimum absolute log2 fold change for significance.")
@click.option("--min-count", default=0, show_default=True, type=int)
@click.option("--min-samples", default=1, show_default=True, type=int)
@click.option("--poscounts", is_flag=True, help="Use poscounts size factors.")
@click.option("--jobs", "n_jobs", default=1, show_default=True, type=int)
@click.option("--output", "-o", default="results_de.tsv", show_default=True)
@click.option("--verbose", "-v", is_flag=True)
def main(counts_path, samples_path, group_column, reference, test_group, correction,
         alpha, lfc_threshold, min_count, min_samples, poscounts, n_jobs, output, verbose):
    """Run differential expression on COUNTS_PATH (genes x samples) with SAMPLES_PATH."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    counts_df, coldata_df = load_data(counts_path, samples_path)

    try:
        config = DEConfig(
            min_count=min_count,
            min_samples=min_samples,
            reference_group=reference,
            test_group=test_group,
            correction=correction,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            size_factor_type="poscounts" if poscounts else "ratio",
            n_jobs=n_jobs,
        )
        count_matrix = CountMatrix.from_dataframe(counts_df, coldata_df, group_column)

        print(f"Running DE on {count_matrix.n_genes} genes...")
        start_time = time.time()
        res = run_de(count_matrix, config)
        print(f"Done in {time.time() - start_time:.1f} seconds.")
    except DEAnalysisError as exc:
        raise click.ClickException(str(exc)) from exc

    print(f"Saving results to {output}...")
    write_results(res, output)
    summary(res)


if __name__ == "__main__":
    main()
