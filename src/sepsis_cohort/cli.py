"""
Command line entry point.

    sepsis-cohort extract --db data/mimiciii.duckdb --output data/sepsis_cohort.csv
    sepsis-cohort extract --use-cache
    sepsis-cohort analyze --input data/sepsis_cohort.csv --plots-dir plots
"""
import argparse
import logging

from .analysis import run_analysis
from .config import CACHE_DIR, COHORT_CSV, COHORT_SIZE, DUCKDB_PATH, PLOTS_DIR, RANDOM_SEED
from .extractor import run_extraction


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sepsis-cohort",
        description="Extract a MIMIC-III sepsis cohort and compare SIRS variables between septic and non-septic subjects."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    extract = subparsers.add_parser("extract", help="Build the cohort table and write it to CSV")
    extract.add_argument("--db", type=str, default=DUCKDB_PATH, help="MIMIC-III DuckDB file")
    extract.add_argument("--cache-dir", type=str, default=CACHE_DIR, help="Directory of cached raw variable tables")
    extract.add_argument("--use-cache", action="store_true",
                         help="Read raw variable tables from the cache instead of querying the database")
    extract.add_argument("--size", type=int, default=COHORT_SIZE, help="Number of subjects to sample")
    extract.add_argument("--seed", type=int, default=RANDOM_SEED, help="Sampling seed")
    extract.add_argument("--output", type=str, default=COHORT_CSV, help="Cohort CSV to write")

    analyze = subparsers.add_parser("analyze", help="Summarize and plot a cohort CSV")
    analyze.add_argument("--input", type=str, default=COHORT_CSV, help="Cohort CSV written by 'extract'")
    analyze.add_argument("--plots-dir", type=str, default=PLOTS_DIR, help="Directory for plot images")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(message)s')

    if args.command == "extract":
        cohort = run_extraction(
            db_path=args.db,
            cache_dir=args.cache_dir,
            use_cache=args.use_cache,
            size=args.size,
            seed=args.seed,
            output=args.output,
        )
        print(f"\nExtraction completed: {len(cohort)} subjects written to {args.output}")
        print(cohort.head())
    elif args.command == "analyze":
        results = run_analysis(args.input, args.plots_dir)
        print(f"\nAnalysis completed: {len(results['analysis'])} complete subjects, plots in {args.plots_dir}")


if __name__ == "__main__":
    main()
