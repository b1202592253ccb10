#!/usr/bin/env python3
"""
Run the Survival Analysis
Matched cohort → Kaplan-Meier curves, Cox reports, sensitivity analysis

Usage:
    python scripts/run_survival_analysis.py

Arguments:
    --matched      Matched cohort CSV (default: {data-dir}/MatchedData.csv)
    --config       Path to analysis YAML (default: $CEM_ANALYSIS_CONFIG or built-in defaults)
    --data-dir     Directory holding the matched cohort (default: $CEM_DATA_DIR or data/)
    --results-dir  Directory for plots and reports (default: $CEM_RESULTS_DIR or results/)
    --log-level    Logging level (default: $CEM_LOG_LEVEL or INFO)

Output:
    - OS_curves.png, PFS_curves.png
    - cox_results.txt, cox_pfs_results.txt
    - OS COX survival curve.png, PFS COX survival curve.png
    - sensitivity_analysis_OS.txt, sensitivity_analysis_PFS.txt

Example:
    python scripts/run_survival_analysis.py \
        --matched data/MatchedData.csv \
        --results-dir results/
"""

import sys
import argparse
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cem_survival.config import load_analysis_config, settings, setup_logging
from cem_survival.workflow import SurvivalAnalysisWorkflow


def main():
    parser = argparse.ArgumentParser(
        description='Run survival analysis on the matched cohort',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument(
        '--matched',
        default=None,
        help='Matched cohort CSV (optional)'
    )

    parser.add_argument(
        '--config',
        default=settings.ANALYSIS_CONFIG,
        help='Path to analysis YAML (optional)'
    )

    parser.add_argument(
        '--data-dir',
        default=settings.DATA_DIR,
        help=f'Directory holding the matched cohort (default: {settings.DATA_DIR})'
    )

    parser.add_argument(
        '--results-dir',
        default=settings.RESULTS_DIR,
        help=f'Directory for plots and reports (default: {settings.RESULTS_DIR})'
    )

    parser.add_argument(
        '--log-level',
        default=settings.LOG_LEVEL,
        help=f'Logging level (default: {settings.LOG_LEVEL})'
    )

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        config = load_analysis_config(args.config)
    except Exception as e:
        print(f"❌ Invalid analysis config: {e}")
        return 1

    matched = Path(args.matched) if args.matched else Path(args.data_dir) / config.outputs.matched_csv

    print("=" * 70)
    print("SURVIVAL ANALYSIS")
    print("=" * 70)
    print()
    print(f"Matched cohort: {matched}")
    print()

    workflow = SurvivalAnalysisWorkflow(
        matched_csv=matched,
        results_dir=args.results_dir,
        config=config,
    )
    result = workflow.run()

    print()
    print("=" * 70)
    if result == 0:
        print("✅ SURVIVAL ANALYSIS COMPLETED SUCCESSFULLY")
        print("=" * 70)
        print()
        print(f"Results saved to: {args.results_dir}")
        for endpoint, table in workflow.sensitivity_tables.items():
            print()
            print(f"{endpoint} sensitivity analysis:")
            print(table.to_string())
    else:
        print("❌ SURVIVAL ANALYSIS FAILED")
        print("=" * 70)

    return result


if __name__ == "__main__":
    sys.exit(main())
