#!/usr/bin/env python3
"""
Run the CEM Cohort Builder
Raw patient records → matched cohort + balance diagnostics

Usage:
    python scripts/run_cohort_builder.py --input data/PatientData.csv

Arguments:
    --input        Raw patient-record CSV
    --config       Path to analysis YAML (default: $CEM_ANALYSIS_CONFIG or built-in defaults)
    --data-dir     Directory for MatchedData.csv (default: $CEM_DATA_DIR or data/)
    --results-dir  Directory for CEM_summary.txt and matching_check.png
                   (default: $CEM_RESULTS_DIR or results/)
    --log-level    Logging level (default: $CEM_LOG_LEVEL or INFO)

Output:
    - {data-dir}/MatchedData.csv
    - {results-dir}/CEM_summary.txt
    - {results-dir}/matching_check.png

Example:
    python scripts/run_cohort_builder.py \
        --input data/PatientData.csv \
        --config config/analysis.yaml
"""

import sys
import argparse
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cem_survival.config import load_analysis_config, settings, setup_logging
from cem_survival.workflow import CohortBuilderWorkflow


def main():
    parser = argparse.ArgumentParser(
        description='Run the CEM cohort builder',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument(
        '--input',
        required=True,
        help='Raw patient-record CSV'
    )

    parser.add_argument(
        '--config',
        default=settings.ANALYSIS_CONFIG,
        help='Path to analysis YAML (optional)'
    )

    parser.add_argument(
        '--data-dir',
        default=settings.DATA_DIR,
        help=f'Directory for the matched cohort (default: {settings.DATA_DIR})'
    )

    parser.add_argument(
        '--results-dir',
        default=settings.RESULTS_DIR,
        help=f'Directory for balance outputs (default: {settings.RESULTS_DIR})'
    )

    parser.add_argument(
        '--log-level',
        default=settings.LOG_LEVEL,
        help=f'Logging level (default: {settings.LOG_LEVEL})'
    )

    args = parser.parse_args()
    setup_logging(args.log_level)

    print("=" * 70)
    print("CEM COHORT BUILDER")
    print("=" * 70)
    print()
    print(f"Input: {args.input}")
    print()

    try:
        config = load_analysis_config(args.config)
    except Exception as e:
        print(f"❌ Invalid analysis config: {e}")
        return 1

    workflow = CohortBuilderWorkflow(
        input_csv=args.input,
        data_dir=args.data_dir,
        results_dir=args.results_dir,
        config=config,
    )
    result = workflow.run()

    print()
    print("=" * 70)
    if result == 0:
        print("✅ COHORT BUILDER COMPLETED SUCCESSFULLY")
        print("=" * 70)
        print()
        print(f"Matched cohort: {workflow.matched_csv_path}")
        print(f"Balance outputs: {args.results_dir}")
    else:
        print("❌ COHORT BUILDER FAILED")
        print("=" * 70)

    return result


if __name__ == "__main__":
    sys.exit(main())
