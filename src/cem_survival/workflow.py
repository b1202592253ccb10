"""CEM Cohort Builder and Survival Analysis Workflows.

Two sequential stages, each runnable on its own:

CohortBuilderWorkflow:
    1. Load and clean the raw cohort
    2. Check covariate balance before matching
    3. Coarsened exact matching
    4. Write the balance summary
    5. Plot covariate densities before/after matching
    6. Write the matched cohort

SurvivalAnalysisWorkflow:
    1. Load the matched cohort and derive survival times
    2. Kaplan-Meier curves (OS, PFS)
    3. Cox models (OS, PFS)
    4. Covariate-adjusted Cox survival curves (OS, PFS)
    5. Sensitivity comparison of Cox specifications (OS, PFS)

Outputs (default names, see ``OutputConfig``):
    - MatchedData.csv: Matched cohort (data directory)
    - CEM_summary.txt: Balance diagnostics
    - matching_check.png: Density overlays
    - OS_curves.png / PFS_curves.png: Kaplan-Meier curves
    - cox_results.txt / cox_pfs_results.txt: Cox reports
    - OS COX survival curve.png / PFS COX survival curve.png: Adjusted curves
    - sensitivity_analysis_OS.txt / sensitivity_analysis_PFS.txt
"""

import logging
from pathlib import Path
from typing import Callable, Dict, Optional

import pandas as pd

from cem_survival.analysis.balance import assess_balance, format_balance_summary, summarize_balance
from cem_survival.analysis.cox_models import (
    CoxModelResult,
    adjusted_survival_curves,
    run_cox_analysis,
    write_cox_report,
)
from cem_survival.analysis.matching import MatchResult, perform_matching
from cem_survival.analysis.sensitivity import compare_models, default_model_specs, write_sensitivity_report
from cem_survival.analysis.survival_analysis import kaplan_meier_analysis, prepare_survival_data
from cem_survival.analysis.visualization import (
    save_adjusted_curve_plot,
    save_density_plot,
    save_survival_curve_plot,
)
from cem_survival.cohort.cleaning import load_and_clean_cohort
from cem_survival.config import AnalysisConfig, CoxModelSpec

logger = logging.getLogger(__name__)


class _Workflow:
    """Shared progress reporting."""

    progress_callback: Optional[Callable[[str], None]] = None

    def set_progress_callback(self, callback: Callable[[str], None]):
        """Set the progress callback function for step updates."""
        self.progress_callback = callback

    def _report_progress(self, message: str):
        if self.progress_callback:
            self.progress_callback(message)


class CohortBuilderWorkflow(_Workflow):
    """Raw cohort -> matched cohort.

    Attributes:
        input_csv: Raw patient records
        data_dir: Directory receiving the matched CSV
        results_dir: Directory receiving the balance summary and plot
        config: Analysis configuration
        result: MatchResult of the last run (None before ``run``)
    """

    def __init__(
        self,
        input_csv: Path | str,
        data_dir: Path | str,
        results_dir: Path | str,
        config: Optional[AnalysisConfig] = None,
    ):
        self.input_csv = Path(input_csv)
        self.data_dir = Path(data_dir)
        self.results_dir = Path(results_dir)
        self.config = config or AnalysisConfig()
        self.result: Optional[MatchResult] = None

        logger.info("Initialized CohortBuilderWorkflow")
        logger.info(f"  Input: {self.input_csv}")
        logger.info(f"  Data: {self.data_dir}")
        logger.info(f"  Results: {self.results_dir}")

    @property
    def matched_csv_path(self) -> Path:
        return self.data_dir / self.config.outputs.matched_csv

    def run(self) -> int:
        """Execute the cohort builder.

        Returns:
            0 if successful, 1 if error occurred
        """
        try:
            logger.info("=" * 70)
            logger.info("CEM COHORT BUILDER")
            logger.info("=" * 70)

            matching = self.config.matching
            outputs = self.config.outputs
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.results_dir.mkdir(parents=True, exist_ok=True)

            self._report_progress("Step 1/6: Loading and cleaning cohort...")
            logger.info("\n[Step 1/6] Loading and cleaning cohort...")
            df = load_and_clean_cohort(self.input_csv, self.config)

            self._report_progress("Step 2/6: Checking balance before matching...")
            logger.info("\n[Step 2/6] Checking balance before matching...")
            unmatched = perform_matching(df, matching.balance_formula, method=None, distance=matching.distance)
            logger.info("\n" + format_balance_summary(summarize_balance(unmatched)))

            self._report_progress("Step 3/6: Coarsened exact matching...")
            logger.info("\n[Step 3/6] Coarsened exact matching...")
            self.result = perform_matching(
                df,
                matching.formula,
                method=matching.method,
                distance=matching.distance,
                cutpoints=matching.cutpoints,
            )

            self._report_progress("Step 4/6: Writing balance summary...")
            logger.info("\n[Step 4/6] Writing balance summary...")
            summary = summarize_balance(self.result)
            summary_path = self.results_dir / outputs.balance_summary
            with open(summary_path, "w") as f:
                f.write(format_balance_summary(summary, un=False))
            logger.info(f"✓ Balance summary saved: {summary_path}")

            balance = assess_balance(summary)
            n_balanced = int(balance["balanced"].sum())
            logger.info(f"  Balanced covariates (|SMD| < 0.1): {n_balanced}/{len(balance)}")
            for _, row in balance[~balance["balanced"]].iterrows():
                logger.warning(f"  ⚠ {row['variable']}: |SMD| {row['pre_smd']:.3f} -> {row['post_smd']:.3f}")

            self._report_progress("Step 5/6: Plotting covariate densities...")
            logger.info("\n[Step 5/6] Plotting covariate densities...")
            save_density_plot(
                self.result,
                matching.density_covariates,
                self.results_dir / outputs.density_plot,
                labels=self.config.survival.group_labels,
                palette=self.config.survival.palette,
            )

            self._report_progress("Step 6/6: Writing matched cohort...")
            logger.info("\n[Step 6/6] Writing matched cohort...")
            matched = self.result.matched_data()
            matched.to_csv(self.matched_csv_path, index=False)
            logger.info(f"✓ Matched cohort saved: {self.matched_csv_path} ({len(matched):,} patients, "
                        f"{self.result.n_subclasses} subclasses)")

            logger.info("\n✅ Cohort builder completed successfully!")
            return 0

        except Exception:
            logger.exception("Cohort builder failed with exception")
            self._report_progress("Cohort builder failed with an error.")
            return 1


class SurvivalAnalysisWorkflow(_Workflow):
    """Matched cohort -> survival plots and reports.

    Attributes:
        matched_csv: Matched cohort written by CohortBuilderWorkflow
        results_dir: Directory receiving plots and reports
        config: Analysis configuration
        cox_results: Main Cox model per endpoint ("OS", "PFS") after ``run``
        sensitivity_tables: Sensitivity table per endpoint after ``run``
    """

    def __init__(
        self,
        matched_csv: Path | str,
        results_dir: Path | str,
        config: Optional[AnalysisConfig] = None,
    ):
        self.matched_csv = Path(matched_csv)
        self.results_dir = Path(results_dir)
        self.config = config or AnalysisConfig()
        self.cox_results: Dict[str, CoxModelResult] = {}
        self.sensitivity_tables: Dict[str, pd.DataFrame] = {}

        logger.info("Initialized SurvivalAnalysisWorkflow")
        logger.info(f"  Matched data: {self.matched_csv}")
        logger.info(f"  Results: {self.results_dir}")

    def _endpoints(self) -> Dict[str, tuple]:
        """Endpoint -> (time column, event column, KM plot name, Cox report name, adjusted y label)."""
        cols = self.config.columns
        outputs = self.config.outputs
        return {
            "OS": (cols.survival_time, cols.dead, outputs.os_curves, outputs.cox_os_report,
                   "Adjusted Overall Survival Probability"),
            "PFS": (cols.pfs_time, cols.progression, outputs.pfs_curves, outputs.cox_pfs_report,
                    "Adjusted Progression-Free Survival Probability"),
        }

    def load_survival_data(self) -> pd.DataFrame:
        if not self.matched_csv.exists():
            raise FileNotFoundError(f"Matched cohort not found: {self.matched_csv}")

        cols = self.config.columns
        df = pd.read_csv(self.matched_csv)
        logger.info(f"  Loaded {len(df):,} matched patients")
        return prepare_survival_data(
            df,
            diagnosis_col=cols.diagnosis_date,
            death_censor_col=cols.death_censor_date,
            progression_date_col=cols.progression_date,
            dead_col=cols.dead,
            progression_col=cols.progression,
            id_col=cols.patient_id,
            survival_col=cols.survival_time,
            pfs_col=cols.pfs_time,
            date_format=self.config.cleaning.date_format,
            unknown_token=self.config.cleaning.unknown_token,
            days_per_month=self.config.survival.days_per_month,
        )

    def run(self) -> int:
        """Execute the survival analysis.

        Returns:
            0 if successful, 1 if error occurred
        """
        try:
            logger.info("=" * 70)
            logger.info("SURVIVAL ANALYSIS")
            logger.info("=" * 70)

            surv = self.config.survival
            cols = self.config.columns
            treatment = cols.treatment
            outputs = self.config.outputs
            self.results_dir.mkdir(parents=True, exist_ok=True)
            endpoints = self._endpoints()

            self._report_progress("Step 1/5: Deriving survival times...")
            logger.info("\n[Step 1/5] Deriving survival times...")
            df = self.load_survival_data()

            self._report_progress("Step 2/5: Kaplan-Meier curves...")
            logger.info("\n[Step 2/5] Kaplan-Meier curves...")
            for endpoint, (time_col, event_col, plot_name, _, _) in endpoints.items():
                km = kaplan_meier_analysis(df, time_col, event_col, treatment,
                                           labels=surv.group_labels, alpha=surv.alpha)
                save_survival_curve_plot(km, self.results_dir / plot_name,
                                         labels=surv.group_labels, palette=surv.palette)

            self._report_progress("Step 3/5: Cox proportional hazards models...")
            logger.info("\n[Step 3/5] Cox proportional hazards models...")
            main_spec = CoxModelSpec(name="_".join(surv.cox_covariates) or "native",
                                     covariates=surv.cox_covariates)
            for endpoint, (time_col, event_col, _, report_name, _) in endpoints.items():
                result = run_cox_analysis(df, main_spec, time_col, event_col, treatment, alpha=surv.alpha)
                write_cox_report(result, self.results_dir / report_name)
                self.cox_results[endpoint] = result

            self._report_progress("Step 4/5: Adjusted survival curves...")
            logger.info("\n[Step 4/5] Adjusted survival curves...")
            for endpoint, (_, _, _, _, ylabel) in endpoints.items():
                curves = adjusted_survival_curves(
                    self.cox_results[endpoint],
                    n_bootstrap=surv.adjusted_bootstrap,
                    alpha=surv.alpha,
                    random_state=surv.random_state,
                )
                save_adjusted_curve_plot(
                    curves,
                    self.results_dir / outputs.adjusted_curve_template.format(endpoint=endpoint),
                    ylabel=ylabel,
                    labels=surv.group_labels,
                    palette=surv.palette,
                )

            self._report_progress("Step 5/5: Sensitivity analysis...")
            logger.info("\n[Step 5/5] Sensitivity analysis...")
            specs = self.config.sensitivity.models or default_model_specs(
                include_weighted=self.config.sensitivity.include_weighted,
                adjust=surv.cox_covariates,
                all_covariates=[cols.tumor_size, cols.gender, cols.race],
            )
            for endpoint, (time_col, event_col, _, _, _) in endpoints.items():
                table = compare_models(df, specs, time_col, event_col, treatment, alpha=surv.alpha)
                write_sensitivity_report(
                    table,
                    self.results_dir / outputs.sensitivity_template.format(endpoint=endpoint),
                    title=f"Sensitivity analysis: {endpoint} (Surv({time_col}, {event_col}))",
                )
                self.sensitivity_tables[endpoint] = table

            logger.info("\n✅ Survival analysis completed successfully!")
            logger.info(f"Generated {len(list(self.results_dir.glob('*')))} files in: {self.results_dir}")
            return 0

        except Exception:
            logger.exception("Survival analysis failed with exception")
            self._report_progress("Survival analysis failed with an error.")
            return 1
