"""CEM + survival analysis pipeline.

Two sequential stages:
    - Cohort builder: clean raw patient records, coarsened exact matching,
      balance diagnostics, matched dataset
    - Survival analyzer: Kaplan-Meier curves, Cox proportional hazards models,
      covariate-adjusted curves and a sensitivity comparison

Usage:
    >>> from cem_survival.workflow import CohortBuilderWorkflow, SurvivalAnalysisWorkflow
    >>> CohortBuilderWorkflow("data/FinalData.csv", "data", "results").run()
    >>> SurvivalAnalysisWorkflow("data/MatchedData.csv", "results").run()
"""

__version__ = "0.1.0"
