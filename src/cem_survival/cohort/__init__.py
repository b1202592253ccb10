"""
Cohort Module

Loads raw patient records and applies the eligibility and recoding rules.
"""

from .cleaning import (
    clean_cohort,
    load_and_clean_cohort,
    parse_dates,
    to_indicator,
    to_numeric,
)

__all__ = [
    "clean_cohort",
    "load_and_clean_cohort",
    "parse_dates",
    "to_indicator",
    "to_numeric",
]
