"""Exception types raised by the cohort and analysis stages."""


class CohortDataError(ValueError):
    """Raised when raw cohort data cannot be cleaned or coerced."""


class SurvivalDataError(CohortDataError):
    """Raised when time-to-event durations cannot be derived."""


class MatchingError(ValueError):
    """Raised for malformed matching formulas or unmatched cohorts."""
