"""Shared synthetic cohorts for the test suite."""

import numpy as np
import pandas as pd
import pytest

DATE_FORMAT = "%d/%m/%Y"
DAYS_PER_MONTH = 365.25 / 12


def make_raw_cohort(n: int = 160, seed: int = 7) -> pd.DataFrame:
    """Raw patient records in the layout of the source CSV."""
    rng = np.random.default_rng(seed)

    fus = rng.integers(0, 2, n)
    fus[:2] = [0, 1]
    hazard = np.where(fus == 1, 0.021, 0.03)
    survival = np.clip(rng.exponential(1 / hazard), 0.5, None)
    pfs = survival * rng.uniform(0.3, 1.0, n)
    progression = (rng.random(n) < 0.8).astype(int)

    diagnosis = pd.Timestamp("2015-01-01") + pd.to_timedelta(rng.integers(0, 1500, n), unit="D")
    death_censor = diagnosis + pd.to_timedelta(np.round(survival * DAYS_PER_MONTH), unit="D")
    progression_date = diagnosis + pd.to_timedelta(np.round(pfs * DAYS_PER_MONTH), unit="D")

    df = pd.DataFrame({
        "PatientID": [f"P{i:03d}" for i in range(n)],
        "Age": rng.integers(35, 80, n),
        "Gender": rng.choice(["Male", "Female"], n),
        "Race": rng.choice(["White", "Black", "Asian"], n, p=[0.7, 0.15, 0.15]),
        "TumorSize": np.round(rng.uniform(1, 6, n), 1),
        "Location": rng.choice(["Frontal", "Temporal", "Parietal", "Occipital", "Cerebellum"], n,
                               p=[0.22, 0.22, 0.22, 0.22, 0.12]),
        "IDH": rng.choice(["Mutant", "Wildtype"], n, p=[0.3, 0.7]),
        "MGMT": rng.choice(["Methylated", "Unmethylated", "Unknown"], n, p=[0.45, 0.45, 0.1]),
        "FUS": fus,
        "Chemotherapy": (rng.random(n) < 0.95).astype(int),
        "Radiotherapy": (rng.random(n) < 0.95).astype(int),
        "KPSgeq70": (rng.random(n) < 0.95).astype(int),
        "DiagnosisDate": diagnosis.strftime(DATE_FORMAT),
        "SurgeryDate": (diagnosis + pd.Timedelta(days=14)).strftime(DATE_FORMAT),
        "ProgressionDate": pd.Series(progression_date.strftime(DATE_FORMAT)).where(progression == 1),
        "DeathCensorDate": death_censor.strftime(DATE_FORMAT),
        "Dead": (rng.random(n) < 0.75).astype(int),
        "Progression": progression,
    })
    df.loc[[5, 50, 100], "DeathCensorDate"] = "Unknown"
    return df


@pytest.fixture
def raw_cohort() -> pd.DataFrame:
    """Randomized raw cohort (160 patients, seeded)."""
    return make_raw_cohort()


@pytest.fixture
def raw_cohort_csv(tmp_path):
    path = tmp_path / "PatientData.csv"
    make_raw_cohort().to_csv(path, index=False)
    return path


@pytest.fixture
def matching_cohort() -> pd.DataFrame:
    """Cleaned-looking cohort for matching: categorical IDH/MGMT, numeric Age."""
    rng = np.random.default_rng(42)
    n = 200
    df = pd.DataFrame({
        "PatientID": [f"M{i:03d}" for i in range(n)],
        "Age": rng.integers(30, 80, n).astype(float),
        "IDH": pd.Categorical(rng.choice(["Mutant", "Wildtype"], n)),
        "MGMT": pd.Categorical(rng.choice(["Methylated", "Unmethylated"], n)),
        "Gender": pd.Categorical(rng.choice(["Female", "Male"], n)),
        "TumorSize": np.round(rng.uniform(1, 6, n), 1),
        "FUS": (rng.random(n) < 0.35).astype(int),
    })
    return df


@pytest.fixture
def survival_cohort() -> pd.DataFrame:
    """
    100 patients with a planted hazard ratio of 2 for FUS.

    Durations are exponential quantiles ``-log(U) / rate`` at
    ``U = (i + 0.5) / 50``, rate 0.05 for controls and 0.1 for treated,
    so every treated time is exactly half the matching control time.
    """
    rows = []
    for fus, rate in ((0, 0.05), (1, 0.1)):
        for i in range(50):
            u = (i + 0.5) / 50
            t = -np.log(u) / rate
            rows.append({
                "PatientID": f"S{fus}{i:02d}",
                "FUS": fus,
                "Survival": t,
                "Dead": 1,
                "PFS": t * 0.6,
                "Progression": 1 if i % 4 else 0,
                "TumorSize": float(2 + i % 5),
                "Gender": "Male" if i % 2 else "Female",
                "Race": "White" if (i // 3) % 2 else "Non-white",
                "subclass": i % 10 + 1,
                "weights": 1.0,
            })
    return pd.DataFrame(rows)
