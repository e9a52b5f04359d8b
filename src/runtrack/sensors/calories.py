"""
Calorie estimation formulas (terminal fallback of the calorie channel).

  - MET:   calories = MET × body weight (kg) × elapsed hours, MET = 9.8 (running)
  - Keytel (heart-rate adjusted, used when a heart rate is known):
           calories = (-55.0969 + 0.6309·HR + 0.1988·W + 0.2017·A) / 4.184 × minutes

Both coefficients sets are taken as given; they are not validated physiology.
"""
from typing import Optional

RUNNING_MET = 9.8
DEFAULT_BODY_WEIGHT_KG = 70.0
DEFAULT_AGE_YEARS = 30


def met_calories(elapsed_seconds: float, body_weight_kg: float = DEFAULT_BODY_WEIGHT_KG) -> float:
    hours = max(0.0, elapsed_seconds) / 3600.0
    return RUNNING_MET * body_weight_kg * hours


def heart_rate_calories(
    elapsed_seconds: float,
    heart_rate: float,
    body_weight_kg: float = DEFAULT_BODY_WEIGHT_KG,
    age_years: int = DEFAULT_AGE_YEARS,
) -> float:
    """Keytel et al. (2005) male equation. Never negative."""
    minutes = max(0.0, elapsed_seconds) / 60.0
    kcal_per_minute = (
        -55.0969 + 0.6309 * heart_rate + 0.1988 * body_weight_kg + 0.2017 * age_years
    ) / 4.184
    return max(0.0, kcal_per_minute * minutes)


def estimate_calories(
    elapsed_seconds: float,
    heart_rate: Optional[float] = None,
    body_weight_kg: float = DEFAULT_BODY_WEIGHT_KG,
    age_years: int = DEFAULT_AGE_YEARS,
) -> float:
    """Heart-rate adjusted estimate when a heart rate is known, MET otherwise."""
    if heart_rate is not None and heart_rate > 0:
        return heart_rate_calories(elapsed_seconds, heart_rate, body_weight_kg, age_years)
    return met_calories(elapsed_seconds, body_weight_kg)
