"""
Temperature unit normalization.

MIMIC-III charts temperature in both Fahrenheit and Celsius, so the raw
extraction range has to admit both scales. Readings tagged Fahrenheit are
converted to Celsius and a second, Celsius-only range removes conversion
artifacts and mis-tagged units.
"""
from typing import Tuple

import pandas as pd

from .config import TEMPERATURE_CELSIUS_RANGE

CELSIUS_UNIT = "C"


def is_fahrenheit(units: pd.Series) -> pd.Series:
    """True where the unit string denotes Fahrenheit (``?F``, ``Deg. F``, ``°F``, ``F``)."""
    return units.fillna("").astype(str).str.strip().str.upper().str.endswith("F")


def fahrenheit_to_celsius(values):
    return (values - 32) * 5 / 9


def convert_temperature_units(df: pd.DataFrame) -> pd.DataFrame:
    """
    Convert Fahrenheit-tagged readings to Celsius.

    Returns a new frame; rows in any other unit are unchanged. Converted
    rows get the unit ``C``.
    """
    df = df.copy()
    mask = is_fahrenheit(df["valueuom"])
    df.loc[mask, "valuenum"] = fahrenheit_to_celsius(df.loc[mask, "valuenum"])
    df.loc[mask, "valueuom"] = CELSIUS_UNIT
    return df


def post_conversion_plausibility_filter(df: pd.DataFrame,
                                        valid_range: Tuple[float, float] = TEMPERATURE_CELSIUS_RANGE) -> pd.DataFrame:
    """Keep Celsius readings strictly inside ``valid_range``."""
    low, high = valid_range
    mask = (df["valuenum"] > low) & (df["valuenum"] < high)
    return df.loc[mask].reset_index(drop=True)


def normalize_temperature(df: pd.DataFrame,
                          valid_range: Tuple[float, float] = TEMPERATURE_CELSIUS_RANGE) -> pd.DataFrame:
    """Convert to Celsius, then apply the Celsius plausibility range."""
    return post_conversion_plausibility_filter(convert_temperature_units(df), valid_range)
