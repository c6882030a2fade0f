"""
Logging Utilities for the Sepsis Cohort Pipeline

This module provides nested start/finish logging so the extraction and
analysis stages read as a call tree in the console:

    10:30:45.123 Started extract_cohort
        10:30:45.124 Started sample_subjects
        10:30:45.310 Finished sample_subjects

Messages are emitted through the standard ``logging`` module under the
``sepsis_cohort`` logger, so the CLI (or a test's ``caplog``) decides where
they go.
"""
import logging
from datetime import datetime

LOGGER_NAME = "sepsis_cohort"


class NestedLogger:
    """
    A logger that indents messages by the current function nesting depth.

    Each ``log_start`` increases the indentation and each ``log_end``
    decreases it. ``log_info`` writes a message at the current depth, used
    for row counts and other audit lines.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._nesting_level = 0
        self._logger = logging.getLogger(name)

    def _get_timestamp(self) -> str:
        """Timestamp in format 'HH:MM:SS.mmm'."""
        return datetime.now().strftime('%H:%M:%S.%f')[:-3]

    def _get_indent(self) -> str:
        return "    " * self._nesting_level

    def log_start(self, function_name: str) -> None:
        """
        Log the start of a function and increase the nesting level.

        Args:
            function_name (str): Name of the function being started
        """
        self._logger.info(f"{self._get_indent()}{self._get_timestamp()} Started {function_name}")
        self._nesting_level += 1

    def log_end(self, function_name: str) -> None:
        """
        Decrease the nesting level and log the end of a function.

        Args:
            function_name (str): Name of the function being completed
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1
        self._logger.info(f"{self._get_indent()}{self._get_timestamp()} Finished {function_name}")

    def log_info(self, message: str) -> None:
        """Log a message at the current nesting level."""
        self._logger.info(f"{self._get_indent()}{message}")


# Single instance shared across modules so nesting is consistent
logger = NestedLogger()
