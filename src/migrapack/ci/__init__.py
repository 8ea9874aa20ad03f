"""Build and test verification for migrapack."""

from .build_verifier import BuildVerifier
from .output_parsing import (
    extract_error_lines,
    extract_warning_lines,
    parse_coverage_total,
    parse_test_counts,
)

__all__ = [
    "BuildVerifier",
    "extract_error_lines",
    "extract_warning_lines",
    "parse_coverage_total",
    "parse_test_counts",
]
