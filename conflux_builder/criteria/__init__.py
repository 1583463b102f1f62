"""Build criteria validation, normalization and equivalence keys."""

from conflux_builder.criteria.key import compute_criteria_key
from conflux_builder.criteria.schema import (
    BuildCriteria,
    CriteriaValidationError,
    validate_criteria,
)

__all__ = [
    "BuildCriteria",
    "CriteriaValidationError",
    "compute_criteria_key",
    "validate_criteria",
]
