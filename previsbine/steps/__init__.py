"""Pipeline step library.

Key classes:
    StepLibrary     - runs the eight build steps against a configuration
    StepDefinition  - ordinal, name, mode filter and skip policy of a step
"""

from .library import StepDefinition, StepLibrary, is_occupied

__all__ = [
    "StepLibrary",
    "StepDefinition",
    "is_occupied",
]
