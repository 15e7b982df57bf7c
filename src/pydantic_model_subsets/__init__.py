"""Fieldsets and subsets for Pydantic models."""

from pydantic_model_subsets.core import (
    ModelSubsetsMixin,
    ModelSubsetsModel,
    SubsetDeclaration,
    SubsetProjectionError,
    configure_subsets,
    field,
    fieldset,
    reset_subsets_configuration,
    subset,
    subset_response,
)
from pydantic_model_subsets.engine import (
    DEFAULT_GROUP,
    DuplicateSubsetError,
    ErrorSink,
    Fieldset,
    ScopeRegistrar,
    SubsetBuilder,
    SubsetConfigError,
    SubsetDefinition,
    SubsetOptions,
    SubsetTable,
)
from pydantic_model_subsets.grouping import SubsetChoice, SubsetGroup, grouped_subsets

__version__ = "0.1.0"
__all__ = [
    "ModelSubsetsMixin",
    "ModelSubsetsModel",
    "SubsetDeclaration",
    "field",
    "fieldset",
    "subset",
    "configure_subsets",
    "reset_subsets_configuration",
    "subset_response",
    "SubsetProjectionError",
    "DEFAULT_GROUP",
    "DuplicateSubsetError",
    "ErrorSink",
    "Fieldset",
    "ScopeRegistrar",
    "SubsetBuilder",
    "SubsetConfigError",
    "SubsetDefinition",
    "SubsetOptions",
    "SubsetTable",
    "SubsetChoice",
    "SubsetGroup",
    "grouped_subsets",
]
