"""
Module for subset-based field visibility for Pydantic models.
This module provides a mixin and supporting functions to declare fieldsets
and subsets on a model, and to answer which fields are visible for the
subset an instance currently holds.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    cast,
)

from pydantic import BaseModel, ConfigDict, Field, create_model, field_validator
from pydantic_core import PydanticUndefined

from pydantic_model_subsets.engine import (
    DEFAULT_GROUP,
    DUPLICATE_ERROR,
    DUPLICATE_POLICIES,
    ErrorSink,
    Fieldset,
    FieldsetTable,
    ScopeRegistrar,
    SubsetBuilder,
    SubsetConfigError,
    SubsetDefinition,
    SubsetOptions,
    SubsetTable,
    normalize_id,
    normalize_id_list,
    parse_subset_options,
)
from pydantic_model_subsets.grouping import LabelLookup, SubsetGroup, grouped_subsets

logger = logging.getLogger(__name__)

# Global subsets configuration.
_DEFAULT_GROUP: str = DEFAULT_GROUP
_DUPLICATE_POLICY: str = DUPLICATE_ERROR
_LABEL_LOOKUP: Optional[LabelLookup] = None
_SUBSET_MODEL_CACHE: Dict[Tuple[type, str, str], Type[BaseModel]] = {}
_BUILD_LOCK = threading.RLock()

_TABLE_ATTRIBUTE = "__subset_table__"


class SubsetProjectionError(ValueError):
    """Raised when a model restricted to a subset cannot be created."""


class SubsetDeclaration(BaseModel):
    """A subset declared on a model, resolved when the model's table is built."""

    model_config = ConfigDict(frozen=True)

    id: str
    options: SubsetOptions


def configure_subsets(
    *,
    default_group: Optional[Any] = None,
    duplicate_policy: Optional[str] = None,
    label_lookup: Optional[LabelLookup] = None,
) -> None:
    """
    Configure package-wide defaults.

    Args:
        default_group: Group assigned to subsets that declare none.
        duplicate_policy: "error" to reject a subset id declared twice,
            "replace" to keep the last declaration.
        label_lookup: Default label lookup used by subsets_groups().
    """
    global _DEFAULT_GROUP, _DUPLICATE_POLICY, _LABEL_LOOKUP

    if default_group is not None:
        _DEFAULT_GROUP = normalize_id(default_group, "default_group")

    if duplicate_policy is not None:
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise SubsetConfigError(
                f"duplicate_policy must be one of {DUPLICATE_POLICIES} "
                f"({duplicate_policy!r} given)"
            )
        _DUPLICATE_POLICY = duplicate_policy

    if label_lookup is not None:
        _LABEL_LOOKUP = label_lookup


def reset_subsets_configuration() -> None:
    """Restore the package defaults set by configure_subsets()."""
    global _DEFAULT_GROUP, _DUPLICATE_POLICY, _LABEL_LOOKUP

    _DEFAULT_GROUP = DEFAULT_GROUP
    _DUPLICATE_POLICY = DUPLICATE_ERROR
    _LABEL_LOOKUP = None


def fieldset(id: Any, fields: Any, *, opt_in: bool = False) -> Fieldset:
    """
    Declare a fieldset for use in ``declared_fieldsets``.

    Args:
        id: Fieldset identifier.
        fields: List of field names belonging to the fieldset.
        opt_in: If True the fieldset is left out of default subsets and
            must be named explicitly.

    Raises:
        SubsetConfigError: if the id or the fields are malformed.
    """
    return FieldsetTable().declare(id, fields, opt_in=opt_in)


def subset(id: Any, options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> SubsetDeclaration:
    """
    Declare a subset for use in ``declared_subsets``.

    Options are validated immediately; resolution happens when the model's
    subset table is built, in declaration order.

    Args:
        id: Subset identifier.
        options: Mapping of directives, required for ``with`` and ``except``.
        **kwargs: extends, add, only, except_, fieldsets, scopes, group, template.
    """
    return SubsetDeclaration(
        id=normalize_id(id, "subset id"),
        options=parse_subset_options(options, **kwargs),
    )


def field(*, fieldsets: Optional[List[Any]] = None, **kwargs: Any) -> Any:
    """
    Field helper that adds fieldset membership metadata to a Pydantic field.

    Args:
        fieldsets: Fieldsets this field belongs to.
        **kwargs: Additional arguments to pass to pydantic.Field.

    Returns:
        Pydantic Field with fieldset metadata.
    """
    field_kwargs = kwargs.copy()

    if fieldsets is not None:
        fieldset_ids = normalize_id_list(fieldsets, "fieldsets")
        if field_kwargs.get("json_schema_extra") is None:
            field_kwargs["json_schema_extra"] = {}
        field_kwargs["json_schema_extra"]["fieldsets"] = fieldset_ids

    return Field(**field_kwargs)


def _safe_create_model(
    name: str, fields: Dict[str, Tuple[Type[Any], Any]]
) -> Type[BaseModel]:
    """
    Safely create a Pydantic model with error handling.
    """
    try:
        return create_model(
            name,
            __config__=ConfigDict(extra="ignore", populate_by_name=True),
            **fields,
        )
    except Exception as e:
        raise SubsetProjectionError(f"Failed to create model {name}: {e}") from e


def subset_response(model: Any, subset: Any = None) -> Any:
    """
    Project a model to the fields of its subset.
    Objects that do not inherit from ModelSubsetsMixin are returned as-is.

    Args:
        model: The model, or a list/dict of models, to convert.
        subset: Subset to project to instead of each model's own subset.

    Returns:
        Model restricted to the subset fields, None for a model whose
        subset is invalid.
    """
    if isinstance(model, ModelSubsetsMixin):
        return model.to_subset_model(subset)
    if isinstance(model, list):
        return [subset_response(item, subset) for item in model]
    if isinstance(model, dict):
        return {k: subset_response(v, subset) for k, v in model.items()}
    return model


class ModelSubsetsMixin:
    """
    Mixin class that adds fieldsets and subsets to a model.
    This can be added to any Pydantic model, or any class storing its
    current subset in the ``subset_attribute`` attribute.
    """

    model_fields: ClassVar[Dict[str, Any]]

    declared_fieldsets: ClassVar[List[Fieldset]] = []
    declared_subsets: ClassVar[List[SubsetDeclaration]] = []
    subset_attribute: ClassVar[str] = "subset"
    subset_scope_registrar: ClassVar[Optional[ScopeRegistrar]] = None
    subset_duplicate_policy: ClassVar[Optional[str]] = None
    subset_default_group: ClassVar[Optional[str]] = None

    @classmethod
    def _collect_fieldsets(cls) -> List[Fieldset]:
        """
        Merge ``declared_fieldsets`` with memberships declared through field().

        Declared fieldsets keep their field order and opt_in flag, members
        found on model fields are appended. Fieldsets only named by fields
        become opt-out fieldsets.
        """
        members: Dict[str, List[str]] = {}
        for field_name, field_info in (getattr(cls, "model_fields", None) or {}).items():
            json_schema_extra = getattr(field_info, "json_schema_extra", None)
            if isinstance(json_schema_extra, dict) and "fieldsets" in json_schema_extra:
                for fieldset_id in json_schema_extra["fieldsets"]:
                    members.setdefault(fieldset_id, []).append(field_name)

        collected: List[Fieldset] = []
        for declared in cls.declared_fieldsets:
            if not isinstance(declared, Fieldset):
                raise SubsetConfigError(
                    f"{cls.__name__}.declared_fieldsets entries must be created "
                    f"with fieldset() ({type(declared).__name__} given)"
                )
            extra = [f for f in members.get(declared.id, []) if f not in declared.fields]
            if extra:
                declared = declared.model_copy(update={"fields": declared.fields + tuple(extra)})
            collected.append(declared)

        declared_ids = {fs.id for fs in collected}
        for fieldset_id, field_names in members.items():
            if fieldset_id not in declared_ids:
                collected.append(Fieldset(id=fieldset_id, fields=tuple(field_names)))
        return collected

    @classmethod
    def build_subset_table(cls) -> SubsetTable:
        """
        Build a fresh subset table from the class declarations.
        """
        builder = SubsetBuilder(
            scope_registrar=cls.subset_scope_registrar,
            duplicate_policy=cls.subset_duplicate_policy or _DUPLICATE_POLICY,
            name=cls.__name__,
        )
        for entry in cls._collect_fieldsets():
            builder.fieldset(entry.id, list(entry.fields), opt_in=entry.opt_in)

        for declaration in cls.declared_subsets:
            if not isinstance(declaration, SubsetDeclaration):
                raise SubsetConfigError(
                    f"{cls.__name__}.declared_subsets entries must be created "
                    f"with subset() ({type(declaration).__name__} given)"
                )
            builder.subset(declaration.id, declaration.options)

        table = builder.build()
        logger.info(
            "%s: %d public subsets, %d scopes",
            cls.__name__, len(table), len(table.scopes()),
        )
        return table

    @classmethod
    def subset_table(cls) -> SubsetTable:
        """
        Get the subset table of this class, building it on first access.
        """
        table = cls.__dict__.get(_TABLE_ATTRIBUTE)
        if table is None:
            with _BUILD_LOCK:
                table = cls.__dict__.get(_TABLE_ATTRIBUTE)
                if table is None:
                    table = cls.build_subset_table()
                    setattr(cls, _TABLE_ATTRIBUTE, table)
        return cast(SubsetTable, table)

    @classmethod
    def subsets(cls) -> Dict[str, SubsetDefinition]:
        """Public subsets of this class, in declaration order."""
        return dict(cls.subset_table().subsets())

    @classmethod
    def get_subset_fields(cls, subset_id: Any) -> Optional[List[str]]:
        return cls.subset_table().subset_fields(subset_id)

    @classmethod
    def get_subset_fieldsets(cls, subset_id: Any) -> Optional[List[str]]:
        return cls.subset_table().subset_fieldsets(subset_id)

    @classmethod
    def subsets_scope(cls, scope_id: Any) -> List[str]:
        return list(cls.subset_table().subsets_in_scope(scope_id))

    @classmethod
    def subsets_scopes(cls) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in cls.subset_table().scopes().items()}

    @classmethod
    def subsets_groups(cls, label_lookup: Optional[LabelLookup] = None) -> List[SubsetGroup]:
        """
        Get the public subsets grouped for display.

        Args:
            label_lookup: Callable (kind, id) -> display text. Falls back to
                the configured lookup, then to humanized identifiers.
        """
        return grouped_subsets(
            cls.subset_table(),
            label_lookup or _LABEL_LOOKUP,
            default_group=cls.subset_default_group or _DEFAULT_GROUP,
        )

    def current_subset(self) -> Optional[str]:
        value = getattr(self, self.subset_attribute, None)
        if isinstance(value, Enum):
            return value.value
        return value

    def set_subset(self, subset_id: Any) -> None:
        if isinstance(subset_id, Enum):
            subset_id = subset_id.value
        setattr(self, self.subset_attribute, subset_id)

    def _current_definition(self) -> Optional[SubsetDefinition]:
        return self.__class__.subset_table().get(self.current_subset())

    def is_valid_subset(self) -> bool:
        """
        Check that the current subset is a public subset of this class.
        Records a ``subset``/``invalid`` error when the instance is an
        ErrorSink, i.e. exposes an ``add_error`` method.
        """
        if self._current_definition() is not None:
            return True
        if isinstance(self, ErrorSink):
            self.add_error(self.subset_attribute, "invalid")
        return False

    def fieldsets(self) -> Optional[List[str]]:
        definition = self._current_definition()
        return None if definition is None else list(definition.fieldsets)

    def has_fieldset(self, fieldset_id: Any) -> bool:
        fieldsets = self.fieldsets()
        if isinstance(fieldset_id, Enum):
            fieldset_id = fieldset_id.value
        return fieldsets is not None and fieldset_id in fieldsets

    def subset_fields(self) -> Optional[List[str]]:
        definition = self._current_definition()
        return None if definition is None else list(definition.fields)

    def has_field(self, field_name: Any) -> bool:
        fields = self.subset_fields()
        if isinstance(field_name, Enum):
            field_name = field_name.value
        return fields is not None and field_name in fields

    def in_scope(self, scope_id: Any) -> bool:
        return self.current_subset() in self.__class__.subsets_scope(scope_id)

    def subset_dict(self, subset: Any = None) -> Optional[Dict[str, Any]]:
        """
        Convert the model to a dictionary with only the fields of a subset.

        Args:
            subset: Subset to use instead of the current one.

        Returns:
            Field values keyed by field name, None if the subset is not a
            public subset.
        """
        if subset is None:
            fields = self.subset_fields()
        else:
            fields = self.__class__.get_subset_fields(subset)
        if fields is None:
            return None

        result: Dict[str, Any] = {}
        for field_name in fields:
            try:
                result[field_name] = getattr(self, field_name)
            except AttributeError:
                # Declared in a fieldset but not present on the instance.
                pass
        return result

    @classmethod
    def create_subset_model(
        cls, subset: Any, model_name_suffix: str = "Subset"
    ) -> Type[BaseModel]:
        """
        Create a Pydantic model with only the model fields of a subset.

        Raises:
            SubsetProjectionError: if the subset is not a public subset or
                the model cannot be created.
        """
        subset_id = subset.value if isinstance(subset, Enum) else subset
        cache_key = (cls, subset_id, model_name_suffix)
        if cache_key in _SUBSET_MODEL_CACHE:
            return _SUBSET_MODEL_CACHE[cache_key]

        fields = cls.get_subset_fields(subset_id)
        if fields is None:
            raise SubsetProjectionError(
                f"{cls.__name__} has no subset {subset_id!r}"
            )

        model_fields = getattr(cls, "model_fields", None) or {}
        new_fields_definition: Dict[str, Tuple[Any, Any]] = {}
        for field_name in fields:
            if field_name not in model_fields:
                continue
            original_field_info = model_fields[field_name]

            new_field_kwargs: Dict[str, Any] = {}
            if original_field_info.description:
                new_field_kwargs["description"] = original_field_info.description
            if original_field_info.title:
                new_field_kwargs["title"] = original_field_info.title
            if original_field_info.alias:
                new_field_kwargs["alias"] = original_field_info.alias
            if original_field_info.examples:
                new_field_kwargs["examples"] = original_field_info.examples

            if original_field_info.default is not PydanticUndefined:
                new_field_kwargs["default"] = original_field_info.default
            elif original_field_info.default_factory is not None:
                new_field_kwargs["default_factory"] = original_field_info.default_factory

            new_fields_definition[field_name] = (
                original_field_info.annotation,
                Field(**new_field_kwargs),
            )

        model_name = "{}{}{}".format(
            cls.__name__,
            "".join(part.capitalize() for part in subset_id.split("_")),
            model_name_suffix,
        )
        subset_model = _safe_create_model(model_name, new_fields_definition)
        _SUBSET_MODEL_CACHE[cache_key] = subset_model
        return subset_model

    def to_subset_model(self, subset: Any = None) -> Optional[BaseModel]:
        """
        Convert this model to an instance of its subset model.

        Returns:
            The subset model instance, None if the subset is not a public
            subset.
        """
        subset_id = self.current_subset() if subset is None else subset
        data = self.subset_dict(subset_id)
        if data is None:
            return None
        model_cls = self.__class__.create_subset_model(subset_id)
        return model_cls.model_construct(
            **{k: v for k, v in data.items() if k in model_cls.model_fields}
        )


class ModelSubsetsModel(BaseModel, ModelSubsetsMixin):
    """
    Base class for models with fieldsets and subsets.
    The subset table is built when the subclass is created.
    """

    model_config = ConfigDict(populate_by_name=True)

    subset: Optional[str] = None

    @field_validator("subset", mode="before")
    @classmethod
    def _coerce_subset(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        """Build the subset table of each subclass."""
        super().__pydantic_init_subclass__(**kwargs)
        cls.subset_table()
