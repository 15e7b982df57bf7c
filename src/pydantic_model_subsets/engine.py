"""
Subset resolution engine.

Fieldsets name ordered groups of fields. Subsets select, combine and filter
fieldsets through declarative directives (extends, add/with, only, except,
explicit fieldsets). A SubsetBuilder resolves each subset once, in
declaration order, and is sealed into an immutable SubsetTable that answers
visibility queries.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    NewType,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)

FieldId = NewType("FieldId", str)
FieldsetId = NewType("FieldsetId", str)
SubsetId = NewType("SubsetId", str)
ScopeId = NewType("ScopeId", str)
GroupId = NewType("GroupId", str)

DEFAULT_GROUP = GroupId("default")

DUPLICATE_ERROR = "error"
DUPLICATE_REPLACE = "replace"
DUPLICATE_POLICIES = (DUPLICATE_ERROR, DUPLICATE_REPLACE)


class SubsetConfigError(ValueError):
    """Raised when a fieldset or subset declaration is malformed."""


class DuplicateSubsetError(SubsetConfigError):
    """Raised when a subset id is declared twice under the "error" policy."""


class ScopeRegistrar(Protocol):
    """Installs a storage-layer filter for the subsets belonging to a scope."""

    def register(self, scope_id: ScopeId, member_subset_ids: Tuple[SubsetId, ...]) -> None: ...


@runtime_checkable
class ErrorSink(Protocol):
    """Collects validation errors reported by a model instance."""

    def add_error(self, field: str, error_kind: str) -> None: ...


def normalize_id(value: Any, label: str = "id") -> str:
    """
    Normalize an identifier to its string form. Enum members are replaced
    by their value.

    Raises:
        SubsetConfigError: if the value is not a non-empty string.
    """
    if isinstance(value, Enum):
        value = value.value
    if not isinstance(value, str):
        raise SubsetConfigError(
            f"{label} must be a str or a str Enum ({type(value).__name__} given)"
        )
    if not value:
        raise SubsetConfigError(f"{label} must not be empty")
    return value


def normalize_id_list(value: Any, label: str = "ids") -> List[str]:
    """Normalize a singular identifier or a list/tuple of them to a list."""
    if value is None:
        return []
    if isinstance(value, (str, Enum)):
        return [normalize_id(value, label)]
    if not isinstance(value, (list, tuple)):
        raise SubsetConfigError(
            f"{label} must be an identifier or a list of identifiers "
            f"({type(value).__name__} given)"
        )
    return [normalize_id(item, f"{label}[{i}]") for i, item in enumerate(value)]


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class Fieldset(BaseModel):
    """A named, ordered group of fields."""

    model_config = ConfigDict(frozen=True)

    id: FieldsetId
    fields: Tuple[FieldId, ...] = ()
    opt_in: bool = False


class SubsetOptions(BaseModel):
    """
    Typed record of the directives accepted by a subset declaration.

    ``with`` and ``except`` are Python keywords, so they are also accepted
    as ``add`` and ``except_``. List-valued options accept a single
    identifier.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    extends: Optional[Tuple[SubsetId, ...]] = None
    add: Optional[Tuple[FieldsetId, ...]] = Field(
        default=None, validation_alias=AliasChoices("add", "with")
    )
    only: Optional[Tuple[FieldsetId, ...]] = None
    except_: Optional[Tuple[FieldsetId, ...]] = Field(
        default=None, validation_alias=AliasChoices("except_", "except")
    )
    fieldsets: Optional[Tuple[FieldsetId, ...]] = None
    scopes: Optional[Tuple[ScopeId, ...]] = None
    group: Optional[GroupId] = None
    template: bool = False

    @field_validator("extends", "add", "only", "except_", "fieldsets", "scopes", mode="before")
    @classmethod
    def _normalize_lists(cls, value: Any, info: Any) -> Any:
        if value is None:
            return None
        return tuple(normalize_id_list(value, info.field_name))

    @field_validator("group", mode="before")
    @classmethod
    def _normalize_group(cls, value: Any) -> Any:
        if value is None:
            return None
        return normalize_id(value, "group")

    @field_validator("template", mode="before")
    @classmethod
    def _strict_template(cls, value: Any) -> Any:
        if not isinstance(value, bool):
            raise ValueError("template must be a bool")
        return value


class SubsetDefinition(BaseModel):
    """A resolved subset."""

    model_config = ConfigDict(frozen=True)

    id: SubsetId
    fieldsets: Tuple[FieldsetId, ...] = ()
    fields: Tuple[FieldId, ...] = ()
    group: Optional[GroupId] = None
    scopes: Tuple[ScopeId, ...] = ()
    template: bool = False

    @property
    def group_id(self) -> GroupId:
        return self.group or DEFAULT_GROUP


def parse_subset_options(
    options: Optional[Mapping[str, Any]] = None, **kwargs: Any
) -> SubsetOptions:
    """
    Validate raw subset options into a SubsetOptions record.

    Raises:
        SubsetConfigError: if options is not a mapping or holds unknown or
            malformed keys.
    """
    if options is None:
        options = {}
    if isinstance(options, SubsetOptions):
        if not kwargs:
            return options
        options = options.model_dump(exclude_unset=True)
    if not isinstance(options, Mapping):
        raise SubsetConfigError(
            f"subset options must be a mapping ({type(options).__name__} given)"
        )
    raw = dict(options)
    raw.update(kwargs)
    try:
        return SubsetOptions.model_validate(raw)
    except ValidationError as e:
        raise SubsetConfigError(f"invalid subset options: {e}") from e


def merge_extended_options(
    options: SubsetOptions, parents: Sequence[SubsetDefinition]
) -> Tuple[List[str], Optional[str], List[str]]:
    """
    Merge resolved parent subsets under the current declaration.

    Rules per key:
        fieldsets: an explicit non-empty list on the declaration replaces the
            ordered union of the parents' fieldsets.
        group: the declaration's group, else the first parent declaring one.
        scopes: ordered union of the parents' scopes, then the declaration's.
        template: never inherited.

    Returns:
        Tuple of (baseline fieldsets, group, scopes).
    """
    if options.fieldsets:
        baseline = list(options.fieldsets)
    else:
        baseline = _unique(fs for parent in parents for fs in parent.fieldsets)

    group = options.group
    if group is None:
        group = next((p.group for p in parents if p.group is not None), None)

    scopes = _unique(
        [s for parent in parents for s in parent.scopes] + list(options.scopes or ())
    )
    return baseline, group, scopes


class FieldsetTable:
    """Ordered registry of fieldsets for one owning type."""

    def __init__(self) -> None:
        self._fieldsets: Dict[str, Fieldset] = {}

    def declare(self, fieldset_id: Any, fields: Any, *, opt_in: bool = False) -> Fieldset:
        fieldset_id = normalize_id(fieldset_id, "fieldset id")
        if isinstance(fields, (str, Enum)) or not isinstance(fields, (list, tuple)):
            raise SubsetConfigError(
                f"fieldset '{fieldset_id}' fields must be a list "
                f"({type(fields).__name__} given)"
            )
        field_ids = tuple(
            normalize_id(f, f"fieldset '{fieldset_id}' field") for f in fields
        )
        if not isinstance(opt_in, bool):
            raise SubsetConfigError(
                f"fieldset '{fieldset_id}' opt_in must be a bool "
                f"({type(opt_in).__name__} given)"
            )
        entry = Fieldset(id=fieldset_id, fields=field_ids, opt_in=opt_in)
        self._fieldsets[fieldset_id] = entry
        return entry

    def __contains__(self, fieldset_id: object) -> bool:
        return fieldset_id in self._fieldsets

    def __len__(self) -> int:
        return len(self._fieldsets)

    def get(self, fieldset_id: str) -> Optional[Fieldset]:
        return self._fieldsets.get(fieldset_id)

    def ids(self) -> List[str]:
        return list(self._fieldsets)

    def default_ids(self) -> List[str]:
        """Ids of the opt-out fieldsets, in declaration order."""
        return [fs.id for fs in self._fieldsets.values() if not fs.opt_in]

    def fields_of(self, fieldset_ids: Iterable[str]) -> List[str]:
        """Concatenate the fields of the given fieldsets, keeping first occurrences."""
        return _unique(
            f for fs_id in fieldset_ids for f in self._fieldsets[fs_id].fields
        )

    def snapshot(self) -> Mapping[str, Fieldset]:
        return MappingProxyType(dict(self._fieldsets))


class ScopeIndex:
    """Scope id to the ordered ids of the non-template subsets it holds."""

    def __init__(self, members: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self._members: Dict[str, List[str]] = {
            k: list(v) for k, v in (members or {}).items()
        }

    def add(self, scope_id: str, subset_id: str) -> None:
        members = self._members.setdefault(scope_id, [])
        if subset_id not in members:
            members.append(subset_id)

    def touch(self, scope_id: str) -> None:
        self._members.setdefault(scope_id, [])

    def discard(self, subset_id: str) -> List[str]:
        """Remove a subset from every scope, returning the scopes it left."""
        changed = []
        for scope_id, members in self._members.items():
            if subset_id in members:
                members.remove(subset_id)
                changed.append(scope_id)
        return changed

    def subsets_in_scope(self, scope_id: Any) -> Tuple[SubsetId, ...]:
        if isinstance(scope_id, Enum):
            scope_id = scope_id.value
        if not isinstance(scope_id, str):
            return ()
        return tuple(self._members.get(scope_id, ()))

    def as_dict(self) -> Dict[ScopeId, Tuple[SubsetId, ...]]:
        return {k: tuple(v) for k, v in self._members.items()}

    def frozen(self) -> "ScopeIndex":
        return ScopeIndex(self._members)


class SubsetTable:
    """
    Immutable result of a SubsetBuilder.

    Template subsets are kept so that lookups by id can still inspect them,
    but they are absent from every public view.
    """

    def __init__(
        self,
        definitions: Mapping[str, SubsetDefinition],
        fieldsets: Mapping[str, Fieldset],
        scope_index: ScopeIndex,
    ) -> None:
        self._definitions = MappingProxyType(dict(definitions))
        self._public = MappingProxyType(
            {k: v for k, v in definitions.items() if not v.template}
        )
        self._fieldsets = fieldsets
        self._scope_index = scope_index

    @property
    def fieldsets(self) -> Mapping[str, Fieldset]:
        return self._fieldsets

    @property
    def scope_index(self) -> ScopeIndex:
        return self._scope_index

    def subsets(self) -> Mapping[SubsetId, SubsetDefinition]:
        """Public (non-template) subsets in declaration order."""
        return self._public

    def all_subsets(self) -> Mapping[SubsetId, SubsetDefinition]:
        return self._definitions

    def get(self, subset_id: Any) -> Optional[SubsetDefinition]:
        """Public subset by id, None for unknown ids and templates."""
        if isinstance(subset_id, Enum):
            subset_id = subset_id.value
        if not isinstance(subset_id, str):
            return None
        return self._public.get(subset_id)

    def is_public(self, subset_id: Any) -> bool:
        return self.get(subset_id) is not None

    def subset_fields(self, subset_id: Any) -> Optional[List[FieldId]]:
        definition = self.get(subset_id)
        return None if definition is None else list(definition.fields)

    def subset_fieldsets(self, subset_id: Any) -> Optional[List[FieldsetId]]:
        definition = self.get(subset_id)
        return None if definition is None else list(definition.fieldsets)

    def subsets_in_scope(self, scope_id: Any) -> Tuple[SubsetId, ...]:
        return self._scope_index.subsets_in_scope(scope_id)

    def scopes(self) -> Dict[ScopeId, Tuple[SubsetId, ...]]:
        return self._scope_index.as_dict()

    def __contains__(self, subset_id: object) -> bool:
        return self.is_public(subset_id)

    def __len__(self) -> int:
        return len(self._public)


class SubsetBuilder:
    """
    Accumulates fieldset and subset declarations for one owning type.

    Subsets are resolved at declaration time against the fieldsets and
    subsets declared so far, so ``extends`` can only reach earlier subsets.
    ``build()`` seals the builder and returns the immutable SubsetTable.

    Args:
        scope_registrar: Optional collaborator told about every scope
            membership change.
        duplicate_policy: "error" (raise DuplicateSubsetError) or "replace"
            (last declaration wins).
    """

    def __init__(
        self,
        *,
        scope_registrar: Optional[ScopeRegistrar] = None,
        duplicate_policy: str = DUPLICATE_ERROR,
        name: str = "",
    ) -> None:
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise SubsetConfigError(
                f"duplicate_policy must be one of {DUPLICATE_POLICIES} "
                f"({duplicate_policy!r} given)"
            )
        self.name = name
        self._scope_registrar = scope_registrar
        self._duplicate_policy = duplicate_policy
        self._fieldsets = FieldsetTable()
        self._definitions: Dict[str, SubsetDefinition] = {}
        self._scope_index = ScopeIndex()
        self._lock = threading.Lock()
        self._table: Optional[SubsetTable] = None

    def _ensure_open(self) -> None:
        if self._table is not None:
            raise SubsetConfigError(
                f"subsets of {self.name or 'this builder'} are already built"
            )

    def fieldset(self, fieldset_id: Any, fields: Any, *, opt_in: bool = False) -> Fieldset:
        """Register or overwrite a fieldset."""
        with self._lock:
            self._ensure_open()
            entry = self._fieldsets.declare(fieldset_id, fields, opt_in=opt_in)
        logger.debug(
            "%s: fieldset %r -> %s (opt_in=%s)",
            self.name, entry.id, list(entry.fields), entry.opt_in,
        )
        return entry

    def subset(
        self, subset_id: Any, options: Optional[Mapping[str, Any]] = None, **kwargs: Any
    ) -> SubsetDefinition:
        """
        Resolve and store a subset.

        Args:
            subset_id: Identifier of the subset.
            options: Mapping of directives (extends, with/add, only, except,
                fieldsets, scopes, group, template).
            **kwargs: Same directives as keywords, ``except_`` for ``except``.

        Returns:
            The resolved SubsetDefinition.
        """
        subset_id = normalize_id(subset_id, "subset id")
        parsed = parse_subset_options(options, **kwargs)
        with self._lock:
            self._ensure_open()
            if subset_id in self._definitions:
                if self._duplicate_policy == DUPLICATE_ERROR:
                    raise DuplicateSubsetError(
                        f"subset '{subset_id}' is already defined"
                    )
                logger.debug("%s: replacing subset %r", self.name, subset_id)
                left_scopes = self._scope_index.discard(subset_id)
                del self._definitions[subset_id]
            else:
                left_scopes = []
            definition = self._resolve(subset_id, parsed)
            self._definitions[subset_id] = definition
            self._register_scopes(definition)
            for scope_id in left_scopes:
                if scope_id not in definition.scopes:
                    self._notify_scope(scope_id)
        return definition

    def _resolve(self, subset_id: str, options: SubsetOptions) -> SubsetDefinition:
        if options.extends:
            parents = []
            for parent_id in options.extends:
                parent = self._definitions.get(parent_id)
                if parent is None:
                    logger.debug(
                        "%s: subset %r extends unknown subset %r, ignored",
                        self.name, subset_id, parent_id,
                    )
                    continue
                parents.append(parent)
            baseline, group, scopes = merge_extended_options(options, parents)
        else:
            if options.fieldsets:
                baseline = list(options.fieldsets)
            else:
                baseline = self._fieldsets.default_ids()
            group = options.group
            scopes = _unique(options.scopes or ())

        if options.only is not None:
            baseline = [fs for fs in baseline if fs in options.only]
        if options.except_ is not None:
            baseline = [fs for fs in baseline if fs not in options.except_]
        if options.add:
            baseline = baseline + list(options.add)

        unknown = [fs for fs in baseline if fs not in self._fieldsets]
        if unknown:
            logger.debug(
                "%s: subset %r drops unknown fieldsets %s", self.name, subset_id, unknown
            )
        resolved = _unique(fs for fs in baseline if fs in self._fieldsets)

        definition = SubsetDefinition(
            id=subset_id,
            fieldsets=tuple(resolved),
            fields=tuple(self._fieldsets.fields_of(resolved)),
            group=group,
            scopes=tuple(scopes),
            template=options.template,
        )
        logger.debug(
            "%s: subset %r -> fieldsets=%s fields=%s",
            self.name, subset_id, list(definition.fieldsets), list(definition.fields),
        )
        return definition

    def _register_scopes(self, definition: SubsetDefinition) -> None:
        for scope_id in definition.scopes:
            if definition.template:
                self._scope_index.touch(scope_id)
            else:
                self._scope_index.add(scope_id, definition.id)
            self._notify_scope(scope_id)

    def _notify_scope(self, scope_id: str) -> None:
        if self._scope_registrar is None:
            return
        members = self._scope_index.subsets_in_scope(scope_id)
        logger.debug("%s: registering scope %r -> %s", self.name, scope_id, list(members))
        self._scope_registrar.register(scope_id, members)

    def build(self) -> SubsetTable:
        """Seal the builder and return its SubsetTable. Repeated calls return the same table."""
        with self._lock:
            if self._table is None:
                self._table = SubsetTable(
                    self._definitions,
                    self._fieldsets.snapshot(),
                    self._scope_index.frozen(),
                )
                logger.debug(
                    "%s: built %d subsets over %d fieldsets",
                    self.name, len(self._definitions), len(self._fieldsets),
                )
            return self._table
