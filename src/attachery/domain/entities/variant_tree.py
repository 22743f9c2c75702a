"""Variant trees: a single stored file, or named variants of it.

A tree is either a ``Leaf`` holding one payload, or a ``Branch`` mapping
variant names to sub-trees. The payload type changes as the tree moves
through the lifecycle: raw streams before upload, ``StoredFileRef`` once
uploaded, plain dicts while serialized.

The serialized shape distinguishes leaves from branches by the presence of
a ``"storage"`` key, which is why no variant may be called ``storage``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Generic, Iterator, Mapping, Optional, TypeVar, Union

from loguru import logger

from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.errors import InvalidFileData, InvalidInput, UnknownVariantName

T = TypeVar("T")
U = TypeVar("U")

RESERVED_NAME = "storage"

Path = tuple[str, ...]


@dataclass(frozen=True)
class Leaf(Generic[T]):
    value: T


@dataclass(frozen=True, eq=False)
class Branch(Generic[T]):
    children: Mapping[str, "VariantTree[T]"] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in self.children:
            if not isinstance(name, str):
                raise UnknownVariantName(repr(name), f"variant names must be strings, got {name!r}")
            if name == RESERVED_NAME:
                raise UnknownVariantName(name, f"{RESERVED_NAME!r} is reserved and cannot name a variant")
        object.__setattr__(self, "children", MappingProxyType(dict(self.children)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Branch):
            return NotImplemented
        return tree_equals(self, other)

    def __getitem__(self, name: str) -> "VariantTree[T]":
        return self.children[name]

    def __contains__(self, name: object) -> bool:
        return name in self.children

    def names(self) -> list[str]:
        return list(self.children)


VariantTree = Union[Leaf[T], Branch[T]]


class VariantKind(str, Enum):
    """How an attachment may branch into variants."""

    SINGLE = "single"
    VERSIONS = "versions"
    DERIVATIVES = "derivatives"


@dataclass(frozen=True)
class VariantSchema:
    kind: VariantKind = VariantKind.SINGLE
    names: frozenset[str] = frozenset()

    @classmethod
    def single(cls) -> VariantSchema:
        return cls(VariantKind.SINGLE)

    @classmethod
    def versions(cls, names) -> VariantSchema:
        names = frozenset(str(n) for n in names)
        if not names:
            raise UnknownVariantName("", "versions schema needs at least one declared name")
        if RESERVED_NAME in names:
            raise UnknownVariantName(RESERVED_NAME, f"{RESERVED_NAME!r} cannot be declared as a version")
        return cls(VariantKind.VERSIONS, names)

    @classmethod
    def derivatives(cls) -> VariantSchema:
        return cls(VariantKind.DERIVATIVES)

    def check(self, path: Path, name: str) -> None:
        """Raise UnknownVariantName unless ``name`` may appear under ``path``."""
        if name == RESERVED_NAME:
            raise UnknownVariantName(name, f"{RESERVED_NAME!r} is reserved and cannot name a variant")
        if self.kind is VariantKind.SINGLE:
            raise UnknownVariantName(name, f"attachment does not accept variants, got {name!r}")
        if self.kind is VariantKind.VERSIONS:
            if path:
                raise UnknownVariantName(name, f"versions cannot be nested (under {'/'.join(path)})")
            if name not in self.names:
                raise UnknownVariantName(name)

    def allows(self, path: Path, name: str) -> bool:
        try:
            self.check(path, name)
        except UnknownVariantName:
            return False
        return True


def _is_stream(value: Any) -> bool:
    return callable(getattr(value, "read", None))


def from_raw(
    raw: Any,
    schema: VariantSchema = VariantSchema(),
    upload: Optional[Callable[[Any], Any]] = None,
    _path: Path = (),
) -> VariantTree:
    """Build a tree from raw upload input.

    A readable object becomes a leaf, a mapping of name to input becomes a
    branch. With ``upload`` each leaf payload is passed through it.
    """
    if isinstance(raw, Mapping):
        if not raw:
            raise InvalidInput("cannot attach an empty mapping of variants")
        children = {}
        for name, sub in raw.items():
            name = name.value if isinstance(name, Enum) else str(name)
            schema.check(_path, name)
            children[name] = from_raw(sub, schema, upload, _path + (name,))
        return Branch(children)
    if _is_stream(raw):
        return Leaf(upload(raw) if upload else raw)
    raise InvalidInput(f"{raw!r} is neither a readable stream nor a mapping of streams")


def map_tree(tree: VariantTree[T], fn: Callable[[T], U]) -> VariantTree[U]:
    if isinstance(tree, Leaf):
        return Leaf(fn(tree.value))
    return Branch({name: map_tree(sub, fn) for name, sub in tree.children.items()})


def map_tree_with_path(
    tree: VariantTree[T], fn: Callable[[Path, T], U], _path: Path = ()
) -> VariantTree[U]:
    if isinstance(tree, Leaf):
        return Leaf(fn(_path, tree.value))
    return Branch(
        {name: map_tree_with_path(sub, fn, _path + (name,)) for name, sub in tree.children.items()}
    )


def iter_leaves(tree: Optional[VariantTree[T]], _path: Path = ()) -> Iterator[tuple[Path, T]]:
    if tree is None:
        return
    if isinstance(tree, Leaf):
        yield _path, tree.value
        return
    for name, sub in tree.children.items():
        yield from iter_leaves(sub, _path + (name,))


def for_each_leaf(tree: Optional[VariantTree[T]], fn: Callable[[T], Any]) -> None:
    for _, value in iter_leaves(tree):
        fn(value)


def leaves(tree: Optional[VariantTree[T]]) -> list[T]:
    return [value for _, value in iter_leaves(tree)]


def leaf_paths(tree: Optional[VariantTree[T]]) -> list[tuple[Path, T]]:
    return list(iter_leaves(tree))


def tree_equals(a: Optional[VariantTree], b: Optional[VariantTree]) -> bool:
    """Structural equality. Leaves compare by payload equality (identity for refs)."""
    if a is None or b is None:
        return a is b
    if isinstance(a, Leaf) and isinstance(b, Leaf):
        return a.value == b.value
    if isinstance(a, Branch) and isinstance(b, Branch):
        if set(a.children) != set(b.children):
            return False
        return all(tree_equals(sub, b.children[name]) for name, sub in a.children.items())
    return False


def get_path(tree: Optional[VariantTree[T]], *names: str) -> Optional[VariantTree[T]]:
    """Look up a sub-tree by variant names. ``None`` when nothing is attached."""
    node = tree
    for depth, name in enumerate(names):
        if node is None:
            return None
        if not isinstance(node, Branch):
            raise UnknownVariantName(name, f"{'/'.join(names[:depth]) or 'attachment'} has no variants")
        if name not in node.children:
            raise UnknownVariantName(name)
        node = node.children[name]
    return node


def merge(base: Optional[VariantTree[T]], extra: Branch[T]) -> Branch[T]:
    """Return ``base`` with the top-level variants of ``extra`` added or replaced."""
    if base is None:
        return extra
    if not isinstance(base, Branch):
        raise InvalidInput("cannot merge variants into a single-file attachment")
    children = dict(base.children)
    children.update(extra.children)
    return Branch(children)


def serialize(tree: Optional[VariantTree[StoredFileRef]]) -> Optional[dict[str, Any]]:
    if tree is None:
        return None
    if isinstance(tree, Leaf):
        return tree.value.to_dict()
    return {name: serialize(sub) for name, sub in tree.children.items()}


def deserialize(data: Any, schema: Optional[VariantSchema] = None) -> Optional[VariantTree[StoredFileRef]]:
    """Rebuild a tree from its serialized shape.

    With a versions ``schema``, undeclared top-level names are skipped so
    that removing a version from the declaration doesn't break old rows.
    """
    if data is None:
        return None
    return _deserialize(data, schema, ())


def _deserialize(data: Any, schema: Optional[VariantSchema], path: Path) -> VariantTree[StoredFileRef]:
    if not isinstance(data, Mapping):
        raise InvalidFileData(f"{data!r} isn't valid attachment data")
    if RESERVED_NAME in data:
        return Leaf(StoredFileRef.from_dict(data))
    children = {}
    for name, sub in data.items():
        if schema is not None and schema.kind is VariantKind.VERSIONS and not schema.allows(path, name):
            logger.debug(f"Skipping undeclared version {name!r} while loading attachment data")
            continue
        children[name] = _deserialize(sub, schema, path + (name,))
    return Branch(children)


def dumps(tree: Optional[VariantTree[StoredFileRef]]) -> Optional[str]:
    """Serialize to the JSON text stored in the attachment column."""
    data = serialize(tree)
    return json.dumps(data) if data is not None else None


def loads(text: Optional[str], schema: Optional[VariantSchema] = None) -> Optional[VariantTree[StoredFileRef]]:
    if text is None or text == "":
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidFileData(f"attachment column is not valid JSON: {e}") from e
    return deserialize(data, schema)
