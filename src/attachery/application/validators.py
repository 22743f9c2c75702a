"""Ready-made validators for ``AttacherConfig.validators``.

A validator takes the freshly cached tree and returns error messages; an
empty result means the assignment is accepted. Every leaf is checked, and
messages for variants are prefixed with the variant path.

    AttacherConfig(validators=(max_size(5 * 1024 * 1024), mime_type_inclusion([re.compile(r"image/.*")])))
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, Pattern, Union

from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import Path, VariantTree, iter_leaves

Rule = Union[str, Pattern[str]]
TreeValidator = Callable[[VariantTree[StoredFileRef]], list[str]]

_MB = 1024 * 1024


def _pattern(rule: Rule) -> Pattern[str]:
    return rule if isinstance(rule, re.Pattern) else re.compile(f"^{re.escape(rule)}$")


def _label(path: Path) -> str:
    return f"{'/'.join(path)} " if path else ""


def _each_file(check: Callable[[StoredFileRef], Optional[str]]) -> TreeValidator:
    def validate(tree: VariantTree[StoredFileRef]) -> list[str]:
        errors = []
        for path, ref in iter_leaves(tree):
            message = check(ref)
            if message:
                errors.append(f"{_label(path)}{message}".strip())
        return errors

    return validate


def max_size(limit: int, message: Optional[str] = None) -> TreeValidator:
    def check(ref: StoredFileRef) -> Optional[str]:
        if ref.size is not None and ref.size > limit:
            return message or f"is larger than {limit / _MB:g} MB"
        return None

    return _each_file(check)


def min_size(limit: int, message: Optional[str] = None) -> TreeValidator:
    def check(ref: StoredFileRef) -> Optional[str]:
        if ref.size is not None and ref.size < limit:
            return message or f"is smaller than {limit / _MB:g} MB"
        return None

    return _each_file(check)


def mime_type_inclusion(allowed: Iterable[Rule], message: Optional[str] = None) -> TreeValidator:
    """Accept files whose MIME type matches one of ``allowed`` (exact strings or compiled patterns)."""
    rules = list(allowed)
    patterns = [_pattern(rule) for rule in rules]

    def check(ref: StoredFileRef) -> Optional[str]:
        if not any(p.match(ref.mime_type or "") for p in patterns):
            return message or f"isn't of allowed type: {_show(rules)}"
        return None

    return _each_file(check)


def mime_type_exclusion(forbidden: Iterable[Rule], message: Optional[str] = None) -> TreeValidator:
    rules = list(forbidden)
    patterns = [_pattern(rule) for rule in rules]

    def check(ref: StoredFileRef) -> Optional[str]:
        if any(p.match(ref.mime_type or "") for p in patterns):
            return message or f"is of forbidden type: {_show(rules)}"
        return None

    return _each_file(check)


def extension_inclusion(allowed: Iterable[Rule], message: Optional[str] = None) -> TreeValidator:
    rules = list(allowed)
    patterns = [_pattern(rule) for rule in rules]

    def check(ref: StoredFileRef) -> Optional[str]:
        if not any(p.match(ref.extension or "") for p in patterns):
            return message or f"isn't in allowed format: {_show(rules)}"
        return None

    return _each_file(check)


def extension_exclusion(forbidden: Iterable[Rule], message: Optional[str] = None) -> TreeValidator:
    rules = list(forbidden)
    patterns = [_pattern(rule) for rule in rules]

    def check(ref: StoredFileRef) -> Optional[str]:
        if any(p.match(ref.extension or "") for p in patterns):
            return message or f"is in forbidden format: {_show(rules)}"
        return None

    return _each_file(check)


def _show(rules: list[Rule]) -> str:
    return ", ".join(rule.pattern if isinstance(rule, re.Pattern) else rule for rule in rules)
