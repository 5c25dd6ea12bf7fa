"""Stat category definitions.

A category is a named filter over beatmap attributes (mode, status,
convert flag, mania key count). Every completion statistic is computed per
category, and stored rows reference categories by their string id, so the
set of definitions must be regenerated identically on every start.

The definitions are built once at import time by :func:`generate_definitions`
and exposed as the immutable :data:`DEFINITIONS` tuple.

Example:
    >>> from osu_complete.categories import compile_category, matches
    >>> predicates = compile_category("mania-ranked-4k")
    >>> row = {"mode": "mania", "status": "ranked", "is_convert": 0, "cs": 4}
    >>> matches(row, get_definition("mania-ranked-4k"))
    True
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from osu_complete.exceptions import InvalidCategory

# =============================================================================
# Constants
# =============================================================================

MODES = ("global", "osu", "taiko", "catch", "mania")

# Category mode name -> beatmap mode key stored on rows
MODE_KEYS = {"osu": "osu", "taiko": "taiko", "catch": "fruits", "mania": "mania"}

MODE_NAMES = {
    "global": "Global",
    "osu": "osu!standard",
    "taiko": "osu!taiko",
    "catch": "osu!catch",
    "mania": "osu!mania",
}

RANKED_STATUSES = ("ranked", "approved")
LEADERBOARD_STATUSES = ("ranked", "approved", "loved")

MANIA_KEY_COUNTS = (4, 7)

# Short and legacy ids still found in links and old rows
ALIASES = {
    "all": "global-ranked",
    "global": "global-ranked",
    "osu": "osu-ranked",
    "taiko": "taiko-ranked",
    "catch": "catch-ranked",
    "fruits": "catch-ranked",
    "mania": "mania-ranked",
}

Operator = Literal["equals", "in", "not_in", "between"]


# =============================================================================
# Definition types
# =============================================================================


@dataclass(frozen=True)
class Predicate:
    """A single attribute test.

    Attributes:
        field: Row attribute to test.
        op: One of ``equals``, ``in``, ``not_in``, ``between``.
        value: Scalar for ``equals``, tuple for ``in``/``not_in``,
            ``(low, high)`` inclusive for ``between``.
    """

    field: str
    op: Operator
    value: Any

    def test(self, row_value: Any) -> bool:
        """Return whether a row value satisfies this predicate."""
        if self.op == "equals":
            return row_value == self.value
        if self.op == "in":
            return row_value in self.value
        if self.op == "not_in":
            return row_value not in self.value
        if self.op == "between":
            if row_value is None:
                return False
            low, high = self.value
            return low <= row_value <= high
        raise ValueError(f"Unknown predicate operator: {self.op}")


@dataclass(frozen=True)
class CategoryDefinition:
    """A stat category.

    Attributes:
        id: Stable string id, e.g. ``"taiko-ranked-loved-converts"``.
        mode: Category mode (``global``, ``osu``, ``taiko``, ``catch``, ``mania``).
        includes_loved: Whether loved beatmaps count.
        includes_converts: Whether converted beatmaps count.
        key_count: Mania key filter: 4, 7, ``"other"`` or None.
        predicates: Ordered predicates applied with AND semantics.
    """

    id: str
    mode: str
    includes_loved: bool
    includes_converts: bool
    key_count: int | str | None
    predicates: tuple[Predicate, ...]


# =============================================================================
# Generation
# =============================================================================


def generate_definitions() -> tuple[CategoryDefinition, ...]:
    """Enumerate every stat category.

    Cross product of mode x loved inclusion x convert inclusion, without the
    converts toggle for osu!standard (it has no converts), plus 4K, 7K and
    "other keys" variants of every mania category.

    Returns:
        Tuple of definitions in a fixed order.
    """
    definitions: list[CategoryDefinition] = []

    for mode in MODES:
        for include_loved in (False, True):
            for include_converts in (False, True):
                if mode == "osu" and include_converts:
                    continue

                id_parts = [mode, "ranked"]
                if include_loved:
                    id_parts.append("loved")
                if include_converts:
                    id_parts.append("converts")
                category_id = "-".join(id_parts)

                predicates: list[Predicate] = []
                if mode != "global":
                    predicates.append(Predicate("mode", "equals", MODE_KEYS[mode]))
                statuses = LEADERBOARD_STATUSES if include_loved else RANKED_STATUSES
                predicates.append(Predicate("status", "in", statuses))
                if not include_converts:
                    predicates.append(Predicate("is_convert", "equals", 0))

                definitions.append(
                    CategoryDefinition(
                        id=category_id,
                        mode=mode,
                        includes_loved=include_loved,
                        includes_converts=include_converts,
                        key_count=None,
                        predicates=tuple(predicates),
                    )
                )

                if mode != "mania":
                    continue

                for key_count in MANIA_KEY_COUNTS:
                    definitions.append(
                        CategoryDefinition(
                            id=f"{category_id}-{key_count}k",
                            mode=mode,
                            includes_loved=include_loved,
                            includes_converts=include_converts,
                            key_count=key_count,
                            predicates=(
                                *predicates,
                                Predicate("cs", "equals", key_count),
                            ),
                        )
                    )
                definitions.append(
                    CategoryDefinition(
                        id=f"{category_id}-otherkeys",
                        mode=mode,
                        includes_loved=include_loved,
                        includes_converts=include_converts,
                        key_count="other",
                        predicates=(
                            *predicates,
                            Predicate("cs", "not_in", MANIA_KEY_COUNTS),
                        ),
                    )
                )

    return tuple(definitions)


DEFINITIONS: tuple[CategoryDefinition, ...] = generate_definitions()
_BY_ID: Mapping[str, CategoryDefinition] = {d.id: d for d in DEFINITIONS}
CATEGORY_IDS: tuple[str, ...] = tuple(_BY_ID)


# =============================================================================
# Lookup and matching
# =============================================================================


def get_definition(category_id: str) -> CategoryDefinition:
    """Return the definition for an id.

    Raises:
        InvalidCategory: If the id is not a generated category.
    """
    try:
        return _BY_ID[category_id]
    except KeyError:
        raise InvalidCategory(category_id) from None


def compile_category(category_id: str) -> tuple[Predicate, ...]:
    """Compile a category id into its predicate list.

    Args:
        category_id: Category id.

    Returns:
        Ordered tuple of predicates.

    Raises:
        InvalidCategory: If the id is not a generated category.
    """
    return get_definition(category_id).predicates


def matches(row: Mapping[str, Any], definition: CategoryDefinition) -> bool:
    """Test a beatmap row against every predicate of a definition."""
    for predicate in definition.predicates:
        if not predicate.test(row.get(predicate.field)):
            return False
    return True


def validate_category_id(category_id: str | None) -> str | None:
    """Normalise a user supplied category id.

    Lower-cases the id and resolves short aliases such as ``"mania"``.

    Returns:
        A valid category id, or None if it can't be resolved.
    """
    result = (category_id or "").strip().lower()
    result = ALIASES.get(result, result)
    return result if result in _BY_ID else None


def category_name(category_id: str) -> str:
    """Human readable label, e.g. ``"osu!mania 4K (ranked and loved, including converts)"``."""
    definition = get_definition(category_id)
    name = MODE_NAMES[definition.mode]
    if definition.key_count == "other":
        name += " other keys"
    elif definition.key_count is not None:
        name += f" {definition.key_count}K"
    name += " (ranked and loved" if definition.includes_loved else " (ranked only"
    if definition.mode != "osu":
        name += ", including converts" if definition.includes_converts else ", no converts"
    return name + ")"
