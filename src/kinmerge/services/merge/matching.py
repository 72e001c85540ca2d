"""Fuzzy-match scoring and canonical selection for duplicate detection.

Name similarity blends three rapidfuzz scorers (token sort, token set and plain
ratio) over normalized names. The pair score is a 0-100 risk score with the
reasons that contributed to it.
"""

from __future__ import annotations

import re

from rapidfuzz import fuzz

from kinmerge.models.entity import Entity, EntityType, is_empty

# Tokens dropped before comparing person names.
NAME_AFFIXES = frozenset({"mr", "mrs", "ms", "miss", "dr", "rev", "jr", "sr", "ii", "iii"})

# Tokens dropped before comparing family names.
FAMILY_WORDS = frozenset({"the", "family", "familie", "famille", "clan", "household"})

NAME_MATCH_THRESHOLD = 85.0


def normalize_name(name: str | None, entity_type: EntityType = EntityType.PERSON) -> str:
    """Lowercase, strip punctuation and drop honorifics or family filler words.

    Args:
        name: Raw display name.
        entity_type: Decides which filler tokens are removed.

    Returns:
        Normalized name, or "" for an empty input.
    """
    if not name:
        return ""

    normalized = re.sub(r"[^\w\s]", " ", name.lower())
    ignored = FAMILY_WORDS if entity_type == EntityType.FAMILY else NAME_AFFIXES
    tokens = [token for token in normalized.split() if token not in ignored]
    return " ".join(tokens)


def name_slug(name: str | None, entity_type: EntityType = EntityType.PERSON) -> str:
    """Hyphenated normalized name used as a blocking key."""
    return normalize_name(name, entity_type).replace(" ", "-")


def display_name(entity: Entity) -> str:
    """Return the name an entity is compared by."""
    if entity.entity_type == EntityType.FAMILY:
        return entity.fields.get("name") or ""

    full_name = entity.fields.get("full_name")
    if not is_empty(full_name):
        return full_name or ""
    parts = [entity.fields.get(name) for name in ("given_name", "middle_name", "surname")]
    return " ".join(part for part in parts if not is_empty(part))


def name_similarity(
    name1: str | None,
    name2: str | None,
    entity_type: EntityType = EntityType.PERSON,
) -> float:
    """Weighted fuzzy similarity of two names, 0-100.

    Token sort and token set ratios tolerate reordering and extra middle names;
    the plain ratio keeps near-identical spellings ahead.
    """
    norm1 = normalize_name(name1, entity_type)
    norm2 = normalize_name(name2, entity_type)
    if not norm1 or not norm2:
        return 0.0

    token_sort = fuzz.token_sort_ratio(norm1, norm2)
    token_set = fuzz.token_set_ratio(norm1, norm2)
    ratio = fuzz.ratio(norm1, norm2)
    return token_sort * 0.4 + token_set * 0.4 + ratio * 0.2


def _same(a: Entity, b: Entity, field: str) -> bool:
    value_a, value_b = a.fields.get(field), b.fields.get(field)
    if is_empty(value_a) or is_empty(value_b):
        return False
    return (value_a or "").strip().lower() == (value_b or "").strip().lower()


def _differ(a: Entity, b: Entity, field: str) -> bool:
    value_a, value_b = a.fields.get(field), b.fields.get(field)
    if is_empty(value_a) or is_empty(value_b):
        return False
    return (value_a or "").strip().lower() != (value_b or "").strip().lower()


def score_pair(a: Entity, b: Entity) -> tuple[int, list[str]]:
    """Compute the risk score that a and b are the same real-world entity.

    Args:
        a: First entity.
        b: Second entity of the same type.

    Returns:
        Tuple of (risk score 0-100, match reasons).
    """
    if a.entity_type != b.entity_type:
        raise ValueError("Cannot score entities of different types")

    entity_type = a.entity_type
    similarity = name_similarity(display_name(a), display_name(b), entity_type)
    reasons: list[str] = []

    if similarity >= 99.5:
        reasons.append("exact_name_match")
    elif similarity >= NAME_MATCH_THRESHOLD:
        reasons.append("name_similarity")

    if entity_type == EntityType.PERSON:
        score = similarity * 0.6
        if _same(a, b, "birth_date"):
            score += 25
            reasons.append("same_birth_date")
        elif _differ(a, b, "birth_date"):
            score -= 30
        if _same(a, b, "birth_place"):
            score += 10
            reasons.append("same_birth_place")
        if _same(a, b, "death_date"):
            score += 10
            reasons.append("same_death_date")
        if a.family_id == b.family_id:
            score += 5
            reasons.append("same_family")
    else:
        score = similarity * 0.8
        if _same(a, b, "locale"):
            score += 10
            reasons.append("same_locale")
        if _same(a, b, "timezone"):
            score += 10
            reasons.append("same_timezone")

    return max(0, min(100, round(score))), reasons


def completeness(entity: Entity) -> int:
    """Number of non-empty mergeable fields."""
    return sum(1 for value in entity.fields.values() if not is_empty(value))


def choose_canonical(a: Entity, b: Entity) -> tuple[Entity, Entity]:
    """Pick which entity survives a merge.

    The more complete record wins; ties go to the older record, then to the
    lower id so the choice is deterministic.

    Returns:
        Tuple of (canonical, duplicate).
    """

    def sort_key(entity: Entity) -> tuple[int, int, str, str]:
        created_at = entity.created_at
        return (
            -completeness(entity),
            0 if created_at else 1,
            created_at or "",
            entity.entity_id,
        )

    canonical, duplicate = sorted((a, b), key=sort_key)
    return canonical, duplicate
