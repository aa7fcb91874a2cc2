from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

MAX_GENRES = 3

PRIMARY_GENRES: Tuple[str, ...] = (
    "Philosophy",
    "Religion",
    "Theology",
    "Sacred Texts",
    "History",
    "Biography",
    "Science",
    "Mathematics",
    "Medicine",
    "Law",
    "Politics",
    "Economics",
    "Literature",
    "Poetry",
    "Drama",
    "Mythology",
    "Military & Strategy",
    "Education",
    "Linguistics",
    "Ethics",
    "Anthropology",
    "Sociology",
    "Psychology",
    "Geography",
    "Astronomy",
    "Alchemy & Esoterica",
    "Art & Architecture",
)

SUB_GENRES: Tuple[str, ...] = (
    "Ancient",
    "Medieval",
    "Classical",
    "Early Modern",
    "Commentary",
    "Translation",
    "Manuscript",
    "Legal Code",
    "Canonical Text",
)

_PRIMARY_BY_KEY: Dict[str, str] = {g.lower(): g for g in PRIMARY_GENRES}
_SUB_BY_KEY: Dict[str, str] = {g.lower(): g for g in SUB_GENRES}


def validate_genre(genre: object) -> Optional[str]:
    """Canonical spelling of a primary genre, or None when outside the taxonomy."""
    if not isinstance(genre, str):
        return None
    return _PRIMARY_BY_KEY.get(genre.strip().lower())


def validate_genres(genres: Iterable[object]) -> Tuple[str, ...]:
    out: List[str] = []
    for g in genres or ():
        valid = validate_genre(g)
        if valid and valid not in out:
            out.append(valid)
            if len(out) >= MAX_GENRES:
                break
    return tuple(out)


def validate_subgenre(subgenre: object) -> Optional[str]:
    if not isinstance(subgenre, str):
        return None
    return _SUB_BY_KEY.get(subgenre.strip().lower())
