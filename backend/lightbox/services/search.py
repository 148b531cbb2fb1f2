import logging
import operator
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import String, cast, func, or_
from sqlmodel import Session, select

from lightbox.core.errors import InputInvalid
from lightbox.models.image import Image

logger = logging.getLogger(__name__)

# Aliases map onto the key they filter on
FILTER_KEYS = {
    "rating": "rating",
    "iso": "iso",
    "make": "make",
    "model": "model",
    "f": "f_number",
    "aperture": "f_number",
    "f_number": "f_number",
    "orientation": "orientation",
    "ext": "ext",
    "type": "ext",
    "is": "is",
    "owner": "owner",
}

_OPERATORS = {
    "=": operator.eq,
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
}
_COMPARISON = re.compile(r"^(<=|>=|<|>|=)?(.*)$")


@dataclass
class SearchCriteria:
    text: List[str] = field(default_factory=list)
    filters: Dict[str, str] = field(default_factory=dict)


def parse_query(raw: Optional[str]) -> SearchCriteria:
    """Split ``q`` into free-text terms and ``key:value`` filters.

    Quoted phrases stay one term. Unknown keys are treated as text, so a
    term such as ``12:30`` still matches literally. A repeated key keeps its
    last value.
    """
    criteria = SearchCriteria()
    try:
        tokens = shlex.split(raw or "")
    except ValueError as exc:
        raise InputInvalid(f"Invalid search query: {exc}") from exc

    for token in tokens:
        key, sep, value = token.partition(":")
        name = FILTER_KEYS.get(key.lower()) if sep else None
        if name and value:
            criteria.filters[name] = value
        elif token.strip():
            criteria.text.append(token)
    return criteria


def parse_comparison(value: str) -> Tuple[str, str]:
    """``">=4"`` -> ``(">=", "4")``; a bare value compares with ``=``."""
    match = _COMPARISON.match(value)
    return match.group(1) or "=", match.group(2)


def _text_clause(term: str):
    like = f"%{term.lower()}%"
    return or_(
        func.lower(Image.name).like(like),
        func.lower(func.coalesce(Image.description, "")).like(like),
        func.lower(func.coalesce(Image.image_metadata["keywords"].as_string(), "")).like(like),
        func.lower(func.coalesce(cast(Image.exif, String), "")).like(like),
    )


def apply_criteria(query, criteria: SearchCriteria):
    # Every text term has to match somewhere
    for term in criteria.text:
        query = query.where(_text_clause(term))

    filters = criteria.filters
    if "rating" in filters:
        op, number = parse_comparison(filters["rating"])
        try:
            rating = int(number)
        except ValueError:
            raise InputInvalid(f"rating filter needs a number, got {filters['rating']!r}")
        query = query.where(_OPERATORS[op](Image.image_metadata["rating"].as_integer(), rating))

    if "iso" in filters:
        query = query.where(Image.exif["iso"].as_string() == filters["iso"])
    for key in ("make", "model", "f_number"):
        if key in filters:
            query = query.where(func.lower(Image.exif[key].as_string()) == filters[key].lower())

    if "orientation" in filters:
        orientation = filters["orientation"].lower()
        if orientation == "landscape":
            query = query.where(Image.width > Image.height)
        elif orientation == "portrait":
            query = query.where(Image.height > Image.width)
        elif orientation == "square":
            query = query.where(Image.width == Image.height)
        else:
            raise InputInvalid("orientation must be landscape, portrait or square")

    if "ext" in filters:
        ext = filters["ext"].lower().lstrip(".")
        if ext == "jpeg":
            ext = "jpg"
        query = query.where(Image.image_metadata["file_type"].as_string() == ext)

    if "is" in filters:
        state = filters["is"].lower()
        if state not in ("private", "public"):
            raise InputInvalid("is must be private or public")
        query = query.where(Image.private == (state == "private"))

    if "owner" in filters:
        query = query.where(Image.owner_uid == filters["owner"])
    return query


def search_images(
    session: Session,
    raw: Optional[str],
    page: int = 1,
    limit: int = 50,
    *,
    viewer_uid: Optional[str] = None,
    is_admin: bool = False,
) -> Tuple[List[Image], int]:
    """Live images matching ``raw``, newest first, within what the viewer may see."""
    if page < 1 or limit < 1:
        raise InputInvalid("page and limit must be positive")
    criteria = parse_query(raw)

    query = apply_criteria(select(Image).where(Image.deleted_at.is_(None)), criteria)
    if not is_admin:
        query = query.where(or_(Image.private == False, Image.owner_uid == viewer_uid))  # noqa: E712

    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    items = session.exec(
        query.order_by(Image.created_at.desc(), Image.uid).offset((page - 1) * limit).limit(limit)
    ).all()
    logger.debug(
        "Search finished",
        extra={"terms": len(criteria.text), "filters": sorted(criteria.filters), "total": total},
    )
    return list(items), total
