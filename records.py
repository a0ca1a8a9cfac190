"""
Recipe records: the sparse result of one extractor pass, the field-level
merge that combines them, and the flat item handed to the dataset.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Tuple

from locators import FALLBACK_TITLE, site_name, slug_title

SCALAR_FIELDS = (
    'title', 'author', 'description',
    'prep_time', 'cook_time', 'total_time', 'servings',
    'image_url', 'cuisine', 'category', 'date_published',
    'rating_value', 'rating_count', 'rating_best', 'rating_worst',
    'nutrition',
)
LIST_FIELDS = ('ingredients', 'instructions', 'tags')

INSTRUCTION_SEPARATOR = " | "


def clean_text(value) -> Optional[str]:
    """Collapse whitespace; empty results count as absent."""
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def unique(items: Iterable) -> Tuple:
    """Drop empties and duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for item in items:
        if item is None or item == "" or item in seen:
            continue
        seen.add(item)
        result.append(item)
    return tuple(result)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class Recipe:
    """Partial or merged recipe data. List fields are ordered, duplicate-free tuples."""
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    prep_time: Optional[str] = None
    cook_time: Optional[str] = None
    total_time: Optional[str] = None
    servings: Optional[str] = None
    image_url: Optional[str] = None
    cuisine: Optional[str] = None
    category: Optional[str] = None
    date_published: Optional[str] = None
    rating_value: Any = None
    rating_count: Any = None
    rating_best: Any = None
    rating_worst: Any = None
    nutrition: Any = None
    ingredients: Tuple[str, ...] = ()
    instructions: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    def __post_init__(self):
        for name in LIST_FIELDS:
            object.__setattr__(self, name, unique(getattr(self, name) or ()))

    def is_core_complete(self) -> bool:
        return bool(self.title and self.ingredients and self.instructions)

    def is_blank(self) -> bool:
        return all(is_empty(getattr(self, f.name)) for f in fields(self))

    def to_item(self, url: str, recipe_type: str, scraped_at: Optional[datetime] = None) -> dict:
        """Flatten into the emitted dataset item, filling the title from the URL if needed."""
        title = self.title or slug_title(url) or FALLBACK_TITLE
        scraped_at = scraped_at or datetime.now(timezone.utc)
        return {
            'title': title,
            'author': self.author,
            'description': self.description,
            'recipe_type': recipe_type,
            'ingredients': list(self.ingredients),
            'ingredients_count': len(self.ingredients),
            'instructions': list(self.instructions),
            'instructions_text': INSTRUCTION_SEPARATOR.join(self.instructions) or None,
            'prep_time': self.prep_time,
            'cook_time': self.cook_time,
            'total_time': self.total_time,
            'servings': self.servings,
            'cuisine': self.cuisine,
            'category': self.category,
            'tags': list(self.tags),
            'image_url': self.image_url,
            'date_published': self.date_published,
            'rating_value': self.rating_value,
            'rating_count': self.rating_count,
            'rating_best': self.rating_best,
            'rating_worst': self.rating_worst,
            'nutrition': self.nutrition,
            'url': url,
            'scraped_at': scraped_at.isoformat(),
            '_source': site_name(url),
        }


EMPTY_RECIPE = Recipe()


def merge(base: Optional[Recipe], extra: Optional[Recipe]) -> Recipe:
    """
    Combine two records. Scalars: the first present value wins, so merge in
    priority order (structured data first). Lists: union, base order first.
    """
    base = base or EMPTY_RECIPE
    if extra is None:
        return base
    changes = {}
    for name in SCALAR_FIELDS:
        if is_empty(getattr(base, name)) and not is_empty(getattr(extra, name)):
            changes[name] = getattr(extra, name)
    for name in LIST_FIELDS:
        ours = getattr(base, name)
        theirs = getattr(extra, name)
        if any(item not in ours for item in theirs):
            changes[name] = ours + theirs
    return replace(base, **changes) if changes else base
