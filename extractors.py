"""
Recipe extraction from fetched pages.

Two independent passes run over the same page: StructuredExtractor reads the
embedded JSON-LD blocks, MarkupExtractor falls back to CSS heuristics over
the rendered HTML. Neither raises on bad input; a miss is an empty field.
"""

import json
import logging
import re
from typing import Iterator, List, Optional

from bs4 import BeautifulSoup

from locators import is_detail_url, normalize, strip_query
from records import Recipe, clean_text, unique

logger = logging.getLogger("dredger.extractors")

MAX_WALK_DEPTH = 10

RECIPE_LINK_SELECTORS = 'a[href*="/recipes/food/views/"], [data-link-type="recipe"] a, .recipe-card a'
NEXT_TEXT_REGEX = re.compile(r'^(next|›|»|>)$', re.IGNORECASE)
PAGE_CHROME = ['nav', 'header', 'footer']


def parse_page(html) -> BeautifulSoup:
    return BeautifulSoup(html or "", 'lxml')


def _has_type(node: dict, wanted: str) -> bool:
    declared = node.get('@type') or node.get('type')
    if isinstance(declared, list):
        return wanted in declared
    return declared == wanted


# --- scalar-or-list-or-object decoders ---

def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first(value):
    for item in _as_list(value):
        if not isinstance(item, (dict, list)) and clean_text(item):
            return item
    return None


def _texts(value) -> tuple:
    return unique(clean_text(item) for item in _as_list(value) if not isinstance(item, (dict, list)))


def _pick_image(value, depth: int = 0) -> Optional[str]:
    if value is None or depth > MAX_WALK_DEPTH:
        return None
    if isinstance(value, str):
        return clean_text(value)
    if isinstance(value, list):
        for item in value:
            candidate = _pick_image(item, depth + 1)
            if candidate:
                return candidate
        return None
    if isinstance(value, dict):
        return _pick_image(value.get('url') or value.get('@id'), depth + 1)
    return None


def _walk_steps(node, steps: List[str], depth: int = 0):
    if node is None or depth > MAX_WALK_DEPTH:
        return
    if isinstance(node, list):
        for child in node:
            _walk_steps(child, steps, depth + 1)
    elif isinstance(node, str):
        text = clean_text(node)
        if text:
            steps.append(text)
    elif isinstance(node, dict):
        text = clean_text(node.get('text') or node.get('description'))
        if text:
            steps.append(text)
        if node.get('itemListElement'):
            _walk_steps(node['itemListElement'], steps, depth + 1)


def collect_instruction_lines(instructions) -> tuple:
    steps: List[str] = []
    _walk_steps(instructions, steps)
    return unique(steps)


def _author_name(author) -> Optional[str]:
    names = []
    for entry in _as_list(author):
        if isinstance(entry, dict):
            entry = entry.get('name')
        text = clean_text(entry)
        if text:
            names.append(text)
    return ", ".join(names) or None


def _first_present(node: dict, *keys):
    for key in keys:
        if node.get(key) is not None:
            return node[key]
    return None


def _keywords(value) -> tuple:
    if isinstance(value, str):
        value = value.split(',')
    return _texts(value)


class StructuredExtractor:
    """Reads schema.org JSON-LD blocks (ItemList on listings, Recipe on detail pages)."""

    def json_ld_nodes(self, soup: BeautifulSoup) -> List[dict]:
        nodes: List[dict] = []
        for script in soup.find_all('script', attrs={'type': 'application/ld+json'}):
            raw = script.string or script.get_text()
            if not raw or not raw.strip():
                continue
            try:
                data = json.loads(raw)
            except (ValueError, RecursionError) as e:
                logger.debug(f"Skipping malformed JSON-LD block: {e}")
                continue
            if isinstance(data, list):
                nodes.extend(data)
            elif isinstance(data, dict) and data.get('@graph'):
                nodes.extend(_as_list(data['@graph']))
            else:
                nodes.append(data)
        return [node for node in nodes if isinstance(node, dict)]

    def _nodes_of_type(self, soup: BeautifulSoup, wanted: str) -> Iterator[dict]:
        for node in self.json_ld_nodes(soup):
            if _has_type(node, wanted):
                yield node

    def extract_list(self, soup: BeautifulSoup, base: str) -> List[str]:
        urls = []
        for node in self._nodes_of_type(soup, 'ItemList'):
            for entry in _as_list(node.get('itemListElement')):
                if isinstance(entry, str):
                    raw = entry
                elif isinstance(entry, dict):
                    item = entry.get('item')
                    raw = entry.get('url') or (item.get('url') if isinstance(item, dict) else item)
                else:
                    continue
                url = normalize(raw, base)
                if url and is_detail_url(url):
                    urls.append(strip_query(url))
        return list(unique(urls))

    def extract_detail(self, soup: BeautifulSoup) -> Optional[Recipe]:
        node = next(self._nodes_of_type(soup, 'Recipe'), None)
        if node is None:
            return None

        cuisines = _texts(node.get('recipeCuisine'))
        categories = _texts(node.get('recipeCategory'))
        rating = node.get('aggregateRating')
        if not isinstance(rating, dict):
            rating = {}

        return Recipe(
            title=clean_text(_first(node.get('name'))),
            author=_author_name(node.get('author')),
            description=clean_text(_first(node.get('description'))),
            prep_time=clean_text(_first(node.get('prepTime'))),
            cook_time=clean_text(_first(node.get('cookTime'))),
            total_time=clean_text(_first(node.get('totalTime'))),
            servings=clean_text(_first(node.get('recipeYield'))),
            ingredients=_texts(node.get('recipeIngredient') or node.get('ingredients')),
            instructions=collect_instruction_lines(node.get('recipeInstructions')),
            tags=cuisines + categories + _keywords(node.get('keywords')),
            image_url=_pick_image(node.get('image')),
            cuisine=cuisines[0] if cuisines else None,
            category=categories[0] if categories else None,
            date_published=clean_text(_first(node.get('datePublished'))),
            rating_value=rating.get('ratingValue'),
            rating_count=_first_present(rating, 'ratingCount', 'reviewCount'),
            rating_best=rating.get('bestRating'),
            rating_worst=rating.get('worstRating'),
            nutrition=node.get('nutrition') or None,
        )


class MarkupExtractor:
    """Low-confidence fallback: ordered CSS heuristics over the rendered markup."""

    TITLE = ('h1', '[data-testid*="hed"], [class*="headline"]')
    AUTHOR = ('[rel="author"]', '[class*="byline"] a, [class*="contributor"]')
    DESCRIPTION = ('[data-testid*="dek"], [class*="description"], [class*="subheading"]',)
    SERVINGS = ('[data-testid*="servings"], [class*="yield"], [class*="servings"]',)
    PREP_TIME = ('time[itemprop="prepTime"]', '[data-testid*="prep-time"], [class*="prep-time"]')
    COOK_TIME = ('time[itemprop="cookTime"]', '[data-testid*="cook-time"], [class*="cook-time"]')
    TOTAL_TIME = ('time[itemprop="totalTime"]', '[data-testid*="total-time"], [class*="total-time"]')
    INGREDIENTS = ('li[data-testid*="ingredient"]', 'li[class*="ingredient"]', '.ingredient', '.ingredient-group li')
    INSTRUCTIONS = ('li[data-testid*="instruction"]', '[class*="instruction"] li', '[class*="instruction"]',
                    '.preparation-steps li', '.step', '.direction', 'ol li')
    TAGS = ('[data-testid*="tag"]', 'a[href*="tags/"]')
    IMAGES = ('img[data-testid*="image"], img[class*="recipe"]',)

    def _first_text(self, soup: BeautifulSoup, selectors) -> Optional[str]:
        for selector in selectors:
            element = soup.select_one(selector)
            text = clean_text(element.get_text(" ")) if element else None
            if text:
                return text
        return None

    def _all_texts(self, soup: BeautifulSoup, selectors) -> tuple:
        """First heuristic with any text wins; chrome and wrapping containers are skipped."""
        for selector in selectors:
            matches = [el for el in soup.select(selector) if not el.find_parent(PAGE_CHROME)]
            wrappers = {id(parent) for el in matches for parent in el.parents}
            leaves = [el for el in matches if id(el) not in wrappers]
            texts = unique(clean_text(el.get_text(" ")) for el in leaves)
            if texts:
                return texts
        return ()

    def _meta(self, soup: BeautifulSoup, selector: str) -> Optional[str]:
        element = soup.select_one(selector)
        return clean_text(element.get('content')) if element else None

    def _image(self, soup: BeautifulSoup) -> Optional[str]:
        image = self._meta(soup, 'meta[property="og:image"]')
        if image:
            return image
        for selector in self.IMAGES:
            for element in soup.select(selector):
                src = clean_text(element.get('src') or element.get('data-src'))
                if src:
                    return src
        return None

    def extract_detail(self, soup: BeautifulSoup) -> Recipe:
        return Recipe(
            title=self._first_text(soup, self.TITLE),
            author=self._first_text(soup, self.AUTHOR),
            description=(self._first_text(soup, self.DESCRIPTION)
                         or self._meta(soup, 'meta[name="description"]')),
            servings=(self._first_text(soup, self.SERVINGS)
                      or self._meta(soup, 'meta[itemprop="recipeYield"]')),
            prep_time=self._first_text(soup, self.PREP_TIME),
            cook_time=self._first_text(soup, self.COOK_TIME),
            total_time=self._first_text(soup, self.TOTAL_TIME),
            ingredients=self._all_texts(soup, self.INGREDIENTS),
            instructions=self._all_texts(soup, self.INSTRUCTIONS),
            image_url=self._image(soup),
            tags=self._all_texts(soup, self.TAGS),
        )

    def extract_list(self, soup: BeautifulSoup, base: str) -> List[str]:
        urls = []
        for anchor in soup.select(RECIPE_LINK_SELECTORS):
            url = normalize(anchor.get('href'), base)
            if url and is_detail_url(url):
                urls.append(strip_query(url))
        return list(unique(urls))

    def find_next_page(self, soup: BeautifulSoup, base: str) -> Optional[str]:
        """rel=next first, then next-labeled controls, then a bare 'next'/'>' anchor."""
        candidates = soup.select('a[rel~="next"][href], link[rel~="next"][href]')
        candidates += soup.select('a[aria-label*="next" i][href], a[data-testid*="next" i][href]')
        for button in soup.select('button[aria-label*="next" i]'):
            wrapper = button.find_parent('a', href=True)
            if wrapper:
                candidates.append(wrapper)
        candidates += [anchor for anchor in soup.find_all('a', href=True)
                       if NEXT_TEXT_REGEX.match(anchor.get_text(strip=True))]

        # An href that does not resolve (javascript:, mailto:) falls through to the next heuristic.
        for element in candidates:
            url = normalize(element.get('href'), base)
            if url:
                return url
        return None
