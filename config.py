"""
Shared configuration for Recipe Dredger.
Settings are loaded from the environment (and an optional .env file); CLI flags override them.
"""

import math
import os
import re
import sys
from dotenv import load_dotenv

# --- LOAD ENV VARS ---
load_dotenv()

# --- PARSERS ---
UNBOUNDED = sys.maxsize


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def parse_results_wanted(raw, default: int = 50) -> int:
    """Positive count; anything non-finite or non-numeric means 'no limit'."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return UNBOUNDED
    if not math.isfinite(value):
        return UNBOUNDED
    return max(1, int(value))


def parse_max_pages(raw, default: int = 10) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return max(1, int(value))


# --- CRAWL TARGET ---
SITE_ROOT = os.getenv('SITE_ROOT', 'https://www.epicurious.com').rstrip('/')
START_URL = os.getenv('START_URL', f'{SITE_ROOT}/recipes-menus/our-favorite-vegetarian-recipes')
RECIPE_TYPE = os.getenv('RECIPE_TYPE', 'vegetarian')
DETAIL_PATH_PATTERN = re.compile(os.getenv('DETAIL_PATH_PATTERN', r'/recipes/food/views/'))

# --- BUDGETS ---
RESULTS_WANTED = parse_results_wanted(os.getenv('RESULTS_WANTED'))
MAX_PAGES = parse_max_pages(os.getenv('MAX_PAGES'))
COLLECT_DETAILS = env_flag('COLLECT_DETAILS', True)
DEDUPE = env_flag('DEDUPE', True)

# --- NETWORK ---
MAX_CONCURRENCY = int(os.getenv('MAX_CONCURRENCY', 5))
REQUEST_TIMEOUT = float(os.getenv('REQUEST_TIMEOUT', 20))
CRAWL_DELAY = float(os.getenv('CRAWL_DELAY', 0.5))
RESPECT_ROBOTS_TXT = env_flag('RESPECT_ROBOTS_TXT', True)
PROXY_URL = os.getenv('PROXY_URL', '').strip() or None

# --- BEHAVIOR ---
DRY_RUN = env_flag('DRY_RUN', False)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
NOTIFICATION_WEBHOOK_URL = os.getenv('NOTIFICATION_WEBHOOK_URL', '').strip()

# --- DATA FILES ---
DATA_DIR = "data"
OUTPUT_FILE = os.getenv('OUTPUT_FILE', f"{DATA_DIR}/recipes.jsonl")
FLUSH_THRESHOLD = int(os.getenv('FLUSH_THRESHOLD', 50))

# --- URL HYGIENE ---
# Query keys that never change which page is served.
TRACKING_PARAMS = {
    'fbclid', 'gclid', 'dclid', 'msclkid', 'mc_cid', 'mc_eid',
    '_ga', '_gl', 'ref', 'cmpid', 'spm', 'intcid',
}
TRACKING_PREFIXES = ('utm_',)
