"""
Recipe Dredger - Listing/Detail Edition
Crawls a recipe site's listing pages, follows each recipe link and emits one merged record per recipe.
Usage: python3 dredger.py [--start-url URL] [--limit 50] [--max-pages 10] [--no-details] [--dry-run] [--version]
"""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from tqdm import tqdm
import json
import time
import os
import random
import logging
import sys
import argparse
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from urllib.parse import urlparse
from typing import Callable, Dict, List, Optional, Union
from dataclasses import dataclass
from datetime import datetime, timezone

import config
from extractors import MarkupExtractor, StructuredExtractor, parse_page
from frontier import CrawlBudget, Frontier
from locators import alternates_for, normalize
from records import EMPTY_RECIPE, Recipe, merge

# --- CONSTANTS ---
VERSION = "2.0.0"

logger = logging.getLogger("dredger")

# --- TUNING CONSTANTS ---
ROBOTS_TXT_TIMEOUT = 5
NOTIFY_TIMEOUT = 5
REQUEST_RETRIES = 3


def configure_logging(level: str = config.LOG_LEVEL):
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[logging.StreamHandler(sys.stdout)]
    )

# ============================================================================
# DATA MODELS
# ============================================================================

class CrawlStartupError(RuntimeError):
    """The first listing page could not be fetched; nothing to crawl."""


@dataclass
class FetchResult:
    status_code: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400 and bool(self.body)


@dataclass(frozen=True)
class ListingTask:
    url: str
    page_no: int = 1


@dataclass(frozen=True)
class DetailTask:
    url: str


Task = Union[ListingTask, DetailTask]
Fetch = Callable[..., FetchResult]
Emit = Callable[[dict], None]


@dataclass
class CrawlStats:
    emitted: int = 0
    pages_visited: int = 0
    details_fetched: int = 0
    incomplete: int = 0
    alternate_fetches: int = 0
    failures: int = 0
    stopped: bool = False

# ============================================================================
# DATASET (EMIT SINK)
# ============================================================================

class RecipeDataset:
    """Append-only JSON Lines sink. Buffers items and flushes every `flush_threshold` records."""

    def __init__(self, path: str = config.OUTPUT_FILE, dry_run: bool = False,
                 flush_threshold: int = config.FLUSH_THRESHOLD):
        self.path = path
        self.dry_run = dry_run
        self.count = 0
        self._buffer: List[dict] = []
        self._flush_threshold = max(1, flush_threshold)
        self._lock = threading.Lock()

    def __call__(self, item: dict):
        with self._lock:
            self.count += 1
            if self.dry_run:
                logger.info(f"   [DRY RUN] Would save: {item.get('title')} ({item.get('url')})")
                return
            self._buffer.append(item)
            if len(self._buffer) >= self._flush_threshold:
                self._flush_locked()

    def _flush_locked(self):
        if not self._buffer:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            for item in self._buffer:
                f.write(json.dumps(item, ensure_ascii=False) + "\n")
        self._buffer = []

    def flush(self):
        with self._lock:
            self._flush_locked()

# ============================================================================
# GRACEFUL KILLER
# ============================================================================

class GracefulKiller:
    """Catches Docker stop signals so the crawl can wind down and flush."""
    def __init__(self):
        self.kill_now = False
        signal.signal(signal.SIGINT, self.exit_gracefully)
        signal.signal(signal.SIGTERM, self.exit_gracefully)

    def exit_gracefully(self, signum, frame):
        signal_name = 'SIGINT (Ctrl+C)' if signum == signal.SIGINT else 'SIGTERM (Docker Stop)'
        logger.info(f"🛑 Received {signal_name}. Finishing in-flight pages and stopping...")
        self.kill_now = True

# ============================================================================
# RATE LIMITER (per domain, shared by all workers)
# ============================================================================

class RateLimiter:
    def __init__(self, session: requests.Session, default_delay: float = config.CRAWL_DELAY,
                 respect_robots: bool = config.RESPECT_ROBOTS_TXT):
        self.session = session
        self.default_delay = default_delay
        self.respect_robots = respect_robots
        self.next_slot: Dict[str, float] = {}
        self.crawl_delays: Dict[str, float] = {}
        self._domain_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def get_domain(self, url: str) -> str:
        return urlparse(url).netloc

    def _robots_delay(self, url: str) -> Optional[float]:
        parsed = urlparse(url)
        scheme = parsed.scheme or "https"
        try:
            r = self.session.get(f"{scheme}://{parsed.netloc}/robots.txt", timeout=ROBOTS_TXT_TIMEOUT)
            if r.status_code == 200:
                for line in r.text.splitlines():
                    if line.lower().startswith('crawl-delay:'):
                        try:
                            return float(line.split(':', 1)[1].strip())
                        except ValueError:
                            pass
        except requests.RequestException as e:
            logger.debug(f"robots.txt fetch failed for {parsed.netloc}: {e}")
        return None

    def get_crawl_delay(self, url: str) -> float:
        domain = self.get_domain(url)
        with self._lock:
            domain_lock = self._domain_locks.setdefault(domain, threading.Lock())

        # One robots.txt lookup per domain; other workers wait for its answer.
        with domain_lock:
            if domain in self.crawl_delays:
                return self.crawl_delays[domain]

            delay = self.default_delay
            if self.respect_robots:
                robots_delay = self._robots_delay(url)
                if robots_delay is not None:
                    delay = robots_delay
            self.crawl_delays[domain] = delay
            return delay

    def wait_if_needed(self, url: str):
        domain = self.get_domain(url)
        delay = self.get_crawl_delay(url)
        if delay <= 0:
            return

        # Reserve a slot under the lock, sleep outside it so other domains keep moving.
        with self._lock:
            now = time.monotonic()
            # Jitter (0.5x to 1.5x) to mimic human variance
            slot = max(now, self.next_slot.get(domain, now))
            self.next_slot[domain] = slot + delay * random.uniform(0.5, 1.5)
        if slot > now:
            time.sleep(slot - now)

# ============================================================================
# SESSION MANAGEMENT / FETCH
# ============================================================================

def build_headers() -> dict:
    return {
        'User-Agent': ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                       f'(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 RecipeDredger/{VERSION}'),
        'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
        'Accept-Language': 'en-US,en;q=0.9',
        'Upgrade-Insecure-Requests': '1',
        'Cache-Control': 'no-cache',
    }


def get_session(pool_size: int = config.MAX_CONCURRENCY) -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=REQUEST_RETRIES,
        backoff_factor=1,
        status_forcelist=[500, 502, 503, 504, 429],
        allowed_methods=["HEAD", "GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries, pool_maxsize=max(10, pool_size))
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    session.headers.update(build_headers())
    return session


class HttpFetcher:
    """fetch(url, headers, proxy) -> FetchResult. Bad statuses are returned, not raised."""

    def __init__(self, session: Optional[requests.Session] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 timeout: float = config.REQUEST_TIMEOUT):
        self.session = session or get_session()
        self.rate_limiter = rate_limiter or RateLimiter(self.session)
        self.timeout = timeout

    def __call__(self, url: str, headers: Optional[dict] = None, proxy: Optional[str] = None) -> FetchResult:
        self.rate_limiter.wait_if_needed(url)
        proxies = {'http': proxy, 'https': proxy} if proxy else None
        r = self.session.get(url, headers=headers, proxies=proxies, timeout=self.timeout)
        return FetchResult(status_code=r.status_code, body=r.text)

# ============================================================================
# CRAWL ORCHESTRATOR
# ============================================================================

class CrawlOrchestrator:
    """
    Two-phase crawl: listing pages discover recipe links and the next page,
    detail pages are scraped, merged and retried on alternate endpoints.
    Listing and detail tasks share one bounded worker pool.
    """

    def __init__(self, fetch: Fetch, emit: Emit, budget: CrawlBudget,
                 start_url: str = config.START_URL,
                 recipe_type: str = config.RECIPE_TYPE,
                 max_workers: int = config.MAX_CONCURRENCY,
                 proxy: Optional[str] = config.PROXY_URL,
                 should_stop: Optional[Callable[[], bool]] = None):
        self.fetch = fetch
        self.emit = emit
        self.budget = budget
        self.frontier = Frontier(budget)
        self.start_url = normalize(start_url) or start_url
        self.recipe_type = recipe_type
        self.max_workers = max(1, max_workers)
        self.proxy = proxy
        self.should_stop = should_stop or (lambda: False)
        self.structured = StructuredExtractor()
        self.markup = MarkupExtractor()
        self.stats = CrawlStats()
        self._stats_lock = threading.Lock()

    def _count(self, field: str, amount: int = 1):
        with self._stats_lock:
            setattr(self.stats, field, getattr(self.stats, field) + amount)

    def is_done(self) -> bool:
        return self.frontier.remaining_budget() <= 0 or self.should_stop()

    # --- main loop ---

    def run(self) -> CrawlStats:
        self.frontier.admit(self.start_url)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            pending = {executor.submit(self.process, ListingTask(self.start_url, 1))}
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    if future.cancelled():
                        continue
                    follow_ups = future.result()
                    if self.is_done():
                        continue
                    for task in follow_ups:
                        pending.add(executor.submit(self.process, task))

                if self.is_done():
                    # In-flight work finishes on its own; queued work is dropped.
                    pending = {f for f in pending if not f.cancel()}

        self.stats.emitted = self.frontier.emitted
        self.stats.pages_visited = self.frontier.pages_visited
        self.stats.stopped = self.should_stop()
        logger.info(f"Crawl finished: {self.stats.emitted} recipes from {self.stats.pages_visited} listing pages")
        return self.stats

    def process(self, task: Task) -> List[Task]:
        if isinstance(task, ListingTask):
            return self.process_listing(task)
        self.process_detail(task)
        return []

    # --- fetch helpers ---

    def _get(self, url: str) -> Optional[FetchResult]:
        """One fetch attempt. Transport errors and bad statuses both come back as None."""
        try:
            result = self.fetch(url, headers=build_headers(), proxy=self.proxy)
        except Exception as e:
            logger.warning(f"   Fetch failed for {url}: {e}")
            return None
        if result is None or not result.ok:
            status = result.status_code if result is not None else 'no response'
            logger.debug(f"   Unusable response for {url}: HTTP {status}")
            return None
        return result

    def _scrape(self, url: str) -> Optional[Recipe]:
        """Fetch one page and run both extractors, structured data first."""
        result = self._get(url)
        if result is None:
            return None
        try:
            soup = parse_page(result.body)
            return merge(self.structured.extract_detail(soup), self.markup.extract_detail(soup))
        except Exception as e:
            logger.warning(f"   Parse failed for {url}: {e}")
            return None

    # --- listing phase ---

    def discover_links(self, soup, base: str) -> List[str]:
        combined = []
        for url in self.structured.extract_list(soup, base) + self.markup.extract_list(soup, base):
            if url not in combined:
                combined.append(url)
        return combined

    def process_listing(self, task: ListingTask) -> List[Task]:
        result = self._get(task.url)
        if result is None:
            if task.page_no == 1:
                raise CrawlStartupError(f"Could not fetch the first listing page: {task.url}")
            logger.warning(f"Listing page {task.page_no} unavailable, stopping pagination: {task.url}")
            return []

        self.frontier.page_visited()
        logger.info(f"Listing page {task.page_no}: {task.url} | collect_details={self.budget.collect_details}")
        try:
            soup = parse_page(result.body)
            candidates = self.discover_links(soup, task.url)
        except Exception as e:
            logger.error(f"Listing page {task.page_no} could not be parsed, stopping pagination: {e}")
            self._count('failures')
            return []

        remaining = self.frontier.remaining_budget()
        admitted = []
        for url in candidates:
            if len(admitted) >= remaining:
                break
            if self.frontier.admit(url):
                admitted.append(url)
        logger.info(f"   Found {len(candidates)} recipe links (JSON-LD + HTML). Admitting {len(admitted)}")

        follow_ups: List[Task] = []
        if self.budget.collect_details:
            follow_ups.extend(DetailTask(url) for url in admitted)
        else:
            for url in admitted:
                if not self._emit(url, EMPTY_RECIPE):
                    break
            logger.info(f"   Saved {self.frontier.emitted}/{self.budget.results_wanted} recipe URLs")

        if self.frontier.remaining_budget() > 0 and task.page_no < self.budget.max_pages:
            next_url = self.markup.find_next_page(soup, task.url)
            if next_url and self.frontier.admit(next_url):
                logger.info(f"   Found next page: {next_url}")
                follow_ups.append(ListingTask(next_url, task.page_no + 1))
            elif next_url:
                logger.info(f"   Next page already visited, pagination complete: {next_url}")
            else:
                logger.info("   No next page found - pagination complete")
        return follow_ups

    # --- detail phase ---

    def process_detail(self, task: DetailTask):
        if self.frontier.remaining_budget() <= 0:
            return
        try:
            recipe = self.scrape_detail(task.url)
        except Exception as e:
            # Never let one recipe take the crawl down; emit what the URL alone gives us.
            logger.error(f"Detail page {task.url} failed: {e}")
            self._count('failures')
            recipe = EMPTY_RECIPE
        self._emit(task.url, recipe)

    def scrape_detail(self, url: str) -> Recipe:
        self._count('details_fetched')
        recipe = self._scrape(url) or EMPTY_RECIPE
        if recipe.is_core_complete():
            return recipe

        for alt_url in alternates_for(url):
            if self.frontier.remaining_budget() <= 0:
                break
            self._count('alternate_fetches')
            alt_recipe = self._scrape(alt_url)
            if alt_recipe is None:
                continue
            recipe = merge(recipe, alt_recipe)
            if recipe.is_core_complete():
                logger.debug(f"   Completed {url} from {alt_url}")
                return recipe

        self._count('incomplete')
        logger.warning(f"   Incomplete recipe after alternates, saving partial data: {url}")
        return recipe

    def _emit(self, url: str, recipe: Recipe) -> bool:
        if not self.frontier.record_emitted():
            logger.debug(f"   Budget reached, discarding {url}")
            return False
        item = recipe.to_item(url, self.recipe_type, datetime.now(timezone.utc))
        self.emit(item)
        if self.budget.collect_details:
            logger.info(f"Saved recipe {self.frontier.emitted}/{self.budget.results_wanted}: {item['title']}")
        return True

# ============================================================================
# CLI & MAIN
# ============================================================================

def validate_config(budget: CrawlBudget, start_url: str):
    """Check for common misconfigurations."""
    issues = []

    if not normalize(start_url):
        issues.append(f"⚠️  Warning: START_URL does not look like a web address: {start_url!r}")

    if budget.results_wanted == config.UNBOUNDED:
        issues.append("⚠️  Warning: No result limit set; the crawl only stops at MAX_PAGES or the last page")

    if not budget.dedupe:
        issues.append("⚠️  Warning: Dedupe is off; the same recipe may be saved more than once")

    for issue in issues:
        logger.warning(issue)


def send_notification(stats: CrawlStats, output: str):
    """Send a summary notification via webhook (Discord, Slack, ntfy, etc.)."""
    if not config.NOTIFICATION_WEBHOOK_URL:
        return

    summary = (
        f"🍲 Recipe Dredger Complete ({VERSION})\n"
        f"   Saved: {stats.emitted}\n"
        f"   Listing Pages: {stats.pages_visited}\n"
        f"   Incomplete: {stats.incomplete}\n"
        f"   Output: {output}"
    )

    try:
        requests.post(config.NOTIFICATION_WEBHOOK_URL, json={"content": summary, "text": summary},
                      timeout=NOTIFY_TIMEOUT)
        logger.info("📨 Notification sent")
    except requests.RequestException as e:
        logger.warning(f"Failed to send notification: {e}")


def print_summary(stats: CrawlStats):
    logger.info("=" * 50)
    logger.info("📊 Session Summary:")
    logger.info(f"   Recipes Saved: {stats.emitted}")
    logger.info(f"   Listing Pages: {stats.pages_visited}")
    logger.info(f"   Detail Pages: {stats.details_fetched}")
    logger.info(f"   Alternate Fetches: {stats.alternate_fetches}")
    logger.info(f"   Incomplete: {stats.incomplete}")
    logger.info(f"   Failures: {stats.failures}")
    logger.info("=" * 50)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recipe Dredger: listing/detail recipe scraper")
    parser.add_argument("--start-url", type=str, default=config.START_URL, help="First listing page")
    parser.add_argument("--limit", type=str, default=None, help="Recipes to save (non-numeric means no limit)")
    parser.add_argument("--max-pages", type=str, default=None, help="Listing pages to walk")
    parser.add_argument("--no-details", action="store_true", help="Only collect recipe URLs")
    parser.add_argument("--no-dedupe", action="store_true", help="Do not skip already-seen URLs")
    parser.add_argument("--recipe-type", type=str, default=config.RECIPE_TYPE, help="Label attached to every record")
    parser.add_argument("--concurrency", type=int, default=config.MAX_CONCURRENCY, help="Parallel requests")
    parser.add_argument("--output", type=str, default=config.OUTPUT_FILE, help="JSON Lines output file")
    parser.add_argument("--dry-run", action="store_true", help="Log records instead of saving them")
    parser.add_argument("--version", action="version", version=f"Recipe Dredger {VERSION}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    budget = CrawlBudget.from_settings(
        results_wanted=config.parse_results_wanted(args.limit) if args.limit is not None else None,
        max_pages=config.parse_max_pages(args.max_pages) if args.max_pages is not None else None,
        collect_details=False if args.no_details else None,
        dedupe=False if args.no_dedupe else None,
    )
    dry_run = args.dry_run or config.DRY_RUN
    validate_config(budget, args.start_url)

    logger.info(f"🍲 Recipe Dredger Started ({VERSION})")
    logger.info(f"   Mode: {'DRY RUN' if dry_run else 'SAVE'} -> {args.output}")
    logger.info(f"   Start: {args.start_url}")
    logger.info(f"   Limit: {budget.results_wanted if budget.results_wanted != config.UNBOUNDED else 'none'}, "
                f"Pages: {budget.max_pages}, Details: {budget.collect_details}")

    killer = GracefulKiller()
    dataset = RecipeDataset(args.output, dry_run=dry_run)
    total = budget.results_wanted if budget.results_wanted != config.UNBOUNDED else None

    with tqdm(total=total, desc="Saving Recipes", unit="recipe", disable=not sys.stdout.isatty()) as bar:
        def emit(item: dict):
            dataset(item)
            bar.update(1)

        orchestrator = CrawlOrchestrator(
            fetch=HttpFetcher(get_session(args.concurrency)),
            emit=emit,
            budget=budget,
            start_url=args.start_url,
            recipe_type=args.recipe_type,
            max_workers=args.concurrency,
            should_stop=lambda: killer.kill_now,
        )
        try:
            stats = orchestrator.run()
        except CrawlStartupError as e:
            logger.critical(f"❌ {e}")
            return 1
        finally:
            dataset.flush()

    if not killer.kill_now:
        print_summary(stats)
    else:
        logger.info("⏸️  Gracefully stopped by signal")

    send_notification(stats, args.output)

    logger.info("🏁 Dredge Cycle Complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
