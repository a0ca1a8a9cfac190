import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

import dredger
from dredger import (
    CrawlOrchestrator, CrawlStartupError, FetchResult, ListingTask, DetailTask, RateLimiter, RecipeDataset,
)
from frontier import CrawlBudget

from fakes import LISTING_URL, FakeSite, listing_page, recipe_page, recipe_url

PAGE_2 = f"{LISTING_URL}?page=2"


def make_orchestrator(site, collector, **budget):
    return CrawlOrchestrator(
        fetch=site,
        emit=collector,
        budget=CrawlBudget(**budget),
        start_url=LISTING_URL,
        recipe_type="vegetarian",
        max_workers=4,
        proxy=None,
    )


def complete_recipe(name):
    return recipe_page({
        "@type": "Recipe",
        "name": name,
        "recipeIngredient": ["1 cup rice"],
        "recipeInstructions": [{"@type": "HowToStep", "text": "Cook the rice."}],
    })


# --- listing phase ---

def test_listing_union_of_structured_and_markup_links(collector):
    slugs = [f"dish-{i}" for i in range(20)]
    site = FakeSite({LISTING_URL: listing_page(json_slugs=slugs, anchor_slugs=slugs[5:])})
    orchestrator = make_orchestrator(site, collector, collect_details=False)

    stats = orchestrator.run()

    assert stats.emitted == 20
    assert collector.urls == [recipe_url(s) for s in slugs]
    assert orchestrator.frontier.seen_count == 21  # listing page + 20 recipes


def test_listing_admission_feeds_detail_tasks(collector):
    slugs = [f"dish-{i}" for i in range(20)]
    site = FakeSite({LISTING_URL: listing_page(json_slugs=slugs, anchor_slugs=slugs[5:])})
    orchestrator = make_orchestrator(site, collector)

    follow_ups = orchestrator.process_listing(ListingTask(LISTING_URL, 1))

    assert follow_ups == [DetailTask(recipe_url(s)) for s in slugs]


def test_url_only_mode_stops_at_results_wanted(collector):
    slugs = [f"dish-{i}" for i in range(20)]
    site = FakeSite({LISTING_URL: listing_page(json_slugs=slugs, next_href=PAGE_2)})
    orchestrator = make_orchestrator(site, collector, results_wanted=5, collect_details=False)

    stats = orchestrator.run()

    assert stats.emitted == 5
    assert collector.urls == [recipe_url(s) for s in slugs[:5]]
    assert site.calls == [LISTING_URL]
    assert [item["title"] for item in collector.items] == [f"dish {i}" for i in range(5)]
    assert all(item["ingredients"] == [] for item in collector.items)


def test_max_pages_halts_pagination(collector):
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["a", "b"], next_href=PAGE_2),
        PAGE_2: listing_page(json_slugs=["c"]),
    })
    orchestrator = make_orchestrator(site, collector, max_pages=1, collect_details=False)

    stats = orchestrator.run()

    assert PAGE_2 not in site.calls
    assert stats.pages_visited == 1
    assert stats.emitted == 2


def test_pagination_follows_next_and_dedupes_across_pages(collector):
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["a", "b"], next_href=PAGE_2),
        PAGE_2: listing_page(json_slugs=["b", "c"], next_href=LISTING_URL),
    })
    orchestrator = make_orchestrator(site, collector, collect_details=False)

    stats = orchestrator.run()

    assert sorted(collector.urls) == [recipe_url("a"), recipe_url("b"), recipe_url("c")]
    assert stats.pages_visited == 2
    assert site.calls.count(LISTING_URL) == 1


def test_first_listing_failure_is_a_startup_error(collector):
    site = FakeSite({LISTING_URL: FetchResult(503, "")})
    with pytest.raises(CrawlStartupError):
        make_orchestrator(site, collector).run()


def test_later_listing_failure_ends_the_crawl_quietly(collector):
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["a"], next_href=PAGE_2),
        PAGE_2: ConnectionError("reset by peer"),
    })
    stats = make_orchestrator(site, collector, collect_details=False).run()
    assert stats.emitted == 1
    assert stats.pages_visited == 1


def test_unparseable_json_ld_on_later_listing_keeps_the_crawl_alive(collector):
    deep_block = '<script type="application/ld+json">' + "[" * 100000 + "</script>"
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["a", "b"], next_href=PAGE_2),
        PAGE_2: listing_page(anchor_slugs=["c"]).replace("<head></head>", f"<head>{deep_block}</head>"),
    })

    stats = make_orchestrator(site, collector, collect_details=False).run()

    assert stats.pages_visited == 2
    assert collector.urls == [recipe_url("a"), recipe_url("b"), recipe_url("c")]


def test_listing_parse_error_ends_pagination(collector, monkeypatch):
    site = FakeSite({LISTING_URL: listing_page(json_slugs=["a"], next_href=PAGE_2)})
    orchestrator = make_orchestrator(site, collector, collect_details=False)

    def explode(soup, base):
        raise RecursionError("maximum recursion depth exceeded")
    monkeypatch.setattr(orchestrator, "discover_links", explode)

    assert orchestrator.process_listing(ListingTask(LISTING_URL, 2)) == []
    assert orchestrator.stats.failures == 1


# --- detail phase ---

def test_detail_merges_structured_and_markup(collector):
    url = recipe_url("bean-salad")
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["bean-salad"]),
        url: recipe_page(
            {"@type": "Recipe", "name": "Bean Salad", "recipeIngredient": ["1 can beans", "1 lemon"]},
            body="<h1>Ignored Heading</h1><ol><li>Drain the beans.</li><li>Dress with lemon.</li></ol>",
        ),
    })

    stats = make_orchestrator(site, collector).run()

    assert stats.emitted == 1
    item = collector.items[0]
    assert item["title"] == "Bean Salad"
    assert item["ingredients"] == ["1 can beans", "1 lemon"]
    assert item["instructions"] == ["Drain the beans.", "Dress with lemon."]
    assert item["instructions_text"] == "Drain the beans. | Dress with lemon."
    assert item["recipe_type"] == "vegetarian"
    assert site.calls.count(url) == 1
    assert stats.alternate_fetches == 0


def test_detail_incomplete_is_completed_from_alternate(collector):
    url = recipe_url("tofu")
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["tofu"]),
        url: recipe_page({"@type": "Recipe", "name": "Tofu", "recipeIngredient": ["tofu"]}),
        f"{url}?output=1": recipe_page({"@type": "Recipe", "recipeInstructions": ["Press.", "Fry."]}),
        f"{url}?page=all": complete_recipe("Never fetched"),
    })

    stats = make_orchestrator(site, collector).run()

    item = collector.items[0]
    assert item["title"] == "Tofu"
    assert item["instructions"] == ["Press.", "Fry."]
    assert f"{url}?page=all" not in site.calls
    assert stats.alternate_fetches == 2
    assert stats.incomplete == 0


def test_detail_with_nothing_anywhere_still_emits_fallback(collector):
    url = recipe_url("mystery-stew")
    site = FakeSite({LISTING_URL: listing_page(json_slugs=["mystery-stew"])})

    stats = make_orchestrator(site, collector).run()

    assert stats.emitted == 1
    item = collector.items[0]
    assert item["title"] == "mystery stew"
    assert item["ingredients"] == []
    assert item["instructions"] == []
    assert item["ingredients_count"] == 0
    assert site.fetched("mystery-stew") == [
        url, url, f"{url}?output=1", f"{url}?page=all", f"{url}/amp",
    ]
    assert stats.incomplete == 1


def test_detail_fetch_exceptions_do_not_abort_the_crawl(collector):
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["boom", "fine"]),
        recipe_url("boom"): TimeoutError("read timed out"),
        recipe_url("fine"): complete_recipe("Fine"),
    })

    stats = make_orchestrator(site, collector).run()

    assert stats.emitted == 2
    titles = {item["url"]: item["title"] for item in collector.items}
    assert titles[recipe_url("fine")] == "Fine"
    assert titles[recipe_url("boom")] == "boom"


def test_concurrent_details_never_exceed_results_wanted(collector):
    slugs = [f"dish-{i}" for i in range(12)]
    pages = {recipe_url(s): complete_recipe(s) for s in slugs}
    pages[LISTING_URL] = listing_page(json_slugs=slugs[:6], next_href=PAGE_2)
    pages[PAGE_2] = listing_page(json_slugs=slugs[6:])
    site = FakeSite(pages)

    stats = make_orchestrator(site, collector, results_wanted=3).run()

    assert stats.emitted == 3
    assert len(collector.items) == 3
    assert len(set(collector.urls)) == 3


def test_stop_request_ends_crawl_after_first_page(collector):
    site = FakeSite({
        LISTING_URL: listing_page(json_slugs=["a", "b"], next_href=PAGE_2),
        PAGE_2: listing_page(json_slugs=["c"]),
    })
    orchestrator = make_orchestrator(site, collector)
    orchestrator.should_stop = lambda: True

    stats = orchestrator.run()

    assert site.calls == [LISTING_URL]
    assert stats.emitted == 0
    assert stats.stopped


# --- dataset / CLI ---

def test_dataset_writes_json_lines(tmp_path):
    path = tmp_path / "out" / "recipes.jsonl"
    dataset = RecipeDataset(str(path), flush_threshold=2)
    dataset({"title": "A"})
    dataset({"title": "B"})
    dataset({"title": "C"})
    assert len(path.read_text().splitlines()) == 2
    dataset.flush()
    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["title"] for line in lines] == ["A", "B", "C"]
    assert dataset.count == 3


def test_dataset_dry_run_writes_nothing(tmp_path):
    path = tmp_path / "recipes.jsonl"
    dataset = RecipeDataset(str(path), dry_run=True)
    dataset({"title": "A", "url": "https://x"})
    dataset.flush()
    assert not path.exists()
    assert dataset.count == 1


def test_main_runs_url_only_crawl(tmp_path, monkeypatch):
    monkeypatch.setattr(dredger.signal, "signal", lambda *args: None)
    site = FakeSite({LISTING_URL: listing_page(json_slugs=["a", "b", "c"])})
    monkeypatch.setattr(dredger, "HttpFetcher", lambda session: site)
    monkeypatch.setattr(dredger.config, "NOTIFICATION_WEBHOOK_URL", "")
    output = tmp_path / "recipes.jsonl"

    code = dredger.main([
        "--start-url", LISTING_URL, "--limit", "2", "--no-details", "--output", str(output),
    ])

    assert code == 0
    lines = [json.loads(line) for line in output.read_text().splitlines()]
    assert [line["url"] for line in lines] == [recipe_url("a"), recipe_url("b")]


def test_main_reports_startup_failure(tmp_path, monkeypatch):
    monkeypatch.setattr(dredger.signal, "signal", lambda *args: None)
    monkeypatch.setattr(dredger, "HttpFetcher", lambda session: FakeSite())
    code = dredger.main(["--start-url", LISTING_URL, "--output", str(tmp_path / "r.jsonl")])
    assert code == 1


# --- rate limiter ---

class CountingSession:
    def __init__(self):
        self.robots_fetches = 0
        self._lock = threading.Lock()

    def get(self, url, timeout=None):
        with self._lock:
            self.robots_fetches += 1
        time.sleep(0.05)
        return SimpleNamespace(status_code=200, text="User-agent: *\nDisallow:\n")


def test_robots_txt_is_read_once_per_domain():
    session = CountingSession()
    limiter = RateLimiter(session, default_delay=0, respect_robots=True)
    barrier = threading.Barrier(8)

    def lookup(_):
        barrier.wait()
        return limiter.get_crawl_delay(recipe_url("soup"))

    with ThreadPoolExecutor(max_workers=8) as executor:
        delays = list(executor.map(lookup, range(8)))

    assert delays == [0] * 8
    assert session.robots_fetches == 1
