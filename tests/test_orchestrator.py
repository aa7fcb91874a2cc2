import sqlite3

import pytest

from book_ingest.core.errors import DuplicateRecordError, JobNotResumableError
from book_ingest.core.filters import FilterConfig
from book_ingest.core.models import UNCATEGORIZED
from book_ingest.core.stats_tracker import StatsTracker
from book_ingest.integrations.classifier import OPENROUTER_API_URL, ClassifierConfig, GenreClassifier
from book_ingest.integrations.covers import OPENLIBRARY_SEARCH_URL, CoverSearch
from book_ingest.orchestrator import JobControl, RunOptions

from tests.fakes import (
    FakeFetcher,
    FakeSession,
    build_pipeline,
    connection_error,
    make_item,
    no_sleep,
    pdf_routes,
)


def _items(prefix: str, n: int, title: str = "A Book"):
    return [make_item(f"{prefix}{i}", f"{title} {i}") for i in range(n)]


class _InterruptAfter(JobControl):
    """Requests pause (or stop) once `items` items of the first source have been handled."""

    def __init__(self, items: int, *, stop: bool = False) -> None:
        super().__init__()
        self.remaining = items + 1  # one check happens before the source starts
        self.stop = stop

    def check(self):
        if self.remaining == 0:
            if self.stop:
                self.request_stop()
            else:
                self.request_pause()
        self.remaining -= 1
        return super().check()


def test_second_run_is_idempotent(tmp_path) -> None:
    items = _items("ia", 3)
    fetcher = FakeFetcher("ia", {1: items})
    orch, store, _ = build_pipeline(tmp_path, [fetcher], FakeSession(pdf_routes(items)))

    first = orch.run()
    assert (first.added, first.skipped, first.failed) == (3, 0, 0)
    assert first.status == "completed"

    second = orch.run()
    assert (second.added, second.skipped, second.failed) == (0, 3, 0)
    assert second.status == "completed"
    assert store.count_books("ia") == 3
    assert sorted(p.name for p in (tmp_path / "assets" / "ia").iterdir()) == ["ia0.pdf", "ia1.pdf", "ia2.pdf"]


def test_dry_run_writes_nothing(tmp_path) -> None:
    items = _items("ia", 3)
    session = FakeSession(pdf_routes(items))
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], session)
    before = store.table_counts()

    job = orch.run(RunOptions(dry_run=True))

    assert job.added == 3
    assert job.dry_run
    assert store.table_counts() == before
    assert not (tmp_path / "assets").exists() or not any((tmp_path / "assets").rglob("*.pdf"))
    assert store.get_job(job.job_id) is None
    # downloads were still validated
    assert len(session.calls) == 3


def test_bad_item_does_not_abort_its_neighbours(tmp_path) -> None:
    items = _items("ia", 5)
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items, bad_ids={"ia2"})),
    )
    job = orch.run()
    src = job.sources[0]

    assert src.processed == src.added + src.skipped + src.failed == 5
    assert (src.added, src.failed) == (4, 1)
    assert job.status == "partial"
    assert [e.item_id for e in src.errors] == ["ia2"]
    assert src.errors[0].stage == "validate"
    assert store.get_book("ia", "ia2") is None
    assert store.get_book("ia", "ia3") is not None
    saved = store.get_job(job.job_id)
    assert saved["status"] == "partial"
    assert saved["sources"][0]["errors"][0]["item_id"] == "ia2"


def test_padded_identifier_is_skipped_on_the_next_run(tmp_path) -> None:
    items = [make_item(" ia1", url="https://files.test/ia1.pdf"), make_item("ia2")]
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))

    first = orch.run()
    assert (first.added, first.skipped, first.failed) == (2, 0, 0)
    assert store.get_book("ia", "ia1") is not None

    second = orch.run()
    assert (second.added, second.skipped, second.failed) == (0, 2, 0)


def test_lost_insert_race_skips_and_removes_asset(tmp_path, monkeypatch) -> None:
    items = _items("ia", 1)
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))

    def _taken(book):
        raise DuplicateRecordError(book.source, book.source_identifier)

    monkeypatch.setattr(store, "insert_book", _taken)
    job = orch.run()

    assert (job.added, job.skipped, job.failed) == (0, 1, 0)
    assert not (tmp_path / "assets" / "ia" / "ia0.pdf").exists()


def test_insert_failure_fails_at_persist_and_removes_asset(tmp_path, monkeypatch) -> None:
    items = _items("ia", 2)
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))
    real_insert = store.insert_book

    def _locked(book):
        if book.source_identifier == "ia0":
            raise sqlite3.OperationalError("database is locked")
        return real_insert(book)

    monkeypatch.setattr(store, "insert_book", _locked)
    job = orch.run()
    src = job.sources[0]

    assert (job.added, job.failed) == (1, 1)
    assert [(e.item_id, e.stage) for e in src.errors] == [("ia0", "persist")]
    assert not (tmp_path / "assets" / "ia" / "ia0.pdf").exists()
    assert (tmp_path / "assets" / "ia" / "ia1.pdf").exists()


def test_occupied_asset_path_fails_at_upload_without_overwrite(tmp_path) -> None:
    items = _items("ia", 1)
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))
    occupied = tmp_path / "assets" / "ia" / "ia0.pdf"
    occupied.parent.mkdir(parents=True)
    occupied.write_bytes(b"%PDF older")

    job = orch.run()

    assert (job.added, job.skipped, job.failed) == (0, 0, 1)
    assert job.sources[0].errors[0].stage == "upload"
    assert occupied.read_bytes() == b"%PDF older"
    assert store.get_book("ia", "ia0") is None


def test_job_log_failure_still_returns_result_and_records_stats(tmp_path, monkeypatch) -> None:
    items = _items("ia", 1)
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))

    def _locked(job):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "save_job_result", _locked)
    job = orch.run()

    assert job.added == 1
    assert store.count_books("ia") == 1
    assert store.get_job(job.job_id) is None
    assert store.get_stats("ia").total_ingested == 1


class _OrderedFetcher(FakeFetcher):
    def __init__(self, source_id, pages, order, **kwargs) -> None:
        super().__init__(source_id, pages, **kwargs)
        self.order = order

    def fetch_items(self, options):
        self.order.append(self.SOURCE_ID)
        return super().fetch_items(options)


def test_sources_run_in_priority_order_and_failures_stay_local(tmp_path) -> None:
    order = []
    b_items = _items("b", 2)
    a = _OrderedFetcher("alpha", {}, order, fail_pages={1})
    b = _OrderedFetcher("beta", {1: b_items}, order)
    orch, store, _ = build_pipeline(
        tmp_path,
        [b, a],
        FakeSession(pdf_routes(b_items)),
        priorities={"alpha": 1, "beta": 2},
    )
    job = orch.run()

    # alpha is retried before beta starts
    assert order == ["alpha", "alpha", "alpha", "beta"]
    by_id = {s.source_id: s for s in job.sources}
    assert by_id["alpha"].status == "failed"
    assert by_id["alpha"].fetch_error
    assert by_id["beta"].status == "completed"
    assert by_id["beta"].added == 2
    assert job.status == "partial"

    tracker = StatsTracker(store)
    assert tracker.source_health("alpha") == "failed"
    assert tracker.source_health("beta") == "healthy"
    assert tracker.overall_health(["alpha", "beta"]) == "failed"


def test_unreachable_only_source_fails_the_job(tmp_path) -> None:
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {}, fail_pages={1})], FakeSession())
    job = orch.run()
    assert job.status == "failed"
    assert job.processed == 0
    assert store.get_job(job.job_id)["sources"][0]["fetch_error"]


def test_source_selection_and_disabled_sources(tmp_path) -> None:
    a_items, b_items = _items("a", 1), _items("b", 1)
    a = FakeFetcher("alpha", {1: a_items})
    b = FakeFetcher("beta", {1: b_items})
    orch, _, registry = build_pipeline(tmp_path, [a, b], FakeSession(pdf_routes(a_items + b_items)))

    job = orch.run(RunOptions(sources=("beta",)))
    assert [s.source_id for s in job.sources] == ["beta"]
    assert a.fetch_calls == []

    registry.update_configuration("beta", enabled=False)
    job = orch.run()
    assert [s.source_id for s in job.sources] == ["alpha"]


def test_batch_size_and_page_are_passed_to_the_fetcher(tmp_path) -> None:
    items = _items("ia", 5)
    fetcher = FakeFetcher("ia", {2: items})
    orch, _, _ = build_pipeline(tmp_path, [fetcher], FakeSession(pdf_routes(items)))
    job = orch.run(RunOptions(batch_size=2, page=2))
    assert job.added == 2
    assert fetcher.fetch_calls[0].page == 2
    assert fetcher.fetch_calls[0].batch_size == 2


def test_filter_rejections_are_skipped_and_audited(tmp_path) -> None:
    items = [
        make_item("p1", "The Republic of Plato"),
        make_item("h1", "History of the Roman Empire"),
    ]
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items)),
        classifier=GenreClassifier(ClassifierConfig(mock=True)),
        filters=FilterConfig(enable_genre_filter=True, allowed_genres=("Philosophy",)),
    )
    job = orch.run()

    assert (job.added, job.skipped, job.failed) == (1, 1, 0)
    assert store.filter_decision_counts(job.job_id) == {"genre": 1}
    book = store.get_book("ia", "p1")
    assert book["genres"] == ["Philosophy", "Ethics"]
    assert book["subgenre"] == "Ancient"
    assert book["category"] == "Philosophy"
    assert store.get_book("ia", "h1") is None


def test_filter_rejections_are_not_audited_on_dry_run(tmp_path) -> None:
    items = [make_item("h1", "History of the Roman Empire")]
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items)),
        classifier=GenreClassifier(ClassifierConfig(mock=True)),
        filters=FilterConfig(enable_author_filter=True, allowed_authors=("Plato",)),
    )
    job = orch.run(RunOptions(dry_run=True))
    assert job.skipped == 1
    assert store.filter_decision_counts() == {}


def test_classifier_outage_files_books_as_uncategorized(tmp_path) -> None:
    items = _items("ia", 2)
    api = FakeSession({OPENROUTER_API_URL: connection_error()})
    classifier = GenreClassifier(ClassifierConfig(api_key="k"), session=api, sleep=no_sleep)
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items)),
        classifier=classifier,
    )
    job = orch.run()

    assert job.added == 2
    book = store.get_book("ia", "ia0")
    assert book["category"] == UNCATEGORIZED
    assert book["genres"] == []
    assert len(api.calls) == 4  # two attempts per item


def test_cover_search_failure_notifies_and_still_ingests(tmp_path) -> None:
    items = _items("ia", 1)
    orch, store, _ = build_pipeline(tmp_path, [FakeFetcher("ia", {1: items})], FakeSession(pdf_routes(items)))
    orch.covers = CoverSearch(
        FakeSession({OPENLIBRARY_SEARCH_URL: connection_error()}),
        attempts=2,
        notify=store.add_notification,
        sleep=no_sleep,
    )
    job = orch.run()

    assert job.added == 1
    assert store.get_book("ia", "ia0")["cover_url"] is None
    notes = store.recent_notifications()
    assert [n.name for n in notes] == ["cover_search_failed"]
    assert notes[0].subject == "ia/ia0"


def test_pause_then_resume_continues_at_next_item(tmp_path) -> None:
    a_items, b_items = _items("a", 4), _items("b", 2)
    control = _InterruptAfter(2)
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("alpha", {1: a_items}), FakeFetcher("beta", {1: b_items})],
        FakeSession(pdf_routes(a_items + b_items)),
        priorities={"alpha": 1, "beta": 2},
        control=control,
    )

    paused = orch.run()
    assert paused.interrupted == "paused"
    assert paused.added == 2
    cursor = store.get_cursor(paused.job_id)
    assert (cursor.source_id, cursor.page, cursor.offset) == ("alpha", 1, 2)
    assert cursor.remaining_sources == ("beta",)
    assert store.latest_paused_job() == paused.job_id

    resumed = orch.resume(paused.job_id)
    assert resumed.resumed_from == paused.job_id
    assert resumed.interrupted is None
    by_id = {s.source_id: s for s in resumed.sources}
    assert (by_id["alpha"].processed, by_id["alpha"].added) == (2, 2)
    assert by_id["beta"].added == 2
    assert store.count_books() == 6
    assert store.get_cursor(paused.job_id).state == "resumed"

    with pytest.raises(JobNotResumableError):
        orch.resume(paused.job_id)


def test_stopped_job_cannot_be_resumed(tmp_path) -> None:
    items = _items("ia", 3)
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items)),
        control=_InterruptAfter(1, stop=True),
    )
    job = orch.run()
    assert job.interrupted == "stopped"
    assert job.added == 1
    assert store.get_cursor(job.job_id).state == "stopped"
    with pytest.raises(JobNotResumableError):
        orch.resume(job.job_id)
    with pytest.raises(JobNotResumableError):
        orch.resume("no-such-job")


def test_marker_file_pauses_before_work_starts(tmp_path) -> None:
    items = _items("ia", 2)
    marker = tmp_path / "PAUSE"
    marker.write_text("")
    orch, store, _ = build_pipeline(
        tmp_path,
        [FakeFetcher("ia", {1: items})],
        FakeSession(pdf_routes(items)),
        control=JobControl(pause_file=str(marker)),
    )
    job = orch.run()
    assert job.interrupted == "paused"
    assert job.processed == 0

    marker.unlink()
    assert orch.resume(job.job_id).added == 2


def test_parallel_sources_keep_counts_consistent(tmp_path) -> None:
    fetchers, all_items = [], []
    for sid in ("alpha", "beta", "gamma"):
        items = _items(sid, 4)
        all_items.extend(items)
        fetchers.append(FakeFetcher(sid, {1: items}))
    orch, store, _ = build_pipeline(tmp_path, fetchers, FakeSession(pdf_routes(all_items, bad_ids={"beta1"})))

    job = orch.run(RunOptions(source_concurrency=3))
    assert job.processed == job.added + job.skipped + job.failed == 12
    assert (job.added, job.failed) == (11, 1)
    assert store.count_books() == 11
