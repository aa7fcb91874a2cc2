from book_ingest.core.models import CanonicalFields
from book_ingest.integrations.classifier import (
    OPENROUTER_API_URL,
    ClassifierConfig,
    GenreClassifier,
    build_prompt,
    mock_classification,
    parse_response,
)
from book_ingest.integrations.covers import OPENLIBRARY_SEARCH_URL, CoverSearch

from tests.fakes import FakeResponse, FakeSession, connection_error, no_sleep


def _fields(title="The Republic", *, author="Plato", description=None, isbn=None, cover_url=None) -> CanonicalFields:
    return CanonicalFields(
        title=title,
        author=author,
        year=1901,
        language="eng",
        description=description,
        cover_url=cover_url,
        isbn=isbn,
        source="internet_archive",
        source_identifier="republic00plat",
        download_url=None,
    )


def _reply(content: str) -> FakeResponse:
    return FakeResponse(200, json_data={"choices": [{"message": {"content": content}}]})


def test_parse_response_extracts_and_validates() -> None:
    c = parse_response('Sure! {"genres": ["Philosophy", "Cooking", "ethics"], "subgenre": "Ancient"} hope that helps')
    assert c.genres == ("Philosophy", "Ethics")
    assert c.subgenre == "Ancient"
    assert c.category == "Philosophy"

    c = parse_response('{"genres": ["History"], "subgenre": "Cyberpunk"}')
    assert c.subgenre is None


def test_parse_response_rejects_unusable_replies() -> None:
    assert parse_response("") is None
    assert parse_response(None) is None
    assert parse_response("no json here") is None
    assert parse_response('{"genres": "History"}') is None
    assert parse_response('{"genres": ["Cooking", "Gardening"]}') is None


def test_prompt_lists_taxonomy_and_truncates_description() -> None:
    prompt = build_prompt(_fields(description="x" * 2000))
    assert "Title: The Republic" in prompt
    assert "Author: Plato" in prompt
    assert "x" * 500 in prompt
    assert "x" * 501 not in prompt
    assert "Philosophy" in prompt
    assert build_prompt(_fields(author=None)).count("Author: Unknown") == 1


def test_mock_rules_follow_title_keywords() -> None:
    assert mock_classification(_fields("Meditations on First Philosophy")).genres == ("Philosophy", "Ethics")
    assert mock_classification(_fields("A History of the Crusades")).genres[0] == "History"
    assert mock_classification(_fields("Leaves of Grass")).genres == ("Literature",)


def test_classifier_uses_api_reply() -> None:
    session = FakeSession({OPENROUTER_API_URL: _reply('{"genres": ["Philosophy"], "subgenre": null}')})
    c = GenreClassifier(ClassifierConfig(api_key="k"), session=session, sleep=no_sleep).classify(_fields())
    assert c.genres == ("Philosophy",)
    body = session.calls[0][2]
    assert body["messages"][0]["content"].startswith("You are a librarian")


def test_classifier_retries_then_gives_up_quietly() -> None:
    session = FakeSession({OPENROUTER_API_URL: [connection_error(), _reply("I cannot help with that")]})
    classifier = GenreClassifier(ClassifierConfig(api_key="k"), session=session, max_attempts=2, sleep=no_sleep)
    assert classifier.classify(_fields()) is None
    assert len(session.calls) == 2

    session = FakeSession({OPENROUTER_API_URL: [FakeResponse(500), _reply('{"genres": ["Law"]}')]})
    classifier = GenreClassifier(ClassifierConfig(api_key="k"), session=session, sleep=no_sleep)
    assert classifier.classify(_fields()).genres == ("Law",)


def test_classifier_inactive_without_key_or_when_disabled() -> None:
    session = FakeSession()
    assert GenreClassifier(ClassifierConfig(), session=session).classify(_fields()) is None
    assert GenreClassifier(ClassifierConfig(api_key="k", enabled=False), session=session).classify(_fields()) is None
    assert session.calls == []
    assert not ClassifierConfig().active
    assert ClassifierConfig(mock=True).active


def test_classifier_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", " secret ")
    monkeypatch.setenv("GENRE_CLASSIFIER_TIMEOUT", "2500")
    monkeypatch.setenv("ENABLE_GENRE_CLASSIFICATION", "false")
    monkeypatch.delenv("MOCK_GENRE_CLASSIFIER", raising=False)
    cfg = ClassifierConfig.from_env()
    assert cfg.api_key == "secret"
    assert cfg.timeout_s == 2.5
    assert not cfg.enabled


def test_cover_from_provider_skips_lookup() -> None:
    session = FakeSession()
    result = CoverSearch(session).search(_fields(cover_url="https://archive.org/services/img/x"))
    assert result.url == "https://archive.org/services/img/x"
    assert result.source == "provider"
    assert session.calls == []


def test_cover_lookup_by_title_and_author() -> None:
    session = FakeSession({OPENLIBRARY_SEARCH_URL: FakeResponse(200, json_data={"docs": [{"cover_i": 12345}]})})
    result = CoverSearch(session).search(_fields())
    assert result.url == "https://covers.openlibrary.org/b/id/12345-M.jpg"
    assert session.calls[0][2]["title"] == "The Republic"
    assert session.calls[0][2]["author"] == "Plato"


def test_cover_lookup_by_isbn_falls_back_to_isbn_url() -> None:
    session = FakeSession({OPENLIBRARY_SEARCH_URL: FakeResponse(200, json_data={"docs": []})})
    result = CoverSearch(session).search(_fields(isbn="9780140455113"))
    assert result.url == "https://covers.openlibrary.org/b/isbn/9780140455113-M.jpg"
    assert session.calls[0][2]["isbn"] == "9780140455113"


def test_cover_not_found_is_a_placeholder() -> None:
    session = FakeSession({OPENLIBRARY_SEARCH_URL: FakeResponse(200, json_data={"docs": [{"title": "x"}]})})
    result = CoverSearch(session).search(_fields())
    assert result.url is None
    assert result.placeholder


def test_cover_failure_notifies_after_retries() -> None:
    sent = []
    session = FakeSession({OPENLIBRARY_SEARCH_URL: [FakeResponse(503), connection_error()]})
    result = CoverSearch(session, attempts=3, notify=sent.append, sleep=no_sleep).search(_fields())
    assert result.url is None
    assert not result.placeholder
    assert len(session.calls) == 3
    assert [n.name for n in sent] == ["cover_search_failed"]
    assert sent[0].subject == "internet_archive/republic00plat"
