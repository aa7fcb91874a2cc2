from book_ingest.core.models import RawItem
from book_ingest.core.normalize import (
    extract_year,
    identifier_key,
    normalize,
    normalize_author,
    normalize_language,
)


def test_author_list_is_joined_and_blanks_dropped() -> None:
    assert normalize_author(["Plato", "  ", "Jowett, Benjamin"]) == "Plato, Jowett, Benjamin"
    assert normalize_author("  Homer ") == "Homer"
    assert normalize_author(None) is None
    assert normalize_author([]) is None


def test_single_author_is_only_trimmed() -> None:
    assert normalize_author("Jane  Austen") == "Jane  Austen"
    assert normalize_author(" Austen,  Jane\t") == "Austen,  Jane"
    assert normalize_author({"name": "  Jane  Austen "}) == "Jane  Austen"
    assert normalize_author("   ") is None


def test_identifier_is_trimmed_but_kept_opaque() -> None:
    assert identifier_key("  a  b ") == "a  b"
    assert identifier_key(None) == ""
    assert normalize(RawItem(identifier="a  b\n", title="T", creator=None), "internet_archive").source_identifier == "a  b"


def test_year_extraction() -> None:
    assert extract_year("c. 1850") == 1850
    assert extract_year("1850-1860") == 1850
    assert extract_year("[between 0999 and 1203]") == 1203
    assert extract_year("unknown") is None
    assert extract_year("12345") is None
    assert extract_year(None) is None
    assert extract_year(1776) == 1776
    assert extract_year(3100) is None


def test_language_codes() -> None:
    assert normalize_language("English") == "eng"
    assert normalize_language(["fr", "en"]) == "fre"
    assert normalize_language("heb") == "heb"
    assert normalize_language("") is None


def test_missing_optionals_are_none_and_title_defaults() -> None:
    raw = RawItem(identifier=" abc ", title="   ", creator=None, description=["", "  "])
    fields = normalize(raw, "internet_archive")
    assert fields.title == "Untitled"
    assert fields.source_identifier == "abc"
    assert fields.author is None
    assert fields.year is None
    assert fields.language is None
    assert fields.description is None
    assert fields.cover_url is None


def test_normalize_is_deterministic() -> None:
    raw = RawItem(
        identifier="meditations00marc",
        title="Meditations",
        creator=["Marcus Aurelius"],
        date="1908-01-01",
        language=["english"],
        description=["Book one.", "Book two."],
    )
    a = normalize(raw, "internet_archive")
    b = normalize(raw, "internet_archive")
    assert a == b
    assert a.year == 1908
    assert a.description == "Book one. Book two."
