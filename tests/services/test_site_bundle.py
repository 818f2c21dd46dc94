from __future__ import annotations

import io
import zipfile

import pytest

from mdpublish.services.errors import InvalidOperation
from mdpublish.services.site_bundle import PageSource, SiteBuilder, write_archive


@pytest.fixture()
def builder() -> SiteBuilder:
    return SiteBuilder()


@pytest.fixture()
def pages() -> list[PageSource]:
    return [
        PageSource(id="1", title="Intro", slug="intro", content="# Welcome"),
        PageSource(id="2", title="Getting Started!!", slug="getting-started", content="Run **it**."),
        PageSource(id="3", title="FAQ", slug="faq", content="<i>raw</i>"),
    ]


def _read(bundle) -> dict[str, str]:
    with zipfile.ZipFile(io.BytesIO(bundle.archive)) as zf:
        return {name: zf.read(name).decode("utf-8") for name in zf.namelist()}


def test_bundle_contains_one_page_per_document_plus_index_and_styles(builder, pages) -> None:
    bundle = builder.build("Handbook", pages)

    assert bundle.files == ("faq.html", "getting-started.html", "index.html", "intro.html", "styles.css")
    assert set(_read(bundle)) == set(bundle.files)


def test_index_repeats_first_page_and_uses_project_title(builder, pages) -> None:
    files = _read(builder.build("Handbook", pages))

    assert "<title>Handbook</title>" in files["index.html"]
    assert "<h1>Welcome</h1>" in files["index.html"]
    assert "<title>Intro - Handbook</title>" in files["intro.html"]


def test_pages_link_stylesheet_and_escape_raw_html(builder, pages) -> None:
    files = _read(builder.build("Handbook", pages))

    assert 'href="styles.css"' in files["faq.html"]
    assert "&lt;i&gt;raw&lt;/i&gt;" in files["faq.html"]
    assert "<i>raw</i>" not in files["faq.html"]


def test_navigation_marks_current_page(builder, pages) -> None:
    files = _read(builder.build("Handbook", pages))

    assert '<li class="active"><a href="faq.html">FAQ</a></li>' in files["faq.html"]
    assert '<a href="getting-started.html">Getting Started!!</a>' in files["faq.html"]


def test_single_page_site_has_no_navigation(builder) -> None:
    files = _read(builder.build("Solo", [PageSource(id="1", title="Only", slug="only", content="x")]))

    assert "site-nav" not in files["only.html"]


def test_titles_are_escaped(builder) -> None:
    page = PageSource(id="1", title="<b>Bold</b>", slug="bold", content="")
    files = _read(builder.build("A & B", [page]))

    assert "<title>&lt;b&gt;Bold&lt;/b&gt; - A &amp; B</title>" in files["bold.html"]


def test_sidebar_template(builder, pages) -> None:
    bundle = builder.build("Handbook", pages, template="sidebar")
    files = _read(bundle)

    assert bundle.template == "sidebar"
    assert 'class="template-sidebar"' in files["intro.html"]
    assert '<aside class="sidebar">' in files["intro.html"]


def test_unknown_template_is_rejected(builder, pages) -> None:
    with pytest.raises(InvalidOperation):
        builder.build("Handbook", pages, template="fancy")


def test_archive_bytes_are_deterministic(builder, pages) -> None:
    assert builder.build("Handbook", pages).archive == builder.build("Handbook", pages).archive


def test_write_archive_sorts_entries_and_fixes_timestamps() -> None:
    archive = write_archive({"b.txt": "b", "a.txt": b"a"})

    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        infos = zf.infolist()
    assert [info.filename for info in infos] == ["a.txt", "b.txt"]
    assert {info.date_time for info in infos} == {(1980, 1, 1, 0, 0, 0)}
