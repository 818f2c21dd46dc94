"""Static site assembly for a publish run.

One HTML page per published document, an ``index.html`` that repeats the
first document, and a shared ``styles.css``, packed into a ZIP archive whose
bytes depend only on the inputs (fixed timestamps, sorted entries).
"""

from __future__ import annotations

import io
import stat
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import InvalidOperation
from .markdown import render_markdown

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
AVAILABLE_TEMPLATES = ("default", "sidebar")
STYLESHEET_NAME = "styles.css"
INDEX_SLUG = "index"

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class PageSource:
    id: str
    title: str
    slug: str
    content: str


@dataclass(frozen=True)
class NavEntry:
    id: str
    title: str
    slug: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "title": self.title, "slug": self.slug}


@dataclass(frozen=True)
class SiteBundle:
    archive: bytes
    files: tuple[str, ...]
    nav: tuple[NavEntry, ...]
    template: str


class SiteBuilder:
    def __init__(self, template_dir: Path | None = None) -> None:
        self.env = Environment(
            loader=FileSystemLoader(template_dir or TEMPLATE_DIR),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def stylesheet(self) -> str:
        return self.env.loader.get_source(self.env, STYLESHEET_NAME)[0]

    def render_page(
        self,
        template: str,
        *,
        page_title: str,
        project_name: str,
        article_html: str,
        nav: Sequence[NavEntry],
        current_slug: str,
    ) -> str:
        return self.env.get_template(f"{template}.html").render(
            page_title=page_title,
            project_name=project_name,
            article_html=article_html,
            nav=nav,
            current_slug=current_slug,
            stylesheet=STYLESHEET_NAME,
            template_name=template,
        )

    def build(self, project_name: str, pages: Sequence[PageSource], template: str = "default") -> SiteBundle:
        if template not in AVAILABLE_TEMPLATES:
            raise InvalidOperation(f"Unknown template '{template}'")
        if not pages:
            raise ValueError("At least one page is required")

        nav = tuple(NavEntry(id=page.id, title=page.title, slug=page.slug) for page in pages)
        files: dict[str, str] = {}
        rendered: dict[str, str] = {}
        for page in pages:
            article_html = render_markdown(page.content)
            rendered[page.slug] = article_html
            files[f"{page.slug}.html"] = self.render_page(
                template,
                page_title=f"{page.title} - {project_name}",
                project_name=project_name,
                article_html=article_html,
                nav=nav,
                current_slug=page.slug,
            )

        first = pages[0]
        files[f"{INDEX_SLUG}.html"] = self.render_page(
            template,
            page_title=project_name,
            project_name=project_name,
            article_html=rendered[first.slug],
            nav=nav,
            current_slug=first.slug,
        )
        files[STYLESHEET_NAME] = self.stylesheet()

        return SiteBundle(archive=write_archive(files), files=tuple(sorted(files)), nav=nav, template=template)


def write_archive(files: dict[str, str | bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
        for name in sorted(files):
            info = zipfile.ZipInfo(filename=name, date_time=_ZIP_EPOCH)
            info.create_system = 3
            info.external_attr = (stat.S_IFREG | 0o644) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            data = files[name]
            zf.writestr(info, data.encode("utf-8") if isinstance(data, str) else data)
    return buffer.getvalue()
