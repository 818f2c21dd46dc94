"""Markdown to HTML for published pages.

Raw HTML in document content is never passed through: markdown-it runs with
``html`` disabled, so ``<``, ``>`` and ``&`` in the source are escaped before
any markdown rule produces markup.
"""

from __future__ import annotations

from markdown_it import MarkdownIt

_md = MarkdownIt("commonmark", {"html": False, "linkify": False, "typographer": False}).enable(
    ["table", "strikethrough"]
)


def render_markdown(content: str | None) -> str:
    if not content:
        return ""
    return _md.render(content)
