"""HTML fragment rendering of a structural tree, one fragment per top-level block"""

from collections.abc import Callable
from html import escape
from pathlib import Path

from mdpreview.core.models import (
    Block, Blockquote, CodeBlock, CodeSpan, Emphasis, Footnote, FootnoteRef,
    Heading, HtmlBlock, Image, Inline, LineBreak, Link, ListBlock, ListItem,
    MathFragment, Paragraph, Root, Strikethrough, Strong, Table, Text, ThematicBreak,
)
from mdpreview.core.utils.slug import slugify


AssetUrl = Callable[[str], str]


def file_uri(path: str) -> str:
    return Path(path).as_uri()


def _attr(value: str) -> str:
    return escape(value, quote=True)


def _note_id(label: str) -> str:
    return slugify(label) or "note"


class HtmlRenderer:
    """Renders blocks to HTML; local image paths go through asset_url."""

    def __init__(self, asset_url: AssetUrl = file_uri):
        self.asset_url = asset_url

    def render(self, root: Root) -> tuple[str, ...]:
        return tuple(self.block(b) for b in root.children)

    def block(self, node: Block) -> str:
        if isinstance(node, Heading):
            return f'<h{node.level} id="{_attr(node.anchor)}">{self.spans(node.spans)}</h{node.level}>'
        if isinstance(node, Paragraph):
            return f"<p>{self.spans(node.spans)}</p>"
        if isinstance(node, ListBlock):
            # numbering restarts at 1 whatever the source markers said
            tag = "ol" if node.ordered else "ul"
            return f"<{tag}>{''.join(self.item(i, node.tight) for i in node.items)}</{tag}>"
        if isinstance(node, CodeBlock):
            cls = f' class="language-{_attr(node.language)}"' if node.language else ""
            return f"<pre><code{cls}>{escape(node.text, quote=False)}</code></pre>"
        if isinstance(node, MathFragment):
            return f'<div class="math display">$${escape(node.text, quote=False)}$$</div>'
        if isinstance(node, Image):
            caption = f"<figcaption>{escape(node.alt)}</figcaption>" if node.alt else ""
            return f"<figure>{self.image(node)}{caption}</figure>"
        if isinstance(node, Table):
            return self.table(node)
        if isinstance(node, Blockquote):
            return f"<blockquote>{''.join(self.block(c) for c in node.children)}</blockquote>"
        if isinstance(node, Footnote):
            nid = _note_id(node.id)
            body = "".join(self.block(c) for c in node.children)
            return (
                f'<div class="footnote" id="fn-{_attr(nid)}">'
                f'<a class="footnote-back" href="#fnref-{_attr(nid)}">{escape(node.id)}</a>{body}</div>'
            )
        if isinstance(node, ThematicBreak):
            return "<hr>"
        if isinstance(node, HtmlBlock):
            return f'<div class="raw-html">{node.html}</div>'
        if isinstance(node, ListItem):
            return self.item(node)
        raise TypeError(f"unsupported block node {type(node).__name__}")

    def item(self, node: ListItem, tight: bool = False) -> str:
        parts = [
            self.spans(c.spans) if tight and isinstance(c, Paragraph) else self.block(c)
            for c in node.children
        ]
        return f"<li>{''.join(parts)}</li>"

    def table(self, node: Table) -> str:
        width = node.column_count
        parts = ["<table>"]
        for r, row in enumerate(node.rows):
            cells = list(row) + [()] * (width - len(row))
            tag = "th" if r == 0 else "td"
            if r == 0:
                parts.append("<thead>")
            elif r == 1:
                parts.append("<tbody>")
            parts.append("<tr>" + "".join(f"<{tag}>{self.spans(c)}</{tag}>" for c in cells) + "</tr>")
            if r == 0:
                parts.append("</thead>")
        if len(node.rows) > 1:
            parts.append("</tbody>")
        parts.append("</table>")
        return "".join(parts)

    def image(self, node: Image) -> str:
        src = self.asset_url(node.resolved) if node.resolved else node.src
        return f'<img src="{_attr(src)}" alt="{_attr(node.alt)}">'

    def spans(self, spans: tuple[Inline, ...]) -> str:
        return "".join(self.span(s) for s in spans)

    def span(self, node: Inline) -> str:
        if isinstance(node, Text):
            return escape(node.text, quote=False)
        if isinstance(node, CodeSpan):
            return f"<code>{escape(node.text, quote=False)}</code>"
        if isinstance(node, Emphasis):
            return f"<em>{self.spans(node.children)}</em>"
        if isinstance(node, Strong):
            return f"<strong>{self.spans(node.children)}</strong>"
        if isinstance(node, Strikethrough):
            return f"<s>{self.spans(node.children)}</s>"
        if isinstance(node, Link):
            return f'<a href="{_attr(node.href)}">{self.spans(node.children)}</a>'
        if isinstance(node, LineBreak):
            return "<br>\n" if node.hard else "\n"
        if isinstance(node, FootnoteRef):
            nid = _note_id(node.id)
            return (
                f'<sup class="footnote-ref" id="fnref-{_attr(nid)}">'
                f'<a href="#fn-{_attr(nid)}">{escape(node.id)}</a></sup>'
            )
        if isinstance(node, MathFragment):
            if node.inline:
                return f'<span class="math inline">\\({escape(node.text, quote=False)}\\)</span>'
            return f'<span class="math display">$${escape(node.text, quote=False)}$$</span>'
        if isinstance(node, Image):
            return self.image(node)
        raise TypeError(f"unsupported inline node {type(node).__name__}")


def render_html(root: Root, asset_url: AssetUrl = file_uri) -> tuple[str, ...]:
    """Render each top-level block of root to an HTML fragment."""
    return HtmlRenderer(asset_url).render(root)
