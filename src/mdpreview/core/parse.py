"""Frontmatter extraction and markdown-it token stream to structural tree conversion"""

import logging
import os
import re
from functools import lru_cache
from typing import Any
from urllib.parse import unquote

import yaml
from markdown_it import MarkdownIt
from markdown_it.token import Token
from mdit_py_plugins.dollarmath import dollarmath_plugin
from mdit_py_plugins.footnote import footnote_plugin

from mdpreview.core.models import (
    Block, Blockquote, CodeBlock, CodeSpan, Emphasis, Footnote, FootnoteRef,
    Heading, HtmlBlock, Image, Inline, LineBreak, Link, ListBlock, ListItem,
    MathFragment, Paragraph, Root, Strikethrough, Strong, Table, Text, ThematicBreak,
)
from mdpreview.core.utils.slug import AnchorRegistry
from mdpreview.errors import ParseError


FRONTMATTER_RE = re.compile(r'^---\s*\n(.*?)\n---\s*\n', re.DOTALL)
REMOTE_RE = re.compile(r'^(?:[a-z][a-z0-9+.-]*:)?//|^data:', re.IGNORECASE)
MD_EXTENSIONS = {'.md', '.mdx', '.markdown'}

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def make_parser(preset: str = 'gfm-like') -> MarkdownIt:
    """Build a MarkdownIt instance with footnote and dollar-math rules."""
    return (
        MarkdownIt(preset, options_update={"linkify": False})
        .use(footnote_plugin)
        .use(dollarmath_plugin)
    )


def strip_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Return (frontmatter_dict, body) with YAML header removed."""
    m = FRONTMATTER_RE.match(text)
    if m:
        try:
            fm = yaml.safe_load(m.group(1)) or {}
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML frontmatter: {e}") from e
        if not isinstance(fm, dict):
            raise ParseError(f"Invalid YAML frontmatter: expected a mapping, got {type(fm).__name__}")
        return fm, text[m.end():]
    return {}, text


def resolve_image(src: str, source_dir: str | None) -> str | None:
    """Absolute local path for src, or None when src is remote or no base directory is known.

    Local sources arrive percent-encoded from markdown-it and are decoded first.
    """
    if not src or REMOTE_RE.match(src):
        return None
    src = unquote(src)
    if os.path.isabs(src):
        return os.path.normpath(src)
    if source_dir is None:
        return None
    return os.path.normpath(os.path.join(source_dir, src))


def heading_level(token: Token) -> int | None:
    """Return the heading level (1-6) for a heading_open token, else None."""
    if token.type == 'heading_open' and token.tag and token.tag[0] == 'h' and token.tag[1:].isdigit():
        return int(token.tag[1:])
    return None


def plain_text(spans: tuple[Inline, ...]) -> str:
    """Concatenate the visible text of inline spans."""
    out = []
    for s in spans:
        if isinstance(s, (Text, CodeSpan, MathFragment)):
            out.append(s.text)
        elif isinstance(s, (Emphasis, Strong, Strikethrough, Link)):
            out.append(plain_text(s.children))
        elif isinstance(s, LineBreak):
            out.append(" ")
        elif isinstance(s, Image):
            out.append(s.alt)
    return "".join(out)


def _footnote_label(meta: dict | None) -> str:
    meta = meta or {}
    label = meta.get("label")
    return str(label) if label else str(meta.get("id", 0) + 1)


class _TreeBuilder:
    """Single pass over a block token stream; keeps per-document anchor state."""

    _CONTAINERS = {
        'blockquote_open':     'blockquote_close',
        'bullet_list_open':    'bullet_list_close',
        'ordered_list_open':   'ordered_list_close',
        'list_item_open':      'list_item_close',
        'footnote_block_open': 'footnote_block_close',
        'footnote_open':       'footnote_close',
    }

    def __init__(self, tokens: list[Token], source_dir: str | None):
        self.tokens = tokens
        self.source_dir = source_dir
        self.anchors = AnchorRegistry()

    def build(self) -> Root:
        blocks, _ = self._blocks(0, None)
        return Root(children=tuple(blocks))

    def _blocks(self, i: int, close: str | None) -> tuple[list[Block], int]:
        out: list[Block] = []
        tokens = self.tokens
        while i < len(tokens):
            tok = tokens[i]
            if close is not None and tok.type == close:
                return out, i + 1

            if tok.type == 'heading_open':
                spans = self._inline(tokens[i + 1])
                text = plain_text(spans).strip()
                out.append(Heading(heading_level(tok), text, self.anchors.anchor(text), spans))
                i += 3
            elif tok.type == 'paragraph_open':
                spans = self._inline(tokens[i + 1])
                out.append(self._paragraph(spans))
                i += 2
                while tokens[i].type != 'paragraph_close':
                    i += 1          # footnote_anchor tokens sit before the close
                i += 1
            elif tok.type in ('bullet_list_open', 'ordered_list_open'):
                start = i
                items, i = self._blocks(i + 1, self._CONTAINERS[tok.type])
                # markdown-it hides the item paragraphs of a tight list
                tight = any(
                    t.type == 'paragraph_open' and t.hidden and t.level == tok.level + 2
                    for t in tokens[start:i]
                )
                out.append(ListBlock(tok.type == 'ordered_list_open', tuple(items), tight))
            elif tok.type == 'list_item_open':
                children, i = self._blocks(i + 1, 'list_item_close')
                out.append(ListItem(tuple(children)))
            elif tok.type == 'blockquote_open':
                children, i = self._blocks(i + 1, 'blockquote_close')
                out.append(Blockquote(tuple(children)))
            elif tok.type == 'footnote_block_open':
                notes, i = self._blocks(i + 1, 'footnote_block_close')
                out.extend(notes)
            elif tok.type == 'footnote_open':
                children, i = self._blocks(i + 1, 'footnote_close')
                out.append(Footnote(_footnote_label(tok.meta), tuple(children)))
            elif tok.type in ('fence', 'code_block'):
                lang = tok.info.strip().split()[0] if tok.info.strip() else ""
                out.append(CodeBlock(lang, tok.content))
                i += 1
            elif tok.type == 'math_block' or tok.type == 'math_block_label':
                out.append(MathFragment(tok.content.strip("\n"), inline=False))
                i += 1
            elif tok.type == 'table_open':
                table, i = self._table(i + 1)
                out.append(table)
            elif tok.type == 'hr':
                out.append(ThematicBreak())
                i += 1
            elif tok.type == 'html_block':
                out.append(HtmlBlock(tok.content))
                i += 1
            else:
                LOGGER.debug("skipping token %s", tok.type)
                i += 1
        if close is not None:
            raise ParseError(f"unterminated block, expected {close}")
        return out, i

    def _paragraph(self, spans: tuple[Inline, ...]) -> Block:
        """An image standing alone in a paragraph becomes an Image block (a figure)."""
        visible = [s for s in spans if not isinstance(s, LineBreak)]
        if len(visible) == 1 and isinstance(visible[0], Image):
            return visible[0]
        return Paragraph(spans)

    def _table(self, i: int) -> tuple[Table, int]:
        rows: list[tuple[tuple[Inline, ...], ...]] = []
        row: list[tuple[Inline, ...]] = []
        tokens = self.tokens
        while tokens[i].type != 'table_close':
            tok = tokens[i]
            if tok.type == 'tr_open':
                row = []
            elif tok.type == 'tr_close':
                rows.append(tuple(row))
            elif tok.type == 'inline':
                row.append(self._inline(tok))
            i += 1
        return Table(tuple(rows)), i + 1

    def _inline(self, token: Token) -> tuple[Inline, ...]:
        spans, _ = self._spans(token.children or [], 0, None)
        return tuple(spans)

    def _spans(self, children: list[Token], i: int, close: str | None) -> tuple[list[Inline], int]:
        out: list[Inline] = []
        while i < len(children):
            tok = children[i]
            t = tok.type
            if close is not None and t == close:
                return out, i + 1
            if t == 'text':
                if out and isinstance(out[-1], Text):
                    out[-1] = Text(out[-1].text + tok.content)
                else:
                    out.append(Text(tok.content))
            elif t == 'softbreak':
                out.append(LineBreak(hard=False))
            elif t == 'hardbreak':
                out.append(LineBreak(hard=True))
            elif t == 'code_inline':
                out.append(CodeSpan(tok.content))
            elif t in ('em_open', 'strong_open', 's_open', 'link_open'):
                inner, i = self._spans(children, i + 1, t.replace('_open', '_close'))
                inner = tuple(inner)
                if t == 'em_open':
                    out.append(Emphasis(inner))
                elif t == 'strong_open':
                    out.append(Strong(inner))
                elif t == 's_open':
                    out.append(Strikethrough(inner))
                else:
                    out.append(Link(str(tok.attrGet('href') or ''), inner))
                continue
            elif t == 'image':
                src = str(tok.attrGet('src') or '')
                alt = plain_text(self._inline(tok)) if tok.children else tok.content
                out.append(Image(src, alt, resolve_image(src, self.source_dir)))
            elif t in ('math_inline', 'math_inline_double'):
                out.append(MathFragment(tok.content, inline=t == 'math_inline'))
            elif t == 'footnote_ref':
                out.append(FootnoteRef(_footnote_label(tok.meta)))
            elif t == 'html_inline':
                out.append(Text(tok.content))
            else:
                LOGGER.debug("skipping inline token %s", t)
            i += 1
        return out, i


def parse_markdown(
    text: str,
    source_dir: str | None = None,
    preset: str = 'gfm-like',
    ) -> tuple[Root, dict[str, Any]]:
    """Parse markdown text into (structural tree, frontmatter).

    Relative image sources are resolved against source_dir. Raises ParseError
    when the frontmatter is invalid or the token stream cannot be organized.
    """
    frontmatter, body = strip_frontmatter(text)
    try:
        tokens = make_parser(preset).parse(body)
    except Exception as e:
        raise ParseError(f"markdown tokenizer failed: {e}") from e
    try:
        root = _TreeBuilder(tokens, source_dir).build()
    except IndexError as e:
        raise ParseError("truncated token stream") from e
    return root, frontmatter
