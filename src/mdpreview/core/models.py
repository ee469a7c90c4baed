"""Structural tree, document and render output models"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class OutputFormat(str, Enum):
    """Render targets: live HTML preview and LaTeX export-source."""
    html  = "html"
    latex = "latex"


# --- inline spans ---

@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class CodeSpan:
    text: str


@dataclass(frozen=True)
class Emphasis:
    children: tuple["Inline", ...]


@dataclass(frozen=True)
class Strong:
    children: tuple["Inline", ...]


@dataclass(frozen=True)
class Strikethrough:
    children: tuple["Inline", ...]


@dataclass(frozen=True)
class Link:
    href: str
    children: tuple["Inline", ...]


@dataclass(frozen=True)
class LineBreak:
    hard: bool = False


@dataclass(frozen=True)
class FootnoteRef:
    id: str


@dataclass(frozen=True)
class MathFragment:
    """Raw TeX passed through untouched; inline spans or display blocks."""
    text: str
    inline: bool = True


@dataclass(frozen=True)
class Image:
    src: str                        # as written in the source
    alt: str = ""
    resolved: str | None = None     # absolute local path, None for remote sources


Inline = Union[Text, CodeSpan, Emphasis, Strong, Strikethrough, Link, LineBreak, FootnoteRef, MathFragment, Image]


# --- blocks ---

@dataclass(frozen=True)
class Heading:
    level: int
    text: str                       # plain text, used for the anchor
    anchor: str
    spans: tuple[Inline, ...] = ()


@dataclass(frozen=True)
class Paragraph:
    spans: tuple[Inline, ...]


@dataclass(frozen=True)
class ListItem:
    children: tuple["Block", ...]


@dataclass(frozen=True)
class ListBlock:
    ordered: bool
    items: tuple[ListItem, ...]
    tight: bool = False             # items hold bare text, no paragraph spacing


@dataclass(frozen=True)
class CodeBlock:
    language: str
    text: str


@dataclass(frozen=True)
class Table:
    """Rows of cells, each cell a run of inline spans. First row is the header."""
    rows: tuple[tuple[tuple[Inline, ...], ...], ...]

    @property
    def column_count(self) -> int:
        return max((len(r) for r in self.rows), default=0)


@dataclass(frozen=True)
class Blockquote:
    children: tuple["Block", ...]


@dataclass(frozen=True)
class Footnote:
    id: str
    children: tuple["Block", ...]


@dataclass(frozen=True)
class ThematicBreak:
    pass


@dataclass(frozen=True)
class HtmlBlock:
    html: str


Block = Union[Heading, Paragraph, ListBlock, CodeBlock, MathFragment, Image, Table, Blockquote, Footnote, ThematicBreak, HtmlBlock]


@dataclass(frozen=True)
class Root:
    children: tuple[Block, ...]


@dataclass(frozen=True)
class Document:
    """One successful parse of a source file; replaced wholesale, never mutated."""
    source_path: str
    content_hash: str               # sha256 of the raw source text
    tree: Root
    theme: str
    title: str = ""


@dataclass(frozen=True)
class RenderOutput:
    """Compiled artifact for one (session, format) at one version."""
    document_version: int
    format: OutputFormat
    theme: str
    blocks: tuple[str, ...]         # one rendered fragment per top-level block
    text: str = field(default="")
    content_hash: str = field(default="")
