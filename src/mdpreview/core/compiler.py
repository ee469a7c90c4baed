"""Document compiler: source text + theme -> structural tree -> HTML or LaTeX render output"""

import os
from collections.abc import Mapping
from pathlib import Path

from mdpreview.core.models import (
    Block, Blockquote, Document, Footnote, Heading, Image, Inline,
    ListBlock, ListItem, OutputFormat, Paragraph, RenderOutput, Root, Table,
)
from mdpreview.core.parse import parse_markdown
from mdpreview.core.render.html import AssetUrl, file_uri, render_html
from mdpreview.core.render.latex import latex_document, render_latex
from mdpreview.core.utils.hashing import sha256, sha256_parts
from mdpreview.errors import CompileError, SourceUnreadableError


def read_source(path: str | Path) -> str:
    """Read a source document as UTF-8, raising SourceUnreadableError on any failure."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SourceUnreadableError(path, e) from e


def _title(root: Root, frontmatter: dict, source_path: str | None) -> str:
    if isinstance(frontmatter.get("title"), str):
        return frontmatter["title"]
    for b in root.children:
        if isinstance(b, Heading):
            return b.text
    return Path(source_path).stem if source_path else ""


def build_document(source_text: str, theme: str, source_path: str | None = None) -> Document:
    """Parse source text into an immutable Document. Raises ParseError."""
    source_dir = os.path.dirname(os.path.abspath(source_path)) if source_path else None
    root, frontmatter = parse_markdown(source_text, source_dir)
    return Document(
        source_path=source_path or "",
        content_hash=sha256(source_text),
        tree=root,
        theme=theme,
        title=_title(root, frontmatter, source_path),
    )


def render_document(
    document: Document,
    target_format: OutputFormat,
    version: int = 0,
    asset_url: AssetUrl = file_uri,
    asset_map: Mapping[str, str] | None = None,
    ) -> RenderOutput:
    """Render a Document to one target format at the given version.

    Identical documents always produce byte-identical output. Any renderer
    failure is reported as CompileError.
    """
    target_format = OutputFormat(target_format)
    try:
        if target_format == OutputFormat.html:
            blocks = render_html(document.tree, asset_url)
            text = "\n".join(blocks)
        else:
            blocks = render_latex(document.tree, asset_map)
            text = latex_document(blocks, document.title)
    except (TypeError, ValueError, KeyError) as e:
        raise CompileError(f"failed to render {target_format.value}: {e}") from e

    return RenderOutput(
        document_version=version,
        format=target_format,
        theme=document.theme,
        blocks=blocks,
        text=text,
        content_hash=sha256_parts([target_format.value, document.theme, text]),
    )


def compile_source(
    source_text: str,
    theme: str,
    target_format: OutputFormat,
    source_path: str | None = None,
    version: int = 0,
    asset_url: AssetUrl = file_uri,
    asset_map: Mapping[str, str] | None = None,
    ) -> RenderOutput:
    """Pure transform (sourceText, theme, targetFormat) -> RenderOutput."""
    document = build_document(source_text, theme, source_path)
    return render_document(document, target_format, version, asset_url, asset_map)


def _walk_blocks(blocks: tuple[Block, ...]):
    for b in blocks:
        yield b
        if isinstance(b, (Blockquote, Footnote, ListItem)):
            yield from _walk_blocks(b.children)
        elif isinstance(b, ListBlock):
            yield from _walk_blocks(b.items)


def _walk_spans(spans: tuple[Inline, ...]):
    for s in spans:
        yield s
        children = getattr(s, "children", None)
        if children:
            yield from _walk_spans(children)


def collect_images(root: Root) -> list[Image]:
    """All images in document order, block-level and inline."""
    images: list[Image] = []
    for b in _walk_blocks(root.children):
        if isinstance(b, Image):
            images.append(b)
        elif isinstance(b, (Paragraph, Heading)):
            images.extend(s for s in _walk_spans(b.spans) if isinstance(s, Image))
        elif isinstance(b, Table):
            for row in b.rows:
                for cell in row:
                    images.extend(s for s in _walk_spans(cell) if isinstance(s, Image))
    return images
