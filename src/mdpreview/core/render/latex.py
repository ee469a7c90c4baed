"""LaTeX export-source rendering of a structural tree"""

import re
from collections.abc import Mapping

from mdpreview.core.models import (
    Block, Blockquote, CodeBlock, CodeSpan, Emphasis, Footnote, FootnoteRef,
    Heading, HtmlBlock, Image, Inline, LineBreak, Link, ListBlock, ListItem,
    MathFragment, Paragraph, Root, Strikethrough, Strong, Table, Text, ThematicBreak,
)


LATEX_SPECIALS = {
    '\\': r'\textbackslash{}',
    '{':  r'\{',
    '}':  r'\}',
    '$':  r'\$',
    '&':  r'\&',
    '#':  r'\#',
    '^':  r'\textasciicircum{}',
    '_':  r'\_',
    '%':  r'\%',
    '~':  r'\textasciitilde{}',
}
_SPECIALS_RE = re.compile('|'.join(re.escape(c) for c in LATEX_SPECIALS))
_URL_SPECIALS_RE = re.compile(r'([%#\\])')
FIGURE_OPTIONS = r"width=\linewidth,height=0.8\textheight,keepaspectratio"

SECTION_COMMANDS = {
    1: "section",
    2: "subsection",
    3: "subsubsection",
    4: "paragraph",
    5: "subparagraph",
    6: "subparagraph",
}

PREAMBLE = r"""\documentclass[11pt]{article}
\usepackage{fontspec}
\usepackage{amsmath}
\usepackage{amssymb}
\usepackage{graphicx}
\usepackage[normalem]{ulem}
\usepackage[hidelinks]{hyperref}
\usepackage[margin=2.5cm]{geometry}
"""


def escape_latex(text: str) -> str:
    """Escape every LaTeX-reserved character in text in a single pass."""
    return _SPECIALS_RE.sub(lambda m: LATEX_SPECIALS[m.group(0)], text)


def _escape_url(url: str) -> str:
    return _URL_SPECIALS_RE.sub(r'\\\1', url)


class LatexRenderer:
    """Renders blocks to LaTeX.

    asset_map substitutes image keys (resolved local path, or URL of a
    downloaded remote image) with the path \\includegraphics references.
    Verbatim cannot sit inside \\footnote, so code in a note becomes \\texttt.
    """

    def __init__(self, asset_map: Mapping[str, str] | None = None):
        self.asset_map = dict(asset_map or {})
        self.notes: dict[str, Footnote] = {}
        self._in_note = False

    def render(self, root: Root) -> tuple[str, ...]:
        self.notes = {b.id: b for b in root.children if isinstance(b, Footnote)}
        return tuple(
            self.block(b) for b in root.children
            if not isinstance(b, (Footnote, HtmlBlock))
        )

    def block(self, node: Block) -> str:
        if isinstance(node, Heading):
            cmd = SECTION_COMMANDS.get(node.level, "subparagraph")
            return f"\\{cmd}{{{self.spans(node.spans)}}}\\label{{{node.anchor}}}"
        if isinstance(node, Paragraph):
            return self.spans(node.spans)
        if isinstance(node, ListBlock):
            env = "enumerate" if node.ordered else "itemize"
            items = "\n".join(self.item(i, node.tight) for i in node.items)
            return f"\\begin{{{env}}}\n{items}\n\\end{{{env}}}"
        if isinstance(node, CodeBlock):
            code = node.text.rstrip("\n")
            if self._in_note:
                return "\\texttt{" + escape_latex(code).replace("\n", "\\newline ") + "}"
            return f"\\begin{{verbatim}}\n{code}\n\\end{{verbatim}}"
        if isinstance(node, MathFragment):
            return f"\\[\n{node.text}\n\\]"
        if isinstance(node, Image):
            caption = f"\n\\caption{{{escape_latex(node.alt)}}}" if node.alt else ""
            return (
                "\\begin{figure}[htbp]\n\\centering\n"
                f"{self.image(node, FIGURE_OPTIONS)}"
                f"{caption}\n\\end{{figure}}"
            )
        if isinstance(node, Table):
            return self.table(node)
        if isinstance(node, Blockquote):
            body = "\n\n".join(self.block(c) for c in node.children)
            return f"\\begin{{quote}}\n{body}\n\\end{{quote}}"
        if isinstance(node, ThematicBreak):
            return "\\noindent\\rule{\\linewidth}{0.4pt}"
        if isinstance(node, ListItem):
            return self.item(node)
        if isinstance(node, (Footnote, HtmlBlock)):
            return ""
        raise TypeError(f"unsupported block node {type(node).__name__}")

    def item(self, node: ListItem, tight: bool = False) -> str:
        sep = "\n" if tight else "\n\n"
        return "\\item " + sep.join(self.block(c) for c in node.children)

    def table(self, node: Table) -> str:
        width = node.column_count
        if width == 0:
            return ""
        lines = [f"\\begin{{tabular}}{{|{'l|' * width}}}", "\\hline"]
        for r, row in enumerate(node.rows):
            cells = [self.spans(c) for c in row] + [""] * (width - len(row))
            if r == 0:
                cells = [f"\\textbf{{{c}}}" if c else c for c in cells]
            lines.append(" & ".join(cells) + " \\\\")
            lines.append("\\hline")
        lines.append("\\end{tabular}")
        return "\\begin{center}\n" + "\n".join(lines) + "\n\\end{center}"

    def image(self, node: Image, options: str = "height=1em") -> str:
        key = node.resolved or node.src
        if node.resolved is None and key not in self.asset_map:
            return f"\\url{{{_escape_url(node.src)}}}"
        path = self.asset_map.get(key, key)
        return f"\\includegraphics[{options}]{{\\detokenize{{{path}}}}}"

    def spans(self, spans: tuple[Inline, ...]) -> str:
        return "".join(self.span(s) for s in spans)

    def span(self, node: Inline) -> str:
        if isinstance(node, Text):
            return escape_latex(node.text)
        if isinstance(node, CodeSpan):
            return f"\\texttt{{{escape_latex(node.text)}}}"
        if isinstance(node, Emphasis):
            return f"\\emph{{{self.spans(node.children)}}}"
        if isinstance(node, Strong):
            return f"\\textbf{{{self.spans(node.children)}}}"
        if isinstance(node, Strikethrough):
            return f"\\sout{{{self.spans(node.children)}}}"
        if isinstance(node, Link):
            if node.href.startswith("#"):
                return f"\\hyperref[{node.href[1:]}]{{{self.spans(node.children)}}}"
            return f"\\href{{{_escape_url(node.href)}}}{{{self.spans(node.children)}}}"
        if isinstance(node, LineBreak):
            return "\\\\\n" if node.hard else "\n"
        if isinstance(node, FootnoteRef):
            note = self.notes.get(node.id)
            if note is None:
                return f"\\textsuperscript{{{escape_latex(node.id)}}}"
            outer, self._in_note = self._in_note, True
            try:
                body = "\\par ".join(self.block(c) for c in note.children)
            finally:
                self._in_note = outer
            return "\\footnote{" + body + "}"
        if isinstance(node, MathFragment):
            return f"${node.text}$" if node.inline else f"\\[{node.text}\\]"
        if isinstance(node, Image):
            return self.image(node)
        raise TypeError(f"unsupported inline node {type(node).__name__}")


def render_latex(root: Root, asset_map: Mapping[str, str] | None = None) -> tuple[str, ...]:
    """Render each top-level block of root to LaTeX; footnotes are inlined at their references."""
    return LatexRenderer(asset_map).render(root)


def latex_document(blocks: tuple[str, ...], title: str = "") -> str:
    """Wrap rendered blocks in a standalone document."""
    head = PREAMBLE
    if title:
        head += f"\\title{{{escape_latex(title)}}}\n\\date{{}}\n"
    body = "\n\n".join(b for b in blocks if b)
    maketitle = "\\maketitle\n\n" if title else ""
    return f"{head}\n\\begin{{document}}\n{maketitle}{body}\n\n\\end{{document}}\n"
