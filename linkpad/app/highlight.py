"""Rebuild the editor display from text plus link statuses.

The display is regenerated wholesale on each redraw. Line breaks become
explicit break nodes and every URL becomes a status-tagged link node, so the
structure maps one-to-one onto the children of the editable element.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from markupsafe import Markup, escape

from linkpad.app.links import LinkState, StatusTable, iter_url_spans

logger = logging.getLogger(__name__)

LINK_CLASS = "link"
STATE_CLASSES = {state: f"link-{state.value}" for state in LinkState}


@dataclass(frozen=True)
class TextNode:
    text: str

    @property
    def length(self) -> int:
        return len(self.text)


@dataclass(frozen=True)
class LinkNode:
    url: str
    state: LinkState = LinkState.UNCHECKED
    error: Optional[str] = None

    @property
    def length(self) -> int:
        return len(self.url)

    @property
    def css_class(self) -> str:
        return f"{LINK_CLASS} {STATE_CLASSES[self.state]}"

    @property
    def title(self) -> str:
        if self.state == LinkState.UNREACHABLE and self.error:
            return f"{self.error}: click to open {self.url}"
        return f"Click to open {self.url}"


@dataclass(frozen=True)
class BreakNode:
    @property
    def length(self) -> int:
        return 1


Node = Union[TextNode, LinkNode, BreakNode]


@dataclass(frozen=True)
class CaretPosition:
    """A caret location in the rendered structure.

    With ``inside`` set, ``offset`` is a character offset within the text of
    node ``node_index``; otherwise the caret sits in front of child
    ``node_index`` of the editor root (``len(nodes)`` means the very end).
    """

    node_index: int
    offset: int
    inside: bool = True

    def to_dict(self) -> dict:
        return {"node": self.node_index, "offset": self.offset, "inside": self.inside}


@dataclass
class Rendering:
    nodes: list[Node] = field(default_factory=list)

    def visible_text(self) -> str:
        parts: list[str] = []
        for node in self.nodes:
            if isinstance(node, BreakNode):
                parts.append("\n")
            elif isinstance(node, LinkNode):
                parts.append(node.url)
            else:
                parts.append(node.text)
        return "".join(parts)

    def links(self) -> list[LinkNode]:
        return [node for node in self.nodes if isinstance(node, LinkNode)]

    def to_html(self) -> Markup:
        out: list[str] = []
        for node in self.nodes:
            if isinstance(node, BreakNode):
                out.append("<br>")
            elif isinstance(node, LinkNode):
                out.append(
                    Markup('<span class="{cls}" data-url="{url}" data-status="{state}" title="{title}">{url}</span>').format(
                        cls=node.css_class,
                        url=node.url,
                        state=node.state.value,
                        title=node.title,
                    )
                )
            else:
                out.append(escape(node.text))
        if self.nodes and isinstance(self.nodes[-1], BreakNode):
            # Placeholder so a trailing empty line is visible and editable.
            out.append("<br>")
        return Markup("").join(out)

    def locate(self, offset: int) -> Optional[CaretPosition]:
        """Map a text offset onto the node structure, or None if out of range."""
        if offset < 0:
            return None
        consumed = 0
        for index, node in enumerate(self.nodes):
            if isinstance(node, BreakNode):
                if offset == consumed:
                    return CaretPosition(index, 0, inside=False)
            elif offset <= consumed + node.length:
                return CaretPosition(index, offset - consumed)
            consumed += node.length
        if offset == consumed:
            return CaretPosition(len(self.nodes), 0, inside=False)
        return None


def render(text: str, table: StatusTable) -> Rendering:
    """Split ``text`` into lines and tag each URL with its current status."""
    rendering = Rendering()
    lines = (text or "").split("\n")
    for line_index, line in enumerate(lines):
        last = 0
        for start, end, url in iter_url_spans(line):
            if start > last:
                rendering.nodes.append(TextNode(line[last:start]))
            record = table.get(url)
            if record is None:
                rendering.nodes.append(LinkNode(url))
            else:
                rendering.nodes.append(LinkNode(url, record.state, record.error))
            last = end
        if last < len(line):
            rendering.nodes.append(TextNode(line[last:]))
        if line_index < len(lines) - 1:
            rendering.nodes.append(BreakNode())
    return rendering


def restore_selection(rendering: Rendering, selection: Optional[tuple[int, int]]) -> Optional[dict]:
    """Translate a saved logical selection into positions in a new rendering.

    Restoration is best effort: a selection that no longer fits the rebuilt
    structure yields None and the editor keeps whatever caret it has.
    """
    if selection is None:
        return None
    try:
        start, end = selection
        anchor = rendering.locate(int(start))
        focus = rendering.locate(int(end))
    except (TypeError, ValueError) as exc:
        logger.debug(f"Selection {selection!r} could not be restored: {exc}")
        return None
    if anchor is None or focus is None:
        return None
    return {"start": anchor.to_dict(), "end": focus.to_dict()}
