"""BODYSTRUCTURE handling for the IMAP adapter.

``imapclient`` returns BODYSTRUCTURE as nested ``BodyData`` tuples.  They are
flattened into an indexed node list with IMAP part numbers (``"1"``,
``"1.2"``, ...) using an explicit stack, so a hostile or broken structure can
neither recurse without bound nor blow the interpreter stack.
"""

from __future__ import annotations

import base64
import binascii
import quopri
from dataclasses import dataclass, field, replace
from typing import Any

MAX_MIME_DEPTH = 32


@dataclass(frozen=True)
class MimeNode:
    """One entry of a flattened body structure.

    Attributes:
        index: Position in the node list (document order).
        part: IMAP part number; empty for the top-level multipart container.
        mime_type: Lower-cased ``type/subtype``.
        params: Lower-cased content-type parameters.
        encoding: Lower-cased content-transfer-encoding.
        depth: Nesting level, 0 for the root.
        children: Indexes of child nodes, multipart only.
    """

    index: int
    part: str
    mime_type: str
    params: dict[str, str] = field(default_factory=dict)
    encoding: str = "7bit"
    depth: int = 0
    children: tuple[int, ...] = ()

    @property
    def is_multipart(self) -> bool:
        return self.mime_type.startswith("multipart/")

    @property
    def charset(self) -> str:
        return self.params.get("charset", "utf-8")

    @property
    def is_attachment(self) -> bool:
        return "name" in self.params


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("ascii", errors="replace")
    return "" if value is None else str(value)


def _params(raw: Any) -> dict[str, str]:
    if not isinstance(raw, (tuple, list)):
        return {}
    items = [_text(v) for v in raw]
    return {items[i].lower(): items[i + 1] for i in range(0, len(items) - 1, 2)}


def _is_multipart(structure: Any) -> bool:
    return bool(structure) and isinstance(structure[0], list)


def build_mime_tree(structure: Any, max_depth: int = MAX_MIME_DEPTH) -> list[MimeNode]:
    """Flatten a BODYSTRUCTURE response into an indexed node list.

    Args:
        structure: The ``b"BODYSTRUCTURE"`` value from an imapclient fetch.
        max_depth: Nodes nested deeper than this are dropped.

    Returns:
        Nodes in document order; empty when *structure* is missing.
    """
    if not structure:
        return []
    nodes: list[MimeNode] = []
    child_map: dict[int, list[int]] = {}
    # (structure, part number, depth, parent index)
    stack: list[tuple[Any, str, int, int | None]] = [(structure, "", 0, None)]
    while stack:
        current, part, depth, parent = stack.pop()
        index = len(nodes)
        if parent is not None:
            child_map.setdefault(parent, []).append(index)
        if _is_multipart(current):
            subtype = _text(current[1]).lower() if len(current) > 1 else "mixed"
            nodes.append(
                MimeNode(index=index, part=part, mime_type=f"multipart/{subtype}", depth=depth)
            )
            if depth >= max_depth:
                continue
            children = current[0]
            for position in range(len(children), 0, -1):
                child_part = f"{part}.{position}" if part else str(position)
                stack.append((children[position - 1], child_part, depth + 1, index))
            continue
        main = _text(current[0]).lower() if len(current) > 0 else "text"
        sub = _text(current[1]).lower() if len(current) > 1 else "plain"
        nodes.append(
            MimeNode(
                index=index,
                part=part or "1",
                mime_type=f"{main}/{sub}",
                params=_params(current[2] if len(current) > 2 else None),
                encoding=_text(current[5]).lower() if len(current) > 5 else "7bit",
                depth=depth,
            )
        )
    return [
        replace(n, children=tuple(child_map[n.index])) if n.index in child_map else n
        for n in nodes
    ]


def select_text_parts(nodes: list[MimeNode]) -> tuple[MimeNode | None, MimeNode | None]:
    """First inline ``text/plain`` and ``text/html`` leaves, in document order."""
    plain: MimeNode | None = None
    html: MimeNode | None = None
    for node in nodes:
        if node.is_multipart or node.is_attachment:
            continue
        if node.mime_type == "text/plain" and plain is None:
            plain = node
        elif node.mime_type == "text/html" and html is None:
            html = node
    return plain, html


def decode_part(node: MimeNode, payload: bytes | None) -> str:
    """Undo the transfer encoding of *payload* and decode it with the node's charset."""
    if not payload:
        return ""
    data = payload
    if node.encoding == "base64":
        try:
            data = base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError):
            data = payload
    elif node.encoding == "quoted-printable":
        data = quopri.decodestring(payload)
    try:
        return data.decode(node.charset, errors="replace")
    except LookupError:
        return data.decode("utf-8", errors="replace")
