"""Workshop shorthand used in cut lists: edge-banding codes and grain marks.

Edge-banding codes name the edges to band.  ``L1``/``L2`` are the long
edges and ``W1``/``W2`` the short ones:

    ===========  ====================
    Code         Edges
    ===========  ====================
    0, -, NONE   (none)
    L, L1        L1
    L2           L2
    W, W1        W1
    W2           W2
    2L           L1 L2
    2W           W1 W2
    LW, 1L1W     L1 W1
    L2W          L1 W1 W2
    2L1W, 2LW    L1 L2 W1
    2L2W, ALL,   L1 L2 W1 W2
    4, 4S
    ===========  ====================

Codes may be combined with ``+``, ``,`` or ``/`` (``L1+W2``).  Anything
unrecognised expands to ``None``: the part simply gets no banding
operation, it is not an error.
"""

from __future__ import annotations

import re

from src.models.parts import EdgeBanding, GrainPolicy

_ALL_EDGES = ("L1", "L2", "W1", "W2")

_EDGE_SHORTCODES: dict[str, tuple[str, ...]] = {
    "0": (),
    "-": (),
    "NONE": (),
    "NO": (),
    "L": ("L1",),
    "L1": ("L1",),
    "1L": ("L1",),
    "L2": ("L2",),
    "W": ("W1",),
    "W1": ("W1",),
    "1W": ("W1",),
    "W2": ("W2",),
    "2L": ("L1", "L2"),
    "2W": ("W1", "W2"),
    "LW": ("L1", "W1"),
    "1L1W": ("L1", "W1"),
    "L2W": ("L1", "W1", "W2"),
    "1L2W": ("L1", "W1", "W2"),
    "2L1W": ("L1", "L2", "W1"),
    "2LW": ("L1", "L2", "W1"),
    "2L2W": _ALL_EDGES,
    "ALL": _ALL_EDGES,
    "4": _ALL_EDGES,
    "4S": _ALL_EDGES,
}

_CODE_SPLIT_RE = re.compile(r"\s*[+,/&]\s*")

_GRAIN_ALONG_LENGTH = frozenset({"l", "length", "along_l", "along_length", "gl", "y", "yes", "true", "1", "x"})
_GRAIN_ALONG_WIDTH = frozenset({"w", "width", "along_w", "along_width", "gw"})
_GRAIN_NONE = frozenset({"", "0", "-", "n", "no", "none", "false", "any"})


def expand_edge_code(code: str | None) -> EdgeBanding | None:
    """Expand an edge-banding shortcode into explicit per-edge flags.

    Args:
        code: A shortcode such as ``"2L2W"``, ``"L1"`` or ``"L1+W2"``.

    Returns:
        An :class:`EdgeBanding` (possibly with no edges applied for codes
        like ``"0"``), or ``None`` when the code is not recognised.
    """
    if code is None:
        return None
    token = code.strip().upper().replace(" ", "")
    if not token:
        return None

    edges = _EDGE_SHORTCODES.get(token)
    if edges is None:
        pieces = [p for p in _CODE_SPLIT_RE.split(token) if p]
        if len(pieces) < 2:
            return None
        combined: set[str] = set()
        for piece in pieces:
            piece_edges = _EDGE_SHORTCODES.get(piece)
            if piece_edges is None:
                return None
            combined.update(piece_edges)
        edges = tuple(edge for edge in _ALL_EDGES if edge in combined)

    return EdgeBanding(**{edge: True for edge in edges})


def parse_grain(value: str | None) -> tuple[GrainPolicy, bool] | None:
    """Interpret a grain cell as ``(grain_policy, allow_rotation)``.

    Length-grain and width-grain marks both lock the part to the board
    grain, which also rules out rotating it during nesting.  Empty and
    "no" style values leave the part free.  Returns ``None`` for values
    that are not grain marks at all.
    """
    if value is None:
        return GrainPolicy.NONE, True
    token = value.strip().lower()
    if token in _GRAIN_NONE:
        return GrainPolicy.NONE, True
    if token in _GRAIN_ALONG_LENGTH or token in _GRAIN_ALONG_WIDTH:
        return GrainPolicy.ALONG_LENGTH, False
    return None
