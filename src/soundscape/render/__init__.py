"""Cell colouring and the interactive window."""

from soundscape.render.palette import CellPainter

__all__ = ["CellPainter"]
