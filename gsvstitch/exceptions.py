"""
Errors raised while stitching a panorama.

Only `InvalidZoom`, `RenderingUnavailable` and `StitchCancelled` ever reach
the caller of `stitch`. `TileUnavailable` is absorbed by the tile scheduler,
which treats the tile as absent.
"""
from .constants import GRID_SIZES


class StitchError(Exception):
    """Base class for every stitching error."""


class InvalidZoom(StitchError, ValueError):
    """The requested zoom level is not in the resolution catalog."""

    def __init__(self, zoom_level):
        self.zoom_level = zoom_level
        available = ", ".join(str(zoom) for zoom in sorted(GRID_SIZES))
        super().__init__(f"Invalid zoom level provided: {zoom_level}. Available levels are {available}.")


class TileUnavailable(StitchError):
    """A tile could not be fetched after all retries."""


class RenderingUnavailable(StitchError):
    """The panorama canvas could not be allocated."""


class StitchCancelled(StitchError):
    """The job was cancelled before every tile settled."""
