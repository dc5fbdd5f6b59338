"""
Interactive painting on top of a built puzzle.

A PuzzleModel is read-only and shared; each viewer gets a PaintSession
holding the ids of the regions they have filled in. Hit-testing and the
overlay masks both read the model's label grid directly.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np

from puzzle_processor import NO_REGION, InvalidParameter, PuzzleModel

logger = logging.getLogger(__name__)

# Regions this small are not numbered on the overlay
LABEL_MIN_PIXELS = 31


@dataclass(frozen=True)
class LabelPlacement:
    """Where a renderer should draw a color number."""
    region_id: int
    color_id: int
    x: float
    y: float


@dataclass
class Overlay:
    """
    Advisory data for a renderer.

    `masked` and `borders` are (height, width) boolean arrays.
    """
    masked: np.ndarray
    borders: np.ndarray
    labels: List[LabelPlacement]

    def masked_pixels(self) -> np.ndarray:
        """Masked pixels as an (N, 2) array of x, y."""
        return _mask_to_xy(self.masked)

    def border_pixels(self) -> np.ndarray:
        """Border pixels as an (N, 2) array of x, y."""
        return _mask_to_xy(self.borders)


def _mask_to_xy(mask: np.ndarray) -> np.ndarray:
    ys, xs = np.nonzero(mask)
    return np.column_stack((xs, ys))


def locate(model: PuzzleModel, x: int, y: int) -> Optional[int]:
    """
    Map an image-space coordinate to a region id.

    Returns None outside the image or on unlabeled noise pixels.
    """
    if not (0 <= x < model.width and 0 <= y < model.height):
        return None
    region_id = int(model.label_grid[y, x])
    if region_id == NO_REGION:
        return None
    return region_id


class PaintSession:
    """
    One viewer's painting progress on one puzzle.

    The session refers to its puzzle by id only; the model is passed to
    every operation. Mutations are serialized by a per-session lock.
    """

    def __init__(self,
                 puzzle_id: str,
                 viewer_id: str,
                 painted_region_ids: Optional[Iterable[int]] = None):
        self.puzzle_id = puzzle_id
        self.viewer_id = viewer_id
        self._painted = set(int(r) for r in painted_region_ids or ())
        self._lock = threading.Lock()

    @property
    def painted_region_ids(self) -> frozenset:
        with self._lock:
            return frozenset(self._painted)

    def is_painted(self, region_id: int) -> bool:
        with self._lock:
            return region_id in self._painted

    def paint(self, model: PuzzleModel, region_id: int, selected_color_id: int) -> bool:
        """
        Fill a region with the selected color.

        Returns True only when the region exists, its color matches
        `selected_color_id` and it was not painted yet. Every other case
        is a no-op returning False.
        """
        if not model.has_region(region_id):
            return False
        if model.regions[region_id].color_id != selected_color_id:
            return False

        with self._lock:
            if region_id in self._painted:
                return False
            self._painted.add(region_id)

        logger.debug(f"Viewer {self.viewer_id} painted region {region_id} of puzzle {self.puzzle_id}")
        return True

    def paint_at(self,
                 model: PuzzleModel,
                 x: int,
                 y: int,
                 selected_color_id: int) -> Tuple[Optional[int], bool]:
        """
        Hit-test a click and paint the region under it.

        Returns:
            (region_id, painted) where region_id is None for clicks outside
            any region
        """
        region_id = locate(model, x, y)
        if region_id is None:
            return None, False
        return region_id, self.paint(model, region_id, selected_color_id)

    def progress(self, model: PuzzleModel) -> Tuple[int, int]:
        """Return (painted regions, total regions)."""
        with self._lock:
            painted = len(self._painted)
        return painted, len(model.regions)

    def percent_complete(self, model: PuzzleModel) -> float:
        painted, total = self.progress(model)
        if total == 0:
            return 0.0
        return round(painted / total * 100, 1)

    def color_progress(self, model: PuzzleModel) -> Dict[int, Tuple[int, int]]:
        """
        Per-color progress for the palette sidebar.

        Returns:
            color id -> (painted regions, total regions) for every palette
            color, including colors with no regions
        """
        color_ids = np.fromiter((r.color_id for r in model.regions), dtype=np.int64,
                                count=len(model.regions))
        k = len(model.palette)
        totals = np.bincount(color_ids, minlength=k + 1)

        with self._lock:
            painted_ids = np.array([r for r in self._painted if model.has_region(r)], dtype=np.int64)
        painted = np.bincount(color_ids[painted_ids], minlength=k + 1)

        return {
            pc.id: (int(painted[pc.id]), int(totals[pc.id]))
            for pc in model.palette
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "puzzle_id": self.puzzle_id,
            "viewer_id": self.viewer_id,
            "painted_region_ids": sorted(self.painted_region_ids),
        }

    @classmethod
    def from_dict(cls,
                  data: Dict[str, Any],
                  model: Optional[PuzzleModel] = None) -> "PaintSession":
        """
        Restore a session. With a model, region ids are validated against it.

        Raises:
            InvalidParameter: on malformed data or unknown region ids
        """
        try:
            puzzle_id = str(data["puzzle_id"])
            viewer_id = str(data["viewer_id"])
            painted = [int(r) for r in data.get("painted_region_ids", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidParameter(f"Malformed session data: {e}") from e

        if model is not None:
            unknown = [r for r in painted if not model.has_region(r)]
            if unknown:
                raise InvalidParameter(f"Session references unknown regions {unknown[:5]}")
        return cls(puzzle_id, viewer_id, painted)


def border_mask(model: PuzzleModel) -> np.ndarray:
    """
    Pixels with at least one in-bounds 4-neighbor in a different region.

    Unlabeled pixels count as their own region, so noise pixels next to a
    region are borders as well.
    """
    grid = model.label_grid
    borders = np.zeros(grid.shape, dtype=bool)

    horizontal = grid[:, 1:] != grid[:, :-1]
    borders[:, 1:] |= horizontal
    borders[:, :-1] |= horizontal

    vertical = grid[1:, :] != grid[:-1, :]
    borders[1:, :] |= vertical
    borders[:-1, :] |= vertical
    return borders


def composite(model: PuzzleModel,
              session: PaintSession,
              show_numbers: bool = True,
              min_label_pixels: int = LABEL_MIN_PIXELS) -> Overlay:
    """
    Compute the overlay for one viewer.

    Args:
        model: Built puzzle
        session: Viewer's session
        show_numbers: Whether to emit label placements
        min_label_pixels: Regions smaller than this get no number

    Returns:
        Overlay with unpainted-region mask, border mask and label placements
    """
    grid = model.label_grid
    painted_ids = [r for r in sorted(session.painted_region_ids) if model.has_region(r)]

    unpainted = np.ones(len(model.regions), dtype=bool)
    unpainted[painted_ids] = False

    masked = np.zeros(grid.shape, dtype=bool)
    labelled = grid != NO_REGION
    masked[labelled] = unpainted[grid[labelled]]

    labels = []
    if show_numbers:
        for region in model.regions:
            if unpainted[region.id] and region.pixel_count >= min_label_pixels:
                labels.append(LabelPlacement(
                    region_id=region.id,
                    color_id=region.color_id,
                    x=region.centroid[0],
                    y=region.centroid[1],
                ))

    return Overlay(masked=masked, borders=border_mask(model), labels=labels)
