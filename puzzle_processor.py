"""
Paint-by-Numbers Puzzle Processor
Turns a decoded RGB image into an immutable puzzle model:
- Deterministic k-means color quantization in RGB space
- 4-connected region extraction with noise removal
- Dense pixel -> region label grid for O(1) lookups
- Serialization surface for external persistence
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from skimage import measure

logger = logging.getLogger(__name__)

# Label grid marker for pixels that belong to no region
NO_REGION = -1


class PuzzleError(Exception):
    """Base class for puzzle pipeline errors."""


class InvalidParameter(PuzzleError, ValueError):
    """Malformed dimensions, color count out of range or buffer mismatch."""


class NotFound(PuzzleError, LookupError):
    """A queried puzzle, region or session does not exist."""


@dataclass(frozen=True)
class PaletteColor:
    """A puzzle color. `id` is the 1-based number painted on the template."""
    id: int
    r: int
    g: int
    b: int

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)


@dataclass(frozen=True, eq=False)
class Region:
    """A connected group of same-color pixels."""
    id: int
    color_id: int
    pixels: np.ndarray  # (N, 2) int32 columns x, y in row-major order
    centroid: Tuple[float, float]  # x, y

    @property
    def pixel_count(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True, eq=False)
class PuzzleModel:
    """
    Immutable result of the pipeline.

    `label_grid` is an (height, width) int32 array holding the region id of
    every pixel, or NO_REGION for dropped noise pixels. Region ids are the
    positions in `regions`.
    """
    width: int
    height: int
    palette: List[PaletteColor]
    regions: List[Region]
    label_grid: np.ndarray = field(repr=False)

    def region(self, region_id: int) -> Region:
        """Return a region by id, raising NotFound for unknown ids."""
        if not 0 <= region_id < len(self.regions):
            raise NotFound(f"Region {region_id} does not exist")
        return self.regions[region_id]

    def has_region(self, region_id: int) -> bool:
        return 0 <= region_id < len(self.regions)

    def color(self, color_id: int) -> PaletteColor:
        if not 1 <= color_id <= len(self.palette):
            raise NotFound(f"Color {color_id} does not exist")
        return self.palette[color_id - 1]

    def to_dict(self, include_pixels: bool = True) -> Dict[str, Any]:
        """
        Serialize to plain JSON-compatible data.

        The output carries everything needed to reload the puzzle with
        `from_dict` without re-running quantization.
        """
        regions = []
        for region in self.regions:
            entry = {
                "id": region.id,
                "color_id": region.color_id,
                "pixel_count": region.pixel_count,
                "centroid": [region.centroid[0], region.centroid[1]],
            }
            if include_pixels:
                entry["pixels"] = region.pixels.tolist()
            regions.append(entry)

        return {
            "width": self.width,
            "height": self.height,
            "palette": [
                {"id": pc.id, "r": pc.r, "g": pc.g, "b": pc.b}
                for pc in self.palette
            ],
            "regions": regions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PuzzleModel":
        """
        Rebuild a model from `to_dict(include_pixels=True)` output.

        The label grid is reconstructed from the stored pixel lists.

        Raises:
            InvalidParameter: if the data is inconsistent (missing pixels,
                out-of-bounds or overlapping pixels, unknown colors)
        """
        try:
            width = int(data["width"])
            height = int(data["height"])
            palette = [
                PaletteColor(id=int(p["id"]), r=int(p["r"]), g=int(p["g"]), b=int(p["b"]))
                for p in data["palette"]
            ]
            raw_regions = list(data["regions"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidParameter(f"Malformed puzzle data: {e}") from e

        _check_dimensions(width, height)
        for position, pc in enumerate(palette):
            if pc.id != position + 1:
                raise InvalidParameter(f"Palette ids must run 1..k, got {pc.id} at {position}")

        label_grid = np.full((height, width), NO_REGION, dtype=np.int32)
        regions = []
        for expected_id, raw in enumerate(raw_regions):
            if not isinstance(raw, dict) or "pixels" not in raw:
                raise InvalidParameter("Region pixel lists are required to reload a puzzle")
            try:
                region_id = int(raw["id"])
                color_id = int(raw["color_id"])
                pixels = np.array(raw["pixels"], dtype=np.int32).reshape(-1, 2)
                centroid = raw.get("centroid")
                if centroid is not None:
                    centroid = (float(centroid[0]), float(centroid[1]))
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise InvalidParameter(f"Malformed region {expected_id}: {e!r}") from e

            if region_id != expected_id:
                raise InvalidParameter(f"Region ids must be sequential, got {region_id}")
            if not 1 <= color_id <= len(palette):
                raise InvalidParameter(f"Region {region_id} uses unknown color {color_id}")

            if len(pixels) == 0:
                raise InvalidParameter(f"Region {region_id} has no pixels")
            xs, ys = pixels[:, 0], pixels[:, 1]
            if xs.min() < 0 or ys.min() < 0 or xs.max() >= width or ys.max() >= height:
                raise InvalidParameter(f"Region {region_id} has pixels out of bounds")
            if np.any(label_grid[ys, xs] != NO_REGION):
                raise InvalidParameter(f"Region {region_id} overlaps another region")
            label_grid[ys, xs] = region_id
            pixels.setflags(write=False)

            if centroid is None:
                centroid = (float(xs.mean()), float(ys.mean()))
            regions.append(Region(
                id=region_id,
                color_id=color_id,
                pixels=pixels,
                centroid=centroid,
            ))

        label_grid.setflags(write=False)
        return cls(width=width, height=height, palette=palette,
                   regions=regions, label_grid=label_grid)


def _check_dimensions(width: int, height: int) -> None:
    if width < 1 or height < 1:
        raise InvalidParameter(f"Invalid dimensions {width}x{height}")


class PuzzleBuilder:
    """
    Runs the quantize -> extract pipeline.

    Both stages are pure and deterministic: identical input pixels and
    color count always produce an identical model.
    """

    def __init__(self,
                 num_colors: int = 400,
                 iterations: int = 10,
                 min_region_pixels: int = 6,
                 chunk_size: int = 1 << 20):
        """
        Initialize builder with configuration.

        Args:
            num_colors: Default palette size when `build` gets no k
            iterations: Number of k-means refinement rounds
            min_region_pixels: Smallest component kept as a region;
                smaller components stay unlabeled
            chunk_size: Upper bound on pixel x centroid distance entries
                evaluated at once (bounds memory, not results)
        """
        if iterations < 0:
            raise InvalidParameter("iterations must be non-negative")
        if min_region_pixels < 1:
            raise InvalidParameter("min_region_pixels must be at least 1")
        self.num_colors = num_colors
        self.iterations = iterations
        self.min_region_pixels = min_region_pixels
        self.chunk_size = chunk_size

    def build(self,
              pixels: np.ndarray,
              width: Optional[int] = None,
              height: Optional[int] = None,
              k: Optional[int] = None) -> PuzzleModel:
        """
        Full pipeline entry point.

        Args:
            pixels: (H, W, 3) RGB image, or (N, 3) row-major pixel buffer
                together with explicit width and height
            width: Image width (required for flat buffers)
            height: Image height (required for flat buffers)
            k: Palette size, defaults to the builder's num_colors

        Returns:
            PuzzleModel. Nothing partial is returned on failure.
        """
        flat, width, height = self._prepare_pixels(pixels, width, height)
        k = self.num_colors if k is None else k

        index_buffer, palette = self.quantize(flat, k)
        regions, label_grid = self.extract_regions(index_buffer, width, height)

        logger.info(
            f"Built puzzle {width}x{height}: {len(palette)} colors, "
            f"{len(regions)} regions, {int(np.sum(label_grid == NO_REGION))} unlabeled pixels"
        )
        return PuzzleModel(width=width, height=height, palette=palette,
                           regions=regions, label_grid=label_grid)

    def _prepare_pixels(self,
                        pixels: np.ndarray,
                        width: Optional[int],
                        height: Optional[int]) -> Tuple[np.ndarray, int, int]:
        """Normalize input to an (N, 3) float64 buffer."""
        pixels = np.asarray(pixels)

        if pixels.ndim == 2 and pixels.shape[1] != 3 and width is None:
            # Grayscale image - replicate into three channels
            pixels = np.repeat(pixels[:, :, None], 3, axis=2)
        if pixels.ndim == 3:
            if pixels.shape[2] == 4:
                # RGBA - drop alpha
                pixels = pixels[:, :, :3]
            if pixels.shape[2] != 3:
                raise InvalidParameter(f"Expected RGB image, got shape {pixels.shape}")
            img_h, img_w = pixels.shape[:2]
            if (width is not None and width != img_w) or (height is not None and height != img_h):
                raise InvalidParameter(
                    f"Image is {img_w}x{img_h} but {width}x{height} was given"
                )
            width, height = img_w, img_h
            pixels = pixels.reshape(-1, 3)
        elif pixels.ndim != 2 or pixels.shape[1] != 3:
            raise InvalidParameter(f"Expected (N, 3) pixel buffer, got shape {pixels.shape}")

        if width is None or height is None:
            raise InvalidParameter("width and height are required for flat pixel buffers")
        _check_dimensions(width, height)
        if pixels.shape[0] != width * height:
            raise InvalidParameter(
                f"Pixel buffer has {pixels.shape[0]} entries, expected {width * height}"
            )
        return pixels.astype(np.float64), int(width), int(height)

    def quantize(self,
                 pixels: np.ndarray,
                 k: int) -> Tuple[np.ndarray, List[PaletteColor]]:
        """
        Reduce pixels to a k-color palette with k-means.

        Centroids are seeded from pixels at stride n // k starting at 0, so
        results are reproducible. Each round assigns every pixel to its
        nearest centroid (lowest index wins ties) and moves each centroid to
        the mean of its pixels; a centroid with no pixels keeps its value.

        Args:
            pixels: (N, 3) RGB values
            k: Number of palette colors, 1 <= k <= N

        Returns:
            (index_buffer, palette): int32 array of length N with values in
            [0, k), and palette colors with ids 1..k in centroid order
        """
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 3)
        n = pixels.shape[0]
        if not 1 <= k <= n:
            raise InvalidParameter(f"k must be between 1 and {n}, got {k}")

        step = n // k
        centroids = pixels[np.arange(k) * step].copy()

        for round_no in range(self.iterations):
            assignments = self._assign(pixels, centroids)
            counts = np.bincount(assignments, minlength=k)
            sums = np.stack(
                [np.bincount(assignments, weights=pixels[:, c], minlength=k) for c in range(3)],
                axis=1,
            )
            filled = counts > 0
            centroids[filled] = sums[filled] / counts[filled, None]
            logger.debug(f"k-means round {round_no + 1}: {int(np.sum(~filled))} empty clusters")

        # Final assignment against the returned centroids
        index_buffer = self._assign(pixels, centroids)

        # Half-up rounding, then clamp to the 8-bit range
        rounded = np.clip(np.floor(centroids + 0.5), 0, 255).astype(np.int64)
        palette = [
            PaletteColor(id=i + 1, r=int(c[0]), g=int(c[1]), b=int(c[2]))
            for i, c in enumerate(rounded)
        ]
        return index_buffer, palette

    def _assign(self, pixels: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """Nearest centroid per pixel by brute force, first minimum on ties."""
        n = pixels.shape[0]
        k = centroids.shape[0]
        rows = max(1, self.chunk_size // k)
        out = np.empty(n, dtype=np.int32)

        for start in range(0, n, rows):
            block = pixels[start:start + rows]
            diff = block[:, None, :] - centroids[None, :, :]
            # Squared distance orders the same as Euclidean distance
            dist = np.einsum('ijk,ijk->ij', diff, diff)
            out[start:start + rows] = np.argmin(dist, axis=1)
        return out

    def extract_regions(self,
                        index_buffer: np.ndarray,
                        width: int,
                        height: int) -> Tuple[List[Region], np.ndarray]:
        """
        Split the index buffer into 4-connected same-color regions.

        Components with fewer than `min_region_pixels` pixels are dropped
        and left as NO_REGION in the label grid. Region ids follow the
        row-major position of each component's first pixel.

        Returns:
            (regions, label_grid) where label_grid is a read-only
            (height, width) int32 array
        """
        index_buffer = np.asarray(index_buffer)
        _check_dimensions(width, height)
        if index_buffer.ndim != 1 or index_buffer.shape[0] != width * height:
            raise InvalidParameter(
                f"Index buffer has shape {index_buffer.shape}, expected ({width * height},)"
            )
        if index_buffer.min() < 0:
            raise InvalidParameter("Index buffer contains negative palette indices")

        indices = index_buffer.astype(np.int64)
        # Shift by one so no palette index collides with the background label
        components = measure.label(
            (indices + 1).reshape(height, width), background=0, connectivity=1
        ).ravel()

        num_components = int(components.max())
        labels, first_seen = np.unique(components, return_index=True)
        sizes = np.bincount(components, minlength=num_components + 1)

        # Discovery order = row-major position of each component's first pixel
        discovery = labels[np.argsort(first_seen, kind='stable')]
        kept = discovery[sizes[discovery] >= self.min_region_pixels]

        component_to_region = np.full(num_components + 1, NO_REGION, dtype=np.int32)
        component_to_region[kept] = np.arange(len(kept), dtype=np.int32)
        flat_grid = component_to_region[components]

        regions = []
        if len(kept):
            labelled = np.flatnonzero(flat_grid != NO_REGION)
            # Stable sort keeps each region's pixels in row-major order
            order = labelled[np.argsort(flat_grid[labelled], kind='stable')]
            region_sizes = sizes[kept]
            offsets = np.concatenate(([0], np.cumsum(region_sizes)))

            for region_id in range(len(kept)):
                members = order[offsets[region_id]:offsets[region_id + 1]]
                xs = (members % width).astype(np.int32)
                ys = (members // width).astype(np.int32)
                coords = np.column_stack((xs, ys))
                coords.setflags(write=False)
                regions.append(Region(
                    id=region_id,
                    color_id=int(indices[members[0]]) + 1,
                    pixels=coords,
                    centroid=(float(xs.mean()), float(ys.mean())),
                ))

        dropped = num_components - len(kept)
        if dropped:
            logger.debug(f"Dropped {dropped} components below {self.min_region_pixels} pixels")

        label_grid = flat_grid.reshape(height, width)
        label_grid.setflags(write=False)
        return regions, label_grid


def quantize(pixels: np.ndarray, k: int, iterations: int = 10) -> Tuple[np.ndarray, List[PaletteColor]]:
    """Quantize an (N, 3) pixel buffer to k colors."""
    return PuzzleBuilder(iterations=iterations).quantize(pixels, k)


def extract_regions(index_buffer: np.ndarray,
                    width: int,
                    height: int,
                    min_region_pixels: int = 6) -> Tuple[List[Region], np.ndarray]:
    """Extract regions and the label grid from a palette index buffer."""
    return PuzzleBuilder(min_region_pixels=min_region_pixels).extract_regions(
        index_buffer, width, height
    )


def build_puzzle(pixels: np.ndarray,
                 width: Optional[int] = None,
                 height: Optional[int] = None,
                 k: int = 400) -> PuzzleModel:
    """
    Simple interface: quantize then extract.

    Args:
        pixels: (H, W, 3) RGB image or (N, 3) buffer with width/height
        width: Image width for flat buffers
        height: Image height for flat buffers
        k: Number of palette colors

    Returns:
        PuzzleModel
    """
    return PuzzleBuilder(num_colors=k).build(pixels, width, height)
