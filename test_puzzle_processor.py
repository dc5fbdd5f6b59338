"""
Unit tests for the quantize -> extract pipeline.
"""
from collections import deque

import numpy as np
import pytest

from conftest import COLOR_A, COLOR_B, split_image
from puzzle_processor import (
    NO_REGION, InvalidParameter, NotFound, PuzzleBuilder, PuzzleModel,
    build_puzzle, extract_regions, quantize,
)


def random_pixels(seed: int, n: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(n, 3), dtype=np.uint8)


def is_four_connected(pixels: np.ndarray) -> bool:
    """Independent BFS check over a set of (x, y) pixels."""
    members = {(int(x), int(y)) for x, y in pixels}
    start = next(iter(members))
    seen = {start}
    queue = deque([start])
    while queue:
        x, y = queue.popleft()
        for nxt in ((x + 1, y), (x - 1, y), (x, y + 1), (x, y - 1)):
            if nxt in members and nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return len(seen) == len(members)


class TestQuantize:
    """Color quantization"""

    def test_deterministic(self):
        pixels = random_pixels(7, 500)
        first_idx, first_palette = quantize(pixels, 8)
        second_idx, second_palette = quantize(pixels, 8)
        np.testing.assert_array_equal(first_idx, second_idx)
        assert first_palette == second_palette

    def test_indices_in_range(self):
        pixels = random_pixels(3, 300)
        indices, palette = quantize(pixels, 5)
        assert indices.shape == (300,)
        assert indices.min() >= 0
        assert indices.max() < 5
        assert [pc.id for pc in palette] == [1, 2, 3, 4, 5]

    def test_palette_channels_in_byte_range(self):
        _, palette = quantize(random_pixels(11, 200), 6)
        for pc in palette:
            assert all(0 <= v <= 255 for v in pc.rgb)

    def test_k_equals_pixel_count_is_identity(self):
        # Nine distinct colors, each pixel becomes its own centroid
        pixels = np.array([[i * 20, 255 - i * 20, i * 7] for i in range(9)], dtype=np.uint8)
        indices, palette = quantize(pixels, 9)
        np.testing.assert_array_equal(indices, np.arange(9))
        assert [pc.rgb for pc in palette] == [tuple(int(v) for v in p) for p in pixels]

    def test_two_flat_colors(self):
        pixels = split_image(4, 4, 2).reshape(-1, 3)
        indices, palette = quantize(pixels, 2)
        assert {pc.rgb for pc in palette} == {COLOR_A, COLOR_B}
        grid = indices.reshape(4, 4)
        # Each half maps to one palette entry, the halves differ
        assert len(set(grid[:, :2].ravel())) == 1
        assert len(set(grid[:, 2:].ravel())) == 1
        assert grid[0, 0] != grid[0, 2]
        assert palette[grid[0, 0]].rgb == COLOR_A

    def test_empty_cluster_keeps_value(self):
        # Both seeds land on the same color; the second cluster is empty in
        # round one and must survive
        pixels = np.array([[0, 0, 0], [200, 200, 200]] * 4, dtype=np.uint8)
        indices, palette = quantize(pixels, 2)
        assert not any(np.isnan(v) for pc in palette for v in pc.rgb)
        assert {pc.rgb for pc in palette} == {(0, 0, 0), (200, 200, 200)}

    def test_ties_go_to_lowest_index(self):
        # Zero refinement rounds: both seeds are identical, every pixel ties
        pixels = np.array([[10, 10, 10], [50, 50, 50], [10, 10, 10], [90, 90, 90]])
        builder = PuzzleBuilder(iterations=0)
        indices, _ = builder.quantize(pixels, 2)
        # Seeds are pixels 0 and 2, both (10, 10, 10)
        np.testing.assert_array_equal(indices, [0, 0, 0, 0])

    def test_chunking_does_not_change_result(self):
        pixels = random_pixels(5, 400)
        big = PuzzleBuilder().quantize(pixels, 7)
        small = PuzzleBuilder(chunk_size=10).quantize(pixels, 7)
        np.testing.assert_array_equal(big[0], small[0])
        assert big[1] == small[1]

    @pytest.mark.parametrize("k", [0, -1, 11])
    def test_invalid_k(self, k):
        with pytest.raises(InvalidParameter):
            quantize(random_pixels(1, 10), k)


class TestExtractRegions:
    """Connected component extraction"""

    def test_two_halves(self):
        indices = np.array([1, 1, 0, 0] * 4)
        regions, grid = extract_regions(indices, 4, 4)
        assert len(regions) == 2
        assert regions[0].color_id == 2
        assert regions[0].centroid == (0.5, 1.5)
        assert regions[1].color_id == 1
        assert regions[1].centroid == (2.5, 1.5)
        assert [r.pixel_count for r in regions] == [8, 8]
        np.testing.assert_array_equal(grid[:, :2], 0)
        np.testing.assert_array_equal(grid[:, 2:], 1)

    def test_small_components_are_dropped(self):
        indices = np.zeros((10, 10), dtype=np.int32)
        indices[4:6, 4:6] = 1  # 4 pixels
        regions, grid = extract_regions(indices.ravel(), 10, 10)
        assert len(regions) == 1
        assert regions[0].pixel_count == 96
        assert np.all(grid[4:6, 4:6] == NO_REGION)

    def test_six_pixels_is_kept_five_is_not(self):
        indices = np.zeros((4, 8), dtype=np.int32)
        indices[0, :6] = 1  # 6 pixels
        indices[3, :5] = 2  # 5 pixels
        regions, grid = extract_regions(indices.ravel(), 8, 4)
        assert sorted(r.color_id for r in regions) == [1, 2]
        assert np.all(grid[3, :5] == NO_REGION)

    def test_diagonal_pixels_are_not_connected(self):
        indices = np.zeros((8, 8), dtype=np.int32)
        for i in range(8):
            indices[i, i] = 1
        regions, grid = extract_regions(indices.ravel(), 8, 8)
        assert all(r.color_id == 1 for r in regions)
        assert all(grid[i, i] == NO_REGION for i in range(8))

    def test_ids_follow_scan_order(self):
        indices = np.array([
            [0, 0, 0, 1, 1, 1],
            [0, 0, 0, 1, 1, 1],
            [2, 2, 2, 2, 2, 2],
            [2, 2, 2, 2, 2, 2],
        ])
        regions, _ = extract_regions(indices.ravel(), 6, 4)
        assert [r.color_id for r in regions] == [1, 2, 3]
        assert [r.id for r in regions] == [0, 1, 2]

    def test_partition_and_label_grid_consistency(self):
        rng = np.random.default_rng(42)
        width, height = 30, 20
        # Blocky noise so both kept and dropped components occur
        coarse = rng.integers(0, 3, size=(height // 2, width // 2))
        indices = np.kron(coarse, np.ones((2, 2), dtype=np.int64))
        indices[rng.random((height, width)) < 0.05] = 3
        flat = indices.ravel()

        regions, grid = extract_regions(flat, width, height)
        coverage = np.zeros((height, width), dtype=np.int32)
        for region in regions:
            assert region.pixel_count > 5
            assert is_four_connected(region.pixels)
            xs, ys = region.pixels[:, 0], region.pixels[:, 1]
            coverage[ys, xs] += 1
            assert np.all(grid[ys, xs] == region.id)
            assert np.all(flat[ys * width + xs] == region.color_id - 1)

        # Each pixel is in at most one region, and unlabeled exactly when in none
        assert coverage.max() <= 1
        np.testing.assert_array_equal(coverage == 0, grid == NO_REGION)

    def test_label_grid_is_read_only(self):
        _, grid = extract_regions(np.zeros(36, dtype=np.int32), 6, 6)
        with pytest.raises(ValueError):
            grid[0, 0] = 5

    def test_length_mismatch(self):
        with pytest.raises(InvalidParameter):
            extract_regions(np.zeros(15, dtype=np.int32), 4, 4)

    def test_bad_dimensions(self):
        with pytest.raises(InvalidParameter):
            extract_regions(np.zeros(0, dtype=np.int32), 0, 4)


class TestBuildPuzzle:
    """Full pipeline and model serialization"""

    def test_two_color_scenario(self, two_color_model):
        model = two_color_model
        assert (model.width, model.height) == (4, 4)
        assert len(model.regions) == 2
        left, right = model.regions
        assert left.centroid == (0.5, 1.5)
        assert right.centroid == (2.5, 1.5)
        assert left.pixel_count == right.pixel_count == 8
        assert model.color(left.color_id).rgb == COLOR_A
        assert model.color(right.color_id).rgb == COLOR_B

    def test_flat_buffer_input(self):
        image = split_image(4, 4, 2)
        model = build_puzzle(image.reshape(-1, 3), 4, 4, k=2)
        assert len(model.regions) == 2

    def test_rgba_input(self):
        image = np.dstack([split_image(6, 6, 3), np.full((6, 6), 255, dtype=np.uint8)])
        model = build_puzzle(image, k=2)
        assert len(model.regions) == 2

    def test_flat_buffer_requires_dimensions(self):
        with pytest.raises(InvalidParameter):
            build_puzzle(np.zeros((16, 3), dtype=np.uint8), k=2)

    def test_dimension_mismatch(self):
        with pytest.raises(InvalidParameter):
            build_puzzle(np.zeros((16, 3), dtype=np.uint8), 5, 4, k=2)

    def test_k_larger_than_image(self):
        with pytest.raises(InvalidParameter):
            build_puzzle(split_image(2, 2, 1), k=5)

    def test_region_lookup(self, two_color_model):
        assert two_color_model.region(1).id == 1
        with pytest.raises(NotFound):
            two_color_model.region(2)
        with pytest.raises(NotFound):
            two_color_model.color(3)

    def test_reload_from_dict(self):
        rng = np.random.default_rng(9)
        image = np.kron(rng.integers(0, 256, size=(6, 6, 3)), np.ones((3, 3, 1))).astype(np.uint8)
        model = build_puzzle(image, k=4)

        restored = PuzzleModel.from_dict(model.to_dict())
        assert restored.palette == model.palette
        np.testing.assert_array_equal(restored.label_grid, model.label_grid)
        assert [r.centroid for r in restored.regions] == [r.centroid for r in model.regions]

    def test_reload_requires_pixels(self, two_color_model):
        with pytest.raises(InvalidParameter):
            PuzzleModel.from_dict(two_color_model.to_dict(include_pixels=False))

    def test_reload_rejects_overlap(self, two_color_model):
        data = two_color_model.to_dict()
        data["regions"][1]["pixels"].append([0, 0])
        with pytest.raises(InvalidParameter):
            PuzzleModel.from_dict(data)

    def test_reload_rejects_out_of_bounds(self, two_color_model):
        data = two_color_model.to_dict()
        data["regions"][0]["pixels"].append([9, 0])
        with pytest.raises(InvalidParameter):
            PuzzleModel.from_dict(data)

    @pytest.mark.parametrize("mutate", [
        lambda region: region.pop("color_id"),
        lambda region: region.pop("id"),
        lambda region: region.update(color_id="blue"),
        lambda region: region.update(pixels=[[0, 0], [1]]),
        lambda region: region.update(centroid=[1.0]),
    ])
    def test_reload_rejects_malformed_region(self, two_color_model, mutate):
        data = two_color_model.to_dict()
        mutate(data["regions"][1])
        with pytest.raises(InvalidParameter):
            PuzzleModel.from_dict(data)

    def test_reload_rejects_non_list_regions(self, two_color_model):
        data = two_color_model.to_dict()
        data["regions"] = 5
        with pytest.raises(InvalidParameter):
            PuzzleModel.from_dict(data)
