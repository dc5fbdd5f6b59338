"""
Shared fixtures for the puzzle tests.
"""
import numpy as np
import pytest

from puzzle_processor import PuzzleBuilder

COLOR_A = (220, 40, 40)
COLOR_B = (30, 60, 200)


def split_image(width: int, height: int, split: int) -> np.ndarray:
    """RGB image with COLOR_A left of `split` and COLOR_B from `split` on."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :split] = COLOR_A
    image[:, split:] = COLOR_B
    return image


@pytest.fixture
def two_color_model():
    """4x4 image split down the middle, k=2."""
    return PuzzleBuilder().build(split_image(4, 4, 2), k=2)


@pytest.fixture
def large_two_color_model():
    """8x8 image split down the middle, regions large enough to be numbered."""
    return PuzzleBuilder().build(split_image(8, 8, 4), k=2)
