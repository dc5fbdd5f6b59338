"""
In-memory project gallery.

Holds built puzzles and the per-viewer sessions that reference them.
Sessions are created on a viewer's first interaction and removed together
with their puzzle.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

from paint_session import PaintSession
from puzzle_processor import NotFound, PuzzleModel

logger = logging.getLogger(__name__)


@dataclass
class PuzzleRecord:
    """A gallery entry."""
    id: str
    name: str
    created_at: float
    num_colors: int
    model: PuzzleModel
    image: np.ndarray = field(repr=False)  # downscaled RGB source, (H, W, 3)
    sessions: Dict[str, PaintSession] = field(default_factory=dict)

    def summary(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "num_colors": self.num_colors,
            "width": self.model.width,
            "height": self.model.height,
            "region_count": len(self.model.regions),
            "image_url": f"/puzzles/{self.id}/image",
        }


class PuzzleStore:
    """Thread-safe map of puzzle id -> PuzzleRecord."""

    def __init__(self):
        self._records: Dict[str, PuzzleRecord] = {}
        self._lock = threading.Lock()
        self._created = 0

    def add(self, model: PuzzleModel, num_colors: int, image: np.ndarray) -> PuzzleRecord:
        with self._lock:
            self._created += 1
            record = PuzzleRecord(
                id=uuid.uuid4().hex,
                name=f"Project {self._created}",
                created_at=time.time(),
                num_colors=num_colors,
                model=model,
                image=image,
            )
            self._records[record.id] = record
        logger.info(f"Stored puzzle {record.id} ({record.name})")
        return record

    def get(self, puzzle_id: str) -> PuzzleRecord:
        with self._lock:
            record = self._records.get(puzzle_id)
        if record is None:
            raise NotFound(f"Puzzle {puzzle_id} does not exist")
        return record

    def list(self) -> List[PuzzleRecord]:
        """All puzzles, newest first."""
        with self._lock:
            return list(reversed(self._records.values()))

    def delete(self, puzzle_id: str) -> None:
        with self._lock:
            record = self._records.pop(puzzle_id, None)
        if record is None:
            raise NotFound(f"Puzzle {puzzle_id} does not exist")
        logger.info(f"Deleted puzzle {puzzle_id} with {len(record.sessions)} sessions")

    def session(self, puzzle_id: str, viewer_id: str) -> PaintSession:
        """Return the viewer's session, creating it on first use."""
        record = self.get(puzzle_id)
        with self._lock:
            session = record.sessions.get(viewer_id)
            if session is None:
                session = PaintSession(puzzle_id, viewer_id)
                record.sessions[viewer_id] = session
        return session

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._created = 0
