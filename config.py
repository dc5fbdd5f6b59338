"""
Paint-by-Numbers Configuration
Environment variables and defaults for the API and the puzzle pipeline.
"""
import os
from typing import List


class Config:
    """Configuration read from PBN_* environment variables."""

    # Palette size limits for new puzzles
    DEFAULT_COLORS: int = int(os.environ.get("PBN_DEFAULT_COLORS", "400"))
    MIN_COLORS: int = int(os.environ.get("PBN_MIN_COLORS", "50"))
    MAX_COLORS: int = int(os.environ.get("PBN_MAX_COLORS", "500"))

    # Pipeline tuning
    KMEANS_ITERATIONS: int = int(os.environ.get("PBN_KMEANS_ITERATIONS", "10"))
    MIN_REGION_PIXELS: int = int(os.environ.get("PBN_MIN_REGION_PIXELS", "6"))

    # Uploads
    MAX_DIMENSION: int = int(os.environ.get("PBN_MAX_DIMENSION", "800"))
    MAX_FILE_MB: int = int(os.environ.get("PBN_MAX_FILE_MB", "10"))

    # Logging
    LOG_LEVEL: str = os.environ.get("PBN_LOG_LEVEL", "INFO")

    # CORS
    ALLOWED_ORIGINS: str = os.environ.get("PBN_ALLOWED_ORIGINS", "")

    @property
    def max_file_bytes(self) -> int:
        return self.MAX_FILE_MB * 1024 * 1024

    @property
    def allowed_origins(self) -> List[str]:
        """CORS origins; local development hosts when unset."""
        if self.ALLOWED_ORIGINS:
            return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]
        return [
            "http://localhost:5173",
            "http://localhost:3000",
            "http://localhost:8080",
            "http://localhost",
        ]


config = Config()
