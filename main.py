"""
Paint by Numbers API
Turns uploaded photos into interactive paint-by-numbers puzzles.

- Upload an image, get a reduced palette and numbered regions
- Paint regions per viewer with the selected color
- Track overall and per-color progress
- Fetch the overlay (mask, borders, number placements) for rendering
"""

import base64
import logging
import math
from typing import Optional, Tuple

import cv2
import numpy as np
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from config import config
from paint_session import PaintSession, composite, locate
from puzzle_processor import InvalidParameter, NotFound, PuzzleBuilder
from puzzle_store import PuzzleRecord, PuzzleStore

# Setup logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Paint by Numbers API",
    description="Interactive paint-by-numbers puzzle generator",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

builder = PuzzleBuilder(
    num_colors=config.DEFAULT_COLORS,
    iterations=config.KMEANS_ITERATIONS,
    min_region_pixels=config.MIN_REGION_PIXELS,
)
store = PuzzleStore()

VALID_TYPES = ["image/png", "image/jpeg", "image/webp", "image/jpg"]

# Overlay colors (RGBA) drawn over the photo
MASK_RGBA = (255, 255, 255, 0.8)
BORDER_RGBA = (0, 0, 0, 0.3)


class PaintRequest(BaseModel):
    viewer_id: str
    x: float
    y: float
    color_id: int


@app.get("/")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "online",
        "service": "Paint by Numbers API",
        "version": "1.0.0",
        "limits": {
            "max_dimension": config.MAX_DIMENSION,
            "max_colors": config.MAX_COLORS,
        }
    }


@app.get("/health")
async def health():
    """Alternative health check endpoint."""
    return {"status": "healthy"}


def decode_upload(contents: bytes) -> np.ndarray:
    """Decode uploaded bytes to an RGB image no larger than MAX_DIMENSION."""
    nparr = np.frombuffer(contents, np.uint8)
    image = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if image is None:
        raise ValueError("Could not decode image")
    image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    # Downscale only, keeping aspect ratio
    h, w = image.shape[:2]
    if max(h, w) > config.MAX_DIMENSION:
        scale = config.MAX_DIMENSION / max(h, w)
        new_w, new_h = max(1, int(w * scale)), max(1, int(h * scale))
        image = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return image


def encode_png_base64(image: np.ndarray) -> str:
    """Encode an RGB or RGBA numpy image as a PNG data URL."""
    if image.ndim == 3 and image.shape[2] == 4:
        image_bgr = cv2.cvtColor(image, cv2.COLOR_RGBA2BGRA)
    elif image.ndim == 3 and image.shape[2] == 3:
        image_bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    else:
        image_bgr = image

    success, buffer = cv2.imencode('.png', image_bgr)
    if not success:
        raise RuntimeError("Failed to encode image")

    b64 = base64.b64encode(buffer).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def render_overlay(mask: np.ndarray, borders: np.ndarray) -> np.ndarray:
    """
    Rasterize overlay masks to RGBA.

    Borders are drawn over the white mask with source-over blending, the
    same stacking a canvas would produce.
    """
    h, w = mask.shape
    color = np.zeros((h, w, 3), dtype=np.float64)
    alpha = np.zeros((h, w), dtype=np.float64)

    for layer, (r, g, b, a) in ((mask, MASK_RGBA), (borders, BORDER_RGBA)):
        out_alpha = a + alpha[layer] * (1 - a)
        color[layer] = (
            np.array([r, g, b], dtype=np.float64) * a
            + color[layer] * (alpha[layer] * (1 - a))[:, None]
        ) / out_alpha[:, None]
        alpha[layer] = out_alpha

    rgba = np.zeros((h, w, 4), dtype=np.uint8)
    rgba[..., :3] = np.clip(np.rint(color), 0, 255).astype(np.uint8)
    rgba[..., 3] = np.clip(np.rint(alpha * 255), 0, 255).astype(np.uint8)
    return rgba


def pixel_coords(x: float, y: float) -> Optional[Tuple[int, int]]:
    """Floor a pointer position to pixel coordinates; None for inf or nan."""
    if not (math.isfinite(x) and math.isfinite(y)):
        return None
    return math.floor(x), math.floor(y)


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGB numpy image as raw PNG bytes."""
    success, buffer = cv2.imencode('.png', cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
    if not success:
        raise RuntimeError("Failed to encode image")
    return buffer.tobytes()


def get_record(puzzle_id: str) -> PuzzleRecord:
    try:
        return store.get(puzzle_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def get_session(puzzle_id: str, viewer_id: str) -> PaintSession:
    try:
        return store.session(puzzle_id, viewer_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def progress_payload(record: PuzzleRecord, session: PaintSession) -> dict:
    painted, total = session.progress(record.model)
    return {
        "painted": painted,
        "total": total,
        "percent": session.percent_complete(record.model),
    }


@app.post("/puzzles")
async def create_puzzle(
    file: UploadFile = File(..., description="Image file (PNG, JPEG, WEBP)"),
    num_colors: int = Form(default=config.DEFAULT_COLORS, ge=config.MIN_COLORS,
                           le=config.MAX_COLORS, description="Palette size")
):
    """
    Build a puzzle from an uploaded image.

    Parameters:
    - **file**: Image file (PNG, JPEG, WEBP)
    - **num_colors**: Number of palette colors

    Returns the puzzle summary and its palette.
    """
    if file.content_type not in VALID_TYPES:
        raise HTTPException(
            status_code=415,
            detail=f"Unsupported file type: {file.content_type}. Use PNG, JPEG, or WEBP."
        )

    contents = await file.read()
    if len(contents) > config.max_file_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {config.MAX_FILE_MB}MB."
        )

    try:
        image = decode_upload(contents)
    except Exception as e:
        logger.error(f"Image decode error: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid image file: {str(e)}")

    # Quantization is CPU bound, keep it off the event loop
    try:
        logger.info(f"Processing image {file.filename}: {image.shape}, {num_colors} colors")
        model = await run_in_threadpool(builder.build, image, None, None, num_colors)
    except InvalidParameter as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Processing error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Processing error: {str(e)}")

    record = store.add(model, num_colors, image)
    response = record.summary()
    response["palette"] = model.to_dict(include_pixels=False)["palette"]
    return response


@app.get("/puzzles")
async def list_puzzles(viewer_id: Optional[str] = None):
    """Gallery listing, newest first. With a viewer id, each entry carries that viewer's progress."""
    puzzles = []
    for record in store.list():
        summary = record.summary()
        if viewer_id is not None:
            summary["progress"] = progress_payload(record, store.session(record.id, viewer_id))
        puzzles.append(summary)
    return {"puzzles": puzzles}


@app.get("/puzzles/{puzzle_id}")
async def get_puzzle(puzzle_id: str, include_pixels: bool = Query(default=False)):
    """Puzzle summary plus its serialized model."""
    record = get_record(puzzle_id)
    response = record.summary()
    response["model"] = record.model.to_dict(include_pixels=include_pixels)
    return response


@app.delete("/puzzles/{puzzle_id}")
async def delete_puzzle(puzzle_id: str):
    """Delete a puzzle and every session on it."""
    try:
        store.delete(puzzle_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True}


@app.get("/puzzles/{puzzle_id}/image")
async def puzzle_image(puzzle_id: str):
    """Downscaled source image the overlay is drawn over."""
    record = get_record(puzzle_id)
    try:
        content = encode_png(record.image)
    except Exception as e:
        logger.error(f"Image encoding error: {e}")
        raise HTTPException(status_code=500, detail="Failed to encode image")
    return Response(content=content, media_type="image/png")


@app.get("/puzzles/{puzzle_id}/locate")
async def locate_region(puzzle_id: str, x: float, y: float):
    """Region under an image-space coordinate."""
    record = get_record(puzzle_id)
    coords = pixel_coords(x, y)
    region_id = locate(record.model, *coords) if coords is not None else None
    if region_id is None:
        return {"region_id": None, "color_id": None}
    return {"region_id": region_id, "color_id": record.model.regions[region_id].color_id}


@app.post("/puzzles/{puzzle_id}/paint")
async def paint(puzzle_id: str, request: PaintRequest):
    """
    Paint the region under (x, y) with the selected color.

    Wrong colors, already painted regions and clicks outside any region
    return `painted: false`.
    """
    record = get_record(puzzle_id)
    session = get_session(puzzle_id, request.viewer_id)

    coords = pixel_coords(request.x, request.y)
    if coords is None:
        region_id, painted = None, False
    else:
        region_id, painted = session.paint_at(record.model, *coords, request.color_id)
    return {
        "region_id": region_id,
        "painted": painted,
        "progress": progress_payload(record, session),
    }


@app.get("/puzzles/{puzzle_id}/progress")
async def progress(puzzle_id: str, viewer_id: str):
    """Overall and per-color progress for a viewer."""
    record = get_record(puzzle_id)
    session = get_session(puzzle_id, viewer_id)

    colors = [
        {"color_id": color_id, "painted": painted, "total": total,
         "complete": painted == total}
        for color_id, (painted, total) in session.color_progress(record.model).items()
    ]
    response = progress_payload(record, session)
    response["colors"] = colors
    return response


@app.get("/puzzles/{puzzle_id}/session")
async def get_paint_session(puzzle_id: str, viewer_id: str):
    """Serialized session for external persistence."""
    get_record(puzzle_id)
    return get_session(puzzle_id, viewer_id).to_dict()


@app.get("/puzzles/{puzzle_id}/overlay")
async def overlay(puzzle_id: str,
                  viewer_id: str,
                  show_numbers: bool = Query(default=True)):
    """
    Overlay for a viewer.

    Returns:
    - **overlay**: Base64 RGBA PNG with unpainted regions masked and borders
    - **labels**: Number placements for unpainted regions
    """
    record = get_record(puzzle_id)
    session = get_session(puzzle_id, viewer_id)

    result = composite(record.model, session, show_numbers=show_numbers)
    try:
        overlay_png = encode_png_base64(render_overlay(result.masked, result.borders))
    except Exception as e:
        logger.error(f"Overlay encoding error: {e}")
        raise HTTPException(status_code=500, detail="Failed to encode overlay")

    return {
        "overlay": overlay_png,
        "labels": [
            {"region_id": p.region_id, "color_id": p.color_id, "x": p.x, "y": p.y}
            for p in result.labels
        ],
    }


# Run with: uvicorn main:app --reload --host 0.0.0.0 --port 8000
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
