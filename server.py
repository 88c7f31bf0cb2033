"""
FastAPI Justified Layout Application
A web API that packs photos and text blocks into gapless, justified rows
"""

import io
import re
import json
import math
import random
import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import PIL
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from PIL import Image, ImageDraw, ImageFont
from pydantic import BaseModel, ConfigDict, Field, validator
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from config import AppSettings
from packing import (
    ROW_BREAK_CLOSEST,
    ROW_BREAK_THRESHOLD,
    RowJustifiedPacker,
    group_rows,
    layout_height,
)


def _configure_logging():
    handlers = [logging.StreamHandler()]
    if settings.log_to_file:
        settings.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            settings.log_file_path,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count
        ))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)

# Load settings
settings = AppSettings()

# Configure logging (after settings)
logger = _configure_logging()

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Pack photos and text blocks into justified rows",
    version=settings.app_version
)
# Prometheus metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)
REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency (seconds)',
    ['method', 'path']
)
ITEMS_PACKED = Counter('layout_items_packed_total', 'Number of items placed by the packer')
ROWS_PER_PACK = Histogram(
    'layout_rows_per_pack',
    'Rows produced by a single pack call',
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000)
)

@app.on_event("startup")
async def on_startup():
    logger.info(
        f"{settings.app_name} {settings.app_version} starting - defaults: "
        f"target_row_height={settings.default_target_row_height}, gutter={settings.default_gutter}, "
        f"snap_last_to_edge={settings.default_snap_last_to_edge}, "
        f"last_row_cap_multiplier={settings.default_last_row_cap_multiplier}"
    )

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Configuration
MAX_ITEMS = settings.max_items
MAX_CONTAINER_WIDTH = settings.max_container_width
MAX_CANVAS_PIXELS = settings.max_canvas_pixels

# Guard against decompression bombs when previews are re-opened
Image.MAX_IMAGE_PIXELS = MAX_CANVAS_PIXELS

# Enums
class RowBreak(str, Enum):
    CLOSEST = ROW_BREAK_CLOSEST
    THRESHOLD = ROW_BREAK_THRESHOLD

class OutputFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"

HEX_COLOR = r'^#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?$'

# Pydantic models
class LayoutItem(BaseModel):
    """An item to pack. Everything but ``pinned`` is caller-owned and passed through untouched;
    unusable sizing fields fall back to a 1.0 aspect ratio in the packer."""
    model_config = ConfigDict(extra="allow")

    id: Any = None
    type: Any = None
    aspect_ratio: Any = None
    width: Any = None
    height: Any = None
    pinned: bool = False

class PackRequest(BaseModel):
    items: List[LayoutItem] = Field(default_factory=list)
    container_width: float = Field(..., gt=0)
    target_row_height: Optional[float] = Field(default=None, gt=0)
    gutter: Optional[float] = Field(default=None, ge=0)
    snap_last_to_edge: Optional[bool] = None
    last_row_cap_multiplier: Optional[float] = Field(default=None, gt=0)
    row_break: RowBreak = RowBreak.CLOSEST
    # Shuffle before packing; pinned items still lead
    shuffle: bool = False
    seed: Optional[int] = None

class PreviewRequest(PackRequest):
    background_color: str = Field(default="#FFFFFF")
    outline_color: str = Field(default="#222222")
    output_format: OutputFormat = OutputFormat.PNG

    @validator('background_color', 'outline_color')
    def validate_color(cls, v):
        """Validate hex color format - supports #RRGGBB and #RRGGBBAA (with alpha)"""
        if not re.match(HEX_COLOR, v):
            raise ValueError('Invalid hex color format - must be #RRGGBB or #RRGGBBAA (with alpha)')
        return v

# Public response models
class PlacedItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    x: float
    y: float
    width: int
    height: int
    aspect_ratio: float
    is_last_row: bool

class PackResponse(BaseModel):
    items: List[PlacedItem]
    container_width: float
    target_row_height: float
    total_height: int
    row_count: int

class RowStats(BaseModel):
    index: int
    y: float
    height: int
    item_count: int
    used_width: float
    deviation: float
    is_last_row: bool

# Default palette for preview fills
PREVIEW_PALETTE = [
    (231, 111, 81), (244, 162, 97), (233, 196, 106), (42, 157, 143),
    (38, 70, 83), (138, 177, 125), (170, 110, 160), (90, 140, 200),
]


def _parse_color_rgba(color_str: str) -> Tuple[int, int, int, int]:
    """Parse #RRGGBB or #RRGGBBAA to RGBA tuple."""
    if isinstance(color_str, str) and re.match(HEX_COLOR, color_str):
        hex_str = color_str[1:]
        r = int(hex_str[0:2], 16)
        g = int(hex_str[2:4], 16)
        b = int(hex_str[4:6], 16)
        a = int(hex_str[6:8], 16) if len(hex_str) == 8 else 255
        return (r, g, b, a)
    return (255, 255, 255, 255)


class PreviewGenerator:
    """Renders packed items as flat rectangles, text blocks as their text"""

    def __init__(self, config: PreviewRequest, canvas_width: int, canvas_height: int):
        self.config = config
        self.canvas_width = max(1, int(canvas_width))
        self.canvas_height = max(1, int(canvas_height))
        if self.canvas_width * self.canvas_height > MAX_CANVAS_PIXELS:
            raise ValueError(
                f"Canvas too large: {self.canvas_width*self.canvas_height} pixels exceeds limit {MAX_CANVAS_PIXELS}"
            )

    def generate(self, placed: List[Dict[str, Any]]) -> bytes:
        """Draw the layout and return the encoded image"""
        r, g, b, a = _parse_color_rgba(self.config.background_color)
        if a < 255 and self.config.output_format == OutputFormat.PNG:
            canvas = Image.new('RGBA', (self.canvas_width, self.canvas_height), (r, g, b, a))
        else:
            canvas = Image.new('RGB', (self.canvas_width, self.canvas_height), (r, g, b))

        draw = ImageDraw.Draw(canvas)
        font = ImageFont.load_default()
        outline = _parse_color_rgba(self.config.outline_color)[:3]

        for index, item in enumerate(placed):
            box = self._box(item)
            if item.get('type') == 'text':
                draw.rectangle(box, outline=outline)
                style = item.get('style')
                if not isinstance(style, dict):
                    style = {}
                text_color = _parse_color_rgba(style.get('color', '#000000'))[:3]
                draw.text((box[0] + 2, box[1] + 2), str(item.get('content', '')), fill=text_color, font=font)
            else:
                fill = PREVIEW_PALETTE[index % len(PREVIEW_PALETTE)]
                draw.rectangle(box, fill=fill, outline=outline)

        buf = io.BytesIO()
        if self.config.output_format == OutputFormat.JPEG:
            canvas.save(buf, 'JPEG', quality=90)
        else:
            canvas.save(buf, 'PNG')
        return buf.getvalue()

    def _box(self, item: Dict[str, Any]) -> Tuple[int, int, int, int]:
        x0 = int(item['x'])
        y0 = int(item['y'])
        x1 = min(self.canvas_width, x0 + int(item['width'])) - 1
        y1 = min(self.canvas_height, y0 + int(item['height'])) - 1
        return (x0, y0, max(x0, x1), max(y0, y1))


def _build_packer(request: PackRequest) -> RowJustifiedPacker:
    """Merge request options over configured defaults"""
    target = request.target_row_height if request.target_row_height is not None else settings.default_target_row_height
    gutter = request.gutter if request.gutter is not None else settings.default_gutter
    snap = request.snap_last_to_edge if request.snap_last_to_edge is not None else settings.default_snap_last_to_edge
    cap = (
        request.last_row_cap_multiplier
        if request.last_row_cap_multiplier is not None
        else settings.default_last_row_cap_multiplier
    )
    return RowJustifiedPacker(
        request.container_width,
        target,
        gutter=gutter,
        snap_last_to_edge=snap,
        last_row_cap_multiplier=cap,
        row_break=request.row_break.value,
    )


def run_pack(request: PackRequest) -> Tuple[RowJustifiedPacker, List[Dict[str, Any]]]:
    """Validate limits, build the packer and pack the request's items"""
    if len(request.items) > MAX_ITEMS:
        logger.warning(f"Pack rejected: {len(request.items)} items exceeds limit {MAX_ITEMS}")
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_ITEMS} items allowed")
    if request.container_width > MAX_CONTAINER_WIDTH:
        logger.warning(f"Pack rejected: container_width={request.container_width} exceeds limit")
        raise HTTPException(status_code=400, detail=f"container_width must be <= {MAX_CONTAINER_WIDTH}")

    items = [item.model_dump(exclude_unset=True) for item in request.items]
    if request.shuffle:
        random.Random(request.seed).shuffle(items)

    try:
        packer = _build_packer(request)
        placed = packer.pack_items(items)
    except ValueError as e:
        logger.warning(f"Pack rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    row_count = len(group_rows(placed))
    ITEMS_PACKED.inc(len(placed))
    ROWS_PER_PACK.observe(row_count)
    return packer, placed


def row_statistics(packer: RowJustifiedPacker, placed: List[Dict[str, Any]]) -> List[RowStats]:
    stats = []
    for index, row in enumerate(group_rows(placed)):
        used_width = sum(item['width'] for item in row) + packer.gutter * (len(row) - 1)
        height = row[0]['height']
        stats.append(RowStats(
            index=index,
            y=row[0]['y'],
            height=height,
            item_count=len(row),
            used_width=used_width,
            deviation=height - packer.target_row_height,
            is_last_row=bool(row[0]['is_last_row']),
        ))
    return stats


# Rate limiting (simple in-memory implementation)
rate_limit_store = defaultdict(list)
RATE_LIMIT_REQUESTS = settings.rate_limit_requests  # requests per window
RATE_LIMIT_WINDOW = settings.rate_limit_window_seconds  # seconds

def check_rate_limit(client_ip: str) -> bool:
    """Simple rate limiting check"""
    now = time.time()
    # Clean old requests
    rate_limit_store[client_ip] = [
        req_time for req_time in rate_limit_store[client_ip]
        if now - req_time < RATE_LIMIT_WINDOW
    ]

    if len(rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return False

    rate_limit_store[client_ip].append(now)
    return True

# API Endpoints

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "endpoints": {
            "pack": "/api/layout/pack",
            "analyze": "/api/layout/analyze",
            "preview": "/api/layout/preview",
            "health": "/health",
            "metrics": "/metrics"
        }
    }

@app.post("/api/layout/pack", response_model=PackResponse)
async def pack_layout(request: PackRequest):
    """Pack items into justified rows and return their positions"""
    logger.info(
        f"Pack request: {len(request.items)} items, width={request.container_width}, "
        f"target={request.target_row_height}, gutter={request.gutter}, row_break={request.row_break.value}, "
        f"shuffle={request.shuffle}"
    )
    packer, placed = run_pack(request)
    return PackResponse(
        items=placed,
        container_width=packer.container_width,
        target_row_height=packer.target_row_height,
        total_height=layout_height(placed),
        row_count=len(group_rows(placed)),
    )

@app.post("/api/layout/analyze")
async def analyze_layout(request: PackRequest):
    """
    Pack items and report how closely each row matches the target height

    Justified rows should fill the container width; the trailing row is reported
    separately because it is left-aligned on purpose.
    """
    packer, placed = run_pack(request)
    try:
        rows = row_statistics(packer, placed)
        justified = [row for row in rows if not row.is_last_row]

        heights = np.array([row.height for row in justified], dtype=np.float64)
        used = np.array([row.used_width for row in justified], dtype=np.float64)

        if justified:
            deviations = np.abs(heights - packer.target_row_height)
            summary = {
                "justified_rows": len(justified),
                "mean_row_height": round(float(heights.mean()), 2),
                "row_height_std": round(float(heights.std()), 2),
                "mean_abs_deviation": round(float(deviations.mean()), 2),
                "max_abs_deviation": round(float(deviations.max()), 2),
                "width_utilization_percent": round(float((used / packer.container_width).mean() * 100), 2),
                "max_width_slack": round(float((packer.container_width - used).max()), 2),
            }
        else:
            summary = {
                "justified_rows": 0,
                "mean_row_height": None,
                "row_height_std": None,
                "mean_abs_deviation": None,
                "max_abs_deviation": None,
                "width_utilization_percent": None,
                "max_width_slack": None,
            }

        last_rows = [row for row in rows if row.is_last_row]
        return {
            "success": True,
            "analysis": {
                "container": {
                    "width": packer.container_width,
                    "target_row_height": packer.target_row_height,
                    "gutter": packer.gutter,
                    "row_break": packer.row_break,
                    "total_height": layout_height(placed),
                },
                "summary": {
                    "total_items": len(placed),
                    "row_count": len(rows),
                    **summary,
                },
                "last_row": last_rows[0].model_dump() if last_rows else None,
                "rows": [row.model_dump() for row in rows],
            },
            "message": "Layout analysis completed successfully"
        }

    except Exception as e:
        logger.error(f"Layout analysis failed: {e}")
        raise HTTPException(status_code=500, detail=f"Layout analysis failed: {str(e)}")

@app.post("/api/layout/preview")
def preview_layout(request: PreviewRequest):
    """Render the packed layout as an image

    Plain def: drawing and encoding run in the threadpool, off the event loop.
    """
    packer, placed = run_pack(request)
    canvas_width = math.ceil(packer.container_width)
    canvas_height = max(1, layout_height(placed))

    try:
        generator = PreviewGenerator(request, canvas_width, canvas_height)
    except ValueError as e:
        logger.warning(f"Preview rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    try:
        content = generator.generate(placed)
    except Exception as e:
        logger.error(f"Preview rendering failed: {e}")
        raise HTTPException(status_code=500, detail=f"Preview rendering failed: {str(e)}")

    media_type = 'image/jpeg' if request.output_format == OutputFormat.JPEG else 'image/png'
    return Response(content=content, media_type=media_type)

def _log_json(event: str, **kwargs):
    try:
        record = {"event": event, **kwargs}
        logger.info(json.dumps(record, default=str))
    except (TypeError, ValueError):
        # Fallback to plain logging if JSON serialization fails
        logger.info(f"{event} | {kwargs}")


# Request logging + Request ID middleware
@app.middleware("http")
async def log_requests(request, call_next):
    # Correlation/Request ID
    req_id = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.request_id = req_id

    # Client IP for rate limiting
    client_ip = request.client.host if request.client else "unknown"

    # Rate limit check
    if not check_rate_limit(client_ip):
        _log_json(
            "rate_limit_exceeded",
            request_id=req_id,
            method=request.method,
            path=request.url.path,
            client_ip=client_ip,
        )
        return JSONResponse(
            status_code=429,
            content={"error": "Rate limit exceeded. Please try again later.", "request_id": req_id}
        )

    start_time = datetime.now()
    _log_json(
        "request_start",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        client_ip=client_ip,
    )

    response = await call_next(request)
    elapsed = (datetime.now() - start_time).total_seconds()
    process_time_ms = elapsed * 1000

    # Add response headers
    response.headers["X-Request-ID"] = req_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    response.headers["Cross-Origin-Resource-Policy"] = "same-site"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:"

    _log_json(
        "request_end",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time_ms, 2),
        client_ip=client_ip,
    )

    # Prometheus metrics
    REQUEST_COUNT.labels(method=request.method, path=request.url.path, status=response.status_code).inc()
    REQUEST_LATENCY.labels(method=request.method, path=request.url.path).observe(elapsed)

    return response


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

# Health check
HEALTH_SAMPLE = [{"aspect_ratio": r} for r in (1.5, 0.75, 1.0, 1.33, 2.0, 0.66, 1.0)]

@app.get("/health")
async def health_check():
    """Health check: packs a fixed sample and verifies justified rows fill the width"""
    try:
        width = 1000
        packer = RowJustifiedPacker(width, settings.default_target_row_height)
        rows = group_rows(packer.pack_items(HEALTH_SAMPLE))
        justified = [row for row in rows if not row[0]['is_last_row']]
        slack = [width - sum(item['width'] for item in row) for row in justified]
        packer_healthy = all(0 <= s <= len(row) for s, row in zip(slack, justified))

        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": settings.app_version,
            "checks": {
                "packer": {
                    "sample_items": len(HEALTH_SAMPLE),
                    "rows": len(rows),
                    "max_width_slack": max(slack) if slack else 0,
                    "healthy": packer_healthy
                },
                "dependencies": {
                    "numpy_version": np.__version__,
                    "pillow_version": PIL.__version__,
                    "healthy": True
                }
            }
        }

        # Determine overall health
        all_checks_healthy = all(
            check.get("healthy", False)
            for check in health_status["checks"].values()
        )

        if not all_checks_healthy:
            health_status["status"] = "unhealthy"
            logger.warning("Health check failed", extra={"checks": health_status["checks"]})

        return health_status

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "timestamp": datetime.now().isoformat(),
            "error": str(e)
        }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
