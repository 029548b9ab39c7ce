"""
schemas.py — Pydantic v2 models for Travel Bingo.

Three groups:
  Domain      — BingoItem, City, CityTip, BingoState (as served by the backend's
                GET /api/bingo-state; camelCase on the wire, snake_case in Python)
  Generation  — request/response bodies for the generation backend
  Service     — batch options and request bodies accepted by app.py / photos.py

Validation errors on service bodies automatically return HTTP 422.
"""

import json
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Sentinel the backend stores for tiles whose image has not been generated yet.
PLACEHOLDER_MARKER = '/api/placeholder-image'


# ── Shared validator helpers ──────────────────────────────────────────────────

def _collapse(v: str | None) -> str | None:
    """Collapse all whitespace to a single space and strip ends.
    Returns None if the result is empty."""
    if v is None:
        return None
    s = re.sub(r'\s+', ' ', str(v)).strip()
    return s or None


def _strip_only(v: str | None) -> str | None:
    """Strip leading/trailing whitespace only, preserving internal newlines.
    Returns None if the result is empty."""
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _normalise_image(v) -> str | None:
    """
    An image reference is absent, a placeholder, or a URL.

    Older backend rows sometimes hold a JSON document instead of a URL; a
    document carrying 'url' / 'imageUrl' is unwrapped, anything else that looks
    like JSON is dropped so the tile counts as needing an image.
    """
    s = _strip_only(v)
    if s is None:
        return None
    if s[0] not in '{[':
        return s
    try:
        parsed = json.loads(s)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        url = parsed.get('url') or parsed.get('imageUrl')
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


class CamelModel(BaseModel):
    """Accepts both camelCase (wire) and snake_case (Python) field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Domain ────────────────────────────────────────────────────────────────────

class CityTip(CamelModel):
    title: str
    text:  str


class BingoItem(CamelModel):
    id:              str        = Field(..., min_length=1)
    text:            str        = Field(..., min_length=1)
    completed:       bool       = False
    is_center_space: bool       = False
    image:           str | None = None
    description:     str | None = None
    city_id:         str | None = None
    grid_row:        int | None = Field(default=None, ge=0, le=4)
    grid_col:        int | None = Field(default=None, ge=0, le=4)

    @field_validator('text', mode='before')
    @classmethod
    def collapse_text(cls, v: str | None) -> str | None:
        return _collapse(v)

    @field_validator('description', mode='before')
    @classmethod
    def strip_description(cls, v: str | None) -> str | None:
        return _strip_only(v)

    @field_validator('image', mode='before')
    @classmethod
    def normalise_image(cls, v) -> str | None:
        return _normalise_image(v)

    @property
    def needs_image(self) -> bool:
        return self.image is None or PLACEHOLDER_MARKER in self.image

    @property
    def has_description(self) -> bool:
        return bool(self.description)


class City(CamelModel):
    id:          str            = Field(..., min_length=1)
    title:       str
    subtitle:    str | None     = None
    items:       list[BingoItem] = Field(default_factory=list)
    tips:        list[CityTip]   = Field(default_factory=list)
    style_guide: dict | None    = None

    @property
    def center_item(self) -> BingoItem | None:
        return next((i for i in self.items if i.is_center_space), None)

    def items_needing_images(self) -> list[BingoItem]:
        return [i for i in self.items if i.needs_image]

    def items_needing_descriptions(self) -> list[BingoItem]:
        return [i for i in self.items if not i.has_description]


class BingoState(CamelModel):
    current_city: str             = ''
    cities:       dict[str, City] = Field(default_factory=dict)


# ── Generation backend wire format ────────────────────────────────────────────

class GenerateImageRequest(CamelModel):
    city_id:         str
    item_id:         str
    item_text:       str
    description:     str         = ''
    client_id:       str | None  = None
    force_new_image: bool        = True
    style_guide:     dict | None = None


class GenerateDescriptionRequest(CamelModel):
    city_id:   str
    item_id:   str
    item_text: str
    client_id: str | None = None


class GenerationResponse(CamelModel):
    success:     bool
    image_url:   str | None = None
    description: str | None = None
    error:       str | None = None
    message:     str | None = None
    in_progress: bool       = False


# ── Batch options ─────────────────────────────────────────────────────────────

class BatchOptions(BaseModel):
    """Knobs for batch_runner.BatchRunner. Durations are in seconds."""
    concurrency:       int   = Field(default=3,   ge=1, le=25)
    max_retries:       int   = Field(default=3,   ge=0, le=10)
    backoff_base:      float = Field(default=1.0, ge=0, le=60)
    item_delay:        float = Field(default=1.0, ge=0, le=60)
    inter_batch_delay: float = Field(default=1.0, ge=0, le=60)
    parallel_retries:  int   = Field(default=0,   ge=0, le=10)


class BatchJobRequest(BaseModel):
    """All fields optional; only the ones sent override the flow's defaults."""
    concurrency:       int | None   = Field(default=None, ge=1, le=25)
    max_retries:       int | None   = Field(default=None, ge=0, le=10)
    backoff_base:      float | None = Field(default=None, ge=0, le=60)
    item_delay:        float | None = Field(default=None, ge=0, le=60)
    inter_batch_delay: float | None = Field(default=None, ge=0, le=60)
    parallel_retries:  int | None   = Field(default=None, ge=0, le=10)
    client_id:         str | None   = Field(default=None, max_length=64)

    def apply_to(self, base: BatchOptions) -> BatchOptions:
        overrides = {
            k: v for k, v in self.model_dump(exclude={'client_id'}).items()
            if v is not None
        }
        return base.model_copy(update=overrides)


# ── Photos ────────────────────────────────────────────────────────────────────

class PhotoUpload(BaseModel):
    payload: str = Field(..., min_length=1)

    @field_validator('payload')
    @classmethod
    def must_be_image_data_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith('data:image/'):
            raise ValueError('payload must be an image data URL (data:image/...)')
        return v
