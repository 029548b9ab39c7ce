"""
generation_client.py — httpx client for the Travel Bingo generation backend.

The backend proxies to an external image/text generation service.  This client
turns its three failure shapes into distinct exceptions so logs can tell them
apart, while batch_runner.py counts them all as one failure:

  non-2xx status / transport error     → NetworkError
  body not a JSON object of the shape  → MalformedResponse
  { success: false, error }            → ApplicationError
  { success: true } without the field  → MissingResultField

Usage
-----
    client = GenerationClient(GENERATION_API_URL, client_id=client_id)
    url = await client.generate_image(city, item)
    await client.aclose()
"""

import logging
import os

import httpx
from pydantic import ValidationError

from errors import ApplicationError, MalformedResponse, MissingResultField, NetworkError
from schemas import (
    BingoItem,
    BingoState,
    City,
    GenerateDescriptionRequest,
    GenerateImageRequest,
    GenerationResponse,
)

logger = logging.getLogger(__name__)

GENERATION_API_URL = os.getenv('GENERATION_API_URL', 'http://localhost:5000').rstrip('/')
GENERATION_TIMEOUT = float(os.getenv('GENERATION_TIMEOUT', '120'))   # image calls are slow

IMAGE_PATH       = '/api/generate-image'
DESCRIPTION_PATH = '/api/generate-description'
STATE_PATH       = '/api/bingo-state'
METADATA_PATH    = '/api/update-city-metadata'


class GenerationClient:
    """Async client for one generation backend, tagged with one client id."""

    def __init__(
        self,
        base_url: str = GENERATION_API_URL,
        client_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = GENERATION_TIMEOUT,
    ):
        self.base_url  = base_url.rstrip('/')
        self.client_id = client_id
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={'User-Agent': 'TravelBingo/1.0'},
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── Generation ────────────────────────────────────────────────────────────

    async def generate_image(self, city: City, item: BingoItem, force_new_image: bool = True) -> str:
        """Ask the backend for a new image for one tile; returns the image URL."""
        body = GenerateImageRequest(
            city_id         = city.id,
            item_id         = item.id,
            item_text       = item.text,
            description     = item.description or '',
            client_id       = self.client_id,
            force_new_image = force_new_image,
            style_guide     = city.style_guide or None,
        )
        logger.info('Generating image for %s: %r (description length %d, style guide: %s)',
                    item.id, item.text, len(body.description), 'yes' if body.style_guide else 'no')
        result = await self._post_generation(IMAGE_PATH, body.model_dump(by_alias=True, exclude_none=True))
        if not result.image_url:
            raise MissingResultField('imageUrl')
        logger.info('Image generated for %s: %s...', item.id, result.image_url[:30])
        return result.image_url

    async def generate_description(self, city: City, item: BingoItem) -> str:
        """Ask the backend for a description of one tile; returns the text."""
        body = GenerateDescriptionRequest(
            city_id   = city.id,
            item_id   = item.id,
            item_text = item.text,
            client_id = self.client_id,
        )
        result = await self._post_generation(DESCRIPTION_PATH, body.model_dump(by_alias=True, exclude_none=True))
        if not result.description:
            raise MissingResultField('description')
        logger.info('Description generated for %s (%d chars)', item.id, len(result.description))
        return result.description

    async def _post_generation(self, path: str, payload: dict) -> GenerationResponse:
        try:
            response = await self._http.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise NetworkError(f'Request to {path} failed: {exc}') from exc

        if response.is_error:
            text = response.text
            logger.error('Generation HTTP error (%d) from %s: %s', response.status_code, path, text[:200])
            raise NetworkError(f'HTTP error {response.status_code}: {text[:200]}',
                               status_code=response.status_code, body=text)

        try:
            data = response.json()
        except ValueError as exc:
            logger.error('Generation response from %s is not JSON: %r', path, response.text[:120])
            raise MalformedResponse('Invalid server response') from exc
        if not isinstance(data, dict):
            raise MalformedResponse(f'Expected a JSON object, got {type(data).__name__}')

        try:
            result = GenerationResponse.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponse(f'Unexpected response shape: {exc.error_count()} error(s)') from exc

        if not result.success:
            if result.in_progress:
                logger.info('Generation already in progress on the backend: %s', result.message)
                raise ApplicationError(f'Duplicate: {result.message or "already in progress"}',
                                       in_progress=True)
            logger.error('Generation API error from %s: %s', path, result.error or 'Unknown error')
            raise ApplicationError(result.error or 'Generation failed')
        return result

    # ── State ─────────────────────────────────────────────────────────────────

    async def fetch_bingo_state(self) -> BingoState:
        """GET the full bingo state (cities and their items) from the backend."""
        try:
            response = await self._http.get(STATE_PATH)
        except httpx.HTTPError as exc:
            raise NetworkError(f'Request to {STATE_PATH} failed: {exc}') from exc
        if response.is_error:
            raise NetworkError(f'HTTP error {response.status_code}',
                               status_code=response.status_code, body=response.text)
        try:
            return BingoState.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise MalformedResponse(f'Invalid bingo state: {exc}') from exc

    async def update_city_metadata(self, city_id: str) -> bool:
        """Ask the backend to recount a city's images.  Advisory: never raises."""
        try:
            response = await self._http.post(METADATA_PATH, json={'cityId': city_id})
        except httpx.HTTPError as exc:
            logger.warning('Metadata update for %s failed: %s', city_id, exc)
            return False
        if response.is_error:
            logger.warning('Metadata update for %s failed: HTTP %d', city_id, response.status_code)
            return False
        logger.info('Metadata updated for %s', city_id)
        return True
