"""
manage.py — CLI commands for Travel Bingo.

Usage:
    python manage.py client-id
    python manage.py fix-missing-images amsterdam
    python manage.py generate-images paris --concurrency 3
    python manage.py generate-descriptions paris --all
    python manage.py save-photo paris paris-3 ./eiffel.jpg
    python manage.py get-photo paris paris-3 --output eiffel.jpg
    python manage.py delete-photo paris paris-3
    python manage.py reset-photos paris
"""

import asyncio
import base64
import logging
import mimetypes
import os

import click
from dotenv import load_dotenv

from admin_flows import (
    FLOW_FIX_MISSING_IMAGES,
    FLOW_GENERATE_ALL_IMAGES,
    FLOW_GENERATE_DESCRIPTIONS,
    completion_message,
    get_flow,
    select_items,
    stream_flow,
)
from batch_runner import BatchSummary
from city_state import CityStateCache
from client_identity import resolve_client_id
from errors import GenerationError, StorageUnavailable
from generation_client import GENERATION_API_URL, GenerationClient
from photo_store import PhotoStore
from schemas import BatchOptions

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))


def _open_store() -> PhotoStore:
    try:
        return PhotoStore().open()
    except StorageUnavailable as exc:
        raise click.ClickException(str(exc))


async def _run_flow(flow_name: str, city_id: str, backend: str,
                    options: BatchOptions, only_missing: bool = True) -> BatchSummary | None:
    client = GenerationClient(backend, client_id=resolve_client_id())
    try:
        state = CityStateCache(client)
        try:
            city = await state.get_city(city_id)
        except GenerationError as exc:
            raise click.ClickException(f'Could not load bingo state from {backend}: {exc}')
        if city is None:
            raise click.ClickException(f'City {city_id!r} not found')

        flow  = get_flow(flow_name)
        total = len(select_items(flow_name, city, only_missing=only_missing))
        if not total:
            click.echo(f'Nothing to do for {city.title}.')
            return None
        click.echo(flow.start_message.format(count=total, city=city.title))

        summary = None
        with click.progressbar(length=100, label=flow_name) as bar:
            shown = 0
            async for event in stream_flow(flow_name, city, client, options,
                                           only_missing=only_missing, refresh=state.refresh):
                if isinstance(event, BatchSummary):
                    summary = event
                    continue
                bar.update(event.percent - shown)
                shown = event.percent
        return summary
    finally:
        await client.aclose()


def _report(flow_name: str, summary: BatchSummary | None) -> None:
    if summary is None:
        return
    message = completion_message(flow_name, summary)
    if summary.fail_count:
        click.echo(f'✗ {message}', err=True)
        click.echo(f'  Failed items: {", ".join(summary.failed_ids)}', err=True)
        raise SystemExit(1)
    click.echo(f'✓ {message}')


# ---------------------------------------------------------------------------
# Command group
# ---------------------------------------------------------------------------

@click.group()
@click.option('--backend', envvar='GENERATION_API_URL', default=GENERATION_API_URL,
              show_default=True, help='Base URL of the generation backend')
@click.option('--verbose', '-v', is_flag=True, help='Log every attempt')
@click.pass_context
def cli(ctx, backend: str, verbose: bool):
    """Travel Bingo admin and photo tools."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format='%(asctime)s [%(levelname)s] %(message)s',
    )
    ctx.obj = {'backend': backend}


@cli.command('client-id')
def client_id():
    """Print this install's client id (created on first use)."""
    click.echo(resolve_client_id())


# ── Generation flows ─────────────────────────────────────────────────────────

@cli.command('fix-missing-images')
@click.argument('city_id')
@click.option('--retries', default=3, show_default=True, type=click.IntRange(0, 10),
              help='Retries per item after the first attempt')
@click.option('--backoff', default=1.0, show_default=True, type=click.FloatRange(0, 60),
              help='Base backoff in seconds (doubles per retry)')
@click.option('--delay', default=1.0, show_default=True, type=click.FloatRange(0, 60),
              help='Pause between items in seconds')
@click.pass_obj
def fix_missing_images(obj, city_id: str, retries: int, backoff: float, delay: float):
    """Regenerate missing or placeholder images, one item at a time."""
    options = BatchOptions(max_retries=retries, backoff_base=backoff, item_delay=delay)
    summary = asyncio.run(_run_flow(FLOW_FIX_MISSING_IMAGES, city_id, obj['backend'], options))
    _report(FLOW_FIX_MISSING_IMAGES, summary)


@cli.command('generate-images')
@click.argument('city_id')
@click.option('--concurrency', default=3, show_default=True, type=click.IntRange(1, 25),
              help='Requests in flight per group')
@click.option('--delay', default=1.0, show_default=True, type=click.FloatRange(0, 60),
              help='Pause between groups in seconds')
@click.option('--retries', default=0, show_default=True, type=click.IntRange(0, 10),
              help='Retries per item inside a group')
@click.pass_obj
def generate_images(obj, city_id: str, concurrency: int, delay: float, retries: int):
    """Regenerate every image for a city in concurrent groups."""
    options = BatchOptions(concurrency=concurrency, inter_batch_delay=delay, parallel_retries=retries)
    summary = asyncio.run(_run_flow(FLOW_GENERATE_ALL_IMAGES, city_id, obj['backend'], options))
    _report(FLOW_GENERATE_ALL_IMAGES, summary)


@cli.command('generate-descriptions')
@click.argument('city_id')
@click.option('--concurrency', default=5, show_default=True, type=click.IntRange(1, 25))
@click.option('--delay', default=1.0, show_default=True, type=click.FloatRange(0, 60))
@click.option('--all', 'regenerate_all', is_flag=True, help='Also replace existing descriptions')
@click.pass_obj
def generate_descriptions(obj, city_id: str, concurrency: int, delay: float, regenerate_all: bool):
    """Generate descriptions for tiles that don't have one yet."""
    options = BatchOptions(concurrency=concurrency, inter_batch_delay=delay)
    summary = asyncio.run(_run_flow(FLOW_GENERATE_DESCRIPTIONS, city_id, obj['backend'], options,
                                    only_missing=not regenerate_all))
    _report(FLOW_GENERATE_DESCRIPTIONS, summary)


# ── Photos ───────────────────────────────────────────────────────────────────

@cli.command('save-photo')
@click.argument('city_id')
@click.argument('item_id')
@click.argument('image_file', type=click.Path(exists=True, dir_okay=False))
def save_photo(city_id: str, item_id: str, image_file: str):
    """Store IMAGE_FILE as the photo for one tile (replaces any earlier photo)."""
    mime = mimetypes.guess_type(image_file)[0] or ''
    if not mime.startswith('image/'):
        raise click.BadParameter(f'{image_file} does not look like an image', param_hint='IMAGE_FILE')
    with open(image_file, 'rb') as f:
        payload = f'data:{mime};base64,{base64.b64encode(f.read()).decode()}'

    if _open_store().save(city_id, item_id, payload):
        click.echo(f'✓ Saved photo for {item_id} in {city_id}')
    else:
        click.echo(f'✗ Could not save photo for {item_id} in {city_id}', err=True)
        raise SystemExit(1)


@cli.command('get-photo')
@click.argument('city_id')
@click.argument('item_id')
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True),
              help='Write the decoded image to this file')
def get_photo(city_id: str, item_id: str, output: str | None):
    """Show (or export) the stored photo for one tile."""
    payload = _open_store().get(city_id, item_id)
    if payload is None:
        click.echo(f'No photo stored for {item_id} in {city_id}', err=True)
        raise SystemExit(1)

    header, _, data = payload.partition(',')
    if output:
        with open(output, 'wb') as f:
            f.write(base64.b64decode(data))
        click.echo(f'✓ Wrote {output}')
    else:
        click.echo(f'{header} ({len(data)} base64 chars)')


@cli.command('delete-photo')
@click.argument('city_id')
@click.argument('item_id')
def delete_photo(city_id: str, item_id: str):
    """Remove the stored photo for one tile."""
    if not _open_store().delete(city_id, item_id):
        click.echo(f'✗ Could not delete photo for {item_id} in {city_id}', err=True)
        raise SystemExit(1)
    click.echo(f'✓ Removed photo for {item_id} in {city_id}')


@cli.command('reset-photos')
@click.argument('city_id')
@click.confirmation_option(prompt='Delete every stored photo for this city?')
def reset_photos(city_id: str):
    """Delete every stored photo for a city."""
    count = _open_store().delete_all_for_city(city_id)
    click.echo(f'✓ Deleted {count} photo(s) for {city_id}')


if __name__ == '__main__':
    cli()
