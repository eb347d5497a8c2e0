# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize",
#   "pillow"
# ]
# ///

"""
Harvests a store's children's-books catalog into a local dataset for the book-picking app.
It's server-friendly, in that it makes synchronous requests with a slight sleep between each,
  saves progress to a checkpoint file at regular intervals, and can be killed at any point
  and re-run to continue from where it left off.

Phases (run in order; each one skips itself when its work is already done):
  1 discovery -- acquires an API session
  2 list      -- pages through the browse API and collects the deduplicated book list
  3 detail    -- fetches each book's interior-page image descriptors
  4 images    -- downloads cover + interior images, transcodes them to webp, writes books.json

Usage:
  uv run ./harvest_catalog.py --data-dir "../data" --state-dir "../state"
  uv run ./harvest_catalog.py --phase detail
  uv run ./harvest_catalog.py --reset

Args:
  --data-dir (optional) -- where `images/` and `books.json` are written
  --state-dir (optional) -- where the checkpoint file lives
  --reset (optional) -- wipes the checkpoint before running
  --phase (optional) -- runs only the named phase (1-4 or discovery/list/detail/images)
  --page-size (optional) -- browse page size
  --no-progress-bar (optional) -- disables the tqdm bars (useful for log files)
"""

import argparse
import functools
import json
import logging
import os
import re
import struct
import sys
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TypeVar

import httpx
import humanize
from PIL import Image
from tqdm import tqdm

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False


## constants --------------------------------------------------------
API_BASE: str = os.getenv('CATALOG_API_BASE', 'https://api.bookmanager.com/customer')
CDN_BASE: str = 'https://cdn1.bookmanager.com'
CACHE_BUSTER: str = '7603827'
STORE_ID: str = '168749'
CATEGORY_FILTER: str = 'a4to6'
USER_AGENT: str = 'book-picker-catalog-harvester/1.0'

CHECKPOINT_FILENAME: str = 'harvest-state.json'
DATASET_FILENAME: str = 'books.json'
IMAGES_SUBDIR: str = 'images'
STATE_VERSION: int = 1

PHASE_NAMES: tuple[str, ...] = ('discovery', 'list', 'detail', 'images')
PHASE_TITLES: dict[str, str] = {
    'discovery': 'API Discovery',
    'list': 'Book List Collection',
    'detail': 'Detail Enrichment',
    'images': 'Image Download',
}

AUTH_FAILURE_CODES: tuple[int, ...] = (401, 403)
SAFE_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

## default knobs
DEFAULT_PAGE_SIZE = 100             # rows per browse request
PAGE_PAUSE_SECONDS = 1.5            # polite pause between browse pages
ITEM_PAUSE_SECONDS = 1.5            # polite pause between detail requests
IMAGE_PAUSE_SECONDS = 0.1           # polite pause between image downloads
LIST_SAVE_EVERY_PAGES = 5
DETAIL_SAVE_EVERY_ITEMS = 10
IMAGES_SAVE_EVERY_BOOKS = 25
WEBP_QUALITY = 65


## errors -----------------------------------------------------------
class HarvestError(Exception):
    """Base class for errors raised by the harvester."""


class CatalogApiError(HarvestError):
    """The catalog API answered, but not with something usable."""


class SessionExpiredError(CatalogApiError):
    """The catalog API rejected the session handle (HTTP 401/403)."""


class CatalogParseError(HarvestError, ValueError):
    """
    A remote payload did not have the expected shape.
    Carries the offending field name (when known) for log messages.
    """

    def __init__(self, message: str, *, field_name: str | None = None) -> None:
        super().__init__(message)
        self.field_name: str | None = field_name


class CheckpointError(HarvestError):
    """The checkpoint file exists but cannot be used."""


## data model -------------------------------------------------------
@dataclass
class InteriorImage:
    key: str
    cache: str
    b2b: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {'key': self.key, 'cache': self.cache, 'b2b': self.b2b}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> 'InteriorImage':
        b2b: object = data.get('b2b')
        return cls(key=str(data['key']), cache=str(data.get('cache') or ''), b2b=str(b2b) if b2b else None)


@dataclass
class Book:
    """
    One catalog item as it moves through the phases.
    - `id` is the item's eisbn; it is also the name of the book's image directory.
    - `interior_images` stays empty until the detail phase has run for the book.
    """

    id: str
    title: str
    author: str = ''
    binding: str = ''
    price: str = ''
    cover_image_cache: str = ''
    interior_images: list[InteriorImage] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'binding': self.binding,
            'price': self.price,
            'cover_image_cache': self.cover_image_cache,
            'interior_images': [img.to_dict() for img in self.interior_images],
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> 'Book':
        interiors: list[dict[str, object]] = data.get('interior_images') or []  # type: ignore[assignment]
        return cls(
            id=str(data['id']),
            title=str(data.get('title') or ''),
            author=str(data.get('author') or ''),
            binding=str(data.get('binding') or ''),
            price=str(data.get('price') or ''),
            cover_image_cache=str(data.get('cover_image_cache') or ''),
            interior_images=[InteriorImage.from_dict(d) for d in interiors],
        )


@dataclass
class PipelineState:
    """
    The whole harvest's progress; the checkpoint file is a serialization of this.
    - Phases receive the state, update it, and hand it back.
    - `books` never holds two entries with the same id; use `add_book()` to append.
    - `book_list_complete` only ever goes from False to True (a reset builds a new state).
    """

    version: int = STATE_VERSION
    session: str | None = None
    max_offset: int | None = None
    books: list[Book] = field(default_factory=list)
    book_list_complete: bool = False
    details_fetched: set[str] = field(default_factory=set)
    images_downloaded: set[str] = field(default_factory=set)

    def book_ids(self) -> set[str]:
        return {book.id for book in self.books}

    def add_book(self, book: Book, known_ids: set[str] | None = None) -> bool:
        """
        Appends `book` unless its id is already present; returns whether it was appended.
        Callers adding many books may pass (and keep) their own `known_ids` set to avoid rebuilding it.
        """
        ids: set[str] = known_ids if known_ids is not None else self.book_ids()
        if book.id in ids:
            return False
        self.books.append(book)
        ids.add(book.id)
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            'version': self.version,
            'session': self.session,
            'max_offset': self.max_offset,
            'book_list_complete': self.book_list_complete,
            'details_fetched': sorted(self.details_fetched),
            'images_downloaded': sorted(self.images_downloaded),
            'books': [book.to_dict() for book in self.books],
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> 'PipelineState':
        version: int = int(data.get('version') or 1)  # type: ignore[arg-type]
        if version > STATE_VERSION:
            raise CheckpointError(f'checkpoint version {version} is newer than supported version {STATE_VERSION}')
        max_offset: object = data.get('max_offset')
        state = cls(
            version=STATE_VERSION,
            session=data.get('session') or None,  # type: ignore[arg-type]
            max_offset=int(max_offset) if isinstance(max_offset, int) else None,
            book_list_complete=bool(data.get('book_list_complete', False)),
            details_fetched=set(data.get('details_fetched') or []),  # type: ignore[arg-type]
            images_downloaded=set(data.get('images_downloaded') or []),  # type: ignore[arg-type]
        )
        known: set[str] = set()
        for entry in data.get('books') or []:  # type: ignore[union-attr]
            state.add_book(Book.from_dict(entry), known)
        return state


@dataclass
class BrowsePage:
    rows: list[dict[str, object]]
    max_offset: int


@dataclass
class HarvestSettings:
    """
    Knobs for a harvest run; built from CLI args (with environment-variable defaults) by `from_args()`.
    """

    data_dir: Path
    state_dir: Path
    api_base: str = API_BASE
    page_size: int = DEFAULT_PAGE_SIZE
    page_delay_s: float = PAGE_PAUSE_SECONDS
    item_delay_s: float = ITEM_PAUSE_SECONDS
    image_delay_s: float = IMAGE_PAUSE_SECONDS
    list_save_every_pages: int = LIST_SAVE_EVERY_PAGES
    detail_save_every_items: int = DETAIL_SAVE_EVERY_ITEMS
    images_save_every_books: int = IMAGES_SAVE_EVERY_BOOKS
    webp_quality: int = WEBP_QUALITY
    progress_bars: bool = True
    only_phase: int | None = None

    @property
    def images_dir(self) -> Path:
        return self.data_dir / IMAGES_SUBDIR

    @property
    def dataset_path(self) -> Path:
        return self.data_dir / DATASET_FILENAME

    @property
    def checkpoint_path(self) -> Path:
        return self.state_dir / CHECKPOINT_FILENAME

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'HarvestSettings':
        return cls(
            data_dir=Path(args.data_dir).expanduser().resolve(),
            state_dir=Path(args.state_dir).expanduser().resolve(),
            api_base=args.api_base,
            page_size=args.page_size,
            progress_bars=not args.no_progress_bar,
            only_phase=CLI.phase_number(args.phase),
        )


## checkpoint -------------------------------------------------------
class CheckpointStore:
    """
    Persists the PipelineState as a single JSON document; the only code that touches the checkpoint file.
    - Returns a fresh state when no checkpoint exists yet.
    - Tolerates an unreadable checkpoint by logging and starting fresh.
    - Writes via a temp file + os.replace so a crash mid-write never leaves a half-written checkpoint.
    - Writes sets as sorted lists, so the same state always produces the same file.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def load(self) -> PipelineState:
        if not self.path.exists():
            return PipelineState()
        try:
            with self.path.open('r', encoding='utf-8') as fh:
                data: dict[str, object] = json.load(fh)
        except (OSError, ValueError) as exc:
            log.warning(f'could not read checkpoint ``{self.path}`` ({exc}); starting fresh')
            return PipelineState()
        if not isinstance(data, dict):
            log.warning(f'checkpoint ``{self.path}`` is not a JSON object; starting fresh')
            return PipelineState()
        try:
            return PipelineState.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            # a newer-version CheckpointError propagates
            log.warning(f'checkpoint ``{self.path}`` has unusable contents ({exc!r}); starting fresh')
            return PipelineState()

    def save(self, state: PipelineState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload: dict[str, object] = state.to_dict()
        payload['updated_at'] = _now_iso()
        tmp_path: Path = self.path.with_name(f'{self.path.name}.tmp')
        with tmp_path.open('w', encoding='utf-8') as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)
        log.debug(f'saved checkpoint, ``{self.path}``')

    def reset(self) -> PipelineState:
        state = PipelineState()
        self.save(state)
        return state


## remote api -------------------------------------------------------
class UrlBuilder:
    """
    Centralizes construction of the URLs used across the workflow.
    - Holds a configurable API `base` to support testing and overrides.
    - Builds API endpoint URLs, including the required cache-buster query param.
    - Builds CDN cover and interior-page image URLs.
    """

    def __init__(self, base: str = API_BASE, cdn_base: str = CDN_BASE, cache_buster: str = CACHE_BUSTER) -> None:
        self.base: str = base.rstrip('/')
        self.cdn_base: str = cdn_base.rstrip('/')
        self.cache_buster: str = cache_buster

    def api_url(self, endpoint: str) -> str:
        return f'{self.base}/{endpoint}?_cb={self.cache_buster}'

    def cover_url(self, book_id: str, cache: str) -> str:
        return f'{self.cdn_base}/i/m?b={book_id}&cb={cache}'

    def interior_url(self, book_id: str, image: InteriorImage) -> str:
        url: str = f'{self.cdn_base}/i/m?b={book_id}&imgp={image.key}&cb={image.cache}'
        if image.b2b:
            url += f'&b2b={image.b2b}'
        return url


class CatalogApiClient:
    """
    Encapsulates HTTP interactions with the catalog API and image CDN.
    - Sends form-encoded POSTs carrying a fresh request uuid and the store id.
    - Treats 5xx responses and transport errors as retryable, with exponential backoff.
    - Raises SessionExpiredError on 401/403 so callers can renew the session and retry.
    - Raises CatalogParseError when a response body is not the JSON object expected.
    - Streams image downloads straight to disk.
    - Raises the last encountered exception after exhausting the retry budget.
    """

    def __init__(
        self,
        client: httpx.Client,
        urls: UrlBuilder | None = None,
        *,
        store_id: str = STORE_ID,
        category: str = CATEGORY_FILTER,
        max_tries: int = 3,
        timeout_s: float = 30.0,
    ) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls or UrlBuilder()
        self.store_id: str = store_id
        self.category: str = category
        self.max_tries: int = max_tries
        self.timeout_s: float = timeout_s

    def _post_with_retries(self, url: str, form: dict[str, str]) -> httpx.Response:
        last_exc: Exception | None = None
        for attempt in range(1, self.max_tries + 1):
            try:
                resp: httpx.Response = self.client.post(url, data=form, timeout=self.timeout_s)
                if resp.status_code >= 500:
                    raise httpx.HTTPStatusError(f'server error {resp.status_code}', request=resp.request, response=resp)
                return resp
            except (httpx.TransportError, httpx.HTTPStatusError) as exc:
                last_exc = exc
                log.debug(f'attempt {attempt} of {self.max_tries} failed for ``{url}``: {exc}')
                if attempt < self.max_tries:
                    _sleep(min(2**attempt, 15))
        assert last_exc is not None
        raise last_exc

    def post_json(self, endpoint: str, fields: dict[str, str]) -> dict[str, object]:
        url: str = self.urls.api_url(endpoint)
        form: dict[str, str] = {'uuid': str(uuid.uuid4()), 'store_id': self.store_id, **fields}
        log.debug(f'posting to ``{url}``')
        resp: httpx.Response = self._post_with_retries(url, form)
        if resp.status_code in AUTH_FAILURE_CODES:
            raise SessionExpiredError(f'{endpoint} rejected the session (HTTP {resp.status_code})')
        resp.raise_for_status()
        try:
            data: object = resp.json()
        except ValueError as exc:
            raise CatalogParseError(f'{endpoint} returned a non-JSON body') from exc
        if not isinstance(data, dict):
            raise CatalogParseError(f'{endpoint} returned {type(data).__name__}, expected an object')
        return data

    def fetch_browse_page(self, session: str, offset: int, limit: int) -> BrowsePage:
        data: dict[str, object] = self.post_json(
            'browse/get',
            {
                'session_id': session,
                'o': str(offset),
                'l': str(limit),
                't': 'filter',
                'a': self.category,
                'k': '',
            },
        )
        return CatalogRecordParser.browse_page_from_json(data)

    def fetch_item_detail(self, session: str, book_id: str) -> dict[str, object]:
        return self.post_json('title/getItem', {'session_id': session, 'eisbn': book_id})

    def download_file(self, url: str, dest: Path, *, timeout_s: float = 60.0) -> int:
        """
        Streams `url` into `dest`; returns the number of bytes written.
        Called by: ImageAcquirer.acquire_image()
        """
        last_exc: Exception | None = None
        for attempt in range(1, self.max_tries + 1):
            try:
                with self.client.stream('GET', url, timeout=timeout_s, follow_redirects=True) as resp:
                    if resp.status_code >= 500:
                        raise httpx.HTTPStatusError(
                            f'server error {resp.status_code}', request=resp.request, response=resp
                        )
                    resp.raise_for_status()
                    written: int = 0
                    with dest.open('wb') as fh:
                        for chunk in resp.iter_bytes():
                            fh.write(chunk)
                            written += len(chunk)
                    return written
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code < 500:
                    raise
                last_exc = exc
            except httpx.TransportError as exc:
                last_exc = exc
            log.debug(f'download attempt {attempt} of {self.max_tries} failed for ``{url}``: {last_exc}')
            if attempt < self.max_tries:
                _sleep(min(2**attempt, 15))
        assert last_exc is not None
        raise last_exc


class CatalogRecordParser:
    """
    Turns raw catalog JSON into validated records.
    - Browse rows become Book records; rows without a usable id or title raise CatalogParseError.
    - Detail payloads become the ordered list of InteriorImage descriptors.
    - Per-image cache tokens fall back to the book's cover cache token when absent.
    """

    @staticmethod
    def browse_page_from_json(data: dict[str, object]) -> BrowsePage:
        rows: object = data.get('rows')
        if not isinstance(rows, list):
            raise CatalogParseError('browse response has no `rows` list', field_name='rows')
        max_offset: object = data.get('max_offset')
        if isinstance(max_offset, str) and max_offset.isdigit():
            max_offset = int(max_offset)
        if not isinstance(max_offset, int) or isinstance(max_offset, bool):
            raise CatalogParseError('browse response has no integer `max_offset`', field_name='max_offset')
        return BrowsePage(rows=[r for r in rows if isinstance(r, dict)], max_offset=max_offset)

    @staticmethod
    def _text(value: object) -> str:
        if value is None or isinstance(value, bool):
            return ''
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return ''

    @staticmethod
    def _authors(value: object) -> str:
        if isinstance(value, str):
            return value.strip()
        names: list[str] = []
        if isinstance(value, list):
            for entry in value:
                if isinstance(entry, dict):
                    name: str = CatalogRecordParser._text(entry.get('name'))
                else:
                    name = CatalogRecordParser._text(entry)
                if name:
                    names.append(name)
        return ', '.join(names)

    @staticmethod
    def book_from_row(row: dict[str, object]) -> Book:
        raw_id: object = row.get('eisbn') or row.get('isbn')
        if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
            raise CatalogParseError('row has no `eisbn`', field_name='eisbn')
        book_id: str = str(raw_id).strip()
        if not SAFE_ID_PATTERN.match(book_id):
            raise CatalogParseError(f'row has unusable id ``{book_id}``', field_name='eisbn')
        title: str = CatalogRecordParser._text(row.get('title'))
        if not title:
            raise CatalogParseError(f'row ``{book_id}`` has no title', field_name='title')
        return Book(
            id=book_id,
            title=title,
            author=CatalogRecordParser._authors(row.get('authors')),
            binding=CatalogRecordParser._text(row.get('binding')),
            price=CatalogRecordParser._text(row.get('price')),
            cover_image_cache=CatalogRecordParser._text(row.get('cover_image_cache') or row.get('cb')),
        )

    @staticmethod
    def interior_images_from_detail(payload: dict[str, object], fallback_cache: str) -> list[InteriorImage]:
        objects: object = payload.get('interior_objects')
        if objects is None:
            return []
        if not isinstance(objects, list):
            raise CatalogParseError('`interior_objects` is not a list', field_name='interior_objects')
        images: list[InteriorImage] = []
        for entry in objects:
            if not isinstance(entry, dict):
                raise CatalogParseError('interior object is not an object', field_name='interior_objects')
            key: str = CatalogRecordParser._text(entry.get('key'))
            if not key:
                raise CatalogParseError('interior object has no `key`', field_name='key')
            cache: str = CatalogRecordParser._text(entry.get('cb')) or fallback_cache
            b2b: str = CatalogRecordParser._text(entry.get('b2b'))
            images.append(InteriorImage(key=key, cache=cache, b2b=b2b or None))
        return images


T = TypeVar('T')


class SessionProvider:
    """
    Obtains session handles and renews them when the API rejects one.
    - The handle carries no expiry; expiry is discovered through 401/403 responses.
    - `call_with_session()` renews once and retries once; a second rejection propagates.
    """

    def __init__(self, api: CatalogApiClient) -> None:
        self.api: CatalogApiClient = api

    def acquire(self) -> str:
        data: dict[str, object] = self.api.post_json('session/get', {})
        session_id: object = data.get('session_id')
        if not isinstance(session_id, str) or not session_id:
            raise CatalogParseError('session response has no `session_id`', field_name='session_id')
        log.debug('acquired new session')
        return session_id

    def ensure(self, state: PipelineState) -> str:
        if not state.session:
            state.session = self.acquire()
        return state.session

    def call_with_session(self, state: PipelineState, operation: Callable[[str], T]) -> T:
        session: str = self.ensure(state)
        try:
            return operation(session)
        except SessionExpiredError as exc:
            log.info(f'session rejected ({exc}); acquiring a new one and retrying')
            state.session = self.acquire()
            return operation(state.session)


## phases -----------------------------------------------------------
class BookListCollector:
    """
    Pages through the browse API and builds the complete, deduplicated book list.
    - Skips entirely when a previous run already completed the list.
    - Records the API's advisory `max_offset` on the first fetch; an empty page ends the walk early.
    - Resumes from the length of the already-collected list.
    - Saves every few pages, and saves before re-raising any non-auth error.
    """

    def __init__(
        self, api: CatalogApiClient, sessions: SessionProvider, store: CheckpointStore, settings: HarvestSettings
    ) -> None:
        self.api = api
        self.sessions = sessions
        self.store = store
        self.settings = settings

    def _fetch(self, state: PipelineState, offset: int) -> BrowsePage:
        fetch: Callable[[str], BrowsePage] = functools.partial(
            self._fetch_with_session, offset=offset, limit=self.settings.page_size
        )
        return self.sessions.call_with_session(state, fetch)

    def _fetch_with_session(self, session: str, *, offset: int, limit: int) -> BrowsePage:
        return self.api.fetch_browse_page(session, offset, limit)

    def merge_rows(self, state: PipelineState, rows: list[dict[str, object]], known_ids: set[str]) -> int:
        """
        Normalizes rows into Books and appends the ones not already present; returns how many were added.
        Called by: run()
        """
        added: int = 0
        for row in rows:
            try:
                book: Book = CatalogRecordParser.book_from_row(row)
            except CatalogParseError as exc:
                log.warning(f'skipping malformed row: {exc}')
                continue
            if state.add_book(book, known_ids):
                added += 1
        return added

    def run(self, state: PipelineState) -> PipelineState:
        if state.book_list_complete and state.books:
            log_progress(2, f'Book list already complete ({len(state.books)} books), skipping.')
            return state

        known_ids: set[str] = state.book_ids()
        exhausted: bool = False
        try:
            self.sessions.ensure(state)

            ## first fetch: learn max_offset and seed the list -----
            if state.max_offset is None:
                first: BrowsePage = self._fetch(state, 0)
                state.max_offset = first.max_offset
                added: int = self.merge_rows(state, first.rows, known_ids)
                exhausted = not first.rows
                log_progress(2, f'First page: {added} books; API reports max offset {state.max_offset}')
                self.store.save(state)

            ## walk the remaining offsets ---------------------------
            offset: int = len(state.books)
            pages_since_save: int = 0
            while not exhausted and offset < state.max_offset:
                _sleep(self.settings.page_delay_s)
                page: BrowsePage = self._fetch(state, offset)
                if not page.rows:
                    log_progress(2, f'Empty page at offset {offset}; catalog exhausted.')
                    break
                added = self.merge_rows(state, page.rows, known_ids)
                log_progress(2, f'Offset {offset}: {added} new books ({len(state.books)} total)')
                offset += self.settings.page_size
                pages_since_save += 1
                if pages_since_save >= self.settings.list_save_every_pages:
                    self.store.save(state)
                    pages_since_save = 0
        except Exception:
            self.store.save(state)
            raise

        state.book_list_complete = True
        self.store.save(state)
        log_progress(2, f'Book list complete: {len(state.books)} books')
        return state


class DetailEnricher:
    """
    Fetches each book's detail payload and merges its interior-page descriptors into the Book.
    - Works only on books not yet in `details_fetched`.
    - Renews the session once on 401/403 and retries the same book.
    - Any other per-book failure leaves the book with no interior images, still marked done,
      so one bad item never blocks the run.
    """

    def __init__(
        self, api: CatalogApiClient, sessions: SessionProvider, store: CheckpointStore, settings: HarvestSettings
    ) -> None:
        self.api = api
        self.sessions = sessions
        self.store = store
        self.settings = settings

    def enrich_book(self, state: PipelineState, book: Book) -> None:
        fetch: Callable[[str], dict[str, object]] = functools.partial(self._fetch_with_session, book_id=book.id)
        payload: dict[str, object] = self.sessions.call_with_session(state, fetch)
        book.interior_images = CatalogRecordParser.interior_images_from_detail(payload, book.cover_image_cache)

    def _fetch_with_session(self, session: str, *, book_id: str) -> dict[str, object]:
        return self.api.fetch_item_detail(session, book_id)

    def run(self, state: PipelineState) -> PipelineState:
        pending: list[Book] = [b for b in state.books if b.id not in state.details_fetched]
        if not pending:
            log_progress(3, 'All book details already fetched, skipping.')
            return state

        log_progress(3, f'Fetching details for {len(pending)} of {len(state.books)} books...')
        self.sessions.ensure(state)
        failures: int = 0
        bar = tqdm(pending, total=len(pending), desc='Fetching details', disable=not self.settings.progress_bars)
        for index, book in enumerate(bar, start=1):
            try:
                self.enrich_book(state, book)
            except (httpx.HTTPError, CatalogApiError, CatalogParseError) as exc:
                log.warning(f'[Phase 3] Error fetching detail for {book.id}: {exc}')
                book.interior_images = []
                failures += 1
            state.details_fetched.add(book.id)

            if index % self.settings.detail_save_every_items == 0:
                log_progress(3, f'Details: {index} / {len(pending)} books ({index / len(pending):.1%})')
                self.store.save(state)
            if index < len(pending):
                _sleep(self.settings.item_delay_s)

        self.store.save(state)
        log_progress(3, f'Details complete for {len(state.details_fetched)} books ({failures} failed).')
        return state


class ImageTranscoder:
    """
    Converts downloaded raw images to webp with Pillow.
    Writes to a temporary name first so an interrupted transcode never looks like a finished one.
    """

    def __init__(self, quality: int = WEBP_QUALITY) -> None:
        self.quality: int = quality

    def decode(self, raw_path: Path) -> Image.Image:
        """
        Fully decodes the downloaded file; a corrupt or truncated image becomes a CatalogParseError.
        Called by: transcode()
        """
        try:
            with Image.open(raw_path) as img:
                img.load()
                if img.mode in ('RGB', 'RGBA'):
                    return img.copy()
                has_alpha: bool = 'A' in img.getbands() or 'transparency' in img.info
                return img.convert('RGBA' if has_alpha else 'RGB')
        except (OSError, SyntaxError, Image.DecompressionBombError) as exc:
            raise CatalogParseError(f'undecodable image ``{raw_path.name}``: {exc}') from exc

    def transcode(self, raw_path: Path, target_path: Path) -> None:
        img: Image.Image = self.decode(raw_path)
        tmp_path: Path = target_path.with_name(f'{target_path.name}.part')
        img.save(tmp_path, format='WEBP', quality=self.quality)
        os.replace(tmp_path, target_path)


class ImageAcquirer:
    """
    Downloads each book's cover and interior images and transcodes them to webp.
    - Skips any target file that already exists, so a book interrupted halfway resumes where it stopped.
    - Marks a book done only once every one of its images is on disk.
    - A failed image is logged and leaves its book unmarked for the next run; the phase carries on.
    """

    def __init__(
        self,
        api: CatalogApiClient,
        store: CheckpointStore,
        settings: HarvestSettings,
        transcoder: ImageTranscoder | None = None,
    ) -> None:
        self.api = api
        self.store = store
        self.settings = settings
        self.transcoder = transcoder or ImageTranscoder(settings.webp_quality)
        self.files_fetched: int = 0
        self.bytes_fetched: int = 0

    def acquire_image(self, url: str, target_path: Path) -> bool:
        """
        Downloads + transcodes one image unless its target already exists; returns whether work was done.
        Called by: acquire_book()
        """
        if target_path.exists():
            return False
        raw_path: Path = target_path.with_suffix('.jpg')
        try:
            size: int = self.api.download_file(url, raw_path)
            self.transcoder.transcode(raw_path, target_path)
        finally:
            raw_path.unlink(missing_ok=True)
        self.files_fetched += 1
        self.bytes_fetched += size
        _sleep(self.settings.image_delay_s)
        return True

    def acquire_book(self, book: Book) -> None:
        book_dir: Path = self.settings.images_dir / book.id
        book_dir.mkdir(parents=True, exist_ok=True)
        urls: UrlBuilder = self.api.urls
        self.acquire_image(urls.cover_url(book.id, book.cover_image_cache), book_dir / 'cover.webp')
        for page_number, image in enumerate(book.interior_images, start=1):
            self.acquire_image(urls.interior_url(book.id, image), book_dir / f'page-{page_number}.webp')

    def run(self, state: PipelineState) -> PipelineState:
        pending: list[Book] = [b for b in state.books if b.id not in state.images_downloaded]
        if not pending:
            log_progress(4, 'All images already downloaded, skipping.')
            return state

        log_progress(4, f'Downloading images for {len(pending)} books...')
        self.files_fetched = 0
        self.bytes_fetched = 0
        failures: int = 0
        bar = tqdm(pending, total=len(pending), desc='Downloading images', disable=not self.settings.progress_bars)
        for index, book in enumerate(bar, start=1):
            try:
                self.acquire_book(book)
            except (httpx.HTTPError, CatalogApiError, CatalogParseError) as exc:
                log.warning(f'[Phase 4] Error downloading images for {book.id}: {exc}')
                failures += 1
            else:
                state.images_downloaded.add(book.id)

            if index % self.settings.images_save_every_books == 0:
                log_progress(4, f'Images: {index} / {len(pending)} books ({self.files_fetched} files downloaded)')
                self.store.save(state)

        self.store.save(state)
        log_progress(
            4,
            f'Image download complete: {self.files_fetched} files '
            f'({humanize.naturalsize(self.bytes_fetched)}); {failures} books left for the next run.',
        )
        return state


## dataset ----------------------------------------------------------
def webp_dimensions(path: Path) -> tuple[int, int] | None:
    """
    Reads pixel width/height from a webp file's lossy (`VP8 `) or lossless (`VP8L`) bitstream header.
    Returns None when neither header is found or the header is truncated.
    """
    data: bytes = path.read_bytes()
    try:
        vp8_start: int = data.find(b'VP8 ')
        if vp8_start >= 0:
            width, height = struct.unpack_from('<HH', data, vp8_start + 14)
            return (width & 0x3FFF, height & 0x3FFF)
        vp8l_start: int = data.find(b'VP8L')
        if vp8l_start >= 0:
            (bits,) = struct.unpack_from('<I', data, vp8l_start + 9)
            return ((bits & 0x3FFF) + 1, ((bits >> 14) & 0x3FFF) + 1)
    except struct.error:
        log.debug(f'truncated webp header in ``{path}``')
    return None


class DatasetEmitter:
    """
    Writes the consumer-facing books.json from the harvested state.
    - Deduplicates by id (keeps the first occurrence).
    - Lists only interior images that actually exist on disk.
    - Adds cover dimensions when the cover's webp header can be read.
    - Flags books with no interior images as `hidden`.
    """

    def __init__(self, settings: HarvestSettings) -> None:
        self.settings = settings

    def entry_for(self, book: Book) -> dict[str, object]:
        book_dir: Path = self.settings.images_dir / book.id
        rel_dir: str = f'{IMAGES_SUBDIR}/{book.id}'
        interior_paths: list[str] = []
        for page_number in range(1, len(book.interior_images) + 1):
            name: str = f'page-{page_number}.webp'
            if (book_dir / name).exists():
                interior_paths.append(f'{rel_dir}/{name}')

        entry: dict[str, object] = {
            'id': book.id,
            'title': book.title,
            'coverImage': f'{rel_dir}/cover.webp',
            'interiorImages': interior_paths,
        }
        cover_path: Path = book_dir / 'cover.webp'
        if cover_path.exists():
            dims: tuple[int, int] | None = webp_dimensions(cover_path)
            if dims is not None:
                entry['coverWidth'], entry['coverHeight'] = dims
        if not interior_paths:
            entry['hidden'] = True
        return entry

    def emit(self, state: PipelineState) -> list[dict[str, object]]:
        seen: set[str] = set()
        entries: list[dict[str, object]] = []
        for book in state.books:
            if book.id in seen:
                continue
            seen.add(book.id)
            entries.append(self.entry_for(book))

        out_path: Path = self.settings.dataset_path
        out_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Path = out_path.with_name(f'{out_path.name}.tmp')
        with tmp_path.open('w', encoding='utf-8') as fh:
            json.dump(entries, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_path, out_path)
        hidden: int = sum(1 for e in entries if e.get('hidden'))
        log_progress(4, f'Generated {out_path.name} with {len(entries)} books ({hidden} hidden) at {out_path}')
        return entries


## orchestration ----------------------------------------------------
class PipelineOrchestrator:
    """
    Runs the phases in their fixed order: discovery -> list -> detail -> images.
    - Each phase decides for itself whether its work is already done.
    - `only_phase` (1-4) restricts the run to a single phase.
    - Saves the checkpoint after every phase; errors propagate to the caller.
    """

    def __init__(self, api: CatalogApiClient, store: CheckpointStore, settings: HarvestSettings) -> None:
        self.store = store
        self.sessions = SessionProvider(api)
        self.collector = BookListCollector(api, self.sessions, store, settings)
        self.enricher = DetailEnricher(api, self.sessions, store, settings)
        self.acquirer = ImageAcquirer(api, store, settings)
        self.emitter = DatasetEmitter(settings)

    def run_discovery(self, state: PipelineState) -> PipelineState:
        if state.session:
            log_progress(1, 'Session already established, skipping.')
            return state
        state.session = self.sessions.acquire()
        log_progress(1, 'API session acquired.')
        return state

    def run_images(self, state: PipelineState) -> PipelineState:
        state = self.acquirer.run(state)
        self.emitter.emit(state)
        return state

    def phase_runners(self) -> dict[str, Callable[[PipelineState], PipelineState]]:
        return {
            'discovery': self.run_discovery,
            'list': self.collector.run,
            'detail': self.enricher.run,
            'images': self.run_images,
        }

    def run(self, state: PipelineState, only_phase: int | None = None) -> PipelineState:
        runners: dict[str, Callable[[PipelineState], PipelineState]] = self.phase_runners()
        for number, name in enumerate(PHASE_NAMES, start=1):
            if only_phase is not None and number != only_phase:
                continue
            log_progress(number, f'--- Phase {number}: {PHASE_TITLES[name]} ---')
            state = runners[name](state)
            self.store.save(state)
        return state


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Directory defaults come from HARVEST_DATA_DIR / HARVEST_STATE_DIR, then ./data and ./state.
    - `--phase` accepts a phase number or name; `phase_number()` normalizes it to 1-4.
    """

    @staticmethod
    def positive_int(value: str) -> int:
        try:
            number: int = int(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f'invalid integer value: {value!r}') from None
        if number < 1:
            raise argparse.ArgumentTypeError(f'must be at least 1, got {number}')
        return number

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Harvest the catalog into a local books dataset.')
        parser.add_argument(
            '--data-dir',
            default=os.getenv('HARVEST_DATA_DIR', './data'),
            help='Directory for images/ and books.json (default: $HARVEST_DATA_DIR or ./data)',
        )
        parser.add_argument(
            '--state-dir',
            default=os.getenv('HARVEST_STATE_DIR', './state'),
            help='Directory for the checkpoint file (default: $HARVEST_STATE_DIR or ./state)',
        )
        parser.add_argument('--api-base', default=API_BASE, help=argparse.SUPPRESS)
        parser.add_argument('--reset', action='store_true', help='Discard all saved progress before running.')
        parser.add_argument(
            '--phase',
            choices=[str(n) for n in range(1, len(PHASE_NAMES) + 1)] + list(PHASE_NAMES),
            default=None,
            help='Optional. Run only this phase.',
        )
        parser.add_argument(
            '--page-size',
            type=CLI.positive_int,
            default=DEFAULT_PAGE_SIZE,
            metavar='INTEGER',
            help=f'Rows per browse request (default: {DEFAULT_PAGE_SIZE}).',
        )
        parser.add_argument('--no-progress-bar', action='store_true', help='Disable tqdm progress bars.')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)

    @staticmethod
    def phase_number(phase: str | None) -> int | None:
        if phase is None:
            return None
        if phase.isdigit():
            return int(phase)
        return PHASE_NAMES.index(phase) + 1


def log_progress(phase: int, message: str) -> None:
    """
    Logs a phase-tagged progress line; the log format supplies the timestamp.
    """
    log.info(f'[Phase {phase}] {message}')


def _now_iso() -> str:
    """
    Returns an ISO-8601 local timestamp with timezone info.
    """
    return datetime.now().astimezone().isoformat()


def _sleep(seconds: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking (and for patching in tests).
    """
    time.sleep(seconds)


def build_client(transport: httpx.BaseTransport | None = None) -> httpx.Client:
    headers: dict[str, str] = {'user-agent': USER_AGENT}
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    return httpx.Client(headers=headers, timeout=timeout, transport=transport)


def _save_best_effort(store: CheckpointStore, state: PipelineState) -> None:
    try:
        store.save(state)
    except OSError as exc:
        log.error(f'could not save checkpoint ``{store.path}``: {exc}')


def main(argv: list[str] | None = None, *, transport: httpx.BaseTransport | None = None) -> int:
    """
    Runs the harvest phases with resume support; returns the process exit status.

    Flow:
    - Parses CLI args; builds settings.
    - Resets the checkpoint if asked; loads (or starts) the pipeline state.
    - Runs the phases (or the single requested phase) with a shared httpx client.
    - On error: saves state, prints a re-run hint, returns non-zero.
    - On success: prints a summary, returns 0.

    Called by: dundermain
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    settings: HarvestSettings = HarvestSettings.from_args(args)
    store = CheckpointStore(settings.checkpoint_path)

    ## load (or reset) state ----------------------------------------
    if args.reset:
        log_progress(0, 'Resetting harvest state...')
        store.reset()
    try:
        state: PipelineState = store.load()
    except CheckpointError as exc:
        ## nothing is saved here, so the unusable checkpoint stays as it was
        log.error(f'unusable checkpoint ``{store.path}``: {exc}')
        print(f'\nHarvest error: {exc}', file=sys.stderr)
        print('Checkpoint left untouched. Re-run with --reset to discard it and start over.', file=sys.stderr)
        return 1
    started: float = time.monotonic()

    ## run phases ---------------------------------------------------
    with build_client(transport) as client:
        api = CatalogApiClient(client, UrlBuilder(settings.api_base))
        orchestrator = PipelineOrchestrator(api, store, settings)
        try:
            state = orchestrator.run(state, only_phase=settings.only_phase)
        except KeyboardInterrupt:
            _save_best_effort(store, state)
            print('\nInterrupted. State has been saved. Re-run to resume from where it stopped.', file=sys.stderr)
            return 130
        except Exception as exc:
            log.exception('harvest failed')
            _save_best_effort(store, state)
            print(f'\nHarvest error: {exc}', file=sys.stderr)
            print('State has been saved. Re-run to resume from where it stopped.', file=sys.stderr)
            return 1

    ## wrap up output -----------------------------------------------
    print('\n=== Harvest complete ===')
    print(f'Total books:       {len(state.books)}')
    print(f'Details fetched:   {len(state.details_fetched)}')
    print(f'Images downloaded: {len(state.images_downloaded)}')
    if settings.dataset_path.exists():
        dataset_size: str = humanize.naturalsize(settings.dataset_path.stat().st_size)
        print(f'Dataset:           {settings.dataset_path} ({dataset_size})')
    print(f'Elapsed:           {humanize.naturaldelta(time.monotonic() - started)}')
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
