"""
An in-memory stand-in for the catalog API and image CDN, served through httpx.MockTransport.
Records every request so tests can assert on exactly which remote calls were made.
"""

import io
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qs

import httpx
from PIL import Image

from harvest_catalog import (
    CatalogApiClient,
    CheckpointStore,
    HarvestSettings,
    SessionProvider,
)


def make_row(n: int) -> dict[str, object]:
    return {
        'eisbn': f'978000{n:07d}',
        'title': f'Book {n}',
        'authors': [{'name': 'A. Author'}],
        'binding': 'Paperback',
        'price': '9.99',
        'cover_image_cache': f'c{n}',
    }


def jpeg_bytes(size: tuple[int, int] = (30, 45), color: str = 'teal') -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, format='JPEG')
    return buf.getvalue()


def truncated_jpeg_bytes(size: tuple[int, int] = (400, 400)) -> bytes:
    """A noisy JPEG cut in half: the header parses but decoding runs out of data."""
    buf = io.BytesIO()
    Image.effect_noise(size, 64).save(buf, format='JPEG')
    data: bytes = buf.getvalue()
    return data[: len(data) // 2]


class FakeCatalog:
    """
    Callable handler for httpx.MockTransport.
    - `rows` back the browse endpoint; `pages` overrides the rows returned for a given offset.
    - `details` maps eisbn -> payload dict, or -> int HTTP status to fail with.
    - `expire_at` holds (endpoint, key) pairs that invalidate every session the first time they are hit.
    - `image_failures` holds (eisbn, imgp-or-'cover') pairs the CDN answers with 404.
    - `book_payloads` maps eisbn -> bytes served for every image of that book instead of `image_payload`.
    """

    def __init__(
        self,
        rows: list[dict[str, object]],
        *,
        max_offset: int | None = None,
        pages: dict[int, list[dict[str, object]]] | None = None,
        details: dict[str, object] | None = None,
        fail_offsets: dict[int, int] | None = None,
    ) -> None:
        self.rows = rows
        self.max_offset = len(rows) if max_offset is None else max_offset
        self.pages = pages or {}
        self.details = details or {}
        self.fail_offsets = fail_offsets or {}
        self.expire_at: set[tuple[str, str]] = set()
        self.image_failures: set[tuple[str, str]] = set()
        self.image_payload: bytes = jpeg_bytes()
        self.book_payloads: dict[str, bytes] = {}
        self.valid_sessions: set[str] = set()
        self.sessions_issued: int = 0
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.image_calls: list[tuple[str, str]] = []

    ## introspection helpers
    def endpoint_calls(self, endpoint: str) -> list[dict[str, str]]:
        return [fields for name, fields in self.calls if name == endpoint]

    def browse_offsets(self) -> list[int]:
        return [int(fields['o']) for fields in self.endpoint_calls('browse/get')]

    def remote_call_count(self) -> int:
        return len(self.calls) + len(self.image_calls)

    ## handler
    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == 'GET':
            return self._image(request)
        endpoint: str = request.url.path.split('/customer/', 1)[1]
        fields: dict[str, str] = {
            k: v[0] for k, v in parse_qs(request.content.decode(), keep_blank_values=True).items()
        }
        self.calls.append((endpoint, fields))
        if endpoint == 'session/get':
            self.sessions_issued += 1
            session_id = f'S{self.sessions_issued}'
            self.valid_sessions.add(session_id)
            return httpx.Response(200, json={'session_id': session_id})
        if fields.get('session_id') not in self.valid_sessions:
            return httpx.Response(401, json={'error': 'session'})
        if endpoint == 'browse/get':
            return self._browse(int(fields['o']), int(fields['l']))
        if endpoint == 'title/getItem':
            return self._detail(fields['eisbn'])
        return httpx.Response(404)

    def _expire_once(self, endpoint: str, key: str) -> bool:
        if (endpoint, key) in self.expire_at:
            self.expire_at.discard((endpoint, key))
            self.valid_sessions.clear()
            return True
        return False

    def _browse(self, offset: int, limit: int) -> httpx.Response:
        if self._expire_once('browse/get', str(offset)):
            return httpx.Response(401, json={'error': 'session'})
        if offset in self.fail_offsets:
            return httpx.Response(self.fail_offsets[offset])
        rows = self.pages.get(offset, self.rows[offset : offset + limit])
        return httpx.Response(200, json={'rows': rows, 'max_offset': self.max_offset})

    def _detail(self, eisbn: str) -> httpx.Response:
        if self._expire_once('title/getItem', eisbn):
            return httpx.Response(403)
        detail: object = self.details.get(eisbn, {'interior_objects': []})
        if isinstance(detail, int):
            return httpx.Response(detail)
        return httpx.Response(200, json=detail)

    def _image(self, request: httpx.Request) -> httpx.Response:
        eisbn: str = request.url.params.get('b', '')
        page: str = request.url.params.get('imgp', 'cover')
        self.image_calls.append((eisbn, page))
        if (eisbn, page) in self.image_failures:
            return httpx.Response(404)
        payload: bytes = self.book_payloads.get(eisbn, self.image_payload)
        return httpx.Response(200, content=payload, headers={'content-type': 'image/jpeg'})


@dataclass
class Harness:
    fake: FakeCatalog
    client: httpx.Client
    api: CatalogApiClient
    sessions: SessionProvider
    store: CheckpointStore
    settings: HarvestSettings


def make_harness(fake: FakeCatalog, root: Path, **setting_overrides: object) -> Harness:
    """
    Wires the real collaborators to the fake catalog; the caller closes `client`.
    """
    client = httpx.Client(transport=httpx.MockTransport(fake))
    api = CatalogApiClient(client, max_tries=1)
    settings = HarvestSettings(
        data_dir=root / 'data',
        state_dir=root / 'state',
        progress_bars=False,
        **setting_overrides,  # type: ignore[arg-type]
    )
    return Harness(
        fake=fake,
        client=client,
        api=api,
        sessions=SessionProvider(api),
        store=CheckpointStore(settings.checkpoint_path),
        settings=settings,
    )
