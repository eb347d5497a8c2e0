import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fake_catalog import FakeCatalog, jpeg_bytes, make_harness, make_row, truncated_jpeg_bytes
from harvest_catalog import (
    Book,
    CatalogParseError,
    CatalogRecordParser,
    ImageAcquirer,
    ImageTranscoder,
    InteriorImage,
    PipelineState,
    webp_dimensions,
)


def book_with_pages(n: int, pages: int) -> Book:
    book: Book = CatalogRecordParser.book_from_row(make_row(n))
    book.interior_images = [InteriorImage(key=f'p{i}', cache='x') for i in range(1, pages + 1)]
    return book


class TestImageAcquirer(unittest.TestCase):
    """
    Tests downloading + transcoding, per-book completion marking, and resume within a book.
    """

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        patcher = mock.patch('harvest_catalog._sleep')
        self.mock_sleep = patcher.start()
        self.addCleanup(patcher.stop)

    def acquirer_for(self, fake: FakeCatalog) -> tuple[ImageAcquirer, object]:
        h = make_harness(fake, self.root)
        self.addCleanup(h.client.close)
        return ImageAcquirer(h.api, h.store, h.settings), h

    def test_downloads_and_transcodes_every_image(self) -> None:
        state = PipelineState()
        book: Book = book_with_pages(1, 2)
        state.add_book(book)
        fake = FakeCatalog([])
        acquirer, h = self.acquirer_for(fake)

        state = acquirer.run(state)

        book_dir: Path = h.settings.images_dir / book.id
        self.assertEqual(sorted(p.name for p in book_dir.iterdir()), ['cover.webp', 'page-1.webp', 'page-2.webp'])
        self.assertEqual(webp_dimensions(book_dir / 'cover.webp'), (30, 45))
        self.assertEqual(state.images_downloaded, {book.id})
        self.assertEqual(fake.image_calls, [(book.id, 'cover'), (book.id, 'p1'), (book.id, 'p2')])
        self.assertEqual(acquirer.files_fetched, 3)

    def test_failed_interior_image_leaves_book_unmarked_and_rerun_fetches_only_missing(self) -> None:
        """
        Checks partial-book tolerance: the cover lands, page 2 fails, the book stays pending,
        and the next run downloads page 2 alone.
        """
        state = PipelineState()
        book: Book = book_with_pages(1, 3)
        other: Book = book_with_pages(2, 0)
        state.add_book(book)
        state.add_book(other)
        fake = FakeCatalog([])
        fake.image_failures.add((book.id, 'p2'))
        acquirer, h = self.acquirer_for(fake)

        with self.assertLogs('harvest_catalog', level='WARNING'):
            state = acquirer.run(state)

        book_dir: Path = h.settings.images_dir / book.id
        self.assertNotIn(book.id, state.images_downloaded)
        self.assertIn(other.id, state.images_downloaded)
        self.assertTrue((book_dir / 'cover.webp').exists())
        self.assertTrue((book_dir / 'page-1.webp').exists())
        self.assertFalse((book_dir / 'page-2.webp').exists())
        self.assertFalse(any(p.suffix == '.jpg' for p in book_dir.iterdir()))
        self.assertNotIn(book.id, h.store.load().images_downloaded)

        fake.image_failures.clear()
        fake.image_calls.clear()
        state = acquirer.run(h.store.load())

        self.assertEqual(fake.image_calls, [(book.id, 'p2'), (book.id, 'p3')])
        self.assertIn(book.id, state.images_downloaded)

    def test_non_image_payload_is_a_per_book_failure(self) -> None:
        state = PipelineState()
        book: Book = book_with_pages(1, 0)
        state.add_book(book)
        fake = FakeCatalog([])
        fake.image_payload = b'<html>not an image</html>'
        acquirer, h = self.acquirer_for(fake)

        with self.assertLogs('harvest_catalog', level='WARNING'):
            state = acquirer.run(state)

        self.assertEqual(state.images_downloaded, set())
        self.assertEqual(list((h.settings.images_dir / book.id).iterdir()), [])

    def test_truncated_image_fails_only_its_book(self) -> None:
        """
        Checks that an image the CDN serves cut short is logged against its own book,
        and the books after it are still downloaded.
        """
        state = PipelineState()
        broken: Book = book_with_pages(1, 1)
        healthy: Book = book_with_pages(2, 1)
        state.add_book(broken)
        state.add_book(healthy)
        fake = FakeCatalog([])
        fake.book_payloads[broken.id] = truncated_jpeg_bytes()
        acquirer, h = self.acquirer_for(fake)

        with self.assertLogs('harvest_catalog', level='WARNING') as logs:
            state = acquirer.run(state)

        self.assertEqual(state.images_downloaded, {healthy.id})
        self.assertIn((healthy.id, 'p1'), fake.image_calls)
        self.assertTrue(any(broken.id in line for line in logs.output))
        broken_dir: Path = h.settings.images_dir / broken.id
        self.assertEqual(list(broken_dir.iterdir()), [])
        self.assertNotIn(broken.id, h.store.load().images_downloaded)

    def test_finished_books_make_no_remote_calls(self) -> None:
        state = PipelineState()
        book: Book = book_with_pages(1, 1)
        state.add_book(book)
        state.images_downloaded.add(book.id)
        fake = FakeCatalog([])
        acquirer, _ = self.acquirer_for(fake)

        acquirer.run(state)

        self.assertEqual(fake.image_calls, [])

    def test_pauses_between_downloads(self) -> None:
        state = PipelineState()
        state.add_book(book_with_pages(1, 1))
        acquirer, h = self.acquirer_for(FakeCatalog([]))
        acquirer.run(state)
        self.assertEqual(self.mock_sleep.call_count, 2)
        self.mock_sleep.assert_called_with(h.settings.image_delay_s)


class TestImageTranscoder(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        self.transcoder = ImageTranscoder()

    def test_truncated_download_raises_parse_error(self) -> None:
        raw_path: Path = self.root / 'cover.jpg'
        raw_path.write_bytes(truncated_jpeg_bytes())
        with self.assertRaises(CatalogParseError):
            self.transcoder.transcode(raw_path, self.root / 'cover.webp')
        self.assertFalse((self.root / 'cover.webp').exists())

    def test_local_write_failure_still_propagates(self) -> None:
        """
        Checks that only decode problems are reclassified; a target that cannot be written is not.
        """
        raw_path: Path = self.root / 'cover.jpg'
        raw_path.write_bytes(jpeg_bytes())
        target: Path = self.root / 'missing-dir' / 'cover.webp'
        with self.assertRaises(OSError) as ctx:
            self.transcoder.transcode(raw_path, target)
        self.assertNotIsInstance(ctx.exception, CatalogParseError)


if __name__ == '__main__':
    unittest.main()
