"""
Tests for the directory scanner.
"""

import os
import threading

import pytest

from memedex.errors import ConflictError
from memedex.models.schemas import ItemStatus, ScanState
from memedex.scanner import DirectoryScanner, ScanInProgressError


@pytest.fixture
def scanner(store, test_settings) -> DirectoryScanner:
    return DirectoryScanner(store, test_settings)


@pytest.fixture
def meme_dir(tmp_path, make_image):
    """A small meme tree with nested, hidden and non-image entries."""
    make_image("memes/drake.jpg")
    make_image("memes/reactions/Cat.PNG", size=(10, 20))
    make_image("memes/reactions/deep/wow.webp")
    make_image("memes/.thumbnails/drake.jpg")
    (tmp_path / "memes" / "notes.txt").write_text("not an image")
    return tmp_path / "memes"


class TestWalk:
    """Directory traversal."""

    def test_walk_finds_images_only(self, scanner, meme_dir):
        names = sorted(p.name for p in scanner.walk(meme_dir))

        assert names == ["Cat.PNG", "drake.jpg", "wow.webp"]

    def test_walk_is_lazy(self, scanner, meme_dir):
        walker = scanner.walk(meme_dir)

        assert iter(walker) is walker
        assert next(walker).suffix

    def test_walk_missing_root(self, scanner, tmp_path):
        with pytest.raises(FileNotFoundError):
            list(scanner.walk(tmp_path / "absent"))

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_walk_does_not_follow_symlinks(self, scanner, meme_dir, tmp_path, make_image):
        make_image("elsewhere/linked.png")
        os.symlink(tmp_path / "elsewhere", meme_dir / "link")

        names = {p.name for p in scanner.walk(meme_dir)}

        assert "linked.png" not in names


class TestScan:
    """Scan runs and progress."""

    def test_scan_adds_pending_items_with_meta(self, scanner, store, meme_dir):
        result = scanner.scan(meme_dir)

        assert result.added == 3
        assert result.skipped == 0

        items = {item.filename: item for item in store.list_items()}
        cat = items["Cat.PNG"]
        assert cat.status == ItemStatus.PENDING
        assert cat.meta["format"] == "png"
        assert cat.meta["filesize"] > 0
        assert (cat.meta["width"], cat.meta["height"]) == (10, 20)
        assert cat.folder == str(meme_dir / "reactions")

    def test_rescan_is_idempotent(self, scanner, store, meme_dir):
        scanner.scan(meme_dir)

        second = scanner.scan(meme_dir)

        assert second.added == 0
        assert second.skipped == 3
        assert store.get_stats().total == 3

    def test_rescan_picks_up_new_files(self, scanner, store, meme_dir, make_image):
        scanner.scan(meme_dir)
        make_image("memes/new.gif")

        result = scanner.scan(meme_dir)

        assert result.added == 1
        assert store.get_stats().total == 4

    def test_progress_snapshot(self, scanner, meme_dir):
        assert scanner.progress.status == ScanState.IDLE

        scanner.scan(meme_dir)
        progress = scanner.progress

        assert progress.status == ScanState.COMPLETE
        assert progress.processed == 3
        assert progress.total == 3
        assert progress.error is None

    def test_unreadable_image_still_indexed(self, scanner, store, meme_dir):
        (meme_dir / "broken.jpg").write_bytes(b"not really a jpeg")

        result = scanner.scan(meme_dir)

        assert result.added == 4
        broken = next(i for i in store.list_items() if i.filename == "broken.jpg")
        assert "width" not in broken.meta
        assert broken.meta["filesize"] == len(b"not really a jpeg")

    def test_failed_scan_reports_error(self, scanner, tmp_path):
        with pytest.raises(FileNotFoundError):
            scanner.scan(tmp_path / "absent")

        progress = scanner.progress
        assert progress.status == ScanState.ERROR
        assert progress.error
        assert not scanner.is_scanning

    def test_failure_keeps_inserted_items(self, scanner, store, meme_dir, monkeypatch):
        original = store.add_item
        calls = []

        def flaky_add(file_path, title=None, meta=None):
            calls.append(file_path)
            if len(calls) == 2:
                raise OSError("disk full")
            return original(file_path, title=title, meta=meta)

        monkeypatch.setattr(store, "add_item", flaky_add)

        with pytest.raises(OSError):
            scanner.scan(meme_dir)

        assert store.get_stats().total == 1
        assert scanner.progress.status == ScanState.ERROR


class TestSingleFlight:
    """Only one scan runs at a time."""

    def test_second_begin_rejected(self, scanner):
        scanner.begin()

        with pytest.raises(ScanInProgressError) as exc_info:
            scanner.begin()

        assert exc_info.value.status_code == 409

    def test_run_without_begin_rejected(self, scanner, store, meme_dir):
        with pytest.raises(ConflictError):
            scanner.run(meme_dir)

        assert scanner.progress.status == ScanState.IDLE
        assert store.get_stats().total == 0

    def test_concurrent_scan_rejected_without_traversal(
        self, scanner, store, meme_dir, monkeypatch
    ):
        entered = threading.Event()
        release = threading.Event()
        original_has_path = store.has_path

        def slow_has_path(file_path):
            entered.set()
            release.wait(timeout=5)
            return original_has_path(file_path)

        monkeypatch.setattr(store, "has_path", slow_has_path)

        roots = []
        original_walk = scanner.walk

        def recording_walk(root):
            roots.append(str(root))
            return original_walk(root)

        monkeypatch.setattr(scanner, "walk", recording_walk)

        worker = threading.Thread(target=scanner.scan, args=(meme_dir,))
        worker.start()
        try:
            assert entered.wait(timeout=5)

            with pytest.raises(ScanInProgressError):
                scanner.scan(meme_dir)
        finally:
            release.set()
            worker.join(timeout=5)

        # counting pass plus insert pass of the first scan only
        assert roots.count(str(meme_dir)) == 2
        assert scanner.progress.status == ScanState.COMPLETE
        assert store.get_stats().total == 3

    def test_scanner_reusable_after_completion(self, scanner, meme_dir):
        scanner.scan(meme_dir)

        scanner.begin()

        assert scanner.is_scanning
