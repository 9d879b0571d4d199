"""Directory scanner for discovering and registering meme images."""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, Union

from PIL import Image

from .config import Settings
from .errors import ConflictError
from .models.schemas import ScanProgress, ScanResult, ScanState
from .storage import ItemStore

logger = logging.getLogger(__name__)


class ScanInProgressError(ConflictError):
    """A scan is already running."""


class DirectoryScanner:
    """
    Walks directories for images and adds new ones to the item store.

    Only one scan runs at a time per scanner; ``begin`` claims the scanner
    and a second claim while scanning fails instead of waiting.
    """

    def __init__(self, store: ItemStore, settings: Settings):
        """
        Initialize scanner.

        Args:
            store: Item store new images are registered in
            settings: Application settings (image extension allow-list)
        """
        self.store = store
        self.extensions = {f".{ext}" for ext in settings.image_extensions}
        self._lock = threading.Lock()
        self._progress = ScanProgress()

    @property
    def progress(self) -> ScanProgress:
        """Snapshot of the current or last scan."""
        with self._lock:
            return self._progress.model_copy()

    @property
    def is_scanning(self) -> bool:
        with self._lock:
            return self._progress.status == ScanState.SCANNING

    def is_image(self, name: str) -> bool:
        return os.path.splitext(name)[1].lower() in self.extensions

    def walk(self, root: Union[str, Path]) -> Iterator[Path]:
        """
        Yield image files under ``root``, depth first, in name order.

        Hidden directories are skipped and symlinks are not followed.
        """
        with os.scandir(root) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if not entry.name.startswith("."):
                    yield from self.walk(entry.path)
            elif entry.is_file(follow_symlinks=False) and self.is_image(entry.name):
                yield Path(entry.path)

    def begin(self) -> None:
        """
        Claim the scanner for a new run.

        Raises:
            ScanInProgressError: If a scan is already running
        """
        with self._lock:
            if self._progress.status == ScanState.SCANNING:
                raise ScanInProgressError("Scan already in progress")
            self._progress = ScanProgress(status=ScanState.SCANNING)

    def run(self, root: Union[str, Path]) -> ScanResult:
        """
        Scan ``root`` after a successful ``begin``.

        Files are counted in a first pass so progress has a known total,
        then each path not yet in the store is inserted. Inserts are
        committed one by one; a failure keeps what was already added.

        Returns:
            Counts of added and skipped files

        Raises:
            ConflictError: If the scanner was not claimed with ``begin``
        """
        if not self.is_scanning:
            raise ConflictError("Scanner must be claimed with begin() before run()")

        result = ScanResult()
        try:
            total = sum(1 for _ in self.walk(root))
            with self._lock:
                self._progress.total = total
            logger.info(f"Scanning {total} images in {root}")

            for path in self.walk(root):
                with self._lock:
                    self._progress.processed += 1

                file_path = str(path)
                if self.store.has_path(file_path):
                    result.skipped += 1
                    continue

                item = self.store.add_item(file_path, meta=self._file_meta(path))
                if item is None:
                    result.skipped += 1
                else:
                    result.added += 1

        except Exception as e:
            with self._lock:
                self._progress.status = ScanState.ERROR
                self._progress.error = str(e)
            logger.error(f"Scan of {root} failed: {e}")
            raise

        with self._lock:
            self._progress.status = ScanState.COMPLETE
        logger.info(f"Scan complete: {result.added} added, {result.skipped} skipped")
        return result

    def scan(self, root: Union[str, Path]) -> ScanResult:
        """Claim the scanner and scan ``root``."""
        self.begin()
        return self.run(root)

    def _file_meta(self, path: Path) -> Dict[str, Any]:
        """File size and format, plus dimensions when Pillow can read them."""
        meta: Dict[str, Any] = {
            "filesize": path.stat().st_size,
            "format": path.suffix.lstrip(".").lower(),
        }
        try:
            with Image.open(path) as image:
                meta["width"], meta["height"] = image.size
        except (OSError, Image.DecompressionBombError) as e:
            logger.debug(f"Could not read dimensions of {path}: {e}")
        return meta
