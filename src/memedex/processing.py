"""
Item processing state machine.

Drives items through ``pending -> processing -> complete | error`` by
describing the image with the vision model and embedding the description.
Failed items stay in ``error`` until explicitly reset; nothing is retried
automatically.
"""

import logging
import re

from .config import Settings
from .description import DescriptionClient, DescriptionError
from .models.embedding import EmbeddingModel
from .models.schemas import BatchResult, ItemStatus, MemeItem
from .storage import ItemNotFoundError, ItemStore

logger = logging.getLogger(__name__)


def embedding_text(file_path: str, description: str) -> str:
    """Text embedded for an item: readable filename, then the description."""
    filename = file_path.rsplit("/", 1)[-1]
    name = re.sub(r"[-_]", " ", re.sub(r"\.[^.]+$", "", filename))
    return f"{name}. {description}"


class ItemProcessor:
    """Generates descriptions and embeddings for stored items."""

    def __init__(
        self,
        store: ItemStore,
        describer: DescriptionClient,
        embedder: EmbeddingModel,
        settings: Settings,
    ):
        self.store = store
        self.describer = describer
        self.embedder = embedder
        self.batch_limit = settings.batch_limit

    async def generate(self, item_id: str) -> MemeItem:
        """
        Process one item.

        Args:
            item_id: Item identifier

        Returns:
            The completed item

        Raises:
            ItemNotFoundError: If the item does not exist
            DescriptionError, ImageFileError, EmbeddingModelError: If a
                client call fails; the item is left in ``error``
        """
        item = self.store.require_item(item_id)
        self.store.set_status(item.id, ItemStatus.PROCESSING)

        try:
            description = await self.describer.describe(item.file_path)
            vector = await self.embedder.embed(
                embedding_text(item.file_path, description)
            )
            completed = self.store.complete_item(item.id, description, vector)
        except Exception as e:
            logger.error(f"Processing failed for {item.id}: {e}")
            try:
                self.store.set_status(item.id, ItemStatus.ERROR)
            except ItemNotFoundError:
                logger.warning(f"Item {item.id} deleted during processing")
            raise

        logger.info(f"Generated description for {item.id}")
        return completed

    async def generate_pending(self) -> BatchResult:
        """
        Process pending items one at a time.

        The vision model is checked first; when it is unavailable no item
        changes state. Individual failures are counted and the run
        continues.

        Raises:
            DescriptionError: If the vision model is unavailable
        """
        health = await self.describer.health()
        if not health.available:
            raise DescriptionError(f"Vision model unavailable: {health.error}")

        pending = self.store.pending_items(self.batch_limit)
        result = BatchResult(total=len(pending))

        for item in pending:
            try:
                await self.generate(item.id)
            except Exception as e:
                result.failed += 1
                logger.warning(f"Skipping {item.id} after failure: {e}")
                continue
            result.processed += 1
            logger.info(f"[{result.processed}/{result.total}] Generated: {item.id}")

        logger.info(
            f"Batch complete: {result.processed} processed, {result.failed} failed"
        )
        return result

    def reset_processing(self) -> int:
        """Return items stuck in ``processing`` to ``pending``."""
        return self.store.reset_status(ItemStatus.PROCESSING)

    def reset_errors(self) -> int:
        """Re-queue failed items."""
        return self.store.reset_status(ItemStatus.ERROR)
