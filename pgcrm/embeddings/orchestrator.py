import asyncio
import time
import traceback
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import backoff
import structlog
from ddtrace.trace import tracer

from .composer import ContentComposer
from .embeddings import Embedder, EmbeddingVector
from .errors import EmbeddingProviderError, InvalidRequestError
from .fingerprint import should_reembed
from .models import BatchOutcome, ItemError, truncate_source_text
from .processing import ProcessingConfig
from .store import EmbeddingStore

logger = structlog.get_logger()


class ItemStatus(Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERRORED = "errored"


@dataclass
class ItemResult:
    contact_id: str
    status: ItemStatus
    error: str | None = None


class BatchEmbeddingOrchestrator:
    """
    Keeps contact embeddings up to date.

    For every contact it composes the content, skips it when the stored
    fingerprint still matches, embeds it and writes the result. A failure
    for one contact is recorded in the outcome and never stops the others.

    Attributes:
        composer (ContentComposer): builds the text to embed.
        embedder (Embedder): the embedding provider.
        store (EmbeddingStore): where embeddings are persisted.
        config (ProcessingConfig): batch size, concurrency and retries.
    """

    def __init__(
        self,
        composer: ContentComposer,
        embedder: Embedder,
        store: EmbeddingStore,
        config: ProcessingConfig | None = None,
        should_continue_processing_hook: None | Callable[[int], bool] = None,
    ):
        self.composer = composer
        self.embedder = embedder
        self.store = store
        self.config = config or ProcessingConfig()
        self._should_continue_processing_hook = should_continue_processing_hook or (
            lambda _attempted: True
        )

    @tracer.wrap(name="embeddings.batch.run")
    async def run(
        self,
        user_id: str,
        contact_ids: Sequence[str] | None = None,
        batch_size: int | None = None,
        after: str | None = None,
    ) -> BatchOutcome:
        """
        Runs one batch for the contacts of `user_id`.

        Args:
            user_id: the scope whose contacts are processed.
            contact_ids: process exactly these contacts. When None, up to
                `batch_size` contacts of the scope are selected instead.
            batch_size: overrides the configured batch size for selection.
            after: only select contacts whose id sorts after this one.

        Returns:
            BatchOutcome: counts plus the per-contact errors in input order.

        Raises:
            InvalidRequestError: if the arguments prevent any processing.
        """
        if not user_id:
            raise InvalidRequestError("user_id is required")
        batch_size = batch_size if batch_size is not None else self.config.batch_size
        if batch_size < 1:
            raise InvalidRequestError("batchSize must be a positive integer")

        if contact_ids is None:
            contact_ids = await self.composer.source.list_contact_ids(
                user_id, batch_size, after
            )
        contact_ids = list(contact_ids)

        current_span = tracer.current_span()
        if current_span:
            current_span.set_tag("contacts.selected", len(contact_ids))
        await logger.adebug(
            f"contacts selected for embedding: {len(contact_ids)}", user_id=user_id
        )

        start_time = time.perf_counter()
        results = await self._process_all(user_id, contact_ids)
        outcome = self._aggregate(results)
        outcome.selected = len(contact_ids)
        outcome.last_entity_id = contact_ids[-1] if contact_ids else None

        await logger.ainfo(
            "finished embedding batch",
            user_id=user_id,
            duration=time.perf_counter() - start_time,
            processed=outcome.processed,
            created=outcome.created,
            updated=outcome.updated,
            skipped=outcome.skipped,
            errors=len(outcome.errors),
        )
        return outcome

    async def _process_all(
        self, user_id: str, contact_ids: list[str]
    ) -> list[ItemResult | None]:
        """Processes the contacts with at most `concurrency` in flight. Contacts
        not attempted because the hook stopped processing yield None."""
        semaphore = asyncio.Semaphore(self.config.concurrency)
        attempted = 0

        async def process(contact_id: str) -> ItemResult | None:
            nonlocal attempted
            async with semaphore:
                if not self._should_continue_processing_hook(attempted):
                    return None
                attempted += 1
                return await self._process_contact(user_id, contact_id)

        if self.config.concurrency == 1:
            results: list[ItemResult | None] = []
            for contact_id in contact_ids:
                results.append(await process(contact_id))
            return results
        return list(await asyncio.gather(*(process(cid) for cid in contact_ids)))

    @staticmethod
    def _aggregate(results: list[ItemResult | None]) -> BatchOutcome:
        outcome = BatchOutcome()
        for result in results:
            if result is None:
                continue
            if result.status is ItemStatus.SKIPPED:
                outcome.skipped += 1
            elif result.status is ItemStatus.ERRORED:
                outcome.errors.append(
                    ItemError(contact_id=result.contact_id, message=result.error or "")
                )
            else:
                outcome.processed += 1
                if result.status is ItemStatus.CREATED:
                    outcome.created += 1
                else:
                    outcome.updated += 1
        return outcome

    async def _process_contact(self, user_id: str, contact_id: str) -> ItemResult:
        log = logger.bind(contact_id=contact_id, user_id=user_id)
        try:
            content = await self.composer.compose(contact_id, user_id)
            if not content:
                await log.adebug("no content to embed")
                return ItemResult(contact_id, ItemStatus.SKIPPED)

            existing = await self.store.get_fingerprint(contact_id)
            decision = should_reembed(content, existing)
            if not decision.needs_update:
                await log.adebug("embedding is up to date")
                return ItemResult(contact_id, ItemStatus.SKIPPED)

            embedding = await self._embed(content)
            created = await self.store.upsert(
                contact_id,
                user_id,
                embedding,
                decision.fingerprint,
                truncate_source_text(content),
                self.embedder.model_version,
            )
        except Exception as e:
            for exception_line in traceback.format_exception(e):
                for line in exception_line.rstrip().split("\n"):
                    logger.debug(line)
            message = str(e) or type(e).__name__
            await log.awarning("failed to embed contact", error=message)
            return ItemResult(contact_id, ItemStatus.ERRORED, message)

        return ItemResult(
            contact_id, ItemStatus.CREATED if created else ItemStatus.UPDATED
        )

    async def _embed(self, content: str) -> EmbeddingVector:
        if self.config.provider_retries == 0:
            return await self.embedder.embed_one(content)

        @backoff.on_exception(
            backoff.expo,
            EmbeddingProviderError,
            max_tries=self.config.provider_retries + 1,
            on_backoff=lambda details: logger.warning(
                f"retrying embedding request, attempt {details['tries']}"
            ),
        )
        async def embed_with_retries() -> EmbeddingVector:
            return await self.embedder.embed_one(content)

        return await embed_with_retries()
