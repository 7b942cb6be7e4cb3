"""
Deduplication Engine - content and visual duplicate detection.

Flow:
1. Fingerprint staged items on the fingerprint pool (BLAKE3 + pHash)
2. Exact check: a committed row already holds the fingerprint -> skip.
   Identical items still in flight are left to the upload claim guard
3. Visual check (photos): committed photo of equal size within the
   Hamming threshold -> skip or flag for review, per policy
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence, Tuple

from ..errors import ErrorKind
from ..models import ItemStatus, MediaItem, Reason, UploadConfig
from ..services.fingerprint import FingerprintService, hamming_distance
from ..services.item_store import ItemStore

logger = logging.getLogger(__name__)


DedupAction = Literal["upload", "skip", "flag"]


@dataclass(frozen=True)
class DedupDecision:
    """Result of deciding what to do with an item after dedup checks."""

    action: DedupAction
    reason: str
    match_id: Optional[str] = None


@dataclass
class DedupOutcome:
    proceed: List[MediaItem] = field(default_factory=list)
    skipped: List[Tuple[MediaItem, DedupDecision]] = field(default_factory=list)
    flagged: List[Tuple[MediaItem, DedupDecision]] = field(default_factory=list)
    failed: List[MediaItem] = field(default_factory=list)


class ResolveDedupActionUseCase:
    """Resolve final action from exact and visual match state."""

    @staticmethod
    def execute(
        item_id: str,
        exact_holder_id: Optional[str],
        visual_match_id: Optional[str],
        policy: str,
    ) -> DedupDecision:
        if exact_holder_id and exact_holder_id != item_id:
            return DedupDecision("skip", Reason.DUPLICATE_EXACT.value, exact_holder_id)
        if visual_match_id:
            action: DedupAction = "skip" if policy == "skip" else "flag"
            return DedupDecision(action, Reason.DUPLICATE_VISUAL.value, visual_match_id)
        return DedupDecision("upload", "unique")


class DeduplicationEngine:
    """
    Usage:
        engine = DeduplicationEngine(store, FingerprintService(2), config)
        to_upload = await engine.filter(staged_items)
    """

    def __init__(self, store: ItemStore, fingerprints: FingerprintService, config: UploadConfig):
        self._store = store
        self._fingerprints = fingerprints
        self._config = config

    async def fingerprint(self, items: Sequence[MediaItem]) -> Tuple[List[MediaItem], List[MediaItem]]:
        """
        Compute and persist missing fingerprints of staged items.

        Returns:
            (fingerprinted, failed) - current rows of items ready for the
            dedup check, and items failed because their bytes were unreadable.
        """
        todo = [item for item in items if self._needs_fingerprint(item)]
        results = await asyncio.gather(
            *(self._compute(item) for item in todo), return_exceptions=True
        )

        failed_ids = set()
        for item, result in zip(todo, results):
            if isinstance(result, Exception):
                failed_ids.add(item.id)
                logger.warning(f"Fingerprint failed for {item.filename}: {result}")
                self._store.transition(
                    item.id,
                    ItemStatus.STAGED,
                    ItemStatus.FAILED,
                    last_error=f"{ErrorKind.LOCAL_MISSING.value}: fingerprint failed: {result}",
                )
                continue
            self._store.transition(item.id, ItemStatus.STAGED, ItemStatus.STAGED, **result)

        if todo:
            logger.info(f"Fingerprinted {len(todo) - len(failed_ids)}/{len(todo)} staged items")

        ready, failed = [], []
        for item in items:
            current = self._store.get(item.id)
            if current is None:
                continue
            if item.id in failed_ids:
                failed.append(current)
            elif current.status == ItemStatus.STAGED and current.content_fingerprint:
                ready.append(current)
        return ready, failed

    def _needs_fingerprint(self, item: MediaItem) -> bool:
        if not item.content_fingerprint:
            return True
        # pixel size 0x0 marks a photo the visual pass could not decode
        return item.is_photo and not item.perceptual_fingerprint and item.pixel_width is None

    async def _compute(self, item: MediaItem) -> dict:
        if not item.staged_path:
            raise FileNotFoundError("item has no staged copy")
        metadata = {}
        if not item.content_fingerprint:
            metadata["content_fingerprint"] = await self._fingerprints.content(item.staged_path)
        if item.is_photo:
            visual = await self._fingerprints.perceptual(item.staged_path)
            if visual is not None:
                metadata.update(
                    perceptual_fingerprint=visual.hash_hex,
                    pixel_width=visual.width,
                    pixel_height=visual.height,
                )
            else:
                metadata.update(pixel_width=0, pixel_height=0)
        return metadata

    def check(self, item: MediaItem) -> DedupDecision:
        holder = self._store.find_by_fingerprint(item.content_fingerprint) if item.content_fingerprint else None
        # only a committed holder makes this a duplicate
        exact_holder_id = holder.id if holder and holder.status == ItemStatus.COMMITTED else None

        visual_match_id = None
        if (
            (exact_holder_id is None or exact_holder_id == item.id)
            and item.is_photo
            and item.perceptual_fingerprint
            and item.has_dimensions
        ):
            visual_match_id = self._find_visual_match(item)

        return ResolveDedupActionUseCase.execute(
            item.id, exact_holder_id, visual_match_id, self._config.visual_duplicate_policy
        )

    def _find_visual_match(self, item: MediaItem) -> Optional[str]:
        for candidate in self._store.find_visual_candidates(
            item.pixel_width, item.pixel_height, exclude_id=item.id
        ):
            distance = hamming_distance(item.perceptual_fingerprint, candidate.perceptual_fingerprint)
            if distance <= self._config.hamming_threshold:
                logger.debug(f"{item.filename} looks like {candidate.filename} (distance {distance})")
                return candidate.id
        return None

    async def partition(self, items: Sequence[MediaItem]) -> DedupOutcome:
        """Fingerprint, check and apply decisions for a batch of staged items."""
        outcome = DedupOutcome()
        ready, outcome.failed = await self.fingerprint(items)

        for item in ready:
            decision = self.check(item)
            if decision.action == "skip":
                if self._store.transition(
                    item.id,
                    ItemStatus.STAGED,
                    ItemStatus.SKIPPED,
                    review_reason=decision.reason,
                    last_error=f"{ErrorKind.DUPLICATE.value}: {decision.reason} of {decision.match_id}",
                ):
                    outcome.skipped.append((item, decision))
            elif decision.action == "flag":
                self._store.transition(
                    item.id, ItemStatus.STAGED, ItemStatus.STAGED, review_reason=decision.reason
                )
                flagged = self._store.get(item.id) or item
                outcome.flagged.append((flagged, decision))
                outcome.proceed.append(flagged)
            else:
                outcome.proceed.append(item)

        if outcome.skipped or outcome.flagged:
            logger.info(
                f"Dedup: {len(outcome.proceed)} to upload, {len(outcome.skipped)} skipped, "
                f"{len(outcome.flagged)} flagged for review"
            )
        return outcome

    async def filter(self, items: Sequence[MediaItem]) -> List[MediaItem]:
        """Items that should proceed to upload."""
        return (await self.partition(items)).proceed
