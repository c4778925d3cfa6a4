"""
File-Backed Movement Journal

Appends every saved MovementIntent as one JSON line. The latest line for
an intent id wins when the file is read back, so a crash between two
writes never loses the previously journaled state.

TRADEOFFS:
- The file grows with every step (compact() rewrites it)
- Reads parse the whole file (fine: only reconciliation reads it)
"""

from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from finledger.models.movement import MovementIntent
from finledger.services.storage.interface import MovementJournalInterface, StorageError


logger = structlog.get_logger(__name__)


class FileMovementJournal(MovementJournalInterface):
    """
    JSONL movement journal.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    def _append(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
            fh.flush()

    def _load(self) -> dict[UUID, MovementIntent]:
        intents: dict[UUID, MovementIntent] = {}
        if not self._path.exists():
            return intents
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        intent = MovementIntent.model_validate_json(line)
                    except ValidationError:
                        # A torn final write after a crash
                        logger.warning(
                            "journal_line_unreadable",
                            path=str(self._path),
                            line=lineno,
                        )
                        continue
                    intents[intent.id] = intent
        except OSError as e:
            raise StorageError(f"Failed to read movement journal: {e}") from e
        return intents

    async def save_intent(self, intent: MovementIntent) -> None:
        try:
            self._append(intent.model_dump_json())
        except OSError as e:
            raise StorageError(f"Failed to write movement journal: {e}") from e

    async def get_intent(self, movement_id: UUID) -> Optional[MovementIntent]:
        return self._load().get(movement_id)

    async def list_unfinished(self) -> list[MovementIntent]:
        unfinished = [i for i in self._load().values() if i.status.needs_reconciliation]
        return sorted(unfinished, key=lambda i: i.started_at)

    async def compact(self) -> int:
        """
        Rewrite the journal keeping only intents that still need reconciliation.

        Returns:
            Number of intents kept
        """
        keep = await self.list_unfinished()
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as fh:
                for intent in keep:
                    fh.write(intent.model_dump_json() + "\n")
            tmp_path.replace(self._path)
        except OSError as e:
            raise StorageError(f"Failed to compact movement journal: {e}") from e
        logger.info("journal_compacted", path=str(self._path), kept=len(keep))
        return len(keep)
