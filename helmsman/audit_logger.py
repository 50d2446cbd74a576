import json
from pathlib import Path

from loguru import logger

from helmsman.event_bus import GovernanceEvent


class AuditLogger:
    """
    Event bus subscriber that appends every governance event to a
    JSON-lines file, buffered in batches.
    """

    def __init__(self, log_file: Path | str = "audit.jsonl", batch_size: int = 10):
        self.log_file = Path(log_file)
        self.batch_size = max(1, batch_size)
        self._buffer: list[str] = []

    def __call__(self, event: GovernanceEvent) -> None:
        self.log(event)

    def log(self, event: GovernanceEvent) -> None:
        self._buffer.append(event.model_dump_json() + "\n")
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.writelines(self._buffer)
        except OSError as e:
            # Keep the buffer; the next flush retries.
            logger.warning(f"[AUDIT] Could not write {self.log_file}: {e}")
            return
        self._buffer.clear()

    def read(self) -> list[dict]:
        """Flushed entries, oldest first."""
        if not self.log_file.exists():
            return []
        with open(self.log_file, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def close(self) -> None:
        self.flush()
