import json
import logging
import time
from pathlib import Path
from typing import Dict, List

from warden.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, path: Path, max_records: int = 500):
        self.path = path
        self.max_records = max_records
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.records: List[Dict] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            records = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("审计日志无法解析，将重新开始记录: %s", self.path)
            return
        if isinstance(records, list):
            self.records = records[-self.max_records :]

    def add(self, event: str, detail: Dict) -> None:
        entry = {"ts": time.time(), "event": event, "detail": detail}
        self.records.append(entry)
        self.records = self.records[-self.max_records :]
        try:
            atomic_write_text(
                self.path, json.dumps(self.records, ensure_ascii=False, indent=2)
            )
        except OSError:
            logger.exception("写入审计日志失败")

    def recent(self, limit: int = 50) -> List[Dict]:
        if limit <= 0:
            return []
        return list(self.records[-limit:])
