import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set

from warden.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)


class StateCorruptedError(RuntimeError):
    pass


@dataclass
class DedupState:
    seen_keys: Set[str] = field(default_factory=set)
    high_water_mark: Optional[int] = None

    def copy(self) -> "DedupState":
        return DedupState(set(self.seen_keys), self.high_water_mark)

    def to_dict(self) -> Dict:
        return {
            "seen_keys": sorted(self.seen_keys),
            "high_water_mark": self.high_water_mark,
            "updated_at": time.time(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "DedupState":
        if not isinstance(data, dict):
            raise StateCorruptedError("状态文件顶层必须是对象")
        keys = data.get("seen_keys", [])
        if not isinstance(keys, list) or not all(isinstance(k, str) for k in keys):
            raise StateCorruptedError("seen_keys 必须是字符串列表")
        mark = data.get("high_water_mark")
        if mark is not None and (isinstance(mark, bool) or not isinstance(mark, int)):
            raise StateCorruptedError("high_water_mark 必须是整数或 null")
        return cls(seen_keys=set(keys), high_water_mark=mark)


class StateStore:
    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> DedupState:
        if not self.path.exists():
            logger.info("状态文件不存在，使用空状态: %s", self.path)
            return DedupState()
        try:
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateCorruptedError(f"无法读取状态文件 {self.path}: {exc}") from exc
        state = DedupState.from_dict(data)
        logger.info(
            "已加载状态 keys=%s high_water_mark=%s",
            len(state.seen_keys),
            state.high_water_mark,
        )
        return state

    def save(self, state: DedupState) -> None:
        atomic_write_text(
            self.path,
            json.dumps(state.to_dict(), ensure_ascii=False, indent=2),
        )
