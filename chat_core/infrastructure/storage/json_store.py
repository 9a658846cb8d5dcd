import os
import re
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.cache import KeyValueStore
from chat_core.domain.exceptions import BusinessError


_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileStore(KeyValueStore):
    """每个键一个文件的持久化字符串存储，写入走临时文件 + os.replace。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.cache_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{path.stem}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except Exception as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def keys(self) -> List[str]:
        return sorted(p.stem for p in self._root.glob("*.json"))

    def _path(self, key: str) -> Path:
        if not key:
            raise BusinessError(code="STORE_INVALID_KEY", message="empty key")
        return self._root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"
