from typing import List, Optional, Protocol


class KeyValueStore(Protocol):
    """持久化的字符串键值存储（语义上等同浏览器的 localStorage）。"""

    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...
