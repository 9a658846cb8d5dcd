from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class TokenPair:
    """访问令牌对，由会话对象持有并注入 REST 客户端。

    刷新逻辑不在本库范围内：调用方在收到 AuthError 后自行换取新令牌，
    再调用 update() 写回。
    """

    access: Optional[str] = None
    refresh: Optional[str] = None

    def authorization_header(self) -> Dict[str, str]:
        if not self.access:
            return {}
        return {"Authorization": f"Bearer {self.access}"}

    def update(self, access: str, refresh: Optional[str] = None) -> None:
        self.access = access
        if refresh:
            self.refresh = refresh

    def clear(self) -> None:
        self.access = None
        self.refresh = None
