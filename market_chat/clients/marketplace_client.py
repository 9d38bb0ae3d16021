from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel


class ArticleInfo(BaseModel):
    id: int
    seller_id: int
    title: str
    price: Optional[float] = None
    status: Optional[str] = None


class UserInfo(BaseModel):
    id: int
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    username: str = ""

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name} {self.last_name}".strip()
        return full_name or self.username or f"User {self.id}"


class MarketplaceClient:
    """Read-only client for the marketplace's article and user records."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def _get(self, path: str) -> Optional[Dict[str, Any]]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(f"{self.base_url}{path}", headers=headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data: Dict[str, Any] = response.json()
            return data

    async def get_article(self, article_id: int) -> Optional[ArticleInfo]:
        """Fetch an article; None if the marketplace does not know it."""
        data = await self._get(f"/articles/{article_id}")
        if data is None:
            return None
        return ArticleInfo(
            id=data.get("id", article_id),
            seller_id=data.get("seller_id", data.get("user_id")),
            title=data.get("title", ""),
            price=data.get("price"),
            status=data.get("status"),
        )

    async def get_user(self, user_id: int) -> Optional[UserInfo]:
        data = await self._get(f"/users/{user_id}")
        if data is None:
            return None
        return UserInfo(
            id=data.get("id", user_id),
            email=data.get("email"),
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            username=data.get("username") or "",
        )
