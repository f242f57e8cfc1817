import json
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel

TAVILY_BASE_URL = "https://api.tavily.com"


class SearchHit(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""
    score: Optional[float] = None
    publish_date: Optional[str] = None


class ScrapedPage(BaseModel):
    content: str
    author: Optional[str] = None
    publish_date: Optional[str] = None


class CrawledPage(BaseModel):
    url: str
    content: str = ""


class SourceProviderError(Exception):
    pass


class SourceProvider(Protocol):
    async def search(self, query: str, max_results: int) -> List[SearchHit]:
        ...

    async def scrape(self, url: str) -> ScrapedPage:
        ...

    async def crawl(self, root_url: str, max_depth: int, max_pages: int) -> List[CrawledPage]:
        ...


def format_tavily_error(resp: Dict[str, Any]) -> str:
    message = str(resp.get("error") or "tavily_error")
    detail = resp.get("detail")
    if isinstance(detail, dict):
        inner = detail.get("detail")
        detail_msg = (
            (inner.get("error") if isinstance(inner, dict) else None)
            or detail.get("error")
            or detail.get("message")
        )
        detail = detail_msg or json.dumps(detail)
    if detail:
        message = f"{message}: {detail}"
    status = resp.get("status_code")
    if status:
        message = f"{status} {message}"
    return message


class TavilySourceProvider:
    """SourceProvider backed by Tavily's search, extract and crawl endpoints."""

    def __init__(self, api_key: Optional[str], base_url: str = TAVILY_BASE_URL, search_depth: str = "basic"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.search_depth = search_depth
        # One pool shared by every concurrent search and extract call.
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int) -> List[SearchHit]:
        resp = await self._post(
            "/search",
            {"query": query, "search_depth": self.search_depth, "max_results": max_results},
        )
        hits: List[SearchHit] = []
        for item in resp.get("results") or []:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            hits.append(
                SearchHit(
                    url=item["url"],
                    title=item.get("title") or "",
                    snippet=item.get("content") or "",
                    score=item.get("score"),
                    publish_date=item.get("published_date"),
                )
            )
        return hits

    async def scrape(self, url: str) -> ScrapedPage:
        resp = await self._post("/extract", {"urls": [url], "extract_depth": "basic"})
        results = resp.get("results") or []
        if not results or not isinstance(results[0], dict):
            failed = resp.get("failed_results") or []
            raise SourceProviderError(f"extract returned no content for {url}: {failed}")
        first = results[0]
        return ScrapedPage(
            content=first.get("raw_content") or first.get("content") or "",
            author=first.get("author"),
            publish_date=first.get("published_date"),
        )

    async def crawl(self, root_url: str, max_depth: int, max_pages: int) -> List[CrawledPage]:
        resp = await self._post("/crawl", {"url": root_url, "max_depth": max_depth, "limit": max_pages})
        pages: List[CrawledPage] = []
        for item in resp.get("results") or []:
            if isinstance(item, dict) and item.get("url"):
                pages.append(CrawledPage(url=item["url"], content=item.get("raw_content") or ""))
        return pages[:max_pages]

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.enabled:
            raise SourceProviderError("missing_api_key")
        headers = {"Content-Type": "application/json"}
        # Dev keys are only read from the JSON body.
        payload = {**payload, "api_key": self.api_key}
        headers["X-API-Key"] = self.api_key or ""
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            error = {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
            raise SourceProviderError(format_tavily_error(error)) from e
        except httpx.RequestError as e:
            raise SourceProviderError(format_tavily_error({"error": "request_failed", "detail": str(e)})) from e
        except ValueError as e:
            raise SourceProviderError(f"invalid_response: {e}") from e
        if isinstance(data, list):
            data = {"results": data}
        if not isinstance(data, dict):
            raise SourceProviderError(f"invalid_response: {data!r}"[:200])
        return data

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
