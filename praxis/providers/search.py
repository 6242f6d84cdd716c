import json
import os
import re
from typing import Any, Dict, Iterable, List, Optional

import httpx

from praxis import config

from .base import ProviderError, SearchClient, SearchResult

YOUTUBE_SEARCH_URL = "https://www.googleapis.com/youtube/v3/search"
CUSTOM_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
MAX_RESULTS = 3

# Knowledge-base hosts often 302 or refuse HEAD; they are accepted unchecked.
TRUSTED_HOSTS = ("pluralcode.academy", "drive.google.com")
_BLOCKED_RE = re.compile(
    r"webcache\.googleusercontent\.com|translate\.googleusercontent\.com|accounts\.google\.com",
    re.IGNORECASE,
)
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

HEAD_TIMEOUT_SECONDS = 3.5
GET_TIMEOUT_SECONDS = 4.5

logger = config.configure_logger("praxis.ai.search")


def is_likely_good_url(url: Any) -> bool:
    if not isinstance(url, str) or not _SCHEME_RE.match(url):
        return False
    return not _BLOCKED_RE.search(url)


def _live(status: int) -> bool:
    return 200 <= status < 400


async def validate_url(client: Any, url: str) -> bool:
    """HEAD the link; if that raises, retry with a ranged GET. 2xx and 3xx count as alive."""
    if any(host in url for host in TRUSTED_HOSTS):
        return True
    if not is_likely_good_url(url):
        return False
    try:
        r = await client.head(url, timeout=HEAD_TIMEOUT_SECONDS)
        return _live(r.status_code)
    except httpx.HTTPError:
        pass
    try:
        r = await client.get(url, headers={"Range": "bytes=0-1024"}, timeout=GET_TIMEOUT_SECONDS)
        return _live(r.status_code)
    except httpx.HTTPError as e:
        logger.info(json.dumps({"event": "search_link_unreachable", "url": url[:256], "error": type(e).__name__}))
        return False


async def clean_and_validate(client: Any, items: Iterable[SearchResult], max_results: int = MAX_RESULTS) -> List[SearchResult]:
    kept: List[SearchResult] = []
    for item in items:
        if not item.link or not is_likely_good_url(item.link):
            continue
        if await validate_url(client, item.link):
            kept.append(item)
        if len(kept) >= max_results:
            break
    return kept


def _items(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    items = data.get("items")
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict)]


def _video_results(data: Any) -> List[SearchResult]:
    out: List[SearchResult] = []
    for it in _items(data):
        ident = it.get("id") if isinstance(it.get("id"), dict) else {}
        video_id = ident.get("videoId")
        if not video_id:
            continue
        snippet = it.get("snippet") if isinstance(it.get("snippet"), dict) else {}
        out.append(SearchResult(
            title=str(snippet.get("title") or "YouTube video"),
            link=f"https://www.youtube.com/watch?v={video_id}",
            snippet=str(snippet.get("description") or ""),
        ))
    return out


def _article_results(data: Any) -> List[SearchResult]:
    return [
        SearchResult(title=str(it.get("title") or it["link"]), link=str(it["link"]), snippet=str(it.get("snippet") or ""))
        for it in _items(data)
        if it.get("link")
    ]


class GoogleSearchClient(SearchClient):
    """YouTube Data API video search and Programmable Search (Custom Search) for articles.

    Credentials come from GOOGLE_SEARCH_API_KEY / GOOGLE_SEARCH_CX_ID (the legacy
    Google_Search_* spellings are also read). Without them every search returns [].
    """

    provider_name: str = "google"

    def __init__(self, api_key: Optional[str] = None, cx_id: Optional[str] = None):
        self.api_key = (api_key or os.getenv("GOOGLE_SEARCH_API_KEY") or os.getenv("Google_Search_API_KEY") or "").strip()
        self.cx_id = (cx_id or os.getenv("GOOGLE_SEARCH_CX_ID") or os.getenv("Google_Search_CX_ID") or "").strip()

    async def search_videos(self, query: str) -> List[SearchResult]:
        if not self.api_key:
            logger.info(json.dumps({"event": "search_not_configured", "kind": "video"}))
            return []
        params = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "videoEmbeddable": "true",
            "maxResults": 6,
            "key": self.api_key,
        }
        return await self._search("video", YOUTUBE_SEARCH_URL, params, _video_results)

    async def search_articles(self, query: str) -> List[SearchResult]:
        if not self.api_key or not self.cx_id:
            logger.info(json.dumps({"event": "search_not_configured", "kind": "article"}))
            return []
        params = {"key": self.api_key, "cx": self.cx_id, "q": query}
        return await self._search("article", CUSTOM_SEARCH_URL, params, _article_results)

    async def _search(self, kind: str, url: str, params: Dict[str, Any], parse) -> List[SearchResult]:
        timeout_s = config.search_timeout_seconds()
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            try:
                r = await client.get(url, params=params)
            except httpx.HTTPError as e:
                logger.error(json.dumps({"event": "search_transport_error", "kind": kind, "error": type(e).__name__}))
                raise ProviderError(f"{kind} search failed: {type(e).__name__}") from e
            if r.status_code >= 400:
                logger.error(json.dumps({
                    "event": "search_http_error",
                    "kind": kind,
                    "status": r.status_code,
                    "body": (r.text or "")[:512],
                }))
                raise ProviderError(f"Google Search API responded with status {r.status_code}")
            try:
                data = r.json()
            except Exception as e:
                raise ProviderError(f"{kind} search returned a non-JSON body") from e
            results = await clean_and_validate(client, parse(data))
        logger.info(json.dumps({"event": "search_results", "kind": kind, "count": len(results)}))
        return results
