"""
Minimal STAC client helpers for Sentinel-2 discovery.
"""

from __future__ import annotations

import logging
import requests
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class STACClient:
    def __init__(self, base_url: str = "https://earth-search.aws.element84.com/v1", timeout: int = 60):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def search(
        self,
        collections: Optional[List[str]] = None,
        bbox: Optional[List[float]] = None,
        datetime_range: Optional[str] = None,
        limit: int = 100,
        query: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "limit": limit,
        }
        if collections:
            payload["collections"] = collections
        if bbox:
            payload["bbox"] = bbox
        if datetime_range:
            payload["datetime"] = datetime_range
        if query:
            payload["query"] = query

        url = f"{self.base_url}/search"
        return self._post(url, payload)

    def search_items(
        self,
        collections: Optional[List[str]] = None,
        bbox: Optional[List[float]] = None,
        datetime_range: Optional[str] = None,
        query: Optional[Dict[str, Any]] = None,
        max_items: int = 500,
        page_size: int = 100,
    ) -> Iterator[Dict[str, Any]]:
        """Yield items across result pages, following POST "next" links."""
        page = self.search(collections, bbox, datetime_range, min(page_size, max_items), query)
        returned = 0
        while True:
            for item in page.get("features", []):
                yield item
                returned += 1
                if returned >= max_items:
                    return
            next_link = next(
                (link for link in page.get("links", []) if link.get("rel") == "next"), None
            )
            if not next_link:
                return
            method = next_link.get("method", "GET").upper()
            if method == "POST":
                page = self._post(next_link["href"], next_link.get("body", {}))
            else:
                page = self._get(next_link["href"])

    def list_collections(self) -> Dict[str, Any]:
        url = f"{self.base_url}/collections"
        return self._get(url)

    def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/geo+json",
        }
        logger.debug(f"POST {url} {payload}")
        resp = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _get(self, url: str) -> Dict[str, Any]:
        resp = requests.get(url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()
