from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from ._version import __version__
from .config import DEFAULT_API_URL, DEFAULT_BACKOFF_S, DEFAULT_RETRIES, DEFAULT_TIMEOUT_S
from .errors import DownloadFailureError, HTTPStatusError
from .releases import Release, ReleaseAsset

logger = logging.getLogger(__name__)

PER_PAGE = 100
RETRY_STATUS = {429, 500, 502, 503, 504}


def _parse_release(raw: Any) -> Release | None:
    if not isinstance(raw, dict) or raw.get("draft"):
        return None
    tag = raw.get("tag_name")
    if not isinstance(tag, str) or not tag.strip():
        return None

    assets: list[ReleaseAsset] = []
    for item in raw.get("assets") or []:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        url = item.get("browser_download_url")
        if not isinstance(name, str) or not isinstance(url, str) or not url:
            continue
        size = item.get("size")
        assets.append(ReleaseAsset(name=name, download_url=url, size=size if isinstance(size, int) else None))

    return Release(tag=tag.strip(), assets=tuple(assets), prerelease=bool(raw.get("prerelease")))


class GitHubClient:
    """
    Minimal GitHub REST client: list releases, download release assets.

    Transport errors and 429/5xx responses are retried with exponential
    backoff; anything else surfaces as :class:`DownloadFailureError`.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        retries: int = DEFAULT_RETRIES,
        backoff_s: float = DEFAULT_BACKOFF_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.retries = max(retries, 0)
        self.backoff_s = backoff_s

        headers = {"User-Agent": f"relpm/{__version__}"}
        self._http = httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept, "X-GitHub-Api-Version": "2022-11-28"}
        if self.token:
            # httpx drops this header when a redirect leaves the origin
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _retrying(self, what: str, attempt_fn):
        attempt = 0
        while True:
            try:
                return await attempt_fn()
            except httpx.TransportError as e:
                if attempt >= self.retries:
                    raise DownloadFailureError(f"{what} failed: {e}") from e
                err: Exception = e
            except httpx.HTTPError as e:
                # decoding errors, redirect loops: retrying will not help
                raise DownloadFailureError(f"{what} failed: {e}") from e
            except HTTPStatusError as e:
                if e.status_code not in RETRY_STATUS or attempt >= self.retries:
                    raise
                err = e
            delay = self.backoff_s * (2**attempt)
            attempt += 1
            logger.warning("%s failed (%s), retry %d/%d in %.1fs", what, err, attempt, self.retries, delay)
            await asyncio.sleep(delay)

    async def _get_json(self, url: str, params: dict[str, Any]) -> Any:
        async def attempt() -> Any:
            resp = await self._http.get(url, params=params, headers=self._headers("application/vnd.github+json"))
            if resp.status_code >= 400:
                raise HTTPStatusError(resp.status_code, url, resp.text[:200])
            try:
                return resp.json()
            except ValueError as e:
                raise DownloadFailureError(f"GET {url} returned a body that is not JSON: {e}") from e

        return await self._retrying(f"GET {url}", attempt)

    async def list_releases(self, repo: str) -> list[Release]:
        owner, _, name = repo.partition("/")
        url = f"{self.api_url}/repos/{quote(owner, safe='')}/{quote(name, safe='')}/releases"
        releases: list[Release] = []
        page = 1
        while True:
            data = await self._get_json(url, {"per_page": PER_PAGE, "page": page})
            if not isinstance(data, list):
                raise DownloadFailureError(f"Unexpected response listing releases for {repo}.")
            releases.extend(r for item in data if (r := _parse_release(item)) is not None)
            if len(data) < PER_PAGE:
                break
            page += 1
        logger.debug("%s: %d releases", repo, len(releases))
        return releases

    async def download(self, url: str, dest: Path) -> None:
        async def attempt() -> None:
            async with self._http.stream("GET", url, headers=self._headers("application/octet-stream")) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise HTTPStatusError(resp.status_code, url, resp.text[:200])
                with dest.open("wb") as out:
                    async for chunk in resp.aiter_bytes():
                        out.write(chunk)

        await self._retrying(f"Download {url}", attempt)
