"""
Library manager refresh.

After a file is replaced on disk, Radarr or Sonarr still points at the old
file. The client looks up the movie or series whose folder contains the
file and asks the manager to rescan it through the v3 command endpoint.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from mediashrink.config import Config
from mediashrink.errors import LibraryRefreshError

_KINDS = {
    "radarr": ("/api/v3/movie", "RefreshMovie"),
    "sonarr": ("/api/v3/series", "RefreshSeries"),
}


def _contains(folder: str, path: Path) -> bool:
    if not folder:
        return False
    try:
        path.relative_to(Path(folder))
    except ValueError:
        return False
    return True


class LibraryClient:
    """HTTP client for the Radarr/Sonarr v3 API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        kind: str = "radarr",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if kind not in _KINDS:
            raise ValueError(f"Unknown library kind: {kind!r}")
        self.kind = kind
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @classmethod
    def from_config(cls, cfg: Config) -> Optional["LibraryClient"]:
        """Client for the configured manager, or None when no URL is set."""
        if not cfg.library_url:
            return None
        return cls(cfg.library_url, cfg.library_api_key or "", cfg.library_kind, cfg.library_timeout)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"X-Api-Key": self._api_key},
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "LibraryClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self._get_client().request(method, url, **kwargs)
            if response.status_code == 401:
                raise LibraryRefreshError(f"{self.kind}: invalid API key")
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise LibraryRefreshError(f"{self.kind}: request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise LibraryRefreshError(f"{self.kind}: HTTP error: {e}") from e
        except httpx.HTTPError as e:
            raise LibraryRefreshError(f"{self.kind}: cannot connect: {e}") from e
        except ValueError as e:
            raise LibraryRefreshError(f"{self.kind}: invalid JSON response: {e}") from e

    def find_id(self, path: Path) -> Optional[int]:
        """Id of the movie/series whose folder holds ``path``; deepest folder wins."""
        listing, _command = _KINDS[self.kind]
        items: List[Dict[str, Any]] = self._request("GET", listing) or []
        best: Optional[Dict[str, Any]] = None
        for item in items:
            folder = item.get("path") or ""
            if _contains(folder, path) and (best is None or len(folder) > len(best.get("path", ""))):
                best = item
        return best.get("id") if best else None

    def refresh_command(self, item_id: int) -> Dict[str, Any]:
        _listing, command = _KINDS[self.kind]
        if self.kind == "radarr":
            return {"name": command, "movieIds": [item_id]}
        return {"name": command, "seriesId": item_id}

    def refresh(self, path: Path) -> Optional[int]:
        """
        Ask the manager to rescan the item that owns ``path``.

        Returns:
            The command id, or None when no item owns the path.

        Raises:
            LibraryRefreshError: If the manager cannot be reached or rejects the request.
        """
        item_id = self.find_id(path)
        if item_id is None:
            return None
        data = self._request("POST", "/api/v3/command", json=self.refresh_command(item_id))
        return data.get("id") if isinstance(data, dict) else None
