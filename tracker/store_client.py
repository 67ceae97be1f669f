"""Content store client: a thin async wrapper over a GitHub-style REST API.

Covers two groups of endpoints:

* contents API: read a file, list a directory, create/update one file
* git data API: blobs, trees, commits and branch refs, used to build a
  single commit that touches several files

Transient failures (connection errors, HTTP 429 and 5xx) are retried once
after a short delay. Anything else surfaces as a ``StoreError``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
FILE_MODE = "100644"


class StoreError(Exception):
    """A content store request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreNotFoundError(StoreError):
    """The requested path or object does not exist (HTTP 404)."""


class StoreConflictError(StoreError):
    """The store rejected a write as conflicting, e.g. a non fast-forward ref update."""


@dataclass(frozen=True)
class DirectoryEntry:
    """One item of a directory listing."""

    name: str
    path: str
    type: str  # "file" | "dir"
    sha: str


@dataclass(frozen=True)
class FileContent:
    """A file read through the contents API."""

    path: str
    sha: str
    content: bytes


@dataclass(frozen=True)
class TreeEntry:
    """A blob placed at ``path`` in a new tree."""

    path: str
    sha: str
    mode: str = FILE_MODE
    type: str = "blob"


class ContentStoreClient:
    """Async client bound to one repository and branch.

    Call ``start()`` before use and ``stop()`` when done, or use the client
    as an async context manager.
    """

    def __init__(
        self,
        base_url: str,
        owner: str,
        repo: str,
        branch: str = "main",
        token: Optional[str] = None,
        timeout_s: float = 15.0,
        retry_delay_s: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root, e.g. "https://api.github.com".
            owner: Repository owner.
            repo: Repository name.
            branch: Branch all reads and writes target.
            token: Access token obtained by the external OAuth flow.
            timeout_s: Per-request timeout.
            retry_delay_s: Pause before the single retry of a transient error.
            transport: Optional httpx transport (tests route this to an
                in-process fake store).
        """
        self.base_url = base_url.rstrip("/")
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.token = token
        self.timeout = timeout_s
        self.retry_delay_s = retry_delay_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Counters
        self.requests_sent = 0
        self.retries = 0
        self.errors = 0

    @property
    def started(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info(
            "Content store client ready: %s/%s@%s via %s",
            self.owner,
            self.repo,
            self.branch,
            self.base_url,
        )

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ContentStoreClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ---------- plumbing ----------
    def _repo_url(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.repo}{suffix}"

    def _contents_url(self, path: str) -> str:
        return self._repo_url(f"/contents/{quote(path.strip('/'), safe='/')}")

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        """Send a request, retrying a transient failure once.

        Returns:
            The decoded JSON body (None for an empty body).

        Raises:
            StoreNotFoundError: On HTTP 404.
            StoreConflictError: On HTTP 409 or 422.
            StoreError: On any other failure.
        """
        if self._client is None:
            raise StoreError("Content store client is not started")

        for attempt in (1, 2):
            self.requests_sent += 1
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                if attempt == 1:
                    self.retries += 1
                    logger.warning("%s %s failed (%s), retrying once", method, url, exc)
                    await asyncio.sleep(self.retry_delay_s)
                    continue
                self.errors += 1
                raise StoreError(f"{method} {url} failed: {exc}") from exc

            if resp.status_code in TRANSIENT_STATUS and attempt == 1:
                self.retries += 1
                logger.warning(
                    "%s %s returned %d, retrying once", method, url, resp.status_code
                )
                await asyncio.sleep(self.retry_delay_s)
                continue
            break

        if resp.status_code >= 400:
            self.errors += 1
            message = f"{method} {url} returned {resp.status_code}: {_error_message(resp)}"
            if resp.status_code == 404:
                raise StoreNotFoundError(message, resp.status_code)
            if resp.status_code in (409, 422):
                raise StoreConflictError(message, resp.status_code)
            raise StoreError(message, resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            # e.g. an HTML page from a proxy or captive portal, or a truncated body
            self.errors += 1
            raise StoreError(
                f"{method} {url} returned a non-JSON body: {resp.text[:100]!r}",
                resp.status_code,
            ) from exc

    # ---------- contents API ----------
    async def get_content(self, path: str) -> Any:
        """Raw contents API response: a file object or a directory listing."""
        return await self._request(
            "GET", self._contents_url(path), params={"ref": self.branch}
        )

    async def list_directory(self, path: str) -> list[DirectoryEntry]:
        data = await self.get_content(path)
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise StoreError(f"Expected a directory listing at {path}")
        return [
            DirectoryEntry(
                name=_field(item, "name"),
                path=_field(item, "path"),
                type=item.get("type", "file"),
                sha=item.get("sha", ""),
            )
            for item in data
        ]

    async def read_file(self, path: str) -> FileContent:
        data = await self.get_content(path)
        if not isinstance(data, dict) or "content" not in data:
            raise StoreError(f"Expected a file at {path}")
        return FileContent(
            path=data.get("path", path),
            sha=_field(data, "sha"),
            content=_decode_base64(_field(data, "content"), path),
        )

    async def read_text(self, path: str) -> str:
        return (await self.read_file(path)).content.decode("utf-8")

    async def get_file_sha(self, path: str) -> Optional[str]:
        """Version token of an existing file, or None if it does not exist."""
        try:
            data = await self.get_content(path)
        except StoreNotFoundError:
            return None
        if isinstance(data, dict):
            return data.get("sha")
        return None

    async def create_or_update_file(
        self,
        path: str,
        content: bytes,
        message: str,
        sha: Optional[str] = None,
    ) -> str:
        """Write a single file in its own commit.

        Args:
            path: Repository path.
            content: Raw file bytes.
            message: Commit message.
            sha: Version token of the file being replaced (required by the
                store when the file already exists).

        Returns:
            The SHA of the commit created.
        """
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        data = await self._request("PUT", self._contents_url(path), json=body)
        return _field(data, "commit", "sha")

    # ---------- git data API ----------
    async def create_blob(self, content: bytes, encoding: str = "base64") -> str:
        """Create an immutable blob and return its SHA.

        Args:
            content: Raw bytes to store.
            encoding: "base64" for binary data, "utf-8" for text.
        """
        if encoding == "base64":
            payload = base64.b64encode(content).decode("ascii")
        elif encoding == "utf-8":
            payload = content.decode("utf-8")
        else:
            raise ValueError(f"Unsupported blob encoding: {encoding}")
        data = await self._request(
            "POST",
            self._repo_url("/git/blobs"),
            json={"content": payload, "encoding": encoding},
        )
        return _field(data, "sha")

    async def get_branch_head(self) -> str:
        """SHA of the commit the branch currently points at."""
        data = await self._request(
            "GET", self._repo_url(f"/git/ref/heads/{self.branch}")
        )
        return _field(data, "object", "sha")

    async def get_commit(self, sha: str) -> dict:
        return await self._request("GET", self._repo_url(f"/git/commits/{sha}"))

    async def get_commit_tree(self, sha: str) -> str:
        """SHA of the root tree of a commit."""
        return _field(await self.get_commit(sha), "tree", "sha")

    async def create_tree(self, base_tree: str, entries: list[TreeEntry]) -> str:
        """Create a tree layering ``entries`` over ``base_tree``."""
        data = await self._request(
            "POST",
            self._repo_url("/git/trees"),
            json={
                "base_tree": base_tree,
                "tree": [
                    {"path": e.path, "mode": e.mode, "type": e.type, "sha": e.sha}
                    for e in entries
                ],
            },
        )
        return _field(data, "sha")

    async def create_commit(self, message: str, tree: str, parent: str) -> str:
        data = await self._request(
            "POST",
            self._repo_url("/git/commits"),
            json={"message": message, "tree": tree, "parents": [parent]},
        )
        return _field(data, "sha")

    async def update_branch_ref(self, sha: str, force: bool = False) -> None:
        """Move the branch to ``sha``.

        Without ``force`` the store only accepts a fast-forward. If the branch
        moved since it was read, this raises ``StoreConflictError``.
        """
        await self._request(
            "PATCH",
            self._repo_url(f"/git/refs/heads/{self.branch}"),
            json={"sha": sha, "force": force},
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("message", body))[:200]
    return str(body)[:200]


def _field(data: Any, *keys: str) -> Any:
    """Walk ``keys`` into a decoded response body.

    Raises:
        StoreError: If the body does not have the expected shape.
    """
    try:
        for key in keys:
            data = data[key]
    except (KeyError, TypeError, IndexError) as exc:
        raise StoreError(f"Unexpected response shape: missing {'.'.join(keys)}") from exc
    return data


def _decode_base64(content: Any, path: str) -> bytes:
    try:
        return base64.b64decode(content)
    except (ValueError, TypeError) as exc:
        raise StoreError(f"Undecodable content at {path}") from exc
