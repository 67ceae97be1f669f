#!/usr/bin/env python3
"""In-memory content store for development and tests.

Emulates the subset of the GitHub REST API the tracker uses: the contents
API and the git data API (blobs, trees, commits, refs). Files live in flat
trees keyed by path, and every write produces a real commit chain, so tests
can check exactly what one publish changed.

Usage:
    python -m tracker.mock_store                 # demo roster on :8001
    python -m tracker.mock_store --port 9000
"""

from __future__ import annotations

import argparse
import base64
import hashlib
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

MOCK_RUNNERS = [
    {"id": "guest", "name": "Guest", "anonymous": True},
    {"id": "alice-smith", "name": "Alice Smith", "anonymous": False, "joinedDate": "2024-03-03"},
    {"id": "bob-jones", "name": "Bob Jones", "anonymous": False, "joinedDate": "2024-03-10"},
    {"id": "carol-white", "name": "Carol White", "anonymous": True, "joinedDate": "2024-05-19"},
    {"id": "dan-brown", "name": "Dan Brown", "anonymous": False, "joinedDate": "2025-01-05"},
]

MOCK_RESULTS_PAGE = """---
title: Sunday Run
date: 2026-10-11T09:00:00.000Z
participants:
  - runner: bob-jones
    time: "24:10"
  - runner: alice-smith
    time: "27:45"
  - runner: guest
    time: "30:00"
---
Lovely morning.
"""


def _sha(kind: str, data: bytes) -> str:
    return hashlib.sha1(f"{kind} {len(data)}\0".encode("utf-8") + data).hexdigest()


@dataclass
class Commit:
    sha: str
    message: str
    tree: str
    parents: list[str]


@dataclass
class FakeContentStore:
    """Object database plus branch refs for a single repository."""

    branch: str = "main"
    blobs: dict[str, bytes] = field(default_factory=dict)
    trees: dict[str, dict[str, str]] = field(default_factory=dict)  # sha → {path: blob sha}
    commits: dict[str, Commit] = field(default_factory=dict)
    refs: dict[str, str] = field(default_factory=dict)
    requests: list[tuple[str, str]] = field(default_factory=list)
    _failures: dict[str, list[int]] = field(default_factory=dict)
    _counter: Any = field(default_factory=lambda: itertools.count(1))

    def __post_init__(self) -> None:
        empty = self.put_tree({})
        self.refs[self.branch] = self.put_commit("initial commit", empty, [])

    # ---------- object database ----------
    def put_blob(self, data: bytes) -> str:
        sha = _sha("blob", data)
        self.blobs[sha] = data
        return sha

    def put_tree(self, entries: dict[str, str]) -> str:
        sha = _sha("tree", json.dumps(sorted(entries.items())).encode("utf-8"))
        self.trees[sha] = dict(entries)
        return sha

    def put_commit(self, message: str, tree: str, parents: list[str]) -> str:
        payload = json.dumps([message, tree, parents, next(self._counter)]).encode("utf-8")
        sha = _sha("commit", payload)
        self.commits[sha] = Commit(sha=sha, message=message, tree=tree, parents=list(parents))
        return sha

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        stack = [descendant]
        seen: set[str] = set()
        while stack:
            sha = stack.pop()
            if sha == ancestor:
                return True
            if sha in seen or sha not in self.commits:
                continue
            seen.add(sha)
            stack.extend(self.commits[sha].parents)
        return False

    # ---------- convenience ----------
    @property
    def head(self) -> str:
        return self.refs[self.branch]

    def files(self, commit_sha: Optional[str] = None) -> dict[str, str]:
        """Path → blob sha at a commit (default: branch head)."""
        commit = self.commits[commit_sha or self.head]
        return dict(self.trees[commit.tree])

    def read(self, path: str, commit_sha: Optional[str] = None) -> bytes:
        return self.blobs[self.files(commit_sha)[path]]

    def read_json(self, path: str) -> Any:
        return json.loads(self.read(path).decode("utf-8"))

    def changed_paths(self, commit_sha: str) -> set[str]:
        """Paths added or modified by a commit relative to its first parent."""
        commit = self.commits[commit_sha]
        after = self.trees[commit.tree]
        before = self.files(commit.parents[0]) if commit.parents else {}
        return {path for path, sha in after.items() if before.get(path) != sha}

    def write_files(self, files: dict[str, bytes], message: str = "seed") -> str:
        """Commit files directly onto the branch (test and demo setup)."""
        entries = self.files()
        for path, data in files.items():
            entries[path] = self.put_blob(data)
        sha = self.put_commit(message, self.put_tree(entries), [self.head])
        self.refs[self.branch] = sha
        return sha

    def fail_next(self, operation: str, status: int = 500, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` return ``status``.

        Operations: get_content, put_content, create_blob, get_commit,
        create_tree, create_commit, get_ref, update_ref.
        """
        self._failures.setdefault(operation, []).extend([status] * times)

    def _injected_failure(self, operation: str) -> Optional[JSONResponse]:
        pending = self._failures.get(operation)
        if not pending:
            return None
        status = pending.pop(0)
        return _error(status, f"Injected failure for {operation}")

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.requests if op == operation)


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"message": message})


def _basename(path: str) -> str:
    return path.rsplit("/", 1)[-1]


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

def create_app(store: FakeContentStore) -> FastAPI:
    """FastAPI app exposing ``store`` through GitHub-shaped endpoints."""
    app = FastAPI(title="Mock Content Store")

    def _record(operation: str, detail: str) -> Optional[JSONResponse]:
        store.requests.append((operation, detail))
        return store._injected_failure(operation)

    # --- contents API ---

    @app.get("/repos/{owner}/{repo}/contents/{path:path}")
    async def get_content(owner: str, repo: str, path: str, ref: Optional[str] = None):
        if (failure := _record("get_content", path)) is not None:
            return failure
        branch = ref or store.branch
        if branch not in store.refs:
            return _error(404, "No commit found for the ref")
        files = store.files(store.refs[branch])
        path = path.strip("/")
        if path in files:
            sha = files[path]
            return {
                "type": "file",
                "name": _basename(path),
                "path": path,
                "sha": sha,
                "encoding": "base64",
                "content": base64.b64encode(store.blobs[sha]).decode("ascii"),
            }
        prefix = path + "/"
        listing: dict[str, dict] = {}
        for file_path, sha in files.items():
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            name = rest.split("/", 1)[0]
            if "/" in rest:
                listing.setdefault(name, {"name": name, "path": prefix + name, "type": "dir", "sha": ""})
            else:
                listing[name] = {"name": name, "path": file_path, "type": "file", "sha": sha}
        if not listing:
            return _error(404, "Not Found")
        return sorted(listing.values(), key=lambda item: item["name"])

    @app.put("/repos/{owner}/{repo}/contents/{path:path}")
    async def put_content(owner: str, repo: str, path: str, payload: dict):
        if (failure := _record("put_content", path)) is not None:
            return failure
        branch = payload.get("branch") or store.branch
        path = path.strip("/")
        files = store.files(store.refs[branch])
        existing = files.get(path)
        given = payload.get("sha")
        if existing and not given:
            return _error(422, '"sha" wasn\'t supplied.')
        if existing and given != existing:
            return _error(409, f"{path} does not match {given}")
        blob = store.put_blob(base64.b64decode(payload["content"]))
        files[path] = blob
        commit = store.put_commit(payload.get("message", ""), store.put_tree(files), [store.refs[branch]])
        store.refs[branch] = commit
        return JSONResponse(
            status_code=200 if existing else 201,
            content={
                "content": {"name": _basename(path), "path": path, "sha": blob},
                "commit": {"sha": commit},
            },
        )

    # --- git data API ---

    @app.post("/repos/{owner}/{repo}/git/blobs", status_code=201)
    async def create_blob(owner: str, repo: str, payload: dict):
        if (failure := _record("create_blob", "")) is not None:
            return failure
        encoding = payload.get("encoding", "utf-8")
        if encoding == "base64":
            data = base64.b64decode(payload["content"])
        else:
            data = payload["content"].encode("utf-8")
        return {"sha": store.put_blob(data)}

    @app.get("/repos/{owner}/{repo}/git/commits/{sha}")
    async def get_commit(owner: str, repo: str, sha: str):
        if (failure := _record("get_commit", sha)) is not None:
            return failure
        commit = store.commits.get(sha)
        if commit is None:
            return _error(404, "Not Found")
        return {
            "sha": commit.sha,
            "message": commit.message,
            "tree": {"sha": commit.tree},
            "parents": [{"sha": p} for p in commit.parents],
        }

    @app.post("/repos/{owner}/{repo}/git/trees", status_code=201)
    async def create_tree(owner: str, repo: str, payload: dict):
        if (failure := _record("create_tree", "")) is not None:
            return failure
        base = payload.get("base_tree")
        if base is not None and base not in store.trees:
            return _error(422, "Invalid base_tree")
        entries = dict(store.trees.get(base, {}))
        for item in payload.get("tree", []):
            if item.get("sha") not in store.blobs:
                return _error(422, f"Invalid blob for {item.get('path')}")
            entries[item["path"].strip("/")] = item["sha"]
        return {"sha": store.put_tree(entries)}

    @app.post("/repos/{owner}/{repo}/git/commits", status_code=201)
    async def create_commit(owner: str, repo: str, payload: dict):
        if (failure := _record("create_commit", "")) is not None:
            return failure
        tree = payload.get("tree")
        parents = payload.get("parents", [])
        if tree not in store.trees or any(p not in store.commits for p in parents):
            return _error(422, "Invalid tree or parent")
        return {"sha": store.put_commit(payload.get("message", ""), tree, parents)}

    @app.get("/repos/{owner}/{repo}/git/ref/heads/{branch}")
    async def get_ref(owner: str, repo: str, branch: str):
        if (failure := _record("get_ref", branch)) is not None:
            return failure
        if branch not in store.refs:
            return _error(404, "Not Found")
        return {"ref": f"refs/heads/{branch}", "object": {"sha": store.refs[branch], "type": "commit"}}

    @app.patch("/repos/{owner}/{repo}/git/refs/heads/{branch}")
    async def update_ref(owner: str, repo: str, branch: str, payload: dict):
        if (failure := _record("update_ref", branch)) is not None:
            return failure
        sha = payload.get("sha")
        if branch not in store.refs:
            return _error(422, "Reference does not exist")
        if sha not in store.commits:
            return _error(422, "Object does not exist")
        if not payload.get("force") and not store.is_ancestor(store.refs[branch], sha):
            return _error(422, "Update is not a fast forward")
        store.refs[branch] = sha
        return {"ref": f"refs/heads/{branch}", "object": {"sha": sha, "type": "commit"}}

    return app


def demo_store() -> FakeContentStore:
    """A store pre-filled with a small roster and one results page."""
    store = FakeContentStore()
    files = {
        f"content/runners/{r['id']}.json": json.dumps(r, indent=2).encode("utf-8")
        for r in MOCK_RUNNERS
    }
    files["content/results/2026-10-11.md"] = MOCK_RESULTS_PAGE.encode("utf-8")
    store.write_files(files, "seed demo content")
    return store


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Mock content store for the run tracker")
    parser.add_argument("--host", type=str, default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8001)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
    app = create_app(demo_store())
    logger.info("Serving mock content store on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
