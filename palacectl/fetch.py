"""
Corridor Fetch — linked-workspace artifacts with TTL cache and stale fallback

A linked workspace publishes a shareable artifact:

    {"schema": 1, "workspace": "<name>", "exported_at": "<iso>",
     "learnings": [<Learning dict>, ...]}

Local links read ``<path>/.palace/shareable.json`` when present, otherwise
build the artifact from ``<path>/.palace/memory.db``.  Remote links issue a
single GET (httpx, bounded timeout, per-link auth).

Cache layout, one directory per link name:

    <base>/corridors/cache/<name>/learnings.json   payload, verbatim
    <base>/corridors/cache/<name>/.meta.json       fetched_at, etag, url, ttl_seconds

A fresh cache of the same url is reused.  A failed fetch serves the stale
cache with a warning; without a cache the failure raises
CorridorUnavailableError.  The cache is only rewritten after a fully parsed
success, through a temporary file and os.replace().

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from palacectl.config import CorridorConfig, LinkAuthConfig
from palacectl.errors import CorridorUnavailableError, PalaceError
from palacectl.oracle import DEFAULT_MARKER
from palacectl.store import MemoryStore
from palacectl.types import Learning, _now_iso, _parse_iso

logger = logging.getLogger(__name__)

SHAREABLE_SCHEMA = 1
SHAREABLE_FILE = "shareable.json"
CACHE_PAYLOAD = "learnings.json"
CACHE_META = ".meta.json"

_ENV_REF = re.compile(r"^\$(?:\{(\w+)\}|(\w+))$")


class FetchError(PalaceError):
    """A single fetch attempt failed (absorbed by the cache fallback)."""

    pass


# ---------------------------------------------------------------------------
# Artifact
# ---------------------------------------------------------------------------

def build_artifact(workspace: str, learnings: List[Learning]) -> Dict[str, Any]:
    """Shareable artifact document for a list of learnings."""
    return {
        "schema": SHAREABLE_SCHEMA,
        "workspace": workspace,
        "exported_at": _now_iso(),
        "learnings": [lrn.to_dict() for lrn in learnings],
    }


def parse_artifact(raw: bytes) -> Tuple[str, List[Learning]]:
    """
    Parse an artifact payload into (workspace name, learnings).

    Raises:
        FetchError: not JSON, wrong schema, or malformed learnings.
    """
    try:
        doc = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise FetchError(f"unparsable body: {exc}") from exc
    if not isinstance(doc, dict) or not isinstance(doc.get("learnings"), list):
        raise FetchError("unparsable body: missing 'learnings' list")
    schema = doc.get("schema", SHAREABLE_SCHEMA)
    if schema != SHAREABLE_SCHEMA:
        raise FetchError(f"unsupported artifact schema: {schema!r}")
    learnings: List[Learning] = []
    for item in doc["learnings"]:
        if not isinstance(item, dict):
            raise FetchError("unparsable body: malformed learning entry")
        content = item.get("content")
        if not isinstance(content, str) or not content:
            raise FetchError("unparsable body: learning content must be a non-empty string")
        if not isinstance(item.get("id", ""), str):
            raise FetchError("unparsable body: learning id must be a string")
        tags = item.get("tags") or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise FetchError("unparsable body: learning tags must be a list of strings")
        item = dict(item, tags=tags)
        try:
            learning = Learning.from_dict(item)
            learning.confidence = min(1.0, max(0.0, float(learning.confidence)))
        except (TypeError, ValueError) as exc:
            raise FetchError(f"unparsable body: {exc}") from exc
        learnings.append(learning)
    return str(doc.get("workspace", "")), learnings


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def resolve_secret(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` from the environment; other values pass through."""
    m = _ENV_REF.match(value or "")
    if not m:
        return value or ""
    return os.environ.get(m.group(1) or m.group(2), "")


def auth_for(cfg: LinkAuthConfig) -> Tuple[Dict[str, str], Optional[httpx.Auth]]:
    """Headers and httpx auth object for one link. Empty secrets add nothing."""
    headers: Dict[str, str] = {}
    auth: Optional[httpx.Auth] = None
    if cfg.type == "bearer":
        token = resolve_secret(cfg.token)
        if token:
            headers["Authorization"] = f"Bearer {token}"
    elif cfg.type == "basic":
        user = resolve_secret(cfg.user)
        if user:
            auth = httpx.BasicAuth(user, resolve_secret(cfg.password))
    elif cfg.type == "header":
        value = resolve_secret(cfg.value)
        if cfg.header and value:
            headers[cfg.header] = value
    return headers, auth


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class CacheMeta:
    """Sidecar metadata of a cached payload."""

    fetched_at: str
    url: str = ""
    etag: str = ""
    ttl_seconds: float = 0.0

    def age(self, now: datetime) -> timedelta:
        return now - _parse_iso(self.fetched_at)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FetchResult:
    """Learnings read from one linked workspace."""

    name: str
    learnings: List[Learning] = field(default_factory=list)
    from_cache: bool = False
    fetched_at: Optional[str] = None
    warning: Optional[str] = None
    url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "learnings": [lrn.to_dict() for lrn in self.learnings],
            "from_cache": self.from_cache,
            "fetched_at": self.fetched_at,
            "warning": self.warning,
            "url": self.url,
        }


def _atomic_write(path: str, data: bytes) -> None:
    directory = os.path.dirname(path)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class CorridorFetcher:
    """Fetch and cache shareable artifacts of linked workspaces."""

    def __init__(
        self,
        cache_root: str,
        config: Optional[CorridorConfig] = None,
        client: Optional[httpx.Client] = None,
        marker: str = DEFAULT_MARKER,
        db_name: str = "memory.db",
    ):
        """
        Args:
            cache_root: Directory holding one cache subdirectory per link.
            config: Corridor config (TTL, timeout, per-link auth).
            client: Optional httpx.Client (owned by the caller).
            marker: Workspace marker directory name.
            db_name: Workspace store file name inside the marker directory.
        """
        self._cache_root = cache_root
        self._config = config or CorridorConfig()
        self._client = client
        self._marker = marker
        self._db_name = db_name

    def _ttl(self, name: str) -> timedelta:
        link = self._config.link_config(name)
        hours = link.ttl_hours if link.ttl_hours is not None \
            else self._config.cache_ttl_hours
        return timedelta(hours=hours)

    def _cache_dir(self, name: str) -> str:
        return os.path.join(self._cache_root, name)

    # -- Cache -------------------------------------------------------------

    def read_cache(self, name: str) -> Optional[Tuple[CacheMeta, bytes]]:
        """Return (meta, payload) for a link, or None if absent or corrupt."""
        directory = self._cache_dir(name)
        meta_path = os.path.join(directory, CACHE_META)
        payload_path = os.path.join(directory, CACHE_PAYLOAD)
        if not (os.path.isfile(meta_path) and os.path.isfile(payload_path)):
            return None
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                meta = CacheMeta(**json.load(f))
            _parse_iso(meta.fetched_at)
            with open(payload_path, "rb") as f:
                payload = f.read()
        except (OSError, ValueError, TypeError) as exc:
            logger.warning(f"ignoring corrupt corridor cache for {name}: {exc}")
            return None
        return meta, payload

    def write_cache(self, name: str, payload: bytes, meta: CacheMeta) -> None:
        """Atomically replace the cached payload and its metadata."""
        directory = self._cache_dir(name)
        os.makedirs(directory, exist_ok=True)
        _atomic_write(os.path.join(directory, CACHE_PAYLOAD), payload)
        _atomic_write(
            os.path.join(directory, CACHE_META),
            json.dumps(meta.to_dict(), indent=2).encode("utf-8"),
        )

    def clear_cache(self, name: str) -> None:
        """Remove the cache of a link (unlink)."""
        directory = self._cache_dir(name)
        for fname in (CACHE_PAYLOAD, CACHE_META):
            path = os.path.join(directory, fname)
            if os.path.exists(path):
                os.unlink(path)
        if os.path.isdir(directory) and not os.listdir(directory):
            os.rmdir(directory)

    # -- Sources -----------------------------------------------------------

    def _get_remote(self, url: str, name: str) -> Tuple[bytes, str]:
        headers, auth = auth_for(self._config.link_config(name).auth)
        timeout = self._config.fetch_timeout_seconds
        if self._client is not None:
            response = self._client.get(url, headers=headers, auth=auth,
                                        timeout=timeout)
        else:
            with httpx.Client(timeout=timeout, follow_redirects=True) as client:
                response = client.get(url, headers=headers, auth=auth)
        response.raise_for_status()
        return response.content, response.headers.get("etag", "")

    def _read_local(self, path: str) -> bytes:
        root = os.path.expanduser(path)
        marker_dir = os.path.join(root, self._marker)
        shareable = os.path.join(marker_dir, SHAREABLE_FILE)
        if os.path.isfile(shareable):
            with open(shareable, "rb") as f:
                return f.read()
        db_path = os.path.join(marker_dir, self._db_name)
        if not os.path.isfile(db_path):
            raise FetchError(f"no shareable artifact under {marker_dir}")
        store = MemoryStore(db_path, read_only=True)
        try:
            doc = build_artifact(os.path.basename(os.path.normpath(root)),
                                 store.export_learnings())
        finally:
            store.close()
        return json.dumps(doc).encode("utf-8")

    # -- Fetch -------------------------------------------------------------

    def fetch(
        self,
        name: str,
        path: str,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> FetchResult:
        """
        Learnings of one linked workspace, from cache or source.

        Raises:
            CorridorUnavailableError: fetch failed and no cache exists.
        """
        now = now or datetime.now(timezone.utc)
        url = self._config.link_config(name).url or path
        remote = url.startswith(("http://", "https://"))
        ttl = self._ttl(name)
        cached = self.read_cache(name)
        if cached is not None and cached[0].url != url:
            # the link now points elsewhere; the old payload is not this source
            logger.info(f"corridor {name}: cache was for {cached[0].url}, discarding")
            cached = None

        if cached is not None and not force_refresh:
            meta, payload = cached
            if meta.age(now) < ttl:
                try:
                    _, learnings = parse_artifact(payload)
                except FetchError as exc:
                    logger.warning(f"cached corridor payload for {name} unusable: {exc}")
                    cached = None
                else:
                    logger.debug(f"corridor {name}: fresh cache ({meta.fetched_at})")
                    return FetchResult(name=name, learnings=learnings,
                                       from_cache=True,
                                       fetched_at=meta.fetched_at, url=meta.url)

        try:
            if remote:
                payload, etag = self._get_remote(url, name)
            else:
                payload, etag = self._read_local(url), ""
            _, learnings = parse_artifact(payload)
        except (httpx.HTTPError, httpx.InvalidURL, FetchError, OSError,
                sqlite3.Error) as exc:
            reason = _describe(exc)
            return self._fallback(name, url, reason, cached)

        fetched_at = now.isoformat()
        try:
            self.write_cache(name, payload, CacheMeta(
                fetched_at=fetched_at, url=url, etag=etag,
                ttl_seconds=ttl.total_seconds(),
            ))
        except OSError as exc:
            logger.warning(f"corridor cache write failed for {name}: {exc}")
        return FetchResult(name=name, learnings=learnings, from_cache=False,
                           fetched_at=fetched_at, url=url)

    def _fallback(
        self,
        name: str,
        url: str,
        reason: str,
        cached: Optional[Tuple[CacheMeta, bytes]],
    ) -> FetchResult:
        if cached is not None:
            meta, payload = cached
            try:
                _, learnings = parse_artifact(payload)
            except FetchError as exc:
                logger.warning(f"cached corridor payload for {name} unusable: {exc}")
            else:
                warning = (f"{name}: {reason} (using cache from "
                           f"{meta.fetched_at})")
                logger.warning(f"corridor fetch failed, {warning}")
                return FetchResult(name=name, learnings=learnings,
                                   from_cache=True, fetched_at=meta.fetched_at,
                                   warning=warning, url=meta.url or url)
        logger.warning(f"corridor {name} unavailable: {reason}")
        raise CorridorUnavailableError(name, reason, url)


def _describe(exc: Exception) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, FetchError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
