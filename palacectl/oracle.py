"""
Filesystem Oracles — file stat and workspace-marker checks

The link graph only needs (exists, mtime, error) for a path; the corridor
only needs to know whether a directory carries the workspace marker.  Both
are small protocols so tests can substitute deterministic fakes.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Protocol

DEFAULT_MARKER = ".palace"


@dataclass(frozen=True)
class FileStat:
    """Result of a stat call. ``error`` is set when the oracle itself failed."""

    exists: bool
    mtime: Optional[float] = None
    error: Optional[str] = None


class FileOracle(Protocol):
    def stat(self, path: str) -> FileStat: ...


class MarkerCheck(Protocol):
    def exists(self, path: str) -> bool: ...


class OsFileOracle:
    """File oracle backed by os.stat()."""

    def stat(self, path: str) -> FileStat:
        """Stat a path; missing files are a normal answer, not an error."""
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return FileStat(exists=False)
        except NotADirectoryError:
            return FileStat(exists=False)
        except OSError as exc:
            return FileStat(exists=False, error=f"{type(exc).__name__}: {exc}")
        return FileStat(exists=True, mtime=st.st_mtime)


class OsMarkerCheck:
    """Marker check backed by os.path.exists()."""

    def exists(self, path: str) -> bool:
        return os.path.exists(path)


def has_workspace_marker(
    root: str,
    marker: str = DEFAULT_MARKER,
    check: Optional[MarkerCheck] = None,
) -> bool:
    """Return True if ``root/marker`` exists."""
    check = check or OsMarkerCheck()
    return check.exists(os.path.join(os.path.expanduser(root), marker))
