"""
palacectl — governed knowledge memory for codebases.

Ideas, decisions and learnings in one SQLite store per workspace, gated by a
propose/approve workflow, linked to each other and to code, aged by a
confidence lifecycle, and shared across workspaces through the corridor.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.1.0"

from palacectl.types import (
    Actor,
    AuditLogEntry,
    Decision,
    Idea,
    Learning,
    Link,
    LinkedWorkspace,
    PersonalLearning,
    Proposal,
)
from palacectl.classify import Classification, classify, extract_tags
from palacectl.config import PalaceConfig, load_config
from palacectl.store import MemoryStore, SCHEMA_VERSION
from palacectl.governance import Governance
from palacectl.links import LinkGraph, infer_kind
from palacectl.workspace import Workspace, open_workspace
from palacectl.corridor import Corridor, open_corridor

__all__ = [
    "__version__",
    "Actor",
    "AuditLogEntry",
    "Decision",
    "Idea",
    "Learning",
    "Link",
    "LinkedWorkspace",
    "PersonalLearning",
    "Proposal",
    "Classification",
    "classify",
    "extract_tags",
    "PalaceConfig",
    "load_config",
    "MemoryStore",
    "SCHEMA_VERSION",
    "Governance",
    "LinkGraph",
    "infer_kind",
    "Workspace",
    "open_workspace",
    "Corridor",
    "open_corridor",
]
