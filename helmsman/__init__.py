"""
HELMSMAN — governance core for long-running coding agents.

Anchors survive compaction, the task graph keeps one active chain,
the delegation ledger bounds handoffs, and the tool gate keeps
writes behind an active task.
"""

from helmsman.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
