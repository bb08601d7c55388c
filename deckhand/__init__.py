"""
DECKHAND — agentic command execution for a single local workspace.

A model proposes shell commands and file writes; DECKHAND extracts them,
keeps them inside the workspace, guards version-control history, verifies
every write and feeds the results back until the model is done.
"""

from deckhand.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
