"""Trust Warden: the filesystem trust boundary of a local AI assistant.

Agents never touch the working tree directly. Everything goes through:
- A path guard that keeps every read and write inside the sandbox root
- Content-addressed write proposals that can be reviewed before they land
- An apply step that refuses to clobber files that drifted since proposal
- An integrity manifest pinned to a hash-verified reference tarball, used to
  detect and repair tampered or deleted source files
"""

from __future__ import annotations

__all__ = []
