"""devbox-provisioner: declarative, idempotent workstation setup.

Core design goals:
- Declarative plans (packages, links, files, shell-profile blocks, bootstrap commands)
- Read-only probing before any change
- Apply only deltas, in plan order
- One failing item never blocks the rest
- Centralized logging
"""

__all__ = []
