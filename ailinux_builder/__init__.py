"""AILinux image builder (Python-first, checkpoint-driven).

Core design goals:
- Every mount, loop device and chroot session is tracked and released LIFO
- Failures are classified and retried per category, never left uncontrolled
- Bootloader installation falls back through four tiers
- The operator's host session is never disturbed
- Resumable phases, centralized logging
"""

__all__ = []
