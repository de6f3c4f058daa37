from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated.

    ``detail["field"]`` names the identity attribute that collided
    (``email``, ``phone_number`` or ``driver_license_number``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IdentityNotFound(LookupError):
    """Raised by ``update`` when the identity id no longer exists."""

    def __init__(self, identity_id: str):
        super().__init__(f"identity {identity_id} not found")
        self.identity_id = identity_id


__all__ = ["ConstraintViolation", "IdentityNotFound"]
