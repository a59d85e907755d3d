# auth/models.py
"""
Authenticated identity model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AuthenticatedUser:
    """
    Identity taken from a verified access token.

    Attributes:
        id: User ID (the token's "sub" claim)
        email: User's email, if the token carries one
        name: Display name from user metadata, if present
    """
    id: str
    email: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}
