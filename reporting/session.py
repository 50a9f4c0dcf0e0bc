"""Identity provider consumed by report forwarding."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Protocol


class SessionProvider(Protocol):
    def get_current_user(self) -> Optional[str]: ...

    def get_auth_token(self) -> Optional[str]: ...


@dataclass
class StaticSession:
    """Session backed by configured values, with the token optionally read from the environment."""

    username: Optional[str] = None
    token: Optional[str] = None
    token_env: Optional[str] = None

    def get_current_user(self) -> Optional[str]:
        return self.username or None

    def get_auth_token(self) -> Optional[str]:
        if self.token:
            return self.token
        if self.token_env:
            return os.environ.get(self.token_env) or None
        return None
