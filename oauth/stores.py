"""In-memory stores for the OAuth flow.

These stores are shared between the OAuth endpoints and the /mcp middleware.
Nothing here survives a restart: every client re-runs the OAuth flow after
the server process is replaced.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

AUTH_CODE_TTL = 600  # 10 minutes


@dataclass
class AuthorizationCode:
    """A one-time code issued on approved consent."""

    code: str
    code_challenge: str
    code_challenge_method: str
    client_id: str
    redirect_uri: str
    expires_at: float


def generate_token() -> str:
    """Opaque, unguessable string used for codes and tokens."""
    return secrets.token_urlsafe(32)


class TokenStore:
    """Set of currently valid access and refresh tokens.

    Membership is the only thing tracked: a token is valid if and only if
    it is in the set.
    """

    def __init__(self):
        self._tokens: set[str] = set()

    def __contains__(self, token: object) -> bool:
        return token in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def add(self, token: str) -> None:
        self._tokens.add(token)

    def issue_pair(self) -> tuple[str, str]:
        """Mint and store a fresh (access_token, refresh_token) pair."""
        access_token = generate_token()
        refresh_token = generate_token()
        self._tokens.add(access_token)
        self._tokens.add(refresh_token)
        return access_token, refresh_token

    def clear(self) -> None:
        self._tokens.clear()


class AuthorizationCodeStore:
    """Authorization codes keyed by code string, with expiry on lookup."""

    def __init__(self, ttl: float = AUTH_CODE_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._codes: dict[str, AuthorizationCode] = {}

    def __contains__(self, code: object) -> bool:
        return code in self._codes

    def __len__(self) -> int:
        return len(self._codes)

    def issue(
        self,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
    ) -> AuthorizationCode:
        """Mint a new code bound to the given client, redirect and challenge."""
        record = AuthorizationCode(
            code=generate_token(),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=self.clock() + self.ttl,
        )
        self._codes[record.code] = record
        return record

    def get(self, code: str) -> Optional[AuthorizationCode]:
        """Look up a code. Expired codes are purged and reported as missing."""
        record = self._codes.get(code)
        if record is None:
            return None
        if self.clock() > record.expires_at:
            del self._codes[code]
            return None
        return record

    def pop(self, code: str) -> Optional[AuthorizationCode]:
        return self._codes.pop(code, None)

    def sweep(self) -> int:
        """Drop every expired code. Returns the number removed."""
        now = self.clock()
        expired = [c for c, record in self._codes.items() if now > record.expires_at]
        for c in expired:
            del self._codes[c]
        return len(expired)

    def clear(self) -> None:
        self._codes.clear()


# Access and refresh tokens (valid while the process lives)
valid_tokens = TokenStore()

# Authorization codes (short-lived, used in code exchange)
authorization_codes = AuthorizationCodeStore()
