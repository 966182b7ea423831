"""
Credential detection for the Claude Code CLI.

Looks for a usable login in the places an interactive ``claude`` login,
the shell profile, or a 1Password service account leave one behind.
"""

import json
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .config import Settings


SECRET_RESOLVE_TIMEOUT = 10


class CredentialState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_AUTH = "token"
    OAUTH_AUTH = "oauth"

    @property
    def authenticated(self) -> bool:
        return self is not CredentialState.UNAUTHENTICATED


def _read_json(path: Path) -> Optional[Any]:
    try:
        with open(path) as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError, UnicodeDecodeError):
        return None


class CredentialProbe:
    """Derives the current CredentialState. Nothing is cached between calls."""

    def __init__(self, settings: Settings):
        self.settings = settings
        # In-memory only; never written anywhere
        self._resolved_token: Optional[str] = None

    def probe(self) -> CredentialState:
        """Return the first credential source found, checked in order:

        1. ANTHROPIC_AUTH_TOKEN or the stashed token file
        2. a 1Password reference resolved with ``op read``
        3. ``~/.claude/.credentials.json`` with a ``claudeAiOauth`` entry
        4. ``~/.claude.json`` with a non-empty ``oauthAccount``
        """
        try:
            if self._direct_token():
                return CredentialState.TOKEN_AUTH
            if self._resolve_secret_ref():
                return CredentialState.TOKEN_AUTH
            if self._has_oauth_credentials():
                return CredentialState.OAUTH_AUTH
            if self._has_oauth_account():
                return CredentialState.OAUTH_AUTH
        except OSError:
            pass
        return CredentialState.UNAUTHENTICATED

    def bearer_token_available(self) -> bool:
        """Whether a bearer token exists for ``${ANTHROPIC_AUTH_TOKEN}`` headers."""
        try:
            return bool(self._direct_token() or self._resolve_secret_ref())
        except OSError:
            return False

    # =========================================================================
    # Sources
    # =========================================================================

    def _direct_token(self) -> Optional[str]:
        if self.settings.auth_token:
            return self.settings.auth_token
        token_file = self.settings.token_file
        if token_file.is_file():
            try:
                token = token_file.read_text().strip()
            except (OSError, UnicodeDecodeError):
                return None
            if token:
                return token
        return None

    def _resolve_secret_ref(self) -> Optional[str]:
        """Resolve OP_ANTHROPIC_AUTH_TOKEN_REF. Any failure means 'not yet'."""
        if self._resolved_token:
            return self._resolved_token
        ref = self.settings.secret_ref
        if not ref or not self.settings.secret_resolver_token:
            return None
        if not shutil.which("op"):
            return None

        try:
            result = subprocess.run(
                ["op", "read", ref],
                capture_output=True,
                text=True,
                timeout=SECRET_RESOLVE_TIMEOUT,
            )
        except (subprocess.TimeoutExpired, OSError):
            return None

        token = result.stdout.strip() if result.returncode == 0 else ""
        if not token:
            return None
        self._resolved_token = token
        return token

    def _has_oauth_credentials(self) -> bool:
        data = _read_json(self.settings.credentials_file)
        return isinstance(data, dict) and "claudeAiOauth" in data

    def _has_oauth_account(self) -> bool:
        data = _read_json(self.settings.user_config_file)
        if not isinstance(data, dict):
            return False
        # A logged-out CLI leaves "oauthAccount": null behind
        account = data.get("oauthAccount")
        return account not in (None, "", {}, [])
