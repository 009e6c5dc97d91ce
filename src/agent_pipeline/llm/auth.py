"""Stored authentication state and execution-mode resolution.

Checks whether an API key is configured and whether the Claude CLI is
installed (optionally logged in), then resolves which execution mode to use
for the configured preference: ``cli``, ``api_key`` or ``auto`` (CLI first,
then API key). Results are cached for a short TTL.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Optional

from .base import ExecutionMode

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk-ant-"
CLI_LOGIN_ERROR_PATTERNS = [
    "not authenticated",
    "please login",
    "run /login",
    "authentication required",
    "invalid session",
    "session expired",
]


@dataclass
class ApiKeyStatus:
    configured: bool = False
    valid: bool = False


@dataclass
class CliStatus:
    installed: bool = False
    authenticated: bool = False
    path: Optional[str] = None
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AuthStatus:
    """Snapshot of available credentials and the mode they resolve to."""
    configured_mode: str
    api_key: ApiKeyStatus = field(default_factory=ApiKeyStatus)
    cli: CliStatus = field(default_factory=CliStatus)
    mode: Optional[ExecutionMode] = None
    error: Optional[str] = None
    checked_at: float = field(default_factory=time.time)

    @property
    def authenticated(self) -> bool:
        return self.mode is not None


class AuthManager:
    """Detects usable credentials for both execution paths."""

    def __init__(
        self,
        configured_mode: str = "auto",
        api_key: Optional[str] = None,
        cli_executable: str = "claude",
        cache_ttl: float = 60.0,
        command_timeout: float = 5.0,
        verify_cli_login: bool = False,
    ):
        if configured_mode not in ("auto", "cli", "api_key"):
            raise ValueError(f"Unknown execution mode '{configured_mode}'")
        self.configured_mode = configured_mode
        self._api_key = api_key
        self.cli_executable = cli_executable
        self.cache_ttl = cache_ttl
        self.command_timeout = command_timeout
        self.verify_cli_login = verify_cli_login
        self._cached: Optional[AuthStatus] = None
        self._cached_at = 0.0

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or os.environ.get("ANTHROPIC_API_KEY")

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0
        logger.debug("Auth status cache cleared")

    def check_api_key(self) -> ApiKeyStatus:
        key = self.api_key
        if not key:
            return ApiKeyStatus(configured=False)
        return ApiKeyStatus(configured=True, valid=key.startswith(API_KEY_PREFIX))

    async def _run_command(self, *args: str, stdin_text: Optional[str] = None):
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin_text.encode() if stdin_text else None),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def detect_cli(self) -> CliStatus:
        path = shutil.which(self.cli_executable)
        if not path:
            logger.debug(f"{self.cli_executable} not found in PATH")
            return CliStatus(installed=False, error=f"{self.cli_executable} not found in PATH")

        try:
            _, stdout, _ = await self._run_command(path, "--version")
            version = stdout.strip() or "unknown"
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Found {self.cli_executable} at {path} but could not get version: {e}")
            version = "unknown"

        status = CliStatus(installed=True, authenticated=True, path=path, version=version)
        if self.verify_cli_login:
            status.authenticated, status.error = await self._check_cli_login(path)
        logger.debug(f"Detected CLI at {path}, version: {version}")
        return status

    async def _check_cli_login(self, path: str):
        try:
            returncode, _, stderr = await self._run_command(
                path, "--print", stdin_text='Reply with just "ok"\n'
            )
        except (OSError, asyncio.TimeoutError) as e:
            return False, f"Authentication check failed: {e}"
        lowered = stderr.lower()
        if any(p in lowered for p in CLI_LOGIN_ERROR_PATTERNS):
            return False, 'Not authenticated. Run "claude login" to authenticate.'
        if returncode != 0:
            return False, stderr.strip() or f"CLI exited with code {returncode}"
        return True, None

    async def get_status(self, force_refresh: bool = False) -> AuthStatus:
        """Return the cached auth status, refreshing it when stale."""
        if (
            not force_refresh
            and self._cached is not None
            and time.time() - self._cached_at < self.cache_ttl
        ):
            return self._cached

        api_key_status = self.check_api_key()
        cli_status = await self.detect_cli()
        status = AuthStatus(
            configured_mode=self.configured_mode,
            api_key=api_key_status,
            cli=cli_status,
        )
        cli_ok = cli_status.installed and cli_status.authenticated
        key_ok = api_key_status.configured and api_key_status.valid

        if self.configured_mode == "cli":
            if cli_ok:
                status.mode = ExecutionMode.CLI
            elif not cli_status.installed:
                status.error = "Claude CLI not installed"
            else:
                status.error = cli_status.error or "CLI not authenticated"
        elif self.configured_mode == "api_key":
            if key_ok:
                status.mode = ExecutionMode.API_KEY
            else:
                status.error = "API key not configured or invalid"
        else:
            if cli_ok:
                status.mode = ExecutionMode.CLI
            elif key_ok:
                status.mode = ExecutionMode.API_KEY
            else:
                status.error = "No authentication available. Set an API key or run 'claude login'."

        if status.mode is not None:
            logger.info(f"Auth resolved to {status.mode.value} (configured: {self.configured_mode})")
        else:
            logger.warning(f"No usable authentication: {status.error}")

        self._cached = status
        self._cached_at = time.time()
        return status
