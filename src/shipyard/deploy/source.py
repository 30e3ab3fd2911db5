"""Source checkouts.

Each (project, branch) has its own working copy under the deploy base
path. The first deployment clones it; later deployments fetch, check out
the requested branch and hard-reset it to ``origin/<branch>`` so local
state can never diverge from what was pushed.

The checkout is also the image build context, so credentials never touch
``.git/config``: ``origin`` always holds the plain URL and an access token
travels only on the command line of ``clone`` and ``fetch``, as an
``http.extraHeader`` (``Authorization: Basic base64(oauth2:<token>)``).
Both the token and the header value are passed to the process runner as
secrets, so they are masked in every log line and error message.
"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.errors import ProcessError, SourceError
from shipyard.core.logging import get_logger
from shipyard.runtime.process import CommandRunner, ProcessRunner

logger = get_logger(__name__)


@runtime_checkable
class SourceCheckout(Protocol):
    """Brings a local working copy to the tip of a remote branch."""

    async def sync(self, repo_url: str, branch: str, path: Path) -> Path: ...


def basic_credentials(token: str) -> str:
    """``base64(oauth2:<token>)`` as used in an ``Authorization: Basic`` header.

    >>> basic_credentials("t0k")
    'b2F1dGgyOnQwaw=='
    """
    return base64.b64encode(f"oauth2:{token}".encode()).decode("ascii")


def auth_config(repo_url: str, token: str | None) -> list[str]:
    """Per-command ``git -c`` options carrying ``token`` for an HTTP(S) remote.

    SSH remotes and calls without a token get no options.

    >>> auth_config("git@gitlab.com:acme/api.git", "t0k")
    []
    """
    if not token or not repo_url.startswith(("http://", "https://")):
        return []
    return ["-c", f"http.extraHeader=Authorization: Basic {basic_credentials(token)}"]


class GitSource:
    """Clones or updates project checkouts with the ``git`` CLI."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        access_token: str | None = None,
        git: str = "git",
        timeout: float = 600.0,
    ) -> None:
        self.runner = runner or ProcessRunner()
        self.access_token = access_token
        self.git = git
        self.timeout = timeout

    @property
    def _secrets(self) -> tuple[str, ...]:
        if not self.access_token:
            return ()
        return (basic_credentials(self.access_token), self.access_token)

    async def sync(self, repo_url: str, branch: str, path: Path) -> Path:
        """Bring ``path`` to the tip of ``origin/<branch>``.

        Raises:
            SourceError: Any git command failed.
        """
        path = Path(path)
        auth = auth_config(repo_url, self.access_token)
        try:
            if not (path / ".git").is_dir():
                logger.info("source.clone", path=str(path), branch=branch)
                path.parent.mkdir(parents=True, exist_ok=True)
                await self._git([*auth, "clone", "--branch", branch, repo_url, str(path)])
            else:
                logger.info("source.update", path=str(path), branch=branch)
                await self._git(["remote", "set-url", "origin", repo_url], cwd=path)
                await self._git([*auth, "fetch", "origin"], cwd=path)
                await self._git(["checkout", branch], cwd=path)
                await self._git(["reset", "--hard", f"origin/{branch}"], cwd=path)
        except ProcessError as exc:
            raise SourceError(
                f"Failed to fetch {branch}: {exc.message}", cause=exc
            ).with_context(branch=branch) from exc
        except OSError as exc:
            raise SourceError(f"Cannot prepare checkout at {path}: {exc}", cause=exc) from exc
        return path

    async def _git(self, args: list[str], cwd: Path | None = None) -> None:
        await self.runner.run(
            [self.git, *args],
            cwd=cwd,
            env={"GIT_TERMINAL_PROMPT": "0"},
            timeout=self.timeout,
            secrets=self._secrets,
        )


__all__ = ["GitSource", "SourceCheckout", "auth_config", "basic_credentials"]
