"""Container environment resolution.

The environment a container starts with is merged from three layers,
later layers winning:

1. the ``.env`` file committed in the source tree (parsed with
   ``python-dotenv``),
2. variables persisted for the (project, branch) pair,
3. the reserved deployment keys ``DEPLOY_BRANCH``, ``DEPLOY_COMMIT`` and
   ``DEPLOY_DOMAIN``.

The merged result is written to a transient ``--env-file`` that the caller
removes once ``docker run`` has returned, so values never appear on a
command line.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from dotenv import dotenv_values

from shipyard.core.logging import get_logger

logger = get_logger(__name__)

RESERVED_KEYS = ("DEPLOY_BRANCH", "DEPLOY_COMMIT", "DEPLOY_DOMAIN")
SECRET_MARKERS = ("secret", "password", "key", "token")
MASK = "***MASKED***"


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_MARKERS)


def mask_environment(env: Mapping[str, str]) -> dict[str, str]:
    """Copy of ``env`` with secret-looking values replaced, for logging."""
    return {key: MASK if is_secret_key(key) else value for key, value in env.items()}


def read_source_env(source_dir: Path) -> dict[str, str]:
    """Parse ``<source_dir>/.env``; empty when the file does not exist."""
    path = Path(source_dir) / ".env"
    if not path.is_file():
        return {}
    values = dotenv_values(path)
    return {key: value for key, value in values.items() if value is not None}


def merge_environment(
    source_env: Mapping[str, str],
    stored_env: Mapping[str, str],
    *,
    branch: str,
    commit: str,
    domain: str,
) -> dict[str, str]:
    """Merge the three layers; reserved keys always win."""
    merged = {**source_env, **stored_env}
    merged.update(
        {
            "DEPLOY_BRANCH": branch,
            "DEPLOY_COMMIT": commit,
            "DEPLOY_DOMAIN": domain,
        }
    )
    return merged


def render_env_file(env: Mapping[str, str]) -> str:
    """Render ``KEY=VALUE`` lines; newlines inside values are escaped."""
    lines = []
    for key, value in env.items():
        lines.append(f"{key}={str(value).replace(chr(10), chr(92) + 'n')}")
    return "\n".join(lines) + "\n"


@contextmanager
def transient_env_file(env: Mapping[str, str], prefix: str = "shipyard-") -> Iterator[Path]:
    """Write ``env`` to a private temp file and delete it on exit, whatever happens."""
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".env")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(render_env_file(env))
        yield path
    finally:
        path.unlink(missing_ok=True)


__all__ = [
    "MASK",
    "RESERVED_KEYS",
    "is_secret_key",
    "mask_environment",
    "merge_environment",
    "read_source_env",
    "render_env_file",
    "transient_env_file",
]
