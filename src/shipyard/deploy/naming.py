"""Derived names for containers, images, hostnames and checkouts.

Every resource that belongs to a deployment is named from the
(project, branch) pair alone, so redeploying the same branch always lands
on the same container, image and hostname.

Examples:
    >>> rules = NamingRules(base_domain="apps.example.com")
    >>> rules.container_name("My API", "dev")
    'my-api-dev'
    >>> rules.domain("api", "main")
    'api.apps.example.com'
    >>> rules.domain("api", "dev")
    'api-dev.apps.example.com'
    >>> sanitize_identifier("Orders_DB")
    'orders-db'
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

_WHITESPACE = re.compile(r"\s+")
_NON_IDENTIFIER = re.compile(r"[^a-z0-9]")


def project_slug(project: str) -> str:
    """Lowercase the project name with whitespace runs turned into ``-``."""
    return _WHITESPACE.sub("-", project.strip()).lower()


def sanitize_identifier(name: str) -> str:
    """Lowercase and replace anything outside ``[a-z0-9]`` with ``-``."""
    return _NON_IDENTIFIER.sub("-", name.lower())


class NamingRules:
    """Naming conventions bound to a base domain."""

    def __init__(
        self,
        base_domain: str,
        production_branches: Iterable[str] = ("main", "master"),
    ) -> None:
        self.base_domain = base_domain
        self.production_branches = frozenset(production_branches)

    def container_name(self, project: str, branch: str) -> str:
        return f"{project_slug(project)}-{branch}"

    def image_tag(self, project: str, branch: str) -> str:
        return f"{project_slug(project)}:{branch}"

    def domain(self, project: str, branch: str) -> str:
        slug = project_slug(project)
        if branch in self.production_branches:
            return f"{slug}.{self.base_domain}"
        return f"{slug}-{branch}.{self.base_domain}"

    def checkout_path(self, base: Path, project: str, branch: str) -> Path:
        """One working copy per branch so concurrent builds of a project never share a tree."""
        return Path(base) / project_slug(project) / branch

    def database_container(self, name: str, environment: str) -> str:
        return f"{sanitize_identifier(name)}-{environment}-postgres"

    def database_host(self, container_name: str) -> str:
        return f"{container_name}.db.{self.base_domain}"


__all__ = ["NamingRules", "project_slug", "sanitize_identifier"]
