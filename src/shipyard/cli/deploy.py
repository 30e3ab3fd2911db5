"""
CLI: deployment commands.

Usage::

    shipyard deploy api https://gitlab.com/acme/api.git --branch dev
    shipyard deploy api https://gitlab.com/acme/api.git --no-wait
    shipyard remove api dev
    shipyard deployments
    shipyard certs retry api main
"""

from __future__ import annotations

import typer

from shipyard.cli import utils
from shipyard.deploy.models import DeploymentRequest, DeploymentStatus
from shipyard.platform import Platform

certs_app = typer.Typer(no_args_is_help=True)


def deploy(
    project: str = typer.Argument(..., help="Project name."),
    repo_url: str = typer.Argument(..., help="Git remote URL."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch to deploy."),
    commit: str = typer.Option("", "--commit", "-c", help="Commit hash being deployed."),
    author: str = typer.Option("", "--author", help="Commit author."),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the deployment to finish."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Queue a deployment of PROJECT from REPO_URL."""
    request = DeploymentRequest(
        project_name=project,
        repo_url=repo_url,
        branch=branch,
        commit=commit,
        author=author,
    )

    async def action(platform: Platform):
        deployment_id = await platform.enqueue_deployment(request)
        if not wait:
            return await platform.get_deployment(deployment_id)
        return await platform.wait_for_deployment(deployment_id)

    record = utils.run_with_platform(action)

    if json_out:
        utils.print_json(record)
    elif record.status == DeploymentStatus.SUCCESS:
        utils.console.print(
            f"[green]Deployed[/] {record.project}@{record.branch} -> {record.domain} "
            f"(port {record.port}, certificate {record.certificate_state.value})"
        )
        if record.certificate_error:
            utils.console.print(f"[yellow]Certificate:[/] {record.certificate_error}")
    elif record.status == DeploymentStatus.FAILED:
        utils.err_console.print(f"[red]Deployment {record.id} failed:[/] {record.error}")
    else:
        utils.console.print(f"Deployment {record.id} is {record.status.value}")

    if record.status == DeploymentStatus.FAILED:
        raise typer.Exit(code=1)


def remove(
    project: str = typer.Argument(..., help="Project name."),
    branch: str = typer.Argument(..., help="Branch to remove."),
) -> None:
    """Remove a deployed branch (container, image, proxy site and DNS record)."""
    result = utils.run_with_platform(lambda p: p.remove_deployment(project, branch))
    utils.console.print(f"Removed {result.container_name} ({result.domain})")


def deployments(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List application containers deployed on this host."""
    containers = utils.run_with_platform(lambda p: p.lifecycle.list_deployed())
    if json_out:
        utils.print_json([
            {"name": c.name, "image": c.image, "status": c.status, "labels": c.labels}
            for c in containers
        ])
        return
    utils.print_table(
        "Deployments",
        ["Container", "Project", "Branch", "Image", "Status"],
        [
            [c.name, c.labels.get("shipyard.project"), c.labels.get("shipyard.branch"), c.image, c.status]
            for c in containers
        ],
    )


@certs_app.command("retry")
def certs_retry(
    project: str = typer.Argument(..., help="Project name."),
    branch: str = typer.Argument(..., help="Branch."),
) -> None:
    """Re-run certificate issuance for a deployed branch."""
    binding = utils.run_with_platform(lambda p: p.retry_certificate(project, branch))
    if binding.certificate_error:
        utils.err_console.print(f"[red]{binding.domain}:[/] {binding.certificate_error}")
        raise typer.Exit(code=1)
    utils.console.print(f"[green]{binding.domain}[/] certificate {binding.certificate_state.value}")


def register(app: typer.Typer) -> None:
    """Attach the top-level deployment commands to ``app``."""
    app.command("deploy")(deploy)
    app.command("remove")(remove)
    app.command("deployments")(deployments)
