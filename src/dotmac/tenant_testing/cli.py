#!/usr/bin/env python
"""
CLI commands for inspecting and cleaning up tenant test databases.
"""

from collections.abc import Callable
from dataclasses import dataclass

import click

from dotmac.tenant_testing.harness import TenancyHarness
from dotmac.tenant_testing.logging import setup_logging
from dotmac.tenant_testing.settings import TenancyTestSettings


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    harness_factory: Callable[[TenancyTestSettings], TenancyHarness]
    settings_factory: Callable[..., TenancyTestSettings]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(harness_factory=TenancyHarness, settings_factory=TenancyTestSettings)


def _build_harness(ctx: click.Context) -> TenancyHarness:
    deps: CLIDependencies = ctx.obj
    overrides = {}
    token = ctx.parent.params.get("worker_token") if ctx.parent else None
    if token:
        overrides["worker_token"] = token
    settings = deps.settings_factory(**overrides)
    setup_logging(settings)
    harness = deps.harness_factory(settings)
    harness.setup()
    return harness


@click.group()
@click.option("--worker-token", default=None, help="Parallel worker token to inspect")
@click.pass_context
def cli(ctx: click.Context, worker_token: str | None) -> None:
    """DotMac tenant test database tools."""
    if ctx.obj is None:
        ctx.obj = _get_cli_dependencies()


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the worker's tenants and whether their databases exist."""
    harness = _build_harness(ctx)
    try:
        click.echo(f"Worker suffix: {harness.namespace.suffix()}")
        tenants = harness.registry.all_except(None)
        if not tenants:
            click.echo("No tenants registered.")
            return
        for tenant in tenants:
            exists = harness.registry.database_exists(tenant)
            marker = "present" if exists else "missing"
            click.echo(f"{tenant.id}\t{tenant.database}\t{marker}")
    finally:
        harness.teardown()


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def purge(ctx: click.Context, yes: bool) -> None:
    """Delete every tenant of the worker, including the testing tenant."""
    harness = _build_harness(ctx)
    try:
        tenants = harness.registry.all_except(None)
        if not tenants:
            click.echo("Nothing to purge.")
            return
        if not yes:
            click.confirm(f"Delete {len(tenants)} tenant(s) and their databases?", abort=True)

        failures = 0
        for tenant in tenants:
            try:
                harness.registry.delete(tenant)
            except Exception as exc:
                failures += 1
                click.echo(f"Failed to delete {tenant.id}: {exc}", err=True)
            else:
                click.echo(f"Deleted {tenant.id} ({tenant.database})")
        if failures:
            raise click.ClickException(f"{failures} tenant(s) could not be deleted")
    finally:
        harness.teardown()


if __name__ == "__main__":
    cli()
