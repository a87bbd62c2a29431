"""domainmapper CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from domainmapper import __version__
from domainmapper.bootstrap import Components, build_components
from domainmapper.core.config import DomainMapperSettings, load_settings
from domainmapper.core.exceptions import capture, format_error_for_user
from domainmapper.domains.models import DomainMapping, MappingStatus, TransferStatus

console = Console()

STATUS_COLORS = {
    MappingStatus.PENDING: "yellow",
    MappingStatus.VERIFIED: "cyan",
    MappingStatus.APPROVED: "blue",
    MappingStatus.REJECTED: "red",
    MappingStatus.LIVE: "green",
}


def configure_logging(level: str = "warning", json_output: bool = False) -> None:
    """Configure structlog for command line use.

    Log lines go to stderr so that --json output on stdout stays parseable.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        # sys.stderr is looked up per logger so redirected streams are honoured
        logger_factory=lambda *args: structlog.PrintLogger(sys.stderr),
    )


def _load_settings(obj: dict[str, Any]) -> DomainMapperSettings:
    try:
        return load_settings(obj.get("config_file"), **obj.get("overrides", {}))
    except (FileNotFoundError, ValueError) as e:
        console.print(Panel(str(e), title="Error: invalid_config", border_style="red"))
        sys.exit(1)


async def _run_async(
    settings: DomainMapperSettings,
    action: Callable[[Components], Awaitable[int | None]],
) -> int:
    components = build_components(settings)
    try:
        result = await capture(action(components))
    finally:
        await components.close()
    if not result.ok:
        error = result.error
        console.print(
            Panel(
                f"[red]{format_error_for_user(error)}[/red]",
                title=f"Error: {error.code}",
                border_style="red",
            )
        )
        return 1
    return result.value or 0


def _run(obj: dict[str, Any], action: Callable[[Components], Awaitable[int | None]]) -> None:
    """Build components, run one async action and exit non-zero on failure."""
    code = asyncio.run(_run_async(_load_settings(obj), action))
    if code:
        sys.exit(code)


def _print_json(data: Any) -> None:
    console.print_json(data=data, default=str)


def _status_text(status: MappingStatus) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def _mapping_panel(mapping: DomainMapping, title: str, border_style: str = "cyan") -> Panel:
    content = (
        f"[bold]ID:[/bold] {mapping.id}\n"
        f"[bold]Domain:[/bold] {mapping.domain}\n"
        f"[bold]Owner:[/bold] {mapping.owner_id}\n"
        f"[bold]Status:[/bold] {_status_text(mapping.status)}\n"
        f"[bold]SSL:[/bold] {mapping.ssl_status.value}\n"
        f"[bold]Created At:[/bold] {mapping.created_at.strftime('%Y-%m-%d %H:%M')}"
    )
    if mapping.rejection_reason:
        content += f"\n[bold]Rejection Reason:[/bold] {mapping.rejection_reason}"
    return Panel(content, title=title, border_style=border_style)


@click.group()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option(
    "--db",
    "db_path",
    default=None,
    help="Registry database path (overrides registry.path)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level (default: warning, use --verbose for debug)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--log-json", is_flag=True, help="Emit log lines as JSON")
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str | None,
    db_path: str | None,
    log_level: str,
    verbose: bool,
    log_json: bool,
):
    """domainmapper - Custom domains for multi-tenant storefronts.

    Examples:

        domainmapper domain add 42 https://www.example.com/

        domainmapper domain verify <mapping-id>

        domainmapper domain approve <mapping-id>

        domainmapper cert sweep
    """
    configure_logging("debug" if verbose else log_level, log_json)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["overrides"] = {"registry": {"path": db_path}} if db_path else {}


@main.command()
def version():
    """Show version information."""
    console.print(f"domainmapper version {__version__}")


# Domains


@main.group()
def domain():
    """Manage custom domain mappings.

    A mapping moves pending -> verified -> approved -> live, or
    verified -> rejected. Removal is allowed in any state.
    """


@domain.command("add")
@click.argument("owner_id")
@click.argument("domain_name")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def domain_add(obj: dict, owner_id: str, domain_name: str, json_output: bool):
    """Register DOMAIN_NAME for OWNER_ID and print the TXT record to publish."""
    _run(obj, lambda c: _domain_add_async(c, owner_id, domain_name, json_output))


async def _domain_add_async(c: Components, owner_id: str, domain_name: str, json_output: bool):
    result = await c.manager.add_domain(owner_id, domain_name)
    if json_output:
        _print_json(result.to_dict())
        return
    ins = result.instructions
    steps = "\n".join(f"  {i}. {step}" for i, step in enumerate(ins.steps, 1))
    console.print(
        Panel(
            f"[green]Domain registered successfully![/green]\n\n"
            f"[bold]ID:[/bold] {result.mapping.id}\n"
            f"[bold]Domain:[/bold] {result.mapping.domain}\n"
            f"[bold]Status:[/bold] Pending verification\n\n"
            f"[yellow]Publish this DNS record:[/yellow]\n"
            f"  Type:  {ins.record_type}\n"
            f"  Name:  {ins.record_name}\n"
            f"  Value: {ins.record_value}\n\n"
            f"{steps}\n\n"
            f"After configuring DNS, run:\n"
            f"  [cyan]domainmapper domain verify {result.mapping.id}[/cyan]",
            title="Domain Registration",
            border_style="green",
        )
    )


@domain.command("verify")
@click.argument("mapping_id")
@click.pass_obj
def domain_verify(obj: dict, mapping_id: str):
    """Check the TXT challenge for a mapping."""
    _run(obj, lambda c: _domain_verify_async(c, mapping_id))


async def _domain_verify_async(c: Components, mapping_id: str) -> int:
    outcome = await c.manager.verify_domain(mapping_id)
    if outcome.verified:
        console.print(
            Panel(
                f"[green]Domain verified successfully![/green]\n\n"
                f"[bold]Domain:[/bold] {outcome.mapping.domain}\n"
                f"[bold]Matched:[/bold] {', '.join(outcome.check.matched_records)}\n\n"
                f"The mapping now awaits administrator approval.",
                title="Verification Successful",
                border_style="green",
            )
        )
        return 0

    found = "\n".join(f"  - {r}" for r in outcome.check.all_records) or "  (none)"
    console.print(
        Panel(
            f"[yellow]Verification incomplete[/yellow]\n\n"
            f"[bold]Domain:[/bold] {outcome.mapping.domain}\n"
            f"[bold]Result:[/bold] {outcome.check.message}\n"
            f"[bold]Expected:[/bold] {outcome.mapping.verification_token}\n"
            f"[bold]TXT records found:[/bold]\n{found}",
            title="Verification Status",
            border_style="yellow",
        )
    )
    return 1


@domain.command("approve")
@click.argument("mapping_id")
@click.option("--upstream", "upstream_url", default=None, help="Upstream URL for the proxy config")
@click.pass_obj
def domain_approve(obj: dict, mapping_id: str, upstream_url: str | None):
    """Approve a verified mapping and print its proxy configuration."""
    _run(obj, lambda c: _domain_approve_async(c, mapping_id, upstream_url))


async def _domain_approve_async(c: Components, mapping_id: str, upstream_url: str | None):
    result = await c.manager.approve_domain(mapping_id, upstream_url)
    console.print(_mapping_panel(result.mapping, "Domain Approved", "green"))
    console.print(Panel(result.proxy.nginx, title="nginx", border_style="dim"))


@domain.command("reject")
@click.argument("mapping_id")
@click.option("--reason", "-r", required=True, help="Reason shown to the owner")
@click.pass_obj
def domain_reject(obj: dict, mapping_id: str, reason: str):
    """Reject a verified mapping."""
    _run(obj, lambda c: _domain_reject_async(c, mapping_id, reason))


async def _domain_reject_async(c: Components, mapping_id: str, reason: str):
    mapping = await c.manager.reject_domain(mapping_id, reason)
    console.print(_mapping_panel(mapping, "Domain Rejected", "red"))


@domain.command("live")
@click.argument("mapping_id")
@click.pass_obj
def domain_live(obj: dict, mapping_id: str):
    """Mark an approved mapping as live."""
    _run(obj, lambda c: _domain_live_async(c, mapping_id))


async def _domain_live_async(c: Components, mapping_id: str):
    mapping = await c.manager.mark_live(mapping_id)
    console.print(f"[green]Domain live:[/green] {mapping.domain}")


@domain.command("remove")
@click.argument("mapping_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def domain_remove(obj: dict, mapping_id: str, yes: bool):
    """Remove a domain mapping."""
    if not yes and not click.confirm(f"Are you sure you want to remove '{mapping_id}'?"):
        console.print("[dim]Cancelled[/dim]")
        return
    _run(obj, lambda c: _domain_remove_async(c, mapping_id))


async def _domain_remove_async(c: Components, mapping_id: str):
    await c.manager.delete_domain(mapping_id)
    console.print(f"[green]Domain removed:[/green] {mapping_id}")


@domain.command("list")
@click.option("--owner", "owner_id", default=None, help="Only this owner's mappings")
@click.option(
    "--status",
    type=click.Choice([s.value for s in MappingStatus]),
    default=None,
    help="Only mappings in this state",
)
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--per-page", type=int, default=20, show_default=True)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def domain_list(
    obj: dict,
    owner_id: str | None,
    status: str | None,
    page: int,
    per_page: int,
    json_output: bool,
):
    """List domain mappings, newest first."""
    _run(
        obj,
        lambda c: _domain_list_async(
            c, owner_id, MappingStatus(status) if status else None, page, per_page, json_output
        ),
    )


async def _domain_list_async(
    c: Components,
    owner_id: str | None,
    status: MappingStatus | None,
    page: int,
    per_page: int,
    json_output: bool,
):
    mappings = await c.manager.list_mappings(owner_id, status, page, per_page)

    if json_output:
        _print_json([m.to_dict() for m in mappings])
        return

    if not mappings:
        console.print("[dim]No domains registered[/dim]")
        return

    table = Table(title="Domain Mappings")
    table.add_column("ID", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("Owner")
    table.add_column("Status", justify="center")
    table.add_column("SSL")
    table.add_column("Created At")

    for mapping in mappings:
        table.add_row(
            mapping.id[:12],
            mapping.domain,
            mapping.owner_id,
            _status_text(mapping.status),
            mapping.ssl_status.value,
            mapping.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@domain.command("show")
@click.argument("mapping")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def domain_show(obj: dict, mapping: str, json_output: bool):
    """Show a mapping by id or by domain name."""
    _run(obj, lambda c: _domain_show_async(c, mapping, json_output))


async def _domain_show_async(c: Components, mapping_ref: str, json_output: bool) -> int:
    if "." in mapping_ref:
        mapping = await c.manager.find_mapping(mapping_ref)
        if mapping is None:
            console.print(f"[red]Domain not found:[/red] {mapping_ref}")
            return 1
    else:
        mapping = await c.manager.get_mapping(mapping_ref)

    if json_output:
        _print_json(mapping.to_dict())
        return 0

    console.print(
        _mapping_panel(
            mapping,
            f"Domain: {mapping.domain}",
            STATUS_COLORS.get(mapping.status, "white"),
        )
    )
    if mapping.status in (MappingStatus.PENDING, MappingStatus.REJECTED):
        ins = await c.manager.instructions_for(mapping.id)
        console.print(
            f"[yellow]DNS Setup Required:[/yellow] {ins.record_type} {ins.record_name} "
            f'"{ins.record_value}"'
        )
    return 0


@domain.command("transfer")
@click.argument("mapping_id")
@click.argument("new_owner_id")
@click.option("--reason", default="", help="Reason recorded in the transfer log")
@click.option("--actor", "actor_id", default=None, help="Administrator performing the transfer")
@click.pass_obj
def domain_transfer(
    obj: dict, mapping_id: str, new_owner_id: str, reason: str, actor_id: str | None
):
    """Move a mapping to another owner."""
    _run(obj, lambda c: _domain_transfer_async(c, mapping_id, new_owner_id, reason, actor_id))


async def _domain_transfer_async(
    c: Components, mapping_id: str, new_owner_id: str, reason: str, actor_id: str | None
):
    mapping = await c.manager.transfer_domain(mapping_id, new_owner_id, reason, actor_id)
    console.print(
        f"[green]Domain transferred:[/green] {mapping.domain} -> owner {mapping.owner_id}"
    )


@domain.command("propagation")
@click.argument("mapping_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def domain_propagation(obj: dict, mapping_id: str, json_output: bool):
    """Show how many public resolvers already see the TXT record."""
    _run(obj, lambda c: _domain_propagation_async(c, mapping_id, json_output))


async def _domain_propagation_async(c: Components, mapping_id: str, json_output: bool):
    result = await c.manager.propagation(mapping_id)

    if json_output:
        _print_json(result.to_dict())
        return

    table = Table(title=f"Propagation: {result.domain}")
    table.add_column("Resolver", style="cyan")
    table.add_column("Address", style="dim")
    table.add_column("Found", justify="center")
    table.add_column("Error")

    for probe in result.results:
        found = "[green]Yes[/green]" if probe.found else "[yellow]No[/yellow]"
        table.add_row(probe.resolver, probe.address, found, probe.error or "")

    console.print(table)
    console.print(
        f"[bold]{result.matched_resolvers}/{result.total_resolvers}[/bold] resolvers "
        f"({result.percentage}%)"
    )
    console.print(f"[bold]DNS provider:[/bold] {result.dns_provider}")


# Transfer requests


@main.group()
def transfer():
    """Request and review ownership transfers."""


@transfer.command("request")
@click.argument("mapping_id")
@click.argument("requester_id")
@click.option("--reason", default="", help="Why the requester should own the domain")
@click.pass_obj
def transfer_request(obj: dict, mapping_id: str, requester_id: str, reason: str):
    """Ask for MAPPING_ID to be moved to REQUESTER_ID."""
    _run(obj, lambda c: _transfer_request_async(c, mapping_id, requester_id, reason))


async def _transfer_request_async(c: Components, mapping_id: str, requester_id: str, reason: str):
    request = await c.manager.request_transfer(mapping_id, requester_id, reason)
    console.print(
        Panel(
            f"[bold]Request ID:[/bold] {request.id}\n"
            f"[bold]Domain:[/bold] {request.domain}\n"
            f"[bold]From:[/bold] {request.current_owner_id}\n"
            f"[bold]To:[/bold] {request.requesting_owner_id}",
            title="Transfer Requested",
            border_style="cyan",
        )
    )


@transfer.command("approve")
@click.argument("request_id")
@click.option("--actor", "actor_id", default=None, help="Administrator approving the request")
@click.pass_obj
def transfer_approve(obj: dict, request_id: str, actor_id: str | None):
    """Approve a pending transfer request."""
    _run(obj, lambda c: _transfer_approve_async(c, request_id, actor_id))


async def _transfer_approve_async(c: Components, request_id: str, actor_id: str | None):
    mapping = await c.manager.approve_transfer_request(request_id, actor_id)
    console.print(
        f"[green]Transfer approved:[/green] {mapping.domain} -> owner {mapping.owner_id}"
    )


@transfer.command("reject")
@click.argument("request_id")
@click.option("--reason", default="", help="Reason shown to the requester")
@click.option("--actor", "actor_id", default=None, help="Administrator rejecting the request")
@click.pass_obj
def transfer_reject(obj: dict, request_id: str, reason: str, actor_id: str | None):
    """Reject a pending transfer request."""
    _run(obj, lambda c: _transfer_reject_async(c, request_id, reason, actor_id))


async def _transfer_reject_async(c: Components, request_id: str, reason: str, actor_id: str | None):
    request = await c.manager.reject_transfer_request(request_id, reason, actor_id)
    console.print(f"[yellow]Transfer rejected:[/yellow] {request.domain}")


@transfer.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in TransferStatus]),
    default=None,
    help="Only requests in this state",
)
@click.option("--owner", "owner_id", default=None, help="Requests involving this owner")
@click.option("--log", "show_log", is_flag=True, help="Show the transfer log instead")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def transfer_list(
    obj: dict, status: str | None, owner_id: str | None, show_log: bool, json_output: bool
):
    """List transfer requests or the transfer log."""
    _run(
        obj,
        lambda c: _transfer_list_async(
            c, TransferStatus(status) if status else None, owner_id, show_log, json_output
        ),
    )


async def _transfer_list_async(
    c: Components,
    status: TransferStatus | None,
    owner_id: str | None,
    show_log: bool,
    json_output: bool,
):
    if show_log:
        entries = await c.manager.list_transfer_logs()
        if json_output:
            _print_json([e.to_dict() for e in entries])
            return
        table = Table(title="Transfer Log")
        table.add_column("Domain", style="cyan")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Actor", style="dim")
        table.add_column("At")
        for entry in entries:
            table.add_row(
                entry.domain,
                entry.old_owner_id,
                entry.new_owner_id,
                entry.actor_id or "",
                entry.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        return

    requests = await c.manager.list_transfer_requests(status=status, owner_id=owner_id)
    if json_output:
        _print_json([r.to_dict() for r in requests])
        return
    if not requests:
        console.print("[dim]No transfer requests[/dim]")
        return
    table = Table(title="Transfer Requests")
    table.add_column("ID", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Status", justify="center")
    for request in requests:
        table.add_row(
            request.id[:12],
            request.domain,
            request.current_owner_id,
            request.requesting_owner_id,
            request.status.value,
        )
    console.print(table)


# Certificates


@main.group()
def cert():
    """Inspect and provision TLS certificates."""


@cert.command("inspect")
@click.argument("domain_name")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def cert_inspect(obj: dict, domain_name: str, json_output: bool):
    """Fetch and describe the certificate served by DOMAIN_NAME."""
    _run(obj, lambda c: _cert_inspect_async(c, domain_name, json_output))


async def _cert_inspect_async(c: Components, domain_name: str, json_output: bool) -> int:
    info = await c.inspector.inspect(domain_name)
    if json_output:
        _print_json(info.to_dict())
        return 0 if info.present else 1

    if not info.present:
        console.print(
            Panel(
                f"[red]No certificate reachable[/red]\n\n{info.error or ''}",
                title=f"Certificate: {domain_name}",
                border_style="red",
            )
        )
        return 1

    valid = "[green]Yes[/green]" if info.valid else "[red]No[/red]"
    expires = info.not_after.strftime("%Y-%m-%d %H:%M") if info.not_after else "N/A"
    console.print(
        Panel(
            f"[bold]Issuer:[/bold] {info.issuer or 'unknown'} ({info.issuer_category.value})\n"
            f"[bold]Subject:[/bold] {info.subject or 'N/A'}\n"
            f"[bold]Valid:[/bold] {valid}\n"
            f"[bold]Expires:[/bold] {expires}\n"
            f"[bold]Days Remaining:[/bold] {info.days_remaining}",
            title=f"Certificate: {domain_name}",
            border_style="green" if info.valid else "red",
        )
    )
    return 0


@cert.command("setup")
@click.argument("mapping_id")
@click.argument("provider", type=click.Choice(["managed_cdn", "automated_ca", "manual"]))
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def cert_setup(obj: dict, mapping_id: str, provider: str, json_output: bool):
    """Provision a certificate for a mapping along PROVIDER's path."""
    _run(obj, lambda c: _cert_setup_async(c, mapping_id, provider, False, json_output))


@cert.command("auto")
@click.argument("mapping_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def cert_auto(obj: dict, mapping_id: str, json_output: bool):
    """Pick the best certificate path for a mapping and set it up."""
    _run(obj, lambda c: _cert_setup_async(c, mapping_id, None, True, json_output))


async def _cert_setup_async(
    c: Components,
    mapping_id: str,
    provider: str | None,
    auto: bool,
    json_output: bool,
):
    if auto:
        result = await c.manager.auto_provision(mapping_id)
    else:
        result = await c.manager.setup_certificate(mapping_id, provider)

    if json_output:
        _print_json(result.to_dict())
        return

    content = f"[bold]Domain:[/bold] {result.mapping.domain}\n"
    content += f"[bold]Provider:[/bold] {result.provider.value}\n\n"
    content += "\n".join(f"{i}. {step}" for i, step in enumerate(result.instructions, 1))
    if result.commands:
        content += "\n\n[yellow]Commands:[/yellow]\n"
        content += "\n".join(f"  $ {command}" for command in result.commands)
    console.print(Panel(content, title="Certificate Setup", border_style="green"))


@cert.command("sweep")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def cert_sweep(obj: dict, json_output: bool):
    """Re-check automated certificates and warn about upcoming expiry.

    Intended to run from a scheduler, e.g. daily from cron.
    """
    _run(obj, lambda c: _cert_sweep_async(c, json_output))


async def _cert_sweep_async(c: Components, json_output: bool):
    report = await c.provisioner.renewal_sweep()

    if json_output:
        _print_json(report.to_dict())
        return

    console.print(
        f"[bold]Checked:[/bold] {report.checked}  "
        f"[bold]Expiring:[/bold] {len(report.expiring)}  "
        f"[bold]Unreachable:[/bold] {len(report.unreachable)}"
    )
    if report.expiring:
        table = Table(title="Expiring Certificates")
        table.add_column("Domain", style="cyan")
        table.add_column("Days Remaining", justify="right")
        table.add_column("Issuer", style="dim")
        for info in report.expiring:
            table.add_row(info.domain, str(info.days_remaining), info.issuer or "")
        console.print(table)
    for domain_name in report.unreachable:
        console.print(f"[yellow]Unreachable:[/yellow] {domain_name}")


# Proxy


@main.group()
def proxy():
    """Generate reverse proxy configuration."""


@proxy.command("generate")
@click.argument("mapping_id")
@click.option("--upstream", "upstream_url", default=None, help="Upstream URL (default from config)")
@click.option(
    "--server",
    "server_type",
    type=click.Choice(["nginx", "apache", "both"]),
    default="both",
    show_default=True,
)
@click.pass_obj
def proxy_generate(obj: dict, mapping_id: str, upstream_url: str | None, server_type: str):
    """Print proxy configuration for a mapping."""
    _run(obj, lambda c: _proxy_generate_async(c, mapping_id, upstream_url, server_type))


async def _proxy_generate_async(
    c: Components, mapping_id: str, upstream_url: str | None, server_type: str
):
    config = await c.manager.generate_proxy_config(mapping_id, upstream_url)
    if server_type in ("nginx", "both"):
        click.echo(f"# nginx: {config.domain}")
        click.echo(config.nginx)
    if server_type in ("apache", "both"):
        click.echo(f"# apache: {config.domain}")
        click.echo(config.apache)


# Health


@main.group()
def health():
    """Sample HTTP accessibility of live domains."""


@health.command("collect")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def health_collect(obj: dict, json_output: bool):
    """Probe every live mapping once.

    Intended to run from a scheduler.
    """
    _run(obj, lambda c: _health_collect_async(c, json_output))


async def _health_collect_async(c: Components, json_output: bool):
    samples = await c.health.collect_samples()

    if json_output:
        _print_json([s.to_dict() for s in samples])
        return

    if not samples:
        console.print("[dim]No live domains[/dim]")
        return

    table = Table(title="Health Samples")
    table.add_column("Domain", style="cyan")
    table.add_column("Status", justify="right")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Accessible", justify="center")
    for sample in samples:
        table.add_row(
            sample.domain,
            str(sample.status_code or "-"),
            str(sample.response_time_ms or "-"),
            "[green]Yes[/green]" if sample.accessible else "[red]No[/red]",
        )
    console.print(table)


@health.command("check")
@click.argument("domain_name")
@click.pass_obj
def health_check(obj: dict, domain_name: str):
    """Probe one domain over http and https."""
    _run(obj, lambda c: _health_check_async(c, domain_name))


async def _health_check_async(c: Components, domain_name: str):
    samples = await c.health.check_accessibility(domain_name)
    for scheme, sample in samples.items():
        if sample.accessible:
            console.print(
                f"[green]{scheme}:[/green] {sample.status_code} in {sample.response_time_ms} ms"
            )
        else:
            detail = sample.error or f"HTTP {sample.status_code}"
            console.print(f"[red]{scheme}:[/red] {detail}")


# Configuration


@main.group()
def config():
    """View and validate configuration settings.

    Settings come from environment variables (DOMAINMAPPER_<SECTION>_<KEY>),
    an optional YAML/TOML file passed with --config, and defaults.

    Examples:

        domainmapper config show            # Show all config settings

        domainmapper config export          # Export as env vars

        domainmapper config validate        # Validate current config
    """


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only one section (registry, verification, ...)")
@click.pass_obj
def config_show(obj: dict, json_output: bool, section: str | None):
    """Show current configuration settings. Secrets are masked."""
    settings = _load_settings(obj)
    display = settings.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        _print_json(display)
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, values in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        for key, value in values.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str)

        console.print(table)
        console.print()


@config.command("export")
@click.pass_obj
def config_export(obj: dict):
    """Export current configuration as environment variables."""
    settings = _load_settings(obj)
    for key, value in settings.to_env_dict().items():
        click.echo(f"export {key}='{value}'")


@config.command("validate")
@click.pass_obj
def config_validate(obj: dict):
    """Validate current configuration.

    Loading already enforces types and ranges; this adds consistency warnings.
    """
    settings = _load_settings(obj)
    warnings = []

    certs = settings.certificates
    if certs.automated_ca_enabled and certs.acme_contact_email.endswith("@localhost"):
        warnings.append("automated CA is enabled but acme_contact_email is a localhost address")
    if "{domain}" not in certs.acme_command_template:
        warnings.append("acme_command_template does not contain {domain}")
    if not settings.verification.propagation_resolvers:
        warnings.append("propagation_resolvers is empty; propagation reports will be empty")
    if settings.registry.path == ":memory:":
        warnings.append("registry.path is :memory:; mappings are lost when the process exits")

    if warnings:
        console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
        for warning in warnings:
            console.print(f"  [yellow]![/yellow] {warning}")
        console.print()
        console.print("[green]OK - Configuration is valid (with warnings)[/green]")
    else:
        console.print("[green]OK - Configuration is valid[/green]")


if __name__ == "__main__":
    main()
