"""
CLI commands for planning and applying a declaration.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog
from rich.console import Console

from converge.clients.base import PermanentHTTPError
from converge.clients.digitalocean import DigitalOceanClient
from converge.config.loader import load_declaration
from converge.config.settings import Settings, get_settings
from converge.core.errors import ConfigurationError, ExitCode, HandlerError, main_with_error_handling
from converge.declaration import Declaration
from converge.engine import ActionKind, Reconciler, ReconcileResult
from converge.handlers.defaults import build_default_registry
from converge.handlers.digitalocean import KubeAccess
from converge.readiness import Poller
from converge.logging import bind_context

logger = structlog.get_logger()
console = Console()

_STYLES = {
    ActionKind.CREATE: ("green", "+"),
    ActionKind.UPDATE: ("yellow", "~"),
    ActionKind.DELETE: ("red", "-"),
    ActionKind.UNCHANGED: ("dim", "="),
    ActionKind.UNMANAGED: ("magenta", "?"),
}


def print_result_summary(result: ReconcileResult, verbose: bool = False) -> None:
    """Print one line per action followed by totals."""
    console.print()
    for action in result.actions:
        if action.kind == ActionKind.UNCHANGED and not verbose:
            continue
        style, sign = _STYLES[action.kind]
        label = f"{action.kind.value} (planned)" if action.planned else action.kind.value
        console.print(f"  [{style}]{sign} {label:<18}[/{style}] {action.path}/{action.name}")
        if verbose and action.drift:
            for field in action.drift:
                console.print(f"      [dim]drift:[/dim] {field}")

    counts = result.summary()
    console.print()
    verb = "Plan" if result.dry_run else "Applied"
    console.print(
        f"[bold]{verb}:[/bold] {counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete, {counts['unchanged']} unchanged, {counts['unmanaged']} unmanaged"
    )
    console.print()


def _json_default(value: Any) -> Any:
    if isinstance(value, KubeAccess):
        # Kubeconfig credentials stay out of the output.
        return {"cluster_id": value.cluster_id, "namespace": value.namespace}
    return str(value)


def print_result_json(result: ReconcileResult) -> None:
    """Print the result in JSON format."""
    output = {
        "dry_run": result.dry_run,
        "summary": result.summary(),
        "actions": [
            {
                "kind": action.kind.value,
                "path": action.path,
                "name": action.name,
                "drift": list(action.drift),
                "planned": action.planned,
            }
            for action in result.actions
        ],
        "config_after": result.config_after,
    }
    print(json.dumps(output, indent=2, default=_json_default))


async def reconcile_declaration(declaration: Declaration, settings: Settings, *, dry_run: bool = False) -> ReconcileResult:
    """Run the built-in handlers against ``declaration`` with a client owned by this call."""
    if settings.digitalocean_token is None:
        raise ConfigurationError("CONVERGE_DIGITALOCEAN_TOKEN is not set")
    poller = Poller.from_settings(settings)

    async with DigitalOceanClient(
        settings.digitalocean_token.get_secret_value(),
        base_url=settings.digitalocean_base_url,
        timeout=settings.http_timeout,
        max_retries=settings.http_max_retries,
    ) as client:
        try:
            account = await client.account()
        except PermanentHTTPError as exc:
            raise HandlerError(f"Cannot read DigitalOcean account: {exc}", details={"status": exc.status_code}) from exc
        logger.info("account", email=account.get("email"), status=account.get("status"))

        registry = build_default_registry(settings, client, declaration=declaration, poller=poller)
        return await Reconciler(registry, dry_run=dry_run).apply(declaration)


@main_with_error_handling()
def apply_command(
    declaration_file: str,
    *,
    dry_run: bool = False,
    output_format: str = "text",
    verbose: bool = False,
    settings: Settings | None = None,
) -> int:
    """Plan or apply a declaration file. Returns an exit code."""
    settings = settings or get_settings()
    log = bind_context(declaration_file=str(declaration_file), dry_run=dry_run)
    declaration = load_declaration(declaration_file)
    log.info("command_started", collections=list(declaration.collections))

    result = asyncio.run(reconcile_declaration(declaration, settings, dry_run=dry_run))

    if output_format == "json":
        print_result_json(result)
    else:
        print_result_summary(result, verbose=verbose)
    log.info("command_finished", **result.summary())

    if dry_run and result.has_changes:
        return ExitCode.CHANGES_PENDING
    return ExitCode.SUCCESS
