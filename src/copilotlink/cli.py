"""Typer CLI for copilotlink."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from copilotlink.auth import TokenStore, save_github_token
from copilotlink.catalog import ModelCatalog
from copilotlink.config import Settings, get_settings
from copilotlink.errors import ProxyError
from copilotlink.models import DeviceCode, ModelDescriptor
from copilotlink.upstream import CopilotClient

app = typer.Typer(
    name="copilotlink",
    help="copilotlink: use a GitHub Copilot account from OpenAI, Anthropic and Codex clients",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _show_user_code(device: DeviceCode) -> None:
    console.print(
        f"\nOpen [bold cyan]{device.verification_uri}[/bold cyan] "
        f"and enter the code [bold yellow]{device.user_code}[/bold yellow]\n"
    )


def _settings_with(overrides: dict[str, Any]) -> Settings:
    update = {k: v for k, v in overrides.items() if v is not None}
    return get_settings().model_copy(update=update)


@app.command()
def start(
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
    host: str | None = typer.Option(None, "--host", help="Host to bind to"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    account_type: str | None = typer.Option(
        None, "--account-type", "-a", help="individual, business or enterprise"
    ),
    manual: bool = typer.Option(False, "--manual", help="Approve every request by hand"),
    rate_limit: float | None = typer.Option(
        None, "--rate-limit", "-r", help="Minimum seconds between forwarded requests"
    ),
    wait: bool = typer.Option(
        False, "--wait", "-w", help="Wait instead of failing when the rate limit is hit"
    ),
    github_token: str | None = typer.Option(
        None, "--github-token", "-g", help="GitHub token to use instead of the stored one"
    ),
    show_token: bool = typer.Option(False, "--show-token", help="Log tokens on refresh"),
) -> None:
    """Start the proxy server."""
    import uvicorn

    from copilotlink.proxy import create_app

    settings = _settings_with(
        {
            "proxy_port": port,
            "proxy_host": host,
            "account_type": account_type,
            "rate_limit_seconds": rate_limit,
            "github_token": github_token,
            "verbose": verbose or None,
            "manual_approve": manual or None,
            "rate_limit_wait": wait or None,
            "show_token": show_token or None,
        }
    )
    _setup_logging(settings.verbose)

    console.print(
        f"[bold green]Starting copilotlink on "
        f"{settings.proxy_host}:{settings.proxy_port}[/bold green]"
    )
    console.print(
        "[dim]POST /v1/chat/completions  POST /v1/messages  POST /v1/responses[/dim]\n"
    )
    uvicorn.run(
        create_app(settings),
        host=settings.proxy_host,
        port=settings.proxy_port,
        log_level="debug" if settings.verbose else "info",
    )


@app.command()
def auth(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    show_token: bool = typer.Option(False, "--show-token", help="Print the GitHub token"),
) -> None:
    """Sign in to GitHub with the device flow and store the token."""
    settings = _settings_with({"verbose": verbose or None, "show_token": show_token or None})
    _setup_logging(settings.verbose)

    async def _run() -> str:
        async with httpx.AsyncClient() as http_client:
            tokens = TokenStore(http_client, settings)
            return await tokens.run_device_flow(_show_user_code)

    try:
        token = asyncio.run(_run())
    except ProxyError as e:
        console.print(f"[red]Authentication failed: {e.message}[/red]")
        raise typer.Exit(1)

    path = Path(settings.github_token_path)
    save_github_token(path, token)
    console.print(f"[green]GitHub token saved to {path}[/green]")
    if settings.show_token:
        console.print(f"GitHub token: {token}")


@app.command()
def models(
    account_type: str | None = typer.Option(
        None, "--account-type", "-a", help="individual, business or enterprise"
    ),
    github_token: str | None = typer.Option(
        None, "--github-token", "-g", help="GitHub token to use instead of the stored one"
    ),
) -> None:
    """List the models available to the Copilot account."""
    settings = _settings_with({"account_type": account_type, "github_token": github_token})

    async def _load() -> list[ModelDescriptor]:
        async with httpx.AsyncClient(timeout=settings.upstream_timeout) as http_client:
            tokens = TokenStore(http_client, settings)
            catalog = ModelCatalog(CopilotClient(http_client, settings), tokens, settings)
            if not settings.local_models_file:
                await tokens.bootstrap(on_user_code=_show_user_code)
            await catalog.load()
            return catalog.list_all()

    try:
        descriptors = asyncio.run(_load())
    except (ProxyError, OSError, ValueError) as e:
        console.print(f"[red]Failed to load models: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Available Models")
    table.add_column("Model ID", style="cyan", max_width=40)
    table.add_column("Vendor", style="magenta")
    table.add_column("Context", justify="right")
    table.add_column("Capabilities", style="yellow")

    for m in descriptors:
        table.add_row(
            m.id,
            m.vendor or "-",
            f"{m.context_window:,}" if m.context_window else "-",
            ", ".join(sorted(c.value for c in m.capabilities)) or "-",
        )

    console.print(table)
    console.print(f"\n[dim]{len(descriptors)} models[/dim]")


@app.callback()
def main() -> None:
    """copilotlink: use a GitHub Copilot account from OpenAI, Anthropic and Codex clients."""


if __name__ == "__main__":
    app()
