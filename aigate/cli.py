"""CLI interface for the aigate AI request gateway."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
import httpx
from rich.console import Console
from rich.table import Table

from . import server as server_mod
from .auth import issue_token
from .config import GatewayConfig, load_config

console = Console()


@click.group()
@click.option(
    "-c", "--config",
    envvar="AIGATE_CONFIG",
    default=None,
    help="Path to gateway.yaml config file",
)
@click.pass_context
def cli(ctx, config):
    """aigate: authenticated, rate-limited gateway for AI model endpoints."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


def _load(ctx) -> GatewayConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Override the configured listen host")
@click.option("--port", default=None, type=int, help="Override the configured listen port")
@click.option("--log-level", default="info", show_default=True)
@click.pass_context
def serve(ctx, host, port, log_level):
    """Start the gateway HTTP server."""
    config = _load(ctx)
    if host:
        config.host = host
    if port:
        config.port = port

    existing_pid = server_mod.read_pidfile()
    if existing_pid is not None:
        try:
            os.kill(existing_pid, 0)
            console.print(
                f"[yellow]Gateway already running (PID {existing_pid}). "
                f"Stop it first with: aigate stop[/yellow]"
            )
            sys.exit(1)
        except ProcessLookupError:
            server_mod.remove_pidfile()

    console.print("[bold]Starting AI gateway...[/bold]")
    console.print(f"  Auth:    {config.auth.mode}")
    console.print(f"  Backend: {config.backend.kind}"
                  + (f" @ {config.backend.url}" if config.backend.url else ""))
    for kind, policy in config.rate_limits.items():
        console.print(
            f"  /ai/{kind}: {policy.capacity:g} burst, "
            f"{policy.refill_per_second:g}/s refill"
            + (", streaming" if policy.stream else "")
        )
    console.print(f"  Listening on: {config.host}:{config.port}")

    import uvicorn
    app = server_mod.create_app(config)
    server_mod.write_pidfile()
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=log_level)
    finally:
        server_mod.remove_pidfile()


@cli.command()
def stop():
    """Stop a running gateway."""
    if server_mod.stop_gateway():
        console.print("[green]Gateway stopped.[/green]")
    else:
        console.print("[yellow]Gateway was not running.[/yellow]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show gateway health and rate limit policies."""
    config = _load(ctx)
    url = f"http://127.0.0.1:{config.port}/health"

    try:
        resp = httpx.get(url, timeout=5.0)
        data = resp.json()
    except Exception:
        console.print("[dim]○ Gateway not running[/dim]")
        return

    console.print(
        f"[green bold]● Gateway[/green bold] on :{config.port} "
        f"(backend: {data['backend']}, auth: {data['auth']['mode']})"
    )
    table = Table(title="Endpoints")
    table.add_column("Path")
    table.add_column("Burst")
    table.add_column("Refill/s")
    table.add_column("Streaming")
    for info in data["endpoints"].values():
        table.add_row(
            info["path"],
            f"{info['capacity']:g}",
            f"{info['refill_per_second']:g}",
            "yes" if info["stream"] else "no",
        )
    console.print(table)
    console.print(f"Active rate limit buckets: {data['limiter']['keys']}")


@cli.command()
@click.argument("subject")
@click.option("--ttl", default=3600, show_default=True, help="Token lifetime in seconds")
@click.pass_context
def token(ctx, subject, ttl):
    """Mint a signed JWT for SUBJECT using the configured secret."""
    config = _load(ctx)
    auth = config.auth
    if auth.mode != "jwt":
        console.print("[red]Token minting needs auth.mode: jwt in the config.[/red]")
        sys.exit(1)
    secret = auth.jwt_secret
    if auth.jwt_secret_file:
        secret = Path(auth.jwt_secret_file).read_text().strip()
    click.echo(issue_token(
        secret,
        subject,
        ttl=ttl,
        algorithm=auth.jwt_algorithms[0],
        audience=auth.jwt_audience,
        issuer=auth.jwt_issuer,
    ))


@cli.command()
@click.option("--token", "bearer", envvar="AIGATE_TOKEN", required=True,
              help="Bearer token to send (or set AIGATE_TOKEN)")
@click.option("--url", default=None, help="Gateway base URL (default: local gateway)")
@click.option("--no-stream", is_flag=True, help="Wait for the full reply instead of streaming")
@click.pass_context
def chat(ctx, bearer, url, no_stream):
    """Interactive chat against /ai/chat."""
    if url is None:
        config = _load(ctx)
        url = f"http://127.0.0.1:{config.port}"
    endpoint = f"{url.rstrip('/')}/ai/chat"
    headers = {"Authorization": f"Bearer {bearer}"}

    console.print(f"\n[bold]Chatting via[/bold] {endpoint}")
    console.print("[dim]Type your message and press Enter. Ctrl+C to quit.[/dim]\n")
    messages: list[dict] = []
    with httpx.Client(timeout=120.0, headers=headers) as client:
        while True:
            try:
                user_input = console.input("[bold green]You:[/bold green] ")
            except (KeyboardInterrupt, EOFError):
                console.print("\n[dim]Goodbye.[/dim]")
                break
            if not user_input.strip():
                continue
            messages.append({"role": "user", "content": user_input})
            body = {"messages": messages, "stream": not no_stream}
            try:
                text = _send_chat(client, endpoint, body)
                messages.append({"role": "assistant", "content": text})
            except KeyboardInterrupt:
                console.print("\n[dim]Interrupted.[/dim]\n")
                messages.pop()
            except Exception as e:
                console.print(f"\n[red]Error: {e}[/red]\n")
                messages.pop()


def _send_chat(client: httpx.Client, endpoint: str, body: dict) -> str:
    if not body["stream"]:
        resp = client.post(endpoint, json=body)
        resp.raise_for_status()
        text = resp.json()["message"]["content"]
        console.print(f"[bold cyan]AI:[/bold cyan] {text}\n")
        return text

    parts: list[str] = []
    console.print("[bold cyan]AI:[/bold cyan] ", end="")
    with client.stream("POST", endpoint, json=body) as resp:
        resp.raise_for_status()
        for line in resp.iter_lines():
            if not line.strip():
                continue
            chunk = json.loads(line)
            if "delta" in chunk:
                parts.append(chunk["delta"])
                console.print(chunk["delta"], end="", markup=False, highlight=False)
            elif "error" in chunk:
                raise RuntimeError(chunk["error"])
    console.print("\n")
    return "".join(parts)
