#!/usr/bin/env python3
"""Example: one Copilot account, three client dialects.

Starts the copilotlink proxy in a background thread, then talks to it with raw
httpx the way each kind of client would: an OpenAI chat client, Claude Code
(Anthropic Messages) and a Codex-style Responses client.

Requires a stored GitHub token (run ``copilotlink auth`` once first).

Usage:
    uv run python examples/proxy_client.py
"""

from __future__ import annotations

import json
import threading
import time

import httpx
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

PROXY_HOST = "127.0.0.1"
PROXY_PORT = 8321  # Non-default port to avoid conflicts
BASE_URL = f"http://{PROXY_HOST}:{PROXY_PORT}"
MODEL = "gpt-4.1"


def start_proxy() -> threading.Thread:
    """Start the proxy server in a daemon thread."""
    config = uvicorn.Config(
        "copilotlink.proxy:app",
        host=PROXY_HOST,
        port=PROXY_PORT,
        log_level="warning",
    )
    server = uvicorn.Server(config)

    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    # Startup exchanges the token and loads the catalog, so allow a while
    for _ in range(60):
        try:
            resp = httpx.get(f"{BASE_URL}/health", timeout=2.0)
            if resp.status_code == 200:
                return thread
        except httpx.ConnectError:
            pass
        time.sleep(0.5)

    raise RuntimeError("Proxy server failed to start")


def demo_list_models(client: httpx.Client) -> None:
    console.print("[bold yellow]1. GET /v1/models[/bold yellow]")
    resp = client.get(f"{BASE_URL}/v1/models")
    resp.raise_for_status()
    models = resp.json().get("data", [])

    table = Table(title=f"Available Models ({len(models)} total, showing first 10)")
    table.add_column("Model ID", max_width=40)
    table.add_column("Vendor")
    table.add_column("Capabilities")
    for m in models[:10]:
        table.add_row(m["id"], m.get("owned_by", ""), ", ".join(m.get("capabilities", [])))

    console.print(table)
    console.print()


def demo_chat_completions(client: httpx.Client) -> None:
    console.print("[bold yellow]2. POST /v1/chat/completions[/bold yellow]")
    resp = client.post(
        f"{BASE_URL}/v1/chat/completions",
        json={
            "model": MODEL,
            "messages": [
                {"role": "user", "content": "Explain what a hash table is in 2 sentences."}
            ],
            "max_tokens": 200,
        },
        timeout=60.0,
    )
    resp.raise_for_status()
    data = resp.json()

    usage = data.get("usage", {})
    console.print(f"  Tokens: {usage.get('total_tokens', '?')}")
    content = data["choices"][0]["message"]["content"] or ""
    console.print(Panel(content.strip(), title="Response", border_style="green"))
    console.print()


def demo_messages(client: httpx.Client) -> None:
    """Anthropic Messages with a tool, as Claude Code sends it."""
    console.print("[bold yellow]3. POST /v1/messages (tool use)[/bold yellow]")
    resp = client.post(
        f"{BASE_URL}/v1/messages",
        json={
            "model": MODEL,
            "max_tokens": 300,
            "system": "Use the tool when asked about weather.",
            "messages": [{"role": "user", "content": "What's the weather in Oslo?"}],
            "tools": [
                {
                    "name": "get_weather",
                    "description": "Current weather for a city",
                    "input_schema": {
                        "type": "object",
                        "properties": {"city": {"type": "string"}},
                        "required": ["city"],
                    },
                }
            ],
        },
        timeout=60.0,
    )
    resp.raise_for_status()
    data = resp.json()

    console.print(f"  stop_reason: [bold]{data['stop_reason']}[/bold]")
    for block in data["content"]:
        if block["type"] == "tool_use":
            console.print(f"  tool_use: {block['name']}({json.dumps(block['input'])})")
        else:
            console.print(Panel(block["text"].strip(), title="Text", border_style="green"))
    console.print()


def demo_responses_stream(client: httpx.Client) -> None:
    """Streamed Responses API call, printing event names and text deltas."""
    console.print("[bold yellow]4. POST /v1/responses (streaming)[/bold yellow]")
    events: list[str] = []
    text = ""
    with client.stream(
        "POST",
        f"{BASE_URL}/v1/responses",
        json={"model": MODEL, "input": "Name three prime numbers.", "stream": True},
        timeout=60.0,
    ) as resp:
        resp.raise_for_status()
        for line in resp.iter_lines():
            if line.startswith("event: "):
                events.append(line[7:])
            elif line.startswith("data: "):
                payload = json.loads(line[6:])
                if payload.get("type") == "response.output_text.delta":
                    text += payload["delta"]

    console.print(f"  {len(events)} events, last: [bold]{events[-1] if events else '-'}[/bold]")
    console.print(Panel(text.strip(), title="Streamed text", border_style="green"))


def main() -> None:
    console.print("\n[bold cyan]copilotlink: multi-dialect proxy demo[/bold cyan]\n")

    console.print(f"Starting proxy at {BASE_URL}...", end=" ")
    start_proxy()
    console.print("[green]ready![/green]\n")

    with httpx.Client() as client:
        demo_list_models(client)
        demo_chat_completions(client)
        demo_messages(client)
        demo_responses_stream(client)

    console.print("\n[dim]Proxy runs in a daemon thread and exits with this process.[/dim]\n")


if __name__ == "__main__":
    main()
