#!/usr/bin/env python3
"""
CLI tool for the Replica Sync Operator
Queries the operator's health API for probe status and reconcile counters
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("SYNCCTL_URL", "http://localhost:8081")


class SyncOperatorCLI:
    """CLI client for the Replica Sync Operator health API"""

    def __init__(self, base_url: str = API_BASE_URL, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def format_stats_table(stats: dict) -> str:
    """Render a stats response as a table of counters."""
    rows = [[name, value] for name, value in sorted(stats["counters"].items())]
    return tabulate(rows, headers=["Counter", "Value"], tablefmt="grid")


@click.group()
@click.option("--url", default=API_BASE_URL, help="Operator health API base URL")
@click.pass_context
def cli(ctx, url):
    """Replica Sync Operator CLI - inspect a running operator"""
    ctx.obj = SyncOperatorCLI(url)


@cli.command()
@click.pass_obj
def health(client):
    """Show liveness and readiness"""
    live = client._make_request("GET", "/healthz")
    ready = client._make_request("GET", "/readyz")

    click.echo(f"Live: {'✓' if live else '✗'}")
    click.echo(f"Ready: {'✓' if ready else '✗'}")

    if not live or not ready:
        raise SystemExit(1)


@cli.command()
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.option("--follow", "-f", is_flag=True, help="Follow counter updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def stats(client, output, follow, interval):
    """Show reconcile outcome counters"""

    def show_stats():
        result = client._make_request("GET", "/api/v1/stats")
        if not result:
            return
        if output == "json":
            click.echo(json.dumps(result, indent=2))
        elif output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            if follow:
                click.clear()
            click.echo(f"Primary kind: {result['primary_kind']}")
            click.echo(f"Namespace: {result.get('namespace') or 'all'}")
            click.echo(f"Ready: {result['ready']}")
            click.echo(format_stats_table(result))

    show_stats()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_stats()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
