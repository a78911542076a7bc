# Copyright (c) Syntropy Systems
"""conclave resolve command."""
from __future__ import annotations

import typer
from rich.markup import escape
from rich.table import Table

from conclave.address import resolve as resolve_address
from conclave.cli.output import console
from conclave.errors import AddressError


def resolve(
    specs: list[str] = typer.Argument(
        ...,
        help="Backend addresses, e.g. openai:gpt-4o or ollama:qwen2.5:7b@http://host:11434",
    ),
) -> None:
    """Show how backend addresses resolve.

    API keys are never printed; a set key shows as its fingerprint in the
    canonical form.
    """
    table = Table(show_header=True, header_style="bold")
    table.add_column("Address")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Base URL")
    table.add_column("Key")
    table.add_column("Canonical", style="dim")

    failed = False
    for spec in specs:
        try:
            address = resolve_address(spec)
        except AddressError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            failed = True
            continue
        shown = spec.split("#", 1)[0] + ("#***" if "#" in spec else "")
        table.add_row(
            shown,
            address.provider.value,
            address.model,
            address.base_url or "-",
            "set" if address.api_key is not None else "-",
            address.canonical,
        )

    if table.row_count:
        console.print(table)
    if failed:
        raise typer.Exit(1)
