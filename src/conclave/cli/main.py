# Copyright (c) Syntropy Systems
"""Main CLI entry point for conclave."""

import typer

from conclave.cli.costs import costs
from conclave.cli.resolve import resolve
from conclave.cli.resume import resume
from conclave.cli.run import run
from conclave.cli.show import show

app = typer.Typer(
    name="conclave",
    help=(
        "Batch orchestration for multi-agent simulations. Run metered jobs "
        "concurrently, keep costs in check, collect the outcomes."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(run)
_ = app.command()(resume)
_ = app.command()(resolve)
_ = app.command()(show)
_ = app.command()(costs)


if __name__ == "__main__":
    app()
