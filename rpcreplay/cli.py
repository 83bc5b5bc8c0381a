# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""rpcreplay CLI - inspect replay logs"""

import sys
from collections import Counter
from pathlib import Path

import click

from .config import load_config
from .dump import fprint
from .exceptions import RPCReplayError
from .logger import get_logger
from .replayer import Replayer


@click.group()
@click.version_option(version="1.0.0")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file",
)
@click.pass_context
def cli(ctx, log_level, config_file):
    """rpcreplay - record and replay gRPC traffic.

    Logs are written by a Recorder installed on a live channel and served
    by a Replayer. These commands inspect them.
    """
    config = load_config(config_file)
    level = log_level or config.logging.level
    log_dir = config.logging.log_dir if config.logging.file_output else None
    get_logger("rpcreplay", level=level, log_dir=log_dir)
    ctx.obj = config


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def dump(log_file: Path):
    """Print every entry of LOG_FILE.

    Examples:
        rpcreplay dump session.replay
    """
    try:
        count = fprint(sys.stdout, log_file)
    except RPCReplayError as e:
        click.echo(f"[-] Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"{count} entries")


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def check(config, log_file: Path):
    """Parse LOG_FILE and summarize its calls per method."""
    try:
        replayer = Replayer.from_file(log_file, config=config)
    except RPCReplayError as e:
        click.echo(f"[-] Invalid log: {e}", err=True)
        sys.exit(1)

    per_method = Counter(call.method for call in replayer.calls)
    incomplete = sum(1 for call in replayer.calls if call.response is None)

    click.echo(f"[+] {log_file}: {len(replayer.entries)} entries, {len(replayer.calls)} calls")
    click.echo(f"    initial state: {len(replayer.initial)} bytes")
    for method, count in sorted(per_method.items()):
        click.echo(f"    {method}: {count}")
    if incomplete:
        click.echo(click.style(f"    {incomplete} call(s) without a response", fg="yellow"))


def main():
    cli()


if __name__ == "__main__":
    main()
