"""AssetFlow CLI entry point with lazy command registration."""

from __future__ import annotations

import click

_COMMANDS_REGISTERED = False


def _register_commands_once() -> None:
    global _COMMANDS_REGISTERED
    if _COMMANDS_REGISTERED:
        return

    from .commands import queue

    cli.add_command(queue.process_queue_command, name="process-queue")
    cli.add_command(queue.retry_failed_command, name="retry-failed")
    cli.add_command(queue.queue_stats_command, name="queue-stats")
    cli.add_command(queue.worker_command, name="worker")

    _COMMANDS_REGISTERED = True


class _LazyCLIGroup(click.Group):
    def list_commands(self, ctx):
        _register_commands_once()
        return super().list_commands(ctx)

    def get_command(self, ctx, cmd_name):
        _register_commands_once()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_LazyCLIGroup)
def cli():
    """AssetFlow CLI for scheduled queue processing and maintenance."""
    pass


if __name__ == "__main__":
    cli()
