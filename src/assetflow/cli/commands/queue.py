"""Processing queue commands for schedulers and operators."""

import json
import logging
from typing import Optional

import click

from assetflow.cli.base import CliCommand
from assetflow.notifications import NotificationDispatcher
from assetflow.processing_queue import ProcessingQueue
from assetflow.settings import settings


@click.command(name="process-queue")
@click.option("--batch-size", default=None, type=int, help="Items to claim this run (default: QUEUE_BATCH_SIZE)")
@click.option("--worker-id", default=None, help="Identifier recorded on claimed items")
def process_queue_command(batch_size: Optional[int], worker_id: Optional[str]):
    """Claim and process one batch of pending queue items, then exit.

    Meant to be run from a scheduler (cron, Cloud Scheduler job); the poll
    interval between runs is the retry backoff."""
    cmd = ProcessQueueCommand(batch_size, worker_id)
    cmd.run()


class ProcessQueueCommand(CliCommand):
    """Process a single batch of the processing queue."""

    def __init__(self, batch_size: Optional[int], worker_id: Optional[str]):
        super().__init__()
        self.batch_size = int(batch_size or settings.queue_batch_size)
        self.worker_id = worker_id

    def run(self):
        from assetflow.worker import process_queue_once

        self.setup_db()
        try:
            outcomes = process_queue_once(
                self.db,
                batch_size=self.batch_size,
                worker_id=self.worker_id,
                notifier=NotificationDispatcher(),
            )
        finally:
            self.cleanup_db()

        if not outcomes:
            click.echo("No pending queue items")
            return
        for outcome in outcomes:
            suffix = f" ({outcome.error})" if outcome.error else ""
            click.echo(f"{outcome.id} {outcome.stage} {outcome.status}{suffix}")
        click.echo(f"Processed {len(outcomes)} item(s)")


@click.command(name="retry-failed")
def retry_failed_command():
    """Reset FAILED items that still have attempts left back to PENDING."""
    cmd = RetryFailedCommand()
    cmd.run()


class RetryFailedCommand(CliCommand):
    def run(self):
        self.setup_db()
        try:
            count = ProcessingQueue(self.db).retry_failed_items()
            self.db.commit()
        finally:
            self.cleanup_db()
        click.echo(f"Retrying {count} failed item(s)")


@click.command(name="queue-stats")
@click.option("--tenant-id", default=None, help="Limit counts to one tenant")
@click.option("--json", "as_json", is_flag=True, help="Print stats as JSON")
def queue_stats_command(tenant_id: Optional[str], as_json: bool):
    """Show processing queue counts by status."""
    cmd = QueueStatsCommand(tenant_id, as_json)
    cmd.run()


class QueueStatsCommand(CliCommand):
    def __init__(self, tenant_id: Optional[str], as_json: bool):
        super().__init__()
        self.tenant_id = tenant_id
        self.as_json = as_json

    def run(self):
        self.setup_db()
        try:
            stats = ProcessingQueue(self.db).queue_stats(tenant_id=self.tenant_id)
        finally:
            self.cleanup_db()

        if self.as_json:
            click.echo(json.dumps(stats, sort_keys=True))
            return
        for key in ("pending", "processing", "completed", "failed", "total"):
            click.echo(f"{key:<11} {stats[key]}")


@click.command(name="worker")
@click.option("--once", is_flag=True, help="Process one batch and exit")
@click.option("--poll-seconds", default=None, type=float, help="Idle wait between polls (default: WORKER_POLL_SECONDS)")
@click.option("--batch-size", default=None, type=int, help="Items to claim per poll (default: QUEUE_BATCH_SIZE)")
def worker_command(once: bool, poll_seconds: Optional[float], batch_size: Optional[int]):
    """Run the queue worker loop in the foreground."""
    from assetflow.worker import run_loop

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_loop(
        once=once,
        poll_seconds=poll_seconds if poll_seconds is not None else settings.worker_poll_seconds,
        batch_size=batch_size or settings.queue_batch_size,
    )
