"""Main application - wires the retry queue together and exposes the operator CLI."""
import json
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Tuple

import click

from calendar_retry import settings
from calendar_retry.calendar_client import CalendarClient
from calendar_retry.errors import ConfigError
from calendar_retry.executor import CalendarOperationExecutor
from calendar_retry.linker import PropertyResultLinker
from calendar_retry.logging_conf import logger
from calendar_retry.notifier import EmailNotifier, LogNotifier
from calendar_retry.queue.models import ItemStatus, QueueItem
from calendar_retry.queue.processor import QueueProcessor
from calendar_retry.queue.spool_store import SpoolStore
from calendar_retry.state import StateFile
from calendar_retry.trigger import ThreadTrigger


def build_storage():
    """Return ``(queue store, property store)`` for the configured backend."""
    if settings.QUEUE_BACKEND == "postgres":
        from calendar_retry.db import Database

        db = Database()
        db.ensure_schema()
        return db, db
    return SpoolStore(), StateFile()


def build_processor(store=None, properties=None, trigger=None) -> QueueProcessor:
    if store is None or properties is None:
        store, properties = build_storage()

    force_failure = settings.RETRY_QUEUE_TEST_MODE and settings.RETRY_QUEUE_FORCE_FAILURE
    executor = CalendarOperationExecutor(CalendarClient(), force_failure=force_failure)
    notifier = EmailNotifier() if settings.SMTP_HOST else LogNotifier()
    trigger = trigger or ThreadTrigger()

    processor = QueueProcessor(
        store=store,
        executor=executor,
        notifier=notifier,
        trigger=trigger,
        properties=properties,
        on_created=PropertyResultLinker(properties),
    )
    trigger.register(processor.callback_name, processor.process_queue)
    return processor


def migrate_records(records: Iterable[dict], store) -> Tuple[int, int]:
    """Copy legacy queue records into ``store``; returns ``(migrated, skipped)``."""
    existing = {item.id for item in store.load_all()}
    migrated = skipped = 0

    for record in records:
        try:
            item = QueueItem.from_dict(record)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Skipping unreadable legacy record: {e}")
            skipped += 1
            continue

        if item.id in existing:
            logger.info(f"Item {item.id} already present, skipping")
            skipped += 1
            continue

        # Legacy records carry no status; infer it from the retry state
        if "status" not in record and item.attempt_count > 0:
            item = replace(item, status=ItemStatus.FAILED)
        if item.next_retry_at is None and item.status is not ItemStatus.ABANDONED:
            item = replace(item, next_retry_at=item.enqueued_at)

        store.append(item)
        existing.add(item.id)
        migrated += 1

    return migrated, skipped


class Application:
    """Long-running process hosting the periodic trigger."""

    def __init__(self, processor: QueueProcessor):
        self.processor = processor
        self.running = False
        self._wake = threading.Event()

    def start(self):
        """Start the application."""
        logger.info("=" * 50)
        logger.info("Calendar Retry Queue")
        logger.info("=" * 50)
        logger.info(f"Backend: {settings.QUEUE_BACKEND}")
        logger.info(f"Trigger interval: {self.processor.interval_minutes} min")
        logger.info("=" * 50)

        self.running = True
        self._ensure_trigger_for_pending_work()

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self._wake.set()
        self.processor.trigger.remove_if_exists()
        logger.info("Stopped")

    def run(self):
        """Main loop: keep a trigger alive whenever the queue holds work."""
        self.start()
        while self.running:
            self._wake.wait(self.processor.interval_minutes * 60)
            if not self.running:
                break
            try:
                self._ensure_trigger_for_pending_work()
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)

    def _ensure_trigger_for_pending_work(self):
        # Items enqueued by another process, or left over from before a restart
        if self.processor.store.load_all():
            self.processor.trigger.ensure_exists(
                self.processor.callback_name, self.processor.interval_minutes
            )


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
def cli():
    """Durable retry queue for ride calendar operations."""


def _processor(ctx) -> QueueProcessor:
    if ctx.obj is None:
        ctx.obj = build_processor()
    return ctx.obj


@cli.command()
@click.pass_context
def run(ctx):
    """Run the queue processor until interrupted."""
    try:
        settings.validate_config()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    app = Application(_processor(ctx))

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        app.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    app.run()


@cli.command()
@click.pass_context
def process(ctx):
    """Run a single processing pass now."""
    _echo_json(_processor(ctx).process_queue().to_dict())


@cli.command()
@click.pass_context
def status(ctx):
    """Show queue statistics and items."""
    _echo_json(_processor(ctx).get_status())


@cli.command()
@click.argument("source", type=click.File("r"))
@click.pass_context
def enqueue(ctx, source):
    """Enqueue an operation read as JSON from SOURCE ('-' for stdin).

    This only records the operation. The timer started here dies with this
    process; the `run` service notices pending work on its own check, up to
    twice TRIGGER_INTERVAL_MINUTES later. Use `process` to attempt it now.
    """
    try:
        operation = json.load(source)
        if not isinstance(operation, dict):
            raise ValueError("expected a JSON object")
        item_id = _processor(ctx).enqueue(operation)
    except ValueError as e:
        raise click.ClickException(f"Invalid operation: {e}")
    click.echo(item_id)


@cli.command()
@click.argument("key")
@click.option("--field", "match_field", default=None,
              help="Match KEY against this params field (e.g. eventId) instead of the correlation key.")
@click.pass_context
def cancel(ctx, key, match_field):
    """Remove a queued operation that is no longer wanted."""
    removed = _processor(ctx).remove_by_correlation_key(key, match_field=match_field)
    click.echo("removed" if removed else "not found")


@cli.command()
@click.argument("item_id")
@click.pass_context
def requeue(ctx, item_id):
    """Retry an abandoned item with a fresh backoff window."""
    new_id = _processor(ctx).requeue_abandoned(item_id)
    if new_id is None:
        raise click.ClickException(f"{item_id} is not an abandoned item")
    click.echo(new_id)


@cli.command()
@click.option("--yes", is_flag=True, help="Confirm dropping every queued item.")
@click.pass_context
def clear(ctx, yes):
    """Empty the queue and stop the trigger."""
    if not yes:
        raise click.ClickException("Refusing to clear the queue without --yes")
    _processor(ctx).clear_queue()
    click.echo("cleared")


@cli.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def migrate(ctx, source):
    """Import a legacy JSON array of queue items into the configured store.

    Imported items are attempted by the `run` service or by `process`.
    """
    try:
        records = json.loads(source.read_text())
    except ValueError as e:
        raise click.ClickException(f"{source} is not valid JSON: {e}")
    if not isinstance(records, list):
        raise click.ClickException(f"{source} must contain a JSON array of queue items")

    processor = _processor(ctx)
    migrated, skipped = migrate_records(records, processor.store)
    if migrated:
        processor.trigger.ensure_exists(processor.callback_name, processor.interval_minutes)
    _echo_json({"migrated": migrated, "skipped": skipped})


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
