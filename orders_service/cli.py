"""Operator CLI: run workers outside the API process and inspect dead letters."""

import json
import os
import signal
import threading
from typing import Optional

import typer

from orders_service.config import WORKER_SETTINGS
from orders_service.database import Base, SessionLocal, engine
from orders_service.jobs.worker_orders import OrderWorkerPool, create_queue
from orders_service.services.order_store import OrderStore
from orders_service.utils import setup_logging

app = typer.Typer(help="Order pipeline operations.")


def _build_pool(concurrency: Optional[int], batch_size: Optional[int]) -> OrderWorkerPool:
    Base.metadata.create_all(bind=engine)
    return OrderWorkerPool(
        create_queue(),
        OrderStore(SessionLocal),
        concurrency=concurrency,
        batch_size=batch_size,
    )


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Consumer threads (default from settings)."),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Messages per batch (default from settings)."),
) -> None:
    """
    Consume the order queue until interrupted.
    """
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE") or None)
    pool = _build_pool(concurrency, batch_size)
    stopped = threading.Event()

    def _stop(signum, frame):  # noqa: ARG001
        stopped.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    typer.echo(
        f"Worker pool running (concurrency={pool.concurrency} batch={pool.batch_size} "
        f"poison_policy={WORKER_SETTINGS['poison_message_policy']} mode={WORKER_SETTINGS['batch_failure_mode']})."
    )
    pool.start()
    stopped.wait()
    pool.stop()
    pool.join(timeout=10.0)
    pool.queue.shutdown()


@app.command()
def drain(
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Messages per batch (default from settings)."),
) -> None:
    """
    Process every currently visible message once, then exit.
    """
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    pool = _build_pool(1, batch_size)
    results = pool.drain()
    created = sum(r.count("created") for r in results)
    duplicates = sum(r.count("duplicate") for r in results)
    poison = sum(r.count("poison") for r in results)
    typer.echo(f"batches={len(results)} created={created} duplicates={duplicates} poison={poison}")


@app.command("dead-letters")
def dead_letters(
    as_json: bool = typer.Option(False, "--json", help="Print raw messages as JSON lines."),
) -> None:
    """
    List messages that exhausted their delivery attempts.
    """
    queue = create_queue()
    messages = queue.dead_letters()
    if as_json:
        for message in messages:
            typer.echo(json.dumps({
                "messageId": message.message_id,
                "attributes": message.attributes,
                "receiveCount": message.receive_count,
                "body": message.body,
            }))
        return
    typer.echo(f"{len(messages)} dead letter(s)")
    for message in messages:
        typer.echo(
            f"- {message.message_id} orderId={message.attributes.get('OrderId', '?')} "
            f"correlationId={message.attributes.get('CorrelationId', '?')} receives={message.receive_count}"
        )


@app.command()
def redrive() -> None:
    """
    Move every dead letter back onto the live queue.
    """
    moved = create_queue().redrive_dead_letters()
    typer.echo(f"Redrove {moved} message(s)")


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
