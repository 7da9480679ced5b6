#!/usr/bin/env python3
"""
Order Worker - leasekeeper Demo Application

Consumes order messages from an in-memory queue. Some orders fail on their
first delivery and are retried once their lease is released.

Run modes:
  python main.py                          # Demo with sample orders
  python main.py --file orders.json       # Load order bodies from JSON
  python main.py --stress --count 500     # Stress test
  python main.py --batch                  # Use a batch handler
"""

import argparse
import asyncio
import json
import logging
import random
import sys
import time
from collections import Counter
from pathlib import Path

from leasekeeper import Consumer, EventKind, InMemoryTransport, Message

logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stderr)

QUEUE_URL = "memory://orders"


def create_sample_orders() -> list[dict]:
    """Create sample order payloads."""
    order_id = random.randint(10000, 99999)
    return [
        {"order_id": order_id, "sku": "BOOK-001", "quantity": 1},
        {"order_id": order_id + 1, "sku": "PEN-042", "quantity": 12},
        {"order_id": order_id + 2, "sku": "MUG-007", "quantity": 2, "flaky": True},
        {"order_id": order_id + 3, "sku": "LAMP-100", "quantity": 1},
        {"order_id": order_id + 4, "sku": "DESK-900", "quantity": 0},
    ]


def create_stress_orders(count: int) -> list[dict]:
    """Generate random orders for stress testing."""
    skus = ["BOOK-001", "PEN-042", "MUG-007", "LAMP-100", "DESK-900"]
    return [
        {
            "order_id": i,
            "sku": random.choice(skus),
            "quantity": random.randint(0, 5),
            "flaky": random.random() < 0.1,
        }
        for i in range(count)
    ]


def load_from_file(filepath: str) -> list[dict]:
    """Load orders from a JSON file (a list, or {"orders": [...]})."""
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {filepath}")
    with open(path) as f:
        data = json.load(f)
    return data if isinstance(data, list) else data.get("orders", [])


class OrderHandler:
    """Validates orders; flaky orders fail on their first delivery."""

    def __init__(self, work_time: float = 0.01):
        self.work_time = work_time
        self.outcomes: Counter[str] = Counter()

    async def handle(self, message: Message) -> None:
        order = json.loads(message.body)
        await asyncio.sleep(self.work_time)

        if order.get("flaky") and message.receive_count == 1:
            self.outcomes["retried"] += 1
            raise ConnectionError(f"inventory service unavailable for order {order['order_id']}")
        if order.get("quantity", 0) <= 0:
            # Invalid orders are acknowledged so they are not redelivered
            self.outcomes["rejected"] += 1
            return None

        self.outcomes["accepted"] += 1
        return None

    async def handle_batch(self, messages: list[Message]) -> list[Message]:
        done = []
        for message in messages:
            try:
                await self.handle(message)
            except ConnectionError:
                continue
            done.append(message)
        return done


async def run_worker(
    orders: list[dict],
    concurrency: int,
    batch: bool,
    verbose: bool = True,
) -> Counter[str]:
    """Run a consumer until every order has been acknowledged."""
    transport = InMemoryTransport(default_visibility_timeout=5)
    transport.create_queue(QUEUE_URL)
    for order in orders:
        await transport.send_message(QUEUE_URL, json.dumps(order))

    handler = OrderHandler()
    options = {
        "queue_url": QUEUE_URL,
        "batch_size": 10,
        "wait_time_seconds": 0.2,
        "terminate_visibility_timeout": True,
        "drain_timeout": 2,
    }
    if batch:
        options["handle_message_batch"] = handler.handle_batch
    else:
        options["handle_message"] = handler.handle
        options["concurrency"] = max(concurrency, 10)

    consumer = Consumer.create(transport, **options)
    counts: Counter[str] = Counter()
    stopping: list[asyncio.Task] = []

    def count(event):
        counts[event.kind.value] += 1
        if event.kind is EventKind.EMPTY and transport.qsize(QUEUE_URL) == 0 and not stopping:
            stopping.append(asyncio.get_running_loop().create_task(consumer.stop()))

    for kind in (EventKind.MESSAGE_PROCESSED, EventKind.PROCESSING_ERROR, EventKind.EMPTY):
        consumer.on(kind, count)

    if verbose:
        print("=" * 60)
        print("ORDER WORKER")
        print("=" * 60)
        print(f"\nProcessing {len(orders)} orders ({'batch' if batch else 'single'} mode)...\n")

    start = time.monotonic()
    await consumer.run()
    elapsed = time.monotonic() - start

    if verbose:
        print("\n" + "=" * 60)
        print("RESULTS")
        print("=" * 60)
        print(f"  Acknowledged: {counts['message_processed']}")
        print(f"  Handler errors: {counts['processing_error']}")
        for outcome, n in sorted(handler.outcomes.items()):
            print(f"  {outcome.capitalize()}: {n}")
        print(f"  Time: {elapsed:.2f}s")
        if elapsed > 0:
            print(f"  Throughput: {counts['message_processed'] / elapsed:.0f} msg/s")

    return handler.outcomes


def main():
    parser = argparse.ArgumentParser(description="leasekeeper order worker demo")
    parser.add_argument("--file", help="JSON file with order payloads")
    parser.add_argument("--stress", action="store_true", help="Run with generated orders")
    parser.add_argument("--count", type=int, default=200, help="Orders for --stress")
    parser.add_argument("--concurrency", type=int, default=10, help="Single-mode concurrency")
    parser.add_argument("--batch", action="store_true", help="Use a batch handler")
    args = parser.parse_args()

    if args.file:
        orders = load_from_file(args.file)
    elif args.stress:
        orders = create_stress_orders(args.count)
    else:
        orders = create_sample_orders()

    asyncio.run(run_worker(orders, args.concurrency, args.batch))


if __name__ == "__main__":
    main()
