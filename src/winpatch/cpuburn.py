"""
CPU load generator

Keeps one or more processor cores busy computing square roots for a
fixed duration, printing throughput at a regular interval.
"""

import math
import time
from collections.abc import Callable
from concurrent.futures import ProcessPoolExecutor
from typing import Annotated, Optional

import typer
from rich.console import Console

# Square roots computed between two clock checks
BATCH = 10_000

# Called with (worker index, seconds elapsed, square roots per second)
Reporter = Callable[[int, float, float], None]

app = typer.Typer(add_completion=False)

console = Console()


def burn(
    duration: float,
    interval: float = 5.0,
    report: Optional[Reporter] = None,
    clock: Callable[[], float] = time.monotonic,
    worker: int = 0,
    batch: int = BATCH,
) -> int:
    """
    Compute square roots until ``duration`` seconds have elapsed.

    :param duration: How long to run, in seconds
    :param interval: Seconds between two throughput reports
    :param report: Callable receiving each throughput report
    :param clock: Monotonic clock, in seconds
    :param worker: Index of this worker, passed through to reports
    :param batch: Square roots computed between two clock checks
    :return: Total number of square roots computed
    :raises ValueError: If ``interval`` is not positive
    """
    if interval <= 0:
        raise ValueError(f"Report interval must be positive, not {interval}")

    start = window_start = clock()
    total = window = 0
    value = 0.0
    acc = 0.0

    while True:
        for _ in range(batch):
            acc += math.sqrt(value)
            value += 1.0

        total += batch
        window += batch
        now = clock()

        if now - window_start >= interval:
            if report is not None:
                report(worker, now - start, window / (now - window_start))
            window_start = now
            window = 0

        if now - start >= duration:
            break

    return total


def print_report(worker: int, elapsed: float, rate: float) -> None:
    console.print(
        f"[cyan]worker {worker}[/cyan] {elapsed:7.1f}s  {rate:>14,.0f} sqrt/s"
    )


def run_worker(worker: int, duration: float, interval: float) -> int:
    """
    Process pool entry point for a single worker.
    """
    return burn(duration, interval, report=print_report, worker=worker)


@app.command()
def cpuburn(
    duration: Annotated[
        float,
        typer.Option("--duration", "-d", min=0, help="Seconds to keep the CPU busy"),
    ] = 60.0,
    interval: Annotated[
        float,
        typer.Option(
            "--interval", "-i", min=0.1, help="Seconds between throughput reports"
        ),
    ] = 5.0,
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", min=1, help="Number of worker processes"),
    ] = 1,
) -> None:
    """
    Generate sustained CPU load by computing square roots.
    """
    console.print(
        f"Burning CPU with [bold]{workers}[/bold] worker(s) for {duration:g}s"
    )
    start = time.monotonic()

    if workers == 1:
        total = run_worker(0, duration, interval)
    else:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(run_worker, i, duration, interval) for i in range(workers)
            ]
            total = sum(future.result() for future in futures)

    elapsed = max(time.monotonic() - start, 1e-9)
    console.print(
        f"[bold]Done:[/bold] {total:,} square roots in {elapsed:.1f}s "
        f"({total / elapsed:,.0f}/s)"
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
