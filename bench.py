import argparse
import asyncio
import os
import random
import sys
import time
from dataclasses import dataclass
from statistics import mean, median
from typing import Dict, List, Optional

import httpx


DEFAULT_URL = "http://localhost:8000/api/layout/pack"

# Typical camera / phone / panorama shapes
ASPECT_CHOICES = [0.5625, 0.6667, 0.75, 1.0, 1.3333, 1.5, 1.7778, 2.5, 3.0]


@dataclass
class RequestResult:
    ok: bool
    status_code: int
    latency_s: float
    row_count: Optional[int]
    error: Optional[str]


def random_items(count: int, pinned_ratio: float, rng: random.Random) -> List[Dict]:
    items: List[Dict] = []
    for i in range(count):
        item = {"id": f"item-{i}", "pinned": rng.random() < pinned_ratio}
        # Mix explicit ratios with raw dimensions, like a real client would send
        if rng.random() < 0.5:
            item["aspect_ratio"] = rng.choice(ASPECT_CHOICES)
        else:
            h = rng.randint(200, 2000)
            item["width"] = int(h * rng.choice(ASPECT_CHOICES))
            item["height"] = h
        items.append(item)
    return items


async def send_request(client: httpx.AsyncClient, url: str, payload: Dict) -> RequestResult:
    start = time.perf_counter()
    try:
        resp = await client.post(url, json=payload, timeout=None)
        latency = time.perf_counter() - start
        row_count: Optional[int] = None
        if resp.headers.get("content-type", "").startswith("application/json"):
            try:
                row_count = resp.json().get("row_count")
            except ValueError:
                pass
        return RequestResult(ok=resp.is_success, status_code=resp.status_code, latency_s=latency, row_count=row_count, error=None if resp.is_success else resp.text)
    except httpx.HTTPError as e:
        latency = time.perf_counter() - start
        return RequestResult(ok=False, status_code=0, latency_s=latency, row_count=None, error=str(e))


async def worker(client: httpx.AsyncClient, url: str, payload_factory, jobs: asyncio.Queue, results: asyncio.Queue):
    while True:
        try:
            _ = await jobs.get()
        except asyncio.CancelledError:
            break
        res = await send_request(client, url, payload_factory())
        await results.put(res)
        jobs.task_done()


def percentile(values: List[float], p: float) -> float:
    if not values:
        return 0.0
    values_sorted = sorted(values)
    k = (len(values_sorted) - 1) * (p / 100.0)
    f = int(k)
    c = min(f + 1, len(values_sorted) - 1)
    if f == c:
        return values_sorted[int(k)]
    d0 = values_sorted[f] * (c - k)
    d1 = values_sorted[c] * (k - f)
    return d0 + d1


def print_summary(latencies: List[float], results: List[RequestResult], wall_s: float):
    total = len(results)
    ok = sum(1 for r in results if r.ok)
    errors = total - ok
    print("=== Benchmark Summary ===")
    print(f"Requests: total={total}, success={ok}, errors={errors}")
    if wall_s > 0:
        print(f"Throughput: {total / wall_s:.2f} req/s")
    if latencies:
        print("Latency (s):")
        print(f"  mean={mean(latencies):.4f}  median={median(latencies):.4f}  p90={percentile(latencies,90):.4f}  p95={percentile(latencies,95):.4f}  p99={percentile(latencies,99):.4f}")
    rows = [r.row_count for r in results if r.row_count is not None]
    if rows:
        print(f"Rows per layout: mean={mean(rows):.1f}  max={max(rows)}")
    first_error = next((r.error for r in results if r.error), None)
    if first_error:
        print(f"First error: {first_error[:200]}")


async def run_benchmark(
    url: str,
    total_requests: int,
    concurrency: int,
    items_per_request: int,
    container_width: float,
    target_row_height: Optional[float],
    gutter: Optional[float],
    snap_last_to_edge: Optional[bool],
    pinned_ratio: float,
    seed: Optional[int],
):
    rng = random.Random(seed)

    def payload_factory() -> Dict:
        payload: Dict = {
            "items": random_items(items_per_request, pinned_ratio, rng),
            "container_width": container_width,
        }
        if target_row_height is not None:
            payload["target_row_height"] = target_row_height
        if gutter is not None:
            payload["gutter"] = gutter
        if snap_last_to_edge is not None:
            payload["snap_last_to_edge"] = snap_last_to_edge
        return payload

    limits = httpx.Limits(max_connections=concurrency, max_keepalive_connections=concurrency)
    async with httpx.AsyncClient(limits=limits, timeout=httpx.Timeout(None)) as client:
        jobs_q: asyncio.Queue = asyncio.Queue()
        results_q: asyncio.Queue = asyncio.Queue()
        for _ in range(total_requests):
            jobs_q.put_nowait(1)

        workers = [asyncio.create_task(worker(client, url, payload_factory, jobs_q, results_q)) for _ in range(concurrency)]

        results: List[RequestResult] = []
        start_wall = time.perf_counter()
        await jobs_q.join()
        wall_elapsed = time.perf_counter() - start_wall

        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        while not results_q.empty():
            results.append(results_q.get_nowait())

    latencies = [r.latency_s for r in results if r.latency_s is not None]
    print_summary(latencies, results, wall_elapsed)


def parse_args(argv: List[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Simple concurrent benchmark for the layout API")
    p.add_argument("--url", default=os.environ.get("BENCH_URL", DEFAULT_URL), help="Pack endpoint URL")
    p.add_argument("--requests", type=int, default=50, help="Total number of requests")
    p.add_argument("--concurrency", type=int, default=5, help="Concurrent workers")
    p.add_argument("--items-per-request", type=int, default=200, help="Number of items per request")
    p.add_argument("--container-width", type=float, default=1200.0)
    p.add_argument("--target-row-height", type=float)
    p.add_argument("--gutter", type=float)
    p.add_argument("--snap-last-to-edge", action="store_true")
    p.add_argument("--no-snap-last-to-edge", dest="snap_last_to_edge", action="store_false")
    p.add_argument("--pinned-ratio", type=float, default=0.05, help="Share of items sent as pinned")
    p.add_argument("--seed", type=int, help="Seed for reproducible item sets")
    p.set_defaults(snap_last_to_edge=None)
    return p.parse_args(argv)


def main(argv: List[str]) -> int:
    args = parse_args(argv)
    if args.items_per_request < 1:
        print("--items-per-request must be >= 1", file=sys.stderr)
        return 2
    if args.container_width <= 0:
        print("--container-width must be > 0", file=sys.stderr)
        return 2
    asyncio.run(
        run_benchmark(
            url=args.url,
            total_requests=args.requests,
            concurrency=args.concurrency,
            items_per_request=args.items_per_request,
            container_width=args.container_width,
            target_row_height=args.target_row_height,
            gutter=args.gutter,
            snap_last_to_edge=args.snap_last_to_edge,
            pinned_ratio=args.pinned_ratio,
            seed=args.seed,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
