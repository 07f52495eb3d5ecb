#!/usr/bin/env python3
"""
Tackle Tarts load client (async)

Plays the buyer flow against a running server, many buyers at once on the
same competition:
  1) POST /api/competitions/{id}/checkout  (email, qty) -> {order_id, redirect_url}
  2) Extract psid from redirect_url (/mockpay/{psid})
  3) POST /mockpay/{psid}/emit  (t=succeeded|failed|canceled)
  4) Poll GET /api/orders/{order_id} until status != created (or timeout)

Afterwards it checks that no ticket number was handed out twice and prints an
aggregate report.

Usage:
  tackletarts-load --base http://localhost:8000 --competition 1 \
                   --total 200 --concurrency 50 --qty 3

Notes:
- This targets the MockPay flow.
- Keep server workers=1 with SQLite, or use LOCK_BACKEND=redis with postgres.
"""

import asyncio
import logging
import random
import string
import time
import argparse
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx

from .logging_config import configure_logging

logger = logging.getLogger("tackletarts.load")

DONE = ("fulfilled", "failed", "canceled")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    qty: int
    outcome: str  # fulfilled/failed/canceled/timeout/rejected/error
    numbers: List[int] = field(default_factory=list)
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until a final status was observed
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def duplicates(self) -> List[int]:
        seen = Counter(n for r in self.results for n in r.numbers)
        return sorted(n for n, c in seen.items() if c > 1)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results if r.outcome in DONE]
        lat = [r.t_observed for r in done if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]

        by_outcome = Counter(r.outcome for r in self.results)
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "fulfilled": by_outcome["fulfilled"],
            "failed": by_outcome["failed"],
            "canceled": by_outcome["canceled"],
            "timeout": by_outcome["timeout"],
            "rejected": by_outcome["rejected"],
            "error": by_outcome["error"],
            "tickets": sum(len(r.numbers) for r in self.results),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def report(self, elapsed_s: float):
        s = self.summary()
        logger.info("=== Load Summary ===")
        logger.info(
            "Total: %d   OK: %d   FULFILLED: %d   FAILED: %d   "
            "CANCELED: %d   TIMEOUT: %d   REJECTED: %d   ERROR: %d",
            s["total"], s["ok"], s["fulfilled"], s["failed"],
            s["canceled"], s["timeout"], s["rejected"], s["error"],
        )
        logger.info(
            "Latency (observed order resolution): avg %.3fs   p50 %.3fs   "
            "p90 %.3fs   p99 %.3fs",
            s["avg_s"], s["p50_s"], s["p90_s"], s["p99_s"],
        )
        logger.info(
            "Tickets issued: %d   Wall time: %.3fs   Throughput: %.1f ops/s",
            s["tickets"], elapsed_s, s["total"] / elapsed_s,
        )
        dups = self.duplicates()
        if dups:
            logger.error("duplicate ticket numbers: %s", dups[:20])


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    competition_id: int,
    qty: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, qty=qty, outcome="error")
    email = _rand_email()

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/competitions/{competition_id}/checkout",
            json={"customer_email": email, "qty": qty},
            timeout=30.0,
        )
        if resp.status_code == 409:
            # sold out or closed before we got here
            r.ok = True
            r.outcome = "rejected"
            return r
        resp.raise_for_status()
        j = resp.json()
        order_id = j["order_id"]
        redirect_url = j["redirect_url"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) extract psid
    # redirect_url is like "/mockpay/{psid}"
    parts = redirect_url.strip("/").split("/")
    psid = parts[1] if len(parts) >= 2 else None
    if not psid:
        r.err = f"bad redirect_url: {redirect_url}"
        return r

    # 3) emit outcome (simulate clicking the button on the MockPay page)
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{psid}/emit",
            data={"t": emit_kind},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 4) poll order status until final or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "created"
    jo: Dict = {}
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}", timeout=10.0)
            if g.status_code != 200:
                await asyncio.sleep(poll_interval_s)
                continue
            jo = g.json()
            status = jo.get("status", status)
            if status in DONE:
                break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    if status in DONE:
        r.outcome = status
        r.numbers = [t["number"] for t in jo.get("tickets", [])]
    else:
        r.outcome = "timeout"
    return r


async def run_load(
    base: str,
    competition_id: int,
    total: int,
    concurrency: int,
    qty: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "TackleTartsLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                # choose outcome
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"

                res = await one_order(
                    client, base, competition_id, qty, emit_kind,
                    poll_interval_s, poll_timeout_s
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="Tackle Tarts load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--competition", type=int, required=True,
                    help="Competition id to buy tickets for")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--qty", type=int, default=1,
                    help="Tickets per order")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as failed")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of orders to mark as canceled")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a final status")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args()

    configure_logging(args.log_level)
    # request lines from httpx drown the summary
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if args.fail_rate + args.cancel_rate > 0.95:
        logger.warning(
            "combined fail+cancel rate is very high; "
            "few orders will be fulfilled."
        )

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        competition_id=args.competition,
        total=args.total,
        concurrency=args.concurrency,
        qty=args.qty,
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.report(elapsed)


if __name__ == "__main__":
    main()
