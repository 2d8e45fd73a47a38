"""Enqueue a burst of messages for one tenant and trigger a delivery sweep.

Handy for watching the per-tenant rate limit defer part of a burst.
"""

import argparse
import asyncio
import time

import httpx


async def run(base_url: str, api_key: str, tenant: str, recipient: str, total: int, concurrency: int, sweep: bool):
    """Send `total` messages with bounded concurrency, then optionally sweep."""

    headers = {"x-api-key": api_key, "x-tenant-id": tenant}
    sem = asyncio.Semaphore(concurrency)
    started = time.perf_counter()

    async with httpx.AsyncClient(base_url=base_url, timeout=10.0, headers=headers) as client:
        async def one(i: int) -> int:
            async with sem:
                resp = await client.post("/send", json={"recipient": recipient, "body": f"burst message {i + 1}"})
                return resp.status_code

        codes = await asyncio.gather(*(one(i) for i in range(total)))
        accepted = sum(1 for code in codes if code == 200)
        print(f"enqueued={accepted}/{total} elapsed_s={time.perf_counter() - started:.2f}")

        if sweep:
            resp = await client.post("/process-queue", json={}, timeout=300.0)
            resp.raise_for_status()
            print(f"sweep={resp.json()}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Enqueue a burst of WhatsApp messages for one tenant.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--recipient", required=True)
    parser.add_argument("--total", type=int, default=15)
    parser.add_argument("--concurrency", type=int, default=5)
    parser.add_argument("--no-sweep", action="store_true", help="Only enqueue; leave delivery to the background loop")
    args = parser.parse_args()
    asyncio.run(
        run(args.base_url, args.api_key, args.tenant, args.recipient, args.total, args.concurrency, not args.no_sweep)
    )
