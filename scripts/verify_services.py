#!/usr/bin/env python3
"""Live service verification script — run against real Redis and Firecrawl.

Usage:
  1. Fill in FIRECRAWL_API_KEY and REDIS_URL in .env
  2. Run: python scripts/verify_services.py [job_id]

Steps:
  Step 1: Verify .env configuration
  Step 2: Redis round trip through the tiered cache (compressed + plain)
  Step 3: Distributed lock acquire / release
  Step 4: Firecrawl job status (only when a job id is given)
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def step_header(n: int, title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  Step {n}: {title}")
    print(f"{'='*60}\n")


def ok(msg: str) -> None:
    print(f"  ✅ {msg}")


def fail(msg: str) -> None:
    print(f"  ❌ {msg}")


def info(msg: str) -> None:
    print(f"  ℹ️  {msg}")


async def step1_verify_env():
    step_header(1, "Verify .env Configuration")
    from doccrawl.config import settings

    if settings.firecrawl_api_key:
        ok(f"FIRECRAWL_API_KEY: set ({settings.firecrawl_api_key[:6]}...)")
    else:
        fail("FIRECRAWL_API_KEY: NOT SET — remote crawls will be rejected")

    ok(f"Provider URL: {settings.firecrawl_api_url}")
    ok(f"Redis URL: {settings.redis_url}")
    ok(f"Polling: every {settings.poll_interval}s, ceiling {settings.max_polling_time}s")
    return settings.has_provider_key


async def step2_redis_roundtrip(cache):
    step_header(2, "Redis Round Trip")
    if not await cache.connect():
        fail("Redis unreachable — cache will run memory-only")
        return False
    ok("Connected")

    url = "https://docs.example.com/__verify__"
    small, large = "x" * 50, "verify " * 2000
    for label, value in (("plain", small), ("compressed", large)):
        await cache.set(url, value, ttl=60)
        cache.clear_local()
        got = await cache.get(url)
        if got == value:
            ok(f"{label} value round-trips ({len(value)} chars)")
        else:
            fail(f"{label} value mismatch")
            return False
    await cache.delete(url)

    stats = cache.get_stats()
    info(f"Avg Redis latency: {stats['avg_redis_latency_ms']}ms, slow ops: {stats['slow_redis_ops']}")
    return True


async def step3_lock(cache):
    step_header(3, "Distributed Lock")
    from doccrawl.services.lock import DistributedLock

    lock = DistributedLock(cache)
    url = "https://docs.example.com/__verify_lock__"
    token = await lock.acquire(url, ttl=10)
    if not token:
        fail("Could not acquire a fresh lock")
        return False
    ok("Acquired")

    if await lock.acquire(url, ttl=10) is None:
        ok("Second acquire refused")
    else:
        fail("Second acquire succeeded — lock is not exclusive")
        return False

    if await lock.release(url, token):
        ok("Released")
        return True
    fail("Release refused")
    return False


async def step4_provider_status(job_id: str):
    step_header(4, "Firecrawl Job Status")
    from doccrawl.errors import ProviderError
    from doccrawl.integrations.firecrawl import FirecrawlClient

    client = FirecrawlClient()
    info(f"Job: {job_id}")
    try:
        data = await client.get_status(job_id)
    except ProviderError as e:
        fail(f"Provider answered {e.status_code}: {e.message}")
        return False
    ok(f"Status: {data.status} | {data.completed}/{data.total} | credits={data.creditsUsed}")
    if data.data:
        print(f"    - first page: {data.data[0].source_url}")
    return True


async def main():
    print("\n📚 doccrawl Backend — Live Service Verification")
    print("=" * 60)

    from doccrawl.services.cache import TieredCache

    cache = TieredCache()
    results = {}

    results[1] = await step1_verify_env()
    results[2] = await step2_redis_roundtrip(cache)
    results[3] = await step3_lock(cache) if results[2] else False

    job_id = sys.argv[1] if len(sys.argv) > 1 else ""
    if job_id and results[1]:
        results[4] = await step4_provider_status(job_id)
    else:
        info("Skipping provider status check (pass a job id and set FIRECRAWL_API_KEY)")

    await cache.disconnect()

    # Summary
    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    for step_n, passed in sorted(results.items()):
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"  Step {step_n}: {status}")

    total_passed = sum(1 for v in results.values() if v)
    print(f"\n  {total_passed}/{len(results)} steps passed")
    print(f"{'='*60}\n")

    sys.exit(0 if all(results.values()) else 1)


if __name__ == "__main__":
    asyncio.run(main())
