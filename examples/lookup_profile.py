"""
lookup_profile.py: Read one profile through the freshness cache.

Looks the profile up twice: the first call fetches from GitHub, the second
is served from the cache with tier ``fresh``.

Usage:
    python examples/lookup_profile.py octocat
"""

import sys

from ghpulse import GhPulseSettings, build_runtime


async def main(username: str) -> None:
    runtime = build_runtime(GhPulseSettings.from_env())
    try:
        for _ in range(2):
            result = await runtime.cache.get_or_refresh(username)
            print(result.tier, result.data.get("name"), result.data.get("followers"))
        snapshot = await runtime.limiter.snapshot()
        print("rate limit remaining:", snapshot.remaining)
    finally:
        await runtime.aclose()


if __name__ == "__main__":
    import asyncio

    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "octocat"))
