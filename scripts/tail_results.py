#!/usr/bin/env python3
"""
Print processed results from the result channel.

Pub/sub is fire-and-forget: only results published while this script is
subscribed are shown.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import get_settings  # noqa: E402
from src.storage.redis_client import create_redis  # noqa: E402
from src.streaming.producer import deserialize_message  # noqa: E402
from src.streaming.records import ProcessedResult  # noqa: E402


def format_result(result: ProcessedResult) -> str:
    moving = "moving" if result.is_moving else "still "
    latency = (
        f"{result.processing_latency_ms:7.2f}ms"
        if result.processing_latency_ms is not None
        else "      -  "
    )
    return (
        f"{result.sensor_id:<24} {result.timestamp_ms:>14} "
        f"({result.smoothed_lat:.6f}, {result.smoothed_lon:.6f}) "
        f"v={result.instant_velocity:7.2f} m/s avg={result.smoothed_velocity:7.2f} m/s "
        f"{moving} {latency}"
    )


async def tail(channel: str, sensors: set[str], limit: int) -> None:
    settings = get_settings()
    redis = create_redis(settings.redis)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    print(f"Subscribed to {channel}" + (f" (sensors: {', '.join(sorted(sensors))})" if sensors else ""))

    shown = 0
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            result = ProcessedResult.from_dict(deserialize_message(message["data"]))
            if sensors and result.sensor_id not in sensors:
                continue
            print(format_result(result))
            shown += 1
            if limit and shown >= limit:
                break
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await redis.aclose()


def main():
    """Main function."""
    parser = argparse.ArgumentParser(description="Tail processed GPS results")
    parser.add_argument("--channel", type=str, default=None, help="Channel (default: STREAM_RESULT_CHANNEL)")
    parser.add_argument("--sensor", action="append", default=[], help="Only show this sensor (repeatable)")
    parser.add_argument("--limit", type=int, default=0, help="Exit after N results (0 = never)")
    args = parser.parse_args()

    channel = args.channel or get_settings().streams.result_channel
    try:
        asyncio.run(tail(channel, set(args.sensor), args.limit))
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
