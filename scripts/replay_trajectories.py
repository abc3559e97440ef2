#!/usr/bin/env python3
"""
Replay GPS trajectories into the raw stream.

Sources:
- Geolife .plt files (archive/Geolife Trajectories 1.3/Data/<user>/Trajectory/*.plt)
- A synthetic random walk when no archive is available

Each trajectory becomes one sensor (<user>-<trajectory>). Fixes are sent
with XADD at the dataset's pacing divided by --speed, trajectories in
parallel.
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

import numpy as np
import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import get_settings  # noqa: E402
from src.storage.redis_client import create_redis  # noqa: E402
from src.streaming.producer import StreamProducer  # noqa: E402
from src.utils.logging import get_logger, setup_logging  # noqa: E402

logger = get_logger(__name__)

PLT_COLUMNS = ["lat", "lon", "zero", "altitude", "days", "date", "time"]
PLT_HEADER_LINES = 6


def parse_plt(path: Path) -> pd.DataFrame:
    """
    Parse a Geolife .plt file.

    Returns:
        DataFrame with lat, lon, altitude, timestamp_ms (rows that fail to parse dropped)
    """
    df = pd.read_csv(
        path,
        skiprows=PLT_HEADER_LINES,
        header=None,
        names=PLT_COLUMNS,
        dtype={"date": str, "time": str},
    )
    df["lat"] = pd.to_numeric(df["lat"], errors="coerce")
    df["lon"] = pd.to_numeric(df["lon"], errors="coerce")
    df["altitude"] = pd.to_numeric(df["altitude"], errors="coerce")
    df["timestamp"] = pd.to_datetime(df["date"] + " " + df["time"], errors="coerce", utc=True)
    df = df.dropna(subset=["lat", "lon", "timestamp"]).copy()
    df["altitude"] = df["altitude"].fillna(0.0)
    df["timestamp_ms"] = (df["timestamp"] - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)
    return df[["lat", "lon", "altitude", "timestamp_ms"]].reset_index(drop=True)


def find_data_dir(archive: Path) -> Path:
    geolife = archive / "Geolife Trajectories 1.3" / "Data"
    return geolife if geolife.exists() else archive


def load_trajectories(
    archive: Path,
    users: list[str],
    sensors: list[str],
    min_points: int = 10,
) -> dict[str, pd.DataFrame]:
    """Load trajectories keyed by sensor id, optionally filtered."""
    data_dir = find_data_dir(archive)
    trajectories: dict[str, pd.DataFrame] = {}

    user_dirs = sorted(p for p in data_dir.iterdir() if p.is_dir() and p.name.isdigit())
    if users:
        user_dirs = [p for p in user_dirs if p.name in users]

    for user_dir in user_dirs:
        trajectory_dir = user_dir / "Trajectory"
        if not trajectory_dir.exists():
            logger.warning("No Trajectory folder", user=user_dir.name)
            continue
        for plt in sorted(trajectory_dir.glob("*.plt")):
            if sensors and plt.stem not in sensors:
                continue
            df = parse_plt(plt)
            if len(df) <= min_points:
                logger.info("Skipping short trajectory", trajectory=plt.stem, points=len(df))
                continue
            trajectories[f"{user_dir.name}-{plt.stem}"] = df

    logger.info("Trajectories loaded", count=len(trajectories), data_dir=str(data_dir))
    return trajectories


def synthetic_trajectories(
    sensors: int,
    points: int,
    interval_ms: int = 1000,
    seed: int = 42,
) -> dict[str, pd.DataFrame]:
    """Random walks around a fixed origin, one per sensor."""
    rng = np.random.default_rng(seed)
    start_ms = int(time.time() * 1000)
    trajectories = {}
    for i in range(sensors):
        steps = rng.normal(0.0, 1e-4, size=(points, 2))
        steps[0] = 0.0
        path = np.cumsum(steps, axis=0) + np.array([39.9840, 116.3180])
        trajectories[f"synthetic-{i:03d}"] = pd.DataFrame(
            {
                "lat": path[:, 0],
                "lon": path[:, 1],
                "altitude": 0.0,
                "timestamp_ms": start_ms + np.arange(points) * interval_ms,
            }
        )
    return trajectories


async def replay(
    producer: StreamProducer,
    sensor_id: str,
    df: pd.DataFrame,
    speed: float,
    max_sleep: float,
    live_timestamps: bool,
) -> int:
    """Replay one trajectory; returns the number of fixes sent."""
    previous_ms: int | None = None
    for row in df.itertuples(index=False):
        original_ms = int(row.timestamp_ms)
        if previous_ms is not None and original_ms > previous_ms:
            await asyncio.sleep(min((original_ms - previous_ms) / 1000.0 / speed, max_sleep))
        previous_ms = original_ms

        await producer.send(
            {
                "sensorId": sensor_id,
                "lat": repr(float(row.lat)),
                "lon": repr(float(row.lon)),
                "timestampMs": str(int(time.time() * 1000) if live_timestamps else original_ms),
                "altitude": repr(float(row.altitude)),
                "originalTimestampMs": str(original_ms),
            }
        )
    logger.info("Trajectory replayed", sensor_id=sensor_id, points=len(df))
    return len(df)


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()

    if args.synthetic:
        trajectories = synthetic_trajectories(args.synthetic, args.points, seed=args.seed)
    else:
        archive = Path(args.archive)
        if not archive.exists():
            logger.error("Archive directory not found", archive=str(archive))
            return 1
        trajectories = load_trajectories(archive, args.users, args.sensors, args.min_points)

    if not trajectories:
        logger.error("No trajectories to replay")
        return 1

    redis = create_redis(settings.redis)
    producer = StreamProducer(redis, args.stream or settings.streams.raw_stream)
    try:
        sent = await asyncio.gather(
            *(
                replay(producer, sensor_id, df, args.speed, args.max_sleep, not args.original_timestamps)
                for sensor_id, df in trajectories.items()
            )
        )
    finally:
        await redis.aclose()

    logger.info("Replay finished", trajectories=len(trajectories), fixes=sum(sent))
    return 0


def _id_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def main():
    """Main function."""
    parser = argparse.ArgumentParser(description="Replay GPS trajectories into the raw stream")
    parser.add_argument("--archive", type=str, default="archive", help="Geolife archive directory")
    parser.add_argument("--users", type=_id_list, default=[], help="Comma-separated user ids (e.g. 000,001)")
    parser.add_argument("--sensors", type=_id_list, default=[], help="Comma-separated trajectory ids")
    parser.add_argument("--speed", type=float, default=10.0, help="Replay speed multiplier")
    parser.add_argument("--max-sleep", type=float, default=1.0, help="Cap on the pause between fixes (s)")
    parser.add_argument("--min-points", type=int, default=10, help="Skip trajectories with fewer points")
    parser.add_argument("--stream", type=str, default=None, help="Target stream (default: STREAM_RAW_STREAM)")
    parser.add_argument(
        "--original-timestamps",
        action="store_true",
        help="Send dataset timestamps instead of the current time",
    )
    parser.add_argument("--synthetic", type=int, default=0, help="Generate N synthetic sensors instead")
    parser.add_argument("--points", type=int, default=300, help="Points per synthetic sensor")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for synthetic walks")
    args = parser.parse_args()

    if args.speed <= 0:
        parser.error("--speed must be positive")

    setup_logging(log_format="console")
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
