#!/usr/bin/env python3
"""Download map tiles for a bounding box into the local offline store.

Example:
  trakke-download --north 60.0 --south 59.9 --east 10.8 --west 10.7 --zoom-min 10 --zoom-max 14 --name Oslo

Progress is printed on a single line; Ctrl-C stops after the current batch.
Tiles already written are kept, so running the same command again fills gaps.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import List, Optional

from trakke.backend.config import OfflineConfig, RetryPolicy, Settings
from trakke.backend.errors import AreaTooLarge, DownloadCancelled, InvalidArea, StoreError
from trakke.backend.models import Bounds, DownloadArea, DownloadProgress, ZoomRange, new_id
from trakke.backend.offline_maps import OfflineMapService
from trakke.backend.store import StoreManager


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="trakke-download", description="Download map tiles for offline use")

    p.add_argument("--north", type=float, required=True)
    p.add_argument("--south", type=float, required=True)
    p.add_argument("--east", type=float, required=True)
    p.add_argument("--west", type=float, required=True)
    p.add_argument("--zoom-min", type=int, required=True)
    p.add_argument("--zoom-max", type=int, required=True)
    p.add_argument("--name", default="Area")

    p.add_argument("--db", default=None, help="SQLite store path (default: $TRAKKE_DB or cache/trakke.sqlite)")

    # Overrides for OfflineConfig; unset means environment / built-in default
    p.add_argument("--batch-size", type=int, default=None, help="Tiles fetched concurrently per batch")
    p.add_argument("--batch-delay-s", type=float, default=None, help="Pause between batches")
    p.add_argument("--retries", type=int, default=None, help="Retries per tile on network errors and 429/5xx")

    p.add_argument("--estimate-only", action="store_true", help="Print the tile estimate and exit")
    p.add_argument("-v", "--verbose", action="store_true")

    return p.parse_args(argv)


def build_config(args: argparse.Namespace, base: OfflineConfig) -> OfflineConfig:
    retry = RetryPolicy.ladder(args.retries) if args.retries is not None else None
    return base.with_overrides(batch_size=args.batch_size, batch_delay_s=args.batch_delay_s, retry=retry)


class ProgressLine:
    """Single-line live progress on stdout."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.last_len = 0

    def __call__(self, p: DownloadProgress) -> None:
        msg = (
            f"Progress: {p.completed_tiles}/{p.total_tiles} ({p.percentage:3d}%) "
            f"ok={p.downloaded_tiles} err={p.failed_tiles} size={p.current_size / 1e6:.1f}MB"
        )
        pad = max(0, self.last_len - len(msg))
        self.out.write("\r" + msg + (" " * pad))
        self.out.flush()
        self.last_len = len(msg)

    def finish(self) -> None:
        if self.last_len:
            self.out.write("\n")
            self.out.flush()
            self.last_len = 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='[%(levelname)s] %(message)s',
    )

    settings = Settings.from_env(db_path=args.db)
    try:
        config = build_config(args, settings.offline)
    except ValueError as e:
        print(f"[ERR] {e}", file=sys.stderr)
        return 2

    area = DownloadArea(
        id=new_id("area"),
        name=args.name,
        bounds=Bounds(north=args.north, south=args.south, east=args.east, west=args.west),
        zoom_levels=ZoomRange(min=args.zoom_min, max=args.zoom_max),
    )

    manager = StoreManager(settings.store)
    service = OfflineMapService(manager, config)
    try:
        try:
            est = service.estimate(area)
        except InvalidArea as e:
            print(f"[ERR] {e}", file=sys.stderr)
            return 2

        print(
            json.dumps(
                {
                    **est.to_dict(),
                    "area": area.to_dict(),
                    "db": str(settings.store.db_path),
                    "batch_size": config.batch_size,
                    "batch_delay_s": config.batch_delay_s,
                    "retries": len(config.retry.delays),
                    "started_at": utc_now_iso(),
                },
                indent=2,
            )
        )
        if args.estimate_only:
            return 0
        if est.needs_confirmation and not est.too_large:
            print(f"[WARN] large area: {est.tile_count} tiles (~{est.estimated_size / 1e6:.0f} MB)", file=sys.stderr)

        cancel = threading.Event()

        def _on_sigint(signum, frame) -> None:
            cancel.set()

        previous = signal.signal(signal.SIGINT, _on_sigint)
        line = ProgressLine()
        try:
            done = service.download_area(area, on_progress=line, cancel_event=cancel)
        except AreaTooLarge as e:
            print(f"[ERR] {e}", file=sys.stderr)
            return 2
        except DownloadCancelled as e:
            line.finish()
            p = e.progress
            print(json.dumps({"cancelled": True, "progress": p.to_dict() if p else None, "finished_at": utc_now_iso()}, indent=2))
            return 130
        except StoreError as e:
            line.finish()
            print(f"[ERR] {e}", file=sys.stderr)
            return 1
        finally:
            signal.signal(signal.SIGINT, previous)

        line.finish()
        print(json.dumps({"area": done.to_dict(), "finished_at": utc_now_iso()}, indent=2))
        return 0
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
