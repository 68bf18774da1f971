# scripts/prewarm_texas_cache.py
"""
Prewarm the /stations and /waterways caches for Texas, tile by tile.

Usage:
  python scripts/prewarm_texas_cache.py \
    --base-url http://localhost:8000 \
    --tiles 4 \
    --rpm 6 \
    --concurrency 2

Notes
- The state bounding box is cut into a --tiles x --tiles grid and each tile is
  requested once from /stations and once from /waterways, so later map views
  over the same tiles are served from Redis.
- Requests are sent in per-minute batches of size --rpm; each batch is executed
  concurrently up to --concurrency workers, then the script sleeps until a minute
  has passed before sending the next batch.
- The server does the upstream work (USGS and Overpass) and caches the result;
  this script only drives it.
"""

import argparse
import concurrent.futures as cf
import csv
import time
import datetime as dt
from typing import Dict, List
import requests

TEXAS = {"north": 36.5, "south": 25.8, "east": -93.5, "west": -106.7}
ENDPOINTS = ("stations", "waterways")


def texas_tiles(n: int) -> List[Dict[str, float]]:
    """n x n tiles covering the state, edges rounded to 3 decimals."""
    dlat = (TEXAS["north"] - TEXAS["south"]) / n
    dlon = (TEXAS["east"] - TEXAS["west"]) / n
    tiles = []
    for i in range(n):
        for j in range(n):
            tiles.append({
                "south": round(TEXAS["south"] + i * dlat, 3),
                "north": round(TEXAS["north"] if i == n - 1 else TEXAS["south"] + (i + 1) * dlat, 3),
                "west": round(TEXAS["west"] + j * dlon, 3),
                "east": round(TEXAS["east"] if j == n - 1 else TEXAS["west"] + (j + 1) * dlon, 3),
            })
    return tiles


def prewarm_one(base_url: str, endpoint: str, tile: Dict[str, float], hours: int) -> dict:
    t0 = time.time()
    url = f"{base_url.rstrip('/')}/{endpoint}"
    params = dict(tile)
    if endpoint == "stations":
        params["hours"] = hours
    label = f"{endpoint} S{tile['south']} W{tile['west']} N{tile['north']} E{tile['east']}"
    try:
        resp = requests.get(url, params=params, timeout=300)
        elapsed = time.time() - t0
        ok = resp.status_code == 200
        status = resp.json().get("status") if ok else None
        return {
            "request": label,
            "http_status": resp.status_code,
            "ok": ok and status != "error",
            "cache": resp.headers.get("X-Cache", ""),
            "fetch_status": status,
            "elapsed_s": round(elapsed, 3),
            "error": None if ok else resp.text[:300],
        }
    except (requests.RequestException, ValueError) as e:
        elapsed = time.time() - t0
        return {
            "request": label,
            "http_status": 0,
            "ok": False,
            "cache": "",
            "fetch_status": None,
            "elapsed_s": round(elapsed, 3),
            "error": str(e)[:300],
        }


def run_batches(base_url: str, jobs: List[tuple], rpm: int, concurrency: int, hours: int, dry_run: bool):
    assert rpm >= 1, "rpm must be >= 1"
    assert concurrency >= 1, "concurrency must be >= 1"
    results = []
    batch_size = rpm
    started = dt.datetime.now(dt.timezone.utc)

    print(f"Prewarming {len(jobs)} requests against {base_url} with rpm={rpm}, concurrency={concurrency}, dry_run={dry_run}")
    for i in range(0, len(jobs), batch_size):
        batch = jobs[i:i + batch_size]
        print(f"\nBatch {i // batch_size + 1}: {len(batch)} requests")
        t_batch_start = time.time()
        if dry_run:
            for endpoint, tile in batch:
                print(f"  {endpoint} {tile}")
        else:
            with cf.ThreadPoolExecutor(max_workers=concurrency) as ex:
                futs = [ex.submit(prewarm_one, base_url, endpoint, tile, hours) for endpoint, tile in batch]
                for fut in cf.as_completed(futs):
                    res = fut.result()
                    results.append(res)
                    status = "OK" if res["ok"] else f"ERR({res['http_status']}, {res['fetch_status']})"
                    print(f"  {res['request']}: {status} {res['cache']} in {res['elapsed_s']}s"
                          + (f" - {res['error']}" if res["error"] else ""))

        elapsed = time.time() - t_batch_start
        if i + batch_size < len(jobs) and not dry_run:
            sleep_s = max(0.0, 60.0 - elapsed)
            if sleep_s > 0:
                print(f"Sleeping {sleep_s:.1f}s to respect rpm")
                time.sleep(sleep_s)

    if dry_run:
        return

    finished = dt.datetime.now(dt.timezone.utc)
    stamp = finished.strftime("%Y%m%d_%H%M%S")
    out_path = f"prewarm_texas_log_{stamp}.csv"
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=["request", "http_status", "ok", "cache", "fetch_status", "elapsed_s", "error"])
        w.writeheader()
        w.writerows(sorted(results, key=lambda r: r["request"]))
    ok_count = sum(1 for r in results if r["ok"])
    print(f"\nDone. {ok_count}/{len(results)} successful. Log: {out_path}")
    print(f"Started: {started.isoformat()}  Finished: {finished.isoformat()}")


def main():
    p = argparse.ArgumentParser()
    p.add_argument("--base-url", default="http://localhost:8000", help="Your API base URL")
    p.add_argument("--tiles", type=int, default=4, help="Split Texas into an N x N grid of tiles")
    p.add_argument("--hours", type=int, default=8, help="Reading window for /stations")
    p.add_argument("--rpm", type=int, default=6, help="Requests per minute (total, across all workers)")
    p.add_argument("--concurrency", type=int, default=2, help="Concurrent workers within each minute")
    p.add_argument("--only", choices=ENDPOINTS, help="Warm only one endpoint")
    p.add_argument("--dry-run", action="store_true", help="Print the requests, but do not call the API")
    args = p.parse_args()

    endpoints = [args.only] if args.only else list(ENDPOINTS)
    jobs = [(e, t) for t in texas_tiles(max(1, args.tiles)) for e in endpoints]
    run_batches(args.base_url, jobs, rpm=args.rpm, concurrency=args.concurrency, hours=args.hours, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
