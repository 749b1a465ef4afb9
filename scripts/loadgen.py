import argparse
import time
from collections import Counter
from typing import Dict, List

import requests

DEFAULT_URL = "http://localhost:8000"


def submit_refreshes(base_url: str, n: int, requester_id: str, repeat: int) -> List[Dict]:
    handles: List[Dict] = []
    for i in range(n):
        for _ in range(repeat):
            r = requests.post(
                f"{base_url}/analytics/refresh",
                json={"requester_id": requester_id, "subject_key": f"loadgen-user-{i}"},
                timeout=10,
            )
            r.raise_for_status()
            handles.append(r.json())
    return handles


def summarize(handles: List[Dict]) -> Dict[str, int]:
    counts: Counter = Counter()
    for h in handles:
        counts[h["mode"]] += 1
        counts["created" if h["created"] else "deduplicated"] += 1
    return dict(counts)


def main():
    ap = argparse.ArgumentParser(description="Fire refresh requests at the analytics API")
    ap.add_argument("--url", default=DEFAULT_URL)
    ap.add_argument("--n", type=int, default=100, help="distinct subjects")
    ap.add_argument("--repeat", type=int, default=2, help="submissions per subject (exercises dedup)")
    ap.add_argument("--requester", default="loadgen")
    args = ap.parse_args()

    t0 = time.time()
    handles = submit_refreshes(args.url, args.n, args.requester, args.repeat)
    dt = max(1e-9, time.time() - t0)
    health = requests.get(f"{args.url}/healthz", timeout=10).json()

    print("=== LOADGEN RESULTS ===")
    print(f"submissions: {len(handles)}")
    print(f"wall_time_s: {dt:.2f}")
    print(f"throughput_req_per_s: {len(handles) / dt:.2f}")
    print(f"broker: {health['broker']}")
    print(summarize(handles))


if __name__ == "__main__":
    main()
