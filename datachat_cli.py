import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _error_text(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return resp.text
    if isinstance(detail, dict):
        return detail.get("message") or json.dumps(detail)
    return str(detail)


def run_ingest(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"channelUrl": args.channel, "maxVideos": args.max_videos}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/youtube/channel"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Ingestion failed: HTTP {resp.status_code} {_error_text(resp)}")
            return 1
        data = resp.json()
    print(f"Fetched {data.get('videoCount', 0)} videos -> {data.get('fileName')}")
    if args.output:
        Path(args.output).write_text(json.dumps(data.get("data") or {}, indent=2), encoding="utf-8")
        print(f"Saved to {args.output}")
    return 0


def run_sessions(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/sessions"), params={"owner": args.owner}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list sessions: HTTP {resp.status_code}")
            return 1
        sessions = resp.json().get("sessions") or []
    if not sessions:
        print("No sessions.")
        return 0
    for s in sessions:
        print(f"{s.get('id')}  {s.get('message_count', 0):>4} msgs  {s.get('title') or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Datachat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ingest = subparsers.add_parser("ingest", help="Download a YouTube channel catalog")
    ingest.add_argument("channel", help="Channel URL or @handle")
    ingest.add_argument("--max-videos", type=int, default=10, help="Number of videos (1-100)")
    ingest.add_argument("--output", help="Also write the dataset JSON to this path")
    ingest.add_argument("--timeout", type=int, default=600, help="Request timeout seconds")

    sessions = subparsers.add_parser("sessions", help="List stored sessions")
    sessions.add_argument("owner", help="Session owner")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ingest":
        return run_ingest(args)
    if args.command == "sessions":
        return run_sessions(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
