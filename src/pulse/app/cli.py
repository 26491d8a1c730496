from __future__ import annotations

import argparse
import sys

from pulse.app.runner import send_events
from pulse.features.bucketing.service import bucket


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="pulse")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_bucket = sub.add_parser("bucket", help="Print the 0-99 bucket for an experiment/visitor pair")
    p_bucket.add_argument("experiment")
    p_bucket.add_argument("visitor")
    p_bucket.add_argument("--salt", default=None)

    p_send = sub.add_parser("send", help="Deliver custom events from a JSONL file")
    p_send.add_argument("--config", default="config/pulse.yaml")
    p_send.add_argument("--events", required=True)

    args = parser.parse_args(argv)

    if args.cmd == "bucket":
        print(bucket(args.experiment, args.visitor, args.salt))
        return 0

    if args.cmd == "send":
        result = send_events(args.config, args.events)
        print(
            f"visitor_id={result.visitor_id} session_id={result.session_id} "
            f"events={result.num_events} pending={result.pending_after_flush}"
        )
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
