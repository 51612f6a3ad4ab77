"""Local deterministic agent for CLI capability integration tests."""

from __future__ import annotations

import argparse
import re
import sys
import time
from pathlib import Path

_ISSUE_RE = re.compile(r"issue #(\d+)", re.IGNORECASE)


def main(argv: list[str] | None = None) -> int:
    """Print a canned triage analysis for the issue named in the prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--should-close", default="No")
    parser.add_argument("--labels", default="bug")
    parser.add_argument("--confidence", default="High")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", default=None, help="Exit 1 with this stderr message.")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.sleep:
        time.sleep(args.sleep)
    if args.fail:
        print(args.fail, file=sys.stderr)
        return 1

    match = _ISSUE_RE.search(prompt)
    number = match.group(1) if match else "?"
    print(f"Looking at issue #{number}...", flush=True)
    print("=== TRIAGE ANALYSIS START ===")
    print(f"SHOULD_CLOSE: {args.should_close}")
    print(f"LABELS: {args.labels}")
    print(f"CONFIDENCE: {args.confidence}")
    print()
    print("ANALYSIS:")
    print(f"Echo analysis for issue #{number}.")
    print()
    print("SUGGESTED_RESPONSE:")
    print("Thanks for the report.")
    print("=== TRIAGE ANALYSIS END ===")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
