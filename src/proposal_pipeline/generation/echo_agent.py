"""Local deterministic agent for CLI generator integration tests and demos."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

_DEFAULT_SCORE = 85.0


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as generated text, or emit a fixed score."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", required=True)
    parser.add_argument("--prompt-file")
    parser.add_argument("--prompt")
    parser.add_argument("--fail-with", help="Write this message to stderr and fail.")
    parser.add_argument("--exit-code", type=int, default=1)
    args = parser.parse_args(argv)

    if args.fail_with:
        sys.stderr.write(f"{args.fail_with}\n")
        return args.exit_code

    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    else:
        prompt = args.prompt or ""

    if args.mode == "score":
        score = float(os.getenv("PROPOSAL_PIPELINE_ECHO_SCORE", str(_DEFAULT_SCORE)))
        payload = {
            "score": score,
            "strengths": ["echo_agent"],
            "gaps": [] if score >= 80 else ["needs more detail"],  # noqa: PLR2004
            "requirement_scores": {"coverage": score},
        }
        sys.stdout.write(json.dumps(payload))
        return 0

    lines = [line for line in prompt.strip().splitlines() if line.strip()]
    heading = lines[0] if lines else f"{args.mode} output"
    sys.stdout.write(f"[{args.mode}] {heading}\n")
    for line in lines[1:6]:
        sys.stdout.write(f"{line}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
