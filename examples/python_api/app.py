from __future__ import annotations

import argparse
from pathlib import Path

from converge.config import apply, load, plan


def _progress(step: object, event: str) -> None:
    identity = getattr(step, "identity", "unknown")
    print(f"[apply:{event}] {identity}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply a converge declaration via Python API")
    parser.add_argument("--config", default="converge.yaml", help="Path to config file")
    parser.add_argument("--apply", action="store_true", help="Converge after planning")
    parser.add_argument(
        "--no-refresh",
        action="store_true",
        help="Plan from recorded state only",
    )
    args = parser.parse_args()

    config = load(Path(args.config))

    plan_obj = plan(config, refresh=not args.no_refresh)
    print("Plan summary:", plan_obj.summary())
    for step in plan_obj.steps:
        print(f"- {step.action.value:7} {step.identity}")

    if args.apply:
        report = apply(config, progress=_progress)
        print("Apply summary:", report.final.summary())
        raise SystemExit(report.exit_code)


if __name__ == "__main__":
    main()
