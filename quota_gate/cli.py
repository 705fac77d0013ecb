"""CLI entry point for the quota-gate package."""

from __future__ import annotations

import sys
from typing import List, Optional

from .rate_limit import MultiTierRateLimiter, RateLimitError
from .tier_loader import DEFAULT_TIERS_FILE, load_tiers


def _print_help() -> None:
    print("Quota Gate CLI")
    print()
    print("Usage:")
    print("  quota-gate                                  Start the rate limit service")
    print("  quota-gate tiers                            Print the effective tier table")
    print("  quota-gate check <class> <key> [--weight N] [--times N]")
    print("                                              Dry-run admissions against a fresh limiter")
    print()
    print("Environment:")
    print("  RATE_LIMIT_TIERS_FILE   YAML tier file (default: {})".format(DEFAULT_TIERS_FILE))
    print("  ENABLE_RATE_LIMIT       true/false (default: true)")
    print("  HOST / PORT             Bind address (default: 0.0.0.0:4290)")
    print()


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _print_tiers(tiers_file: Optional[str]) -> None:
    tiers = load_tiers(tiers_file)
    width = max(len(name) for name in tiers)
    print("{:<{w}}  {:>12}  {:>12}".format("class", "window_ms", "max_requests", w=width))
    for name, config in tiers.items():
        print(
            "{:<{w}}  {:>12}  {:>12}".format(
                name,
                _format_number(config.window_ms),
                _format_number(config.max_requests),
                w=width,
            )
        )


def _pop_option(args: List[str], name: str, default: float) -> float:
    if name not in args:
        return default
    index = args.index(name)
    try:
        value = float(args[index + 1])
    except (IndexError, ValueError):
        print(f"Error: {name} expects a number", file=sys.stderr)
        sys.exit(2)
    del args[index : index + 2]
    return value


def _run_check(args: List[str], tiers_file: Optional[str]) -> int:
    args = list(args)
    weight = _pop_option(args, "--weight", 1.0)
    times = int(_pop_option(args, "--times", 1.0))
    if len(args) != 2:
        print("Usage: quota-gate check <class> <key> [--weight N] [--times N]", file=sys.stderr)
        return 2

    operation_class, key = args
    limiter = MultiTierRateLimiter(load_tiers(tiers_file))
    weight_arg = int(weight) if weight.is_integer() else weight
    for attempt in range(1, times + 1):
        decision = limiter.evaluate(key, operation_class, weight_arg)
        print(
            "#{} {} count={} remaining={} reset_in_ms={}".format(
                attempt,
                "allowed" if decision.allowed else "denied",
                _format_number(decision.count),
                _format_number(decision.remaining),
                _format_number(round(decision.reset_in_ms, 3)),
            )
        )
    return 0


def main() -> None:
    """Run the service or handle tiers/check commands."""
    from .config import get_settings

    settings = get_settings()

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        try:
            if subcommand == "tiers":
                _print_tiers(settings.tiers_file)
                sys.exit(0)
            if subcommand == "check":
                sys.exit(_run_check(sys.argv[2:], settings.tiers_file))
        except RateLimitError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)
        print(f"Unknown command: {sys.argv[1]}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    print("Quota gate listening on http://{}:{}".format(settings.host, settings.http_port))
    uvicorn.run(
        "quota_gate.main:app",
        host=settings.host,
        port=settings.http_port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
