"""Command-line entry point."""

from __future__ import annotations

from typing import Optional, Sequence


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Print a greeting and return the exit status."""
    print("Hello, World!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())