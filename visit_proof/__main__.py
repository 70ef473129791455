"""Module entry point: python -m visit_proof ..."""

from __future__ import annotations

from visit_proof.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
