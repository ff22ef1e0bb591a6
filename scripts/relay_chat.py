#!/usr/bin/env python3
"""Talk to a running relay from the terminal (login/register/chat/transcribe)."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def main() -> int:
    from assistant_relay.client.cli import main as cli_main

    return cli_main()


if __name__ == "__main__":
    raise SystemExit(main())
