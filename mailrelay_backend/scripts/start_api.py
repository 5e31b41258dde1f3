import os
import sys
from pathlib import Path

# Ensure the project root is importable when executing as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import uvicorn


def _read_port() -> int:
    value = os.environ.get("PORT", "8000")
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid PORT '{value}': {exc}") from exc


def main() -> None:
    # Relays run in-process; one worker keeps a single lock holder per process
    uvicorn.run("mailrelay.main:app", host="0.0.0.0", port=_read_port(), workers=1)


if __name__ == "__main__":
    main()
