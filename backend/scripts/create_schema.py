"""Create the profile PIN tables in the configured database."""

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.app.database import get_engine, init_schema  # noqa: E402


def main() -> None:
    init_schema(get_engine())
    print("Schema ensured.")


if __name__ == "__main__":
    main()
