"""aaoffline launcher, for running from a checkout without installing.

    python main.py 12345 -o my-case
"""

import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

from aaoffline.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
