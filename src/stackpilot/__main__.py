"""Allow running StackPilot with ``python -m stackpilot``."""

import sys

from .cli import main


sys.exit(main())
