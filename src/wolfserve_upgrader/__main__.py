"""Allow ``python -m wolfserve_upgrader``."""

import sys

from wolfserve_upgrader.cli import main

sys.exit(main())
