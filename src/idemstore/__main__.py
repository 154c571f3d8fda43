"""Allow running the CLI as ``python -m idemstore``."""

import sys

from idemstore.cli import main

sys.exit(main())
