"""Allow ``python -m oidcflow``."""

import sys

from .cli import main


sys.exit(main())
