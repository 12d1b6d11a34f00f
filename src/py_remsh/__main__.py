"""Allow ``python -m py_remsh``."""

import sys

from py_remsh.cli import main

sys.exit(main())
