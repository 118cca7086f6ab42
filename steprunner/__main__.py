"""Allow running as `python -m steprunner`."""

import sys

from steprunner.cli.main import main

sys.exit(main())
