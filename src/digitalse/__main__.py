"""Allow `python -m digitalse` to launch the CLI."""

import sys

from digitalse.interfaces.cli import main

sys.exit(main())
