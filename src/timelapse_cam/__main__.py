"""Allow ``python -m timelapse_cam``."""

import sys

from .cli import main

sys.exit(main())
