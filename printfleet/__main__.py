"""Print server maintenance.

Usage:
    sudo python3 -m printfleet reconcile
    sudo python3 -m printfleet status
"""

import sys

from printfleet.cli import main

sys.exit(main())
