# =============================================================================
# popfetch Entry Point for `python -m popfetch`
# =============================================================================
# This module allows popfetch to be run as a Python module:
#
#   python -m popfetch
#
# This is equivalent to running the 'popfetch' command after installation.
# =============================================================================

import sys

from popfetch.app import main

if __name__ == "__main__":
    sys.exit(main())
