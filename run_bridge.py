#!/usr/bin/env python3
"""Start the call bridge straight from a source checkout.

Same as ``python -m callbridge`` or the installed ``callbridge`` script,
without needing ``pip install``. Configuration comes from CALLBRIDGE_*
environment variables.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from callbridge.__main__ import run  # noqa: E402

if __name__ == "__main__":
    run()
