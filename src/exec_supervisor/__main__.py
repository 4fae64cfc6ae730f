"""exec-supervisor 入口点。

支持: python -m exec_supervisor
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
