"""kproxy 入口点。

支持: python -m kproxy
"""

from .app import main

if __name__ == "__main__":
    main()
