"""multi-consul-template entry point.

Supports: python -m multi_consul_template
"""

from .app import main

if __name__ == "__main__":
    main()
