"""multi-consul-template - drive one consul-template from many Consul KV prefixes.

Environment variables:
    MCT_BIN: consul-template binary (default consul-template)
    MCT_CONSUL_ENDPOINT: Consul endpoint (default tcp://localhost:8500)
    MCT_LOG_LEVEL: log level (default INFO)
    MCT_LOG_DEBUG: write a debug log to a temporary file (default false)

Usage:
    multi-consul-template -c consul-template.hcl services/templates:/etc/templates
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
