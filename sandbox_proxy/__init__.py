"""Sandbox Proxy - host-side mediation for sandboxed containers.

Exposes a restricted GitHub CLI and a read-only screenshot clipboard to an
untrusted container over one-shot Unix domain socket requests.
"""

__version__ = "0.1.0"
