"""
OKX exchange adapters.
"""

from .public import OkxClientError, OkxPublicClient  # noqa: F401
