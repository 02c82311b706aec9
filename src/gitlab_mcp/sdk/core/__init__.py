"""Core package metadata shared by the SDK and the server."""

from .version import PACKAGE_NAME, PACKAGE_VERSION, get_package_info

__all__ = ["PACKAGE_NAME", "PACKAGE_VERSION", "get_package_info"]
