from __future__ import annotations


class PackagingError(RuntimeError):
    """Base class for every failure raised while packaging a function bundle."""


class ConfigurationError(PackagingError):
    """Raised when a package request or toolchain file is unusable.

    Always raised before any stage has touched the source directory.
    """
