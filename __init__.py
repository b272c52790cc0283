"""
build-ruby - Checkout, build, install and test Ruby from source control.

This package runs a fixed sequence of named steps (checkout, configure, build,
install, test) through git/svn, autoconf and make, logging every command.
"""

from .build_ruby import (
    BuildConfig,
    BuildRunner,
    ConfigurationError,
    RunResult,
    main,
)

__version__ = "0.1.0"
__all__ = [
    "BuildConfig",
    "BuildRunner",
    "ConfigurationError",
    "RunResult",
    "main",
]
