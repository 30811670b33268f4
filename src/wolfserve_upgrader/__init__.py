"""
WolfServe upgrader - safe binary upgrades with automatic rollback.

This package replaces the running WolfServe executable with a new build,
verifies that the replacement is healthy and restores the previous binary
when it is not.
"""

__version__ = "0.1.0"
