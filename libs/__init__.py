"""Shared infrastructural libraries for canarygate.

This package collects reusable infrastructure building blocks such as the
retry policy in :mod:`libs.retry`. It exists primarily to provide a concrete
package root so static type checkers can resolve modules deterministically.
"""

__all__ = ["retry"]
