"""driftguard - interception proxy for the messages API.

Rewrites agent requests in flight to inject team memory, tool definitions and
drift corrections while tracking whether recent actions still serve the
user's goal.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("driftguard")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
