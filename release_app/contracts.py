"""Schema version of persisted run records.

``run.json`` files and ``--summary`` output written by one CI job are read
back by the next one; both sides compare against ``API_VERSION``.
"""

API_VERSION = "v1"

__all__ = ["API_VERSION"]
