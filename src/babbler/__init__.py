"""Babbler -- a Markov-chain chatter brain backed by SQLite.

Direct Python API::

    from babbler import Brain
    brain = Brain("brain.db")
    brain.learn("Always use TypeScript strict mode.")
    print(brain.reply("TypeScript"))

For the HTTP service, install with: ``pip install babbler[server]``
"""

__version__ = "0.4.0"

from babbler.brain import FALLBACK_REPLY, Brain, Reply
from babbler.sqlite_graph import BabblerError, IncompatibleStoreVersion, SQLiteGraph

__all__ = [
    "Brain",
    "Reply",
    "SQLiteGraph",
    "FALLBACK_REPLY",
    # Errors
    "BabblerError",
    "IncompatibleStoreVersion",
    # Meta
    "__version__",
]
